"""Model access: the provider interface, an Ollama client, and the cancellable request."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from shellpilot.cancellation import CancellationCoordinator, EscState
from shellpilot.exceptions import LLMAPIError, LLMError
from shellpilot.logging import get_logger
from shellpilot.response_validator import ProtocolResponse

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
RESPONSE_TOOL_NAME = "open-agent"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] | str


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


RESPONSE_TOOL = ToolDefinition(
    name=RESPONSE_TOOL_NAME,
    description=(
        "Return the response envelope that matches the Shellpilot protocol "
        "(message and plan, with at most one command per plan step)."
    ),
    parameters=ProtocolResponse.model_json_schema(by_alias=True),
)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message] | list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass


class OllamaProvider(LLMProvider):
    """Talks to the Ollama ``/api/chat`` endpoint over httpx."""

    def __init__(
        self,
        model: str = "gpt-oss:20b",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 8192,
        api_key: str | None = None,
        context_window: int = 128000,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'gpt-oss:20b', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional bearer token for hosted Ollama endpoints
            context_window: Context size requested from the server
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.context_window = context_window

        self.client = httpx.AsyncClient(timeout=300.0, follow_redirects=True)

    @staticmethod
    def _convert_messages(messages: list[Message] | list[dict[str, Any]]) -> list[dict[str, str]]:
        converted: list[dict[str, str]] = []
        for msg in messages:
            if isinstance(msg, dict):
                role, content = msg.get("role"), msg.get("content")
            else:
                role, content = msg.role, msg.content
            if role in {"system", "user", "assistant"}:
                converted.append({"role": str(role), "content": str(content or "")})
        return converted

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _build_body(
        self,
        messages: list[Message] | list[dict[str, Any]],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": self.context_window,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[Message] | list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            log.debug("Ollama response status", status=response.status_code)

            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            message = data.get("message") or {}
            tool_calls = [
                ToolCall(
                    id=f"ollama_call_{index}",
                    name=(tc.get("function") or {}).get("name", ""),
                    arguments=(tc.get("function") or {}).get("arguments", {}),
                )
                for index, tc in enumerate(message.get("tool_calls") or [])
            ]
            prompt_tokens = int(data.get("prompt_eval_count", 0) or 0)
            completion_tokens = int(data.get("eval_count", 0) or 0)
            return LLMResponse(
                content=message.get("content", "") or "",
                tool_calls=tool_calls,
                model=self.model,
                usage={
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                },
            )
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        # ~1 token per 4 characters for English
        return len(text) // 4

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "gpt-oss:20b",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 8192,
    context_window: int = 128000,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name, only ``ollama`` is built in
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        context_window: Context size requested from the server

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            context_window=context_window,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or call set_provider().")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from shellpilot.config import get_config

        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            context_window=cfg.model.context_window,
        )
    return _provider


def set_provider(provider: LLMProvider) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider


# ---------------------------------------------------------------------------
# Cancellable protocol request
# ---------------------------------------------------------------------------


@dataclass
class ModelCompletion:
    """Outcome of :func:`request_model_completion`."""

    status: Literal["success", "canceled"]
    completion: LLMResponse | None = None
    reason: str | None = None
    payload: Any = None


def extract_tool_call_arguments(completion: LLMResponse | None) -> str:
    """Raw argument text of the protocol tool call, or ``""`` when absent."""
    if completion is None:
        return ""
    for call in completion.tool_calls:
        if call.name != RESPONSE_TOOL_NAME:
            continue
        if isinstance(call.arguments, str):
            return call.arguments
        if isinstance(call.arguments, dict):
            return json.dumps(call.arguments)
    return ""


async def _settle(task: asyncio.Task[Any]) -> None:
    if not task.done():
        task.cancel()
    await asyncio.wait({task})


async def request_model_completion(
    provider: LLMProvider,
    messages: list[dict[str, Any]],
    cancellation: CancellationCoordinator,
    esc_state: EscState | None = None,
    tools: list[ToolDefinition] | None = None,
) -> ModelCompletion:
    """Run one protocol completion, raced against ESC and cooperative cancel.

    The request is registered on the cancellation stack; canceling that entry
    cancels the request task. Pressing ESC cancels it too and is reported
    with reason ``escape_key``; any other cancellation reports ``abort``.
    """
    request = asyncio.create_task(provider.complete(messages, tools=tools or [RESPONSE_TOOL]))
    handle = cancellation.register("model.complete", on_cancel=lambda _reason: request.cancel())
    esc_wait: asyncio.Task[Any] | None = None
    if esc_state is not None:
        esc_wait = asyncio.create_task(esc_state.wait())

    try:
        waiters: set[asyncio.Task[Any]] = {request}
        if esc_wait is not None:
            waiters.add(esc_wait)
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

        if esc_wait is not None and esc_wait in done:
            handle.cancel("ui-cancel")
            await _settle(request)
            if esc_state is not None:
                esc_state.reset()
            log.info("Model request canceled by ESC")
            return ModelCompletion(status="canceled", reason="escape_key", payload=esc_wait.result())

        if request.cancelled():
            if esc_state is not None:
                esc_state.reset()
            log.info("Model request aborted")
            return ModelCompletion(status="canceled", reason="abort")

        if esc_state is not None:
            esc_state.reset()
        return ModelCompletion(status="success", completion=request.result())
    finally:
        if esc_wait is not None:
            await _settle(esc_wait)
        if not request.done():
            await _settle(request)
        handle.unregister()
