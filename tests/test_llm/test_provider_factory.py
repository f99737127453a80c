import httpx
import pytest

from shellpilot.exceptions import LLMAPIError
from shellpilot.llm import (
    RESPONSE_TOOL,
    RESPONSE_TOOL_NAME,
    Message,
    OllamaProvider,
    create_provider,
)


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434/",
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_defaults_to_local_ollama():
    provider = create_provider()
    assert isinstance(provider, OllamaProvider)
    assert provider.base_url == "http://127.0.0.1:11434"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


def test_ollama_body_carries_protocol_tool_and_options():
    provider = OllamaProvider(model="gpt-oss:20b", temperature=0.1, max_tokens=256, context_window=4096)

    body = provider._build_body(
        [Message(role="system", content="sys"), {"role": "user", "content": "hi"}, {"role": "tool", "content": "x"}],
        [RESPONSE_TOOL],
        temperature=None,
        max_tokens=None,
    )

    assert body["stream"] is False
    assert body["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
    assert body["options"] == {"num_ctx": 4096, "temperature": 0.1, "num_predict": 256}
    assert body["tools"][0]["function"]["name"] == RESPONSE_TOOL_NAME
    assert "plan" in body["tools"][0]["function"]["parameters"]["properties"]


def test_api_key_adds_bearer_header():
    assert OllamaProvider(api_key="secret")._headers()["Authorization"] == "Bearer secret"
    assert "Authorization" not in OllamaProvider()._headers()


@pytest.mark.asyncio
async def test_ollama_complete_parses_tool_calls():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        return httpx.Response(
            200,
            json={
                "message": {
                    "content": "",
                    "tool_calls": [
                        {"function": {"name": RESPONSE_TOOL_NAME, "arguments": {"message": "hi", "plan": []}}}
                    ],
                },
                "prompt_eval_count": 10,
                "eval_count": 5,
            },
        )

    provider = OllamaProvider(model="m")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    response = await provider.complete([Message(role="user", content="hi")], tools=[RESPONSE_TOOL])
    await provider.close()

    assert response.tool_calls[0].name == RESPONSE_TOOL_NAME
    assert response.tool_calls[0].arguments == {"message": "hi", "plan": []}
    assert response.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}


@pytest.mark.asyncio
async def test_ollama_error_status_raises_api_error():
    provider = OllamaProvider(model="m")
    provider.client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    )

    with pytest.raises(LLMAPIError) as exc_info:
        await provider.complete([Message(role="user", content="hi")])
    await provider.close()

    assert exc_info.value.status_code == 500
