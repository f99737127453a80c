"""One agent pass: a model request plus the commands its plan asks for.

``PassExecutor.execute_pass`` returns True when the runtime should run
another pass right away and False when control goes back to the human.
Protocol errors, rejections, cancellations and command failures all become
observations in history; only a payload guard trip escapes.
"""

from __future__ import annotations

import asyncio
import copy
import math
import re
from typing import Any, Callable, Protocol

from shellpilot.approval import ApprovalGate
from shellpilot.cancellation import CancellationCoordinator, EscState
from shellpilot.config import get_config
from shellpilot.events import (
    AssistantMessageEvent,
    CommandResultEvent,
    ContextUsageEvent,
    ErrorEvent,
    PlanEvent,
    RuntimeEmitter,
    SchemaValidationFailedEvent,
    ThinkingEvent,
)
from shellpilot.exceptions import LLMError
from shellpilot.history import (
    History,
    create_chat_entry,
    create_observation_entry,
    create_plan_reminder_entry,
    create_refusal_auto_response_entry,
)
from shellpilot.llm import LLMProvider, extract_tool_call_arguments, request_model_completion
from shellpilot.logging import get_logger
from shellpilot.memory import HistoryCompactor, estimate_context_usage
from shellpilot.observation import ObservationBuilder
from shellpilot.payload_guard import PayloadGuard
from shellpilot.plan import (
    PlanManager,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    clone_plan,
    collect_executable_steps,
    ensure_plan_ages,
    increment_running_ages,
    plan_has_open_steps,
)
from shellpilot.response_parser import STRATEGY_DIRECT, parse_assistant_response
from shellpilot.response_validator import validate_response, validate_response_schema
from shellpilot.stats import CommandStats
from shellpilot.tools.shell import ExecutionResult

log = get_logger(__name__)

PLAN_REMINDER_AUTO_RESPONSE_LIMIT = 3
RESPONSE_SNIPPET_LIMIT = 4000

REFUSAL_AUTO_RESPONSE = "continue"
REFUSAL_STATUS_MESSAGE = (
    'Assistant declined to help; auto-responding with "continue" to prompt another attempt.'
)
REFUSAL_MESSAGE_MAX_LENGTH = 160

_REFUSAL_SORRY = re.compile(r"\bsorry\b", re.IGNORECASE)
_REFUSAL_ASSISTANCE = [
    re.compile(r"\bhelp\b", re.IGNORECASE),
    re.compile(r"\bassist\b", re.IGNORECASE),
    re.compile(r"\bcontinue\b", re.IGNORECASE),
]
_REFUSAL_NEGATION = [
    re.compile(r"\bcan'?t\b", re.IGNORECASE),
    re.compile(r"\bcannot\b", re.IGNORECASE),
    re.compile(r"\bunable to\b", re.IGNORECASE),
    re.compile(r"\bnot able to\b", re.IGNORECASE),
    re.compile(r"\bwon'?t be able to\b", re.IGNORECASE),
]


def normalize_assistant_message(message: Any) -> str:
    if not isinstance(message, str):
        return ""
    return message.replace("‘", "'").replace("’", "'").strip()


def is_likely_refusal(message: Any) -> bool:
    """Short apology-style refusal: sorry + an assistance word + a negation."""
    text = normalize_assistant_message(message)
    if not text or len(text) > REFUSAL_MESSAGE_MAX_LENGTH:
        return False
    if not _REFUSAL_SORRY.search(text):
        return False
    if not any(pattern.search(text) for pattern in _REFUSAL_ASSISTANCE):
        return False
    return any(pattern.search(text) for pattern in _REFUSAL_NEGATION)


class PlanReminderTracker:
    """Counts consecutive plan-pending reminders."""

    def __init__(self) -> None:
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def increment(self) -> int:
        self._count += 1
        return self._count

    def reset(self) -> None:
        self._count = 0


class CommandRunner(Protocol):
    async def execute(
        self,
        run: str,
        cwd: str | None = None,
        timeout_sec: int | None = None,
        shell: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ExecutionResult: ...


def _priority(step: dict[str, Any]) -> float:
    value = step.get("priority")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return float(value)
    return math.inf


class PassExecutor:
    """Runs single passes against shared history and plan state."""

    def __init__(
        self,
        history: History,
        emitter: RuntimeEmitter,
        provider: LLMProvider,
        command_runner: CommandRunner,
        approval_gate: ApprovalGate,
        plan_manager: PlanManager,
        cancellation: CancellationCoordinator,
        esc_state: EscState | None = None,
        observation_builder: ObservationBuilder | None = None,
        stats: CommandStats | None = None,
        compactor: HistoryCompactor | None = None,
        payload_guard: PayloadGuard | None = None,
        reminder_tracker: PlanReminderTracker | None = None,
        get_no_human: Callable[[], bool] | None = None,
        set_no_human: Callable[[bool], None] | None = None,
        plan_reminder_message: str | None = None,
        model_name: str | None = None,
        context_window: int | None = None,
        emit_auto_approve_status: bool = False,
    ):
        cfg = get_config()
        self.history = history
        self.emitter = emitter
        self.provider = provider
        self.command_runner = command_runner
        self.approval_gate = approval_gate
        self.plan_manager = plan_manager
        self.cancellation = cancellation
        self.esc_state = esc_state
        self.observation_builder = observation_builder or ObservationBuilder()
        self.stats = stats
        self.compactor = compactor
        self.payload_guard = payload_guard
        self.reminder_tracker = reminder_tracker or PlanReminderTracker()
        self._get_no_human = get_no_human or (lambda: False)
        self._set_no_human = set_no_human or (lambda _value: None)
        self.plan_reminder_message = plan_reminder_message or cfg.agent.plan_reminder_message
        self.reminder_limit = max(0, int(cfg.agent.plan_reminder_limit or PLAN_REMINDER_AUTO_RESPONSE_LIMIT))
        self.model_name = model_name or cfg.model.model
        self.context_window = context_window or cfg.model.context_window
        self.emit_auto_approve_status = emit_auto_approve_status

    # -- helpers ------------------------------------------------------------

    def _status(self, level: str, message: str, details: Any = None) -> None:
        self.emitter.emit_status(level, message, details)

    def _push_observation(self, observation: dict[str, Any], pass_index: int, command: dict[str, Any] | None = None) -> None:
        self.history.append(create_observation_entry(observation, pass_index, command))

    def _emit_plan(self, plan: list[dict[str, Any]]) -> None:
        self.emitter.emit(PlanEvent(plan=clone_plan(plan)))

    def _persist(self, plan: list[dict[str, Any]]) -> None:
        try:
            self.plan_manager.sync(plan)
        except Exception as e:
            log.warning("Plan persistence failed", error=str(e))
            self._status("warn", "Failed to persist plan state after execution.", str(e))

    @staticmethod
    def _select_next(plan: list[dict[str, Any]], executed: set[int]) -> tuple[dict[str, Any], dict[str, Any]] | None:
        candidates = [
            (index, step, command)
            for index, (step, command) in enumerate(collect_executable_steps(plan))
            if id(step) not in executed
        ]
        if not candidates:
            return None
        _, step, command = min(candidates, key=lambda item: (_priority(item[1]), item[0]))
        return step, command

    # -- pre-request --------------------------------------------------------

    async def _prepare_history(self) -> None:
        if self.compactor is not None:
            try:
                await self.compactor.compact_if_needed(self.history)
            except Exception as e:
                log.warning("History compaction raised", error=str(e))
                self._status("warn", "Unexpected error during history compaction.", str(e))

        try:
            usage = estimate_context_usage(self.history, self.context_window, self.provider.count_tokens)
        except Exception as e:
            self._status("warn", "Failed to summarize context usage.", str(e))
            return
        if usage.total_tokens:
            self.emitter.emit(ContextUsageEvent(usage=usage.to_dict()))

    async def _request_completion(self, pass_index: int) -> str | None:
        """Raw protocol text, or None when the pass must end here."""
        self.emitter.emit(ThinkingEvent(state="start"))
        try:
            outcome = await request_model_completion(
                self.provider,
                self.history.to_model_messages(),
                self.cancellation,
                self.esc_state,
            )
        except LLMError as e:
            log.error("Model request failed", error=str(e))
            self.emitter.emit(ErrorEvent(message="Model request failed.", details=str(e)))
            return None
        finally:
            self.emitter.emit(ThinkingEvent(state="stop"))

        if outcome.status == "canceled":
            if outcome.reason == "escape_key":
                self._status("warn", "Operation canceled via user request.")
                observation = self.observation_builder.build_cancellation_observation(
                    reason="escape_key",
                    message="Human canceled the in-flight request.",
                    metadata={"esc_payload": outcome.payload},
                )
            else:
                self._status("warn", "Operation aborted before completion.")
                observation = self.observation_builder.build_cancellation_observation(
                    reason="abort",
                    message="The in-flight request was aborted before completion.",
                )
            self._set_no_human(False)
            self._push_observation(observation, pass_index)
            return None

        raw = extract_tool_call_arguments(outcome.completion)
        self.emitter.emit_debug(lambda: {"stage": "model-response", "raw": raw})
        if not raw:
            self.emitter.emit(ErrorEvent(message="Model response did not include a tool call."))
            return None
        return raw

    # -- protocol -----------------------------------------------------------

    def _parse_and_validate(self, raw: str, pass_index: int) -> dict[str, Any] | None:
        """Parsed payload, or None after pushing a corrective observation."""
        snippet = raw[:RESPONSE_SNIPPET_LIMIT]
        result = parse_assistant_response(raw)
        if not result.ok or result.value is None:
            attempts = [attempt.to_dict() for attempt in result.attempts]
            self.emitter.emit(ErrorEvent(message="LLM returned invalid JSON.", details=result.error, raw=raw))
            self._push_observation(
                self.observation_builder.build_error_observation(
                    "json_parse_error",
                    "Failed to parse assistant JSON response. Please resend a valid JSON object "
                    "that follows the CLI protocol.",
                    attempts=attempts,
                    response_snippet=snippet,
                ),
                pass_index,
            )
            return None

        parsed = result.value
        if result.strategy and result.strategy != STRATEGY_DIRECT:
            self._status(
                "info",
                f"Assistant JSON parsed after applying {result.strategy.replace('_', ' ')} recovery.",
            )

        schema = validate_response_schema(parsed, merge_mode=self.plan_manager.is_merging_enabled())
        if not schema.valid:
            messages = schema.messages()
            self.emitter.emit(
                SchemaValidationFailedEvent(
                    message="Assistant response failed schema validation.",
                    errors=[error.to_dict() for error in schema.errors],
                    raw=raw,
                )
            )
            if len(messages) == 1:
                summary = f"Schema validation failed: {messages[0]}"
            else:
                summary = "Schema validation failed. Please address the following issues:\n- " + "\n- ".join(messages)
            self._push_observation(
                self.observation_builder.build_error_observation(
                    "schema_validation_error",
                    summary,
                    details=messages,
                    response_snippet=snippet,
                ),
                pass_index,
            )
            return None

        validation = validate_response(parsed)
        if not validation.valid:
            errors = validation.messages()
            self.emitter.emit_debug(
                lambda: {
                    "stage": "assistant-response-validation-error",
                    "message": "Assistant response failed protocol validation.",
                    "errors": errors,
                }
            )
            message = (
                errors[0]
                if len(errors) == 1
                else f"Detected {len(errors)} validation issues. Please fix them and resend a compliant response."
            )
            self._push_observation(
                self.observation_builder.build_error_observation(
                    "response_validation_error",
                    message,
                    details=errors,
                    response_snippet=snippet,
                ),
                pass_index,
            )
            return None
        return parsed

    def _reconcile_plan(self, incoming: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        try:
            if incoming is not None:
                active = self.plan_manager.update(incoming)
            elif self.plan_manager.is_merging_enabled():
                active = self.plan_manager.get()
            else:
                active = self.plan_manager.reset()
        except Exception as e:
            log.warning("Plan update failed", error=str(e))
            self._status("warn", "Failed to update persistent plan state.", str(e))
            active = clone_plan(incoming or [])

        ensure_plan_ages(active)
        increment_running_ages(active)
        if active:
            self._persist(active)
        return active

    # -- idle ---------------------------------------------------------------

    def _handle_idle(
        self,
        parsed: dict[str, Any],
        active: list[dict[str, Any]],
        incoming: list[dict[str, Any]] | None,
        pass_index: int,
    ) -> bool:
        message = normalize_assistant_message(parsed.get("message"))

        if self._get_no_human() and message.lower().rstrip(".!") == "done":
            self._set_no_human(False)

        if not active and not incoming and is_likely_refusal(message):
            self._status("info", REFUSAL_STATUS_MESSAGE)
            self.history.append(create_refusal_auto_response_entry(REFUSAL_AUTO_RESPONSE, pass_index))
            self.reminder_tracker.reset()
            return True

        if active and plan_has_open_steps(active):
            attempt = self.reminder_tracker.increment()
            if attempt <= self.reminder_limit:
                self._status("warn", self.plan_reminder_message)
                self.history.append(create_plan_reminder_entry(self.plan_reminder_message, pass_index))
                return True
            return False

        if active:
            try:
                active = self.plan_manager.reset()
            except Exception as e:
                self._status("warn", "Failed to clear persistent plan state after completion.", str(e))
                active = []
            self._emit_plan(active)

        self.reminder_tracker.reset()
        return False

    # -- execution ----------------------------------------------------------

    async def _approve(self, command: dict[str, Any]) -> bool:
        auto = self.approval_gate.should_auto_approve(command)
        if auto.approved:
            if auto.source == "flag" and self.emit_auto_approve_status:
                self._status("info", "Command auto-approved via flag.")
            return True

        decision = await self.approval_gate.request_human_decision(command)
        if decision.decision == "reject":
            self._status("warn", "Command execution canceled by human request.")
            return False
        if decision.decision == "approve_session":
            self._status("info", "Command approved for the remainder of the session.")
        else:
            self._status("info", "Command approved for single execution.")
        return True

    async def _run_command(self, command: dict[str, Any]) -> ExecutionResult:
        run = command["run"]
        abort = asyncio.Event()
        with self.cancellation.scope(f"shell: {run}", on_cancel=lambda _reason: abort.set()):
            try:
                return await self.command_runner.execute(
                    run,
                    cwd=command.get("cwd"),
                    timeout_sec=command.get("timeout_sec"),
                    shell=command.get("shell"),
                    abort_event=abort,
                )
            except OSError as e:
                log.error("Command failed to start", command=run, error=str(e))
                return ExecutionResult(stderr=str(e), exit_code=1)

    def _record_stats(self, command: dict[str, Any]) -> None:
        if self.stats is None or not self.stats.enabled:
            return
        try:
            recorded = self.stats.increment(command)
        except Exception as e:
            log.warning("Stats tracking raised", error=str(e))
            recorded = False
        if not recorded:
            self._status("warn", "Failed to record command usage statistics.")

    async def _execute_steps(self, active: list[dict[str, Any]], pass_index: int) -> bool:
        self.reminder_tracker.reset()
        executed: set[int] = set()

        selected = self._select_next(active, executed)
        while selected is not None:
            step, command = selected
            executed.add(id(step))
            command["run"] = str(command.get("run") or command.get("shell") or "").strip()

            if not await self._approve(command):
                step["observation"] = self.observation_builder.build_rejection_observation()
                self._persist(active)
                self._push_observation(
                    self.observation_builder.build_plan_observation(clone_plan(active)),
                    pass_index,
                )
                return True

            step["status"] = STATUS_RUNNING
            self._emit_plan(active)
            self._persist(active)

            result = await self._run_command(command)
            self._record_stats(command)

            built = self.observation_builder.build(command, result)
            step["observation"] = built.observation
            if result.exit_code == 0:
                step["status"] = STATUS_COMPLETED
            elif result.exit_code is not None:
                step["status"] = STATUS_FAILED
            executed_command = copy.deepcopy(command)
            if result.killed:
                # Wait for the model to acknowledge the interruption instead of retrying.
                step.pop("command", None)

            self.emitter.emit_debug(
                lambda: {
                    "stage": "command-execution",
                    "command": executed_command,
                    "result": result.model_dump(),
                    "observation": built.observation,
                }
            )
            self.emitter.emit(
                CommandResultEvent(
                    command=executed_command,
                    result=result.model_dump(),
                    preview=built.preview,
                    execution={"type": "shell", "command": executed_command},
                    plan_step={k: copy.deepcopy(v) for k, v in step.items() if k != "substeps"},
                )
            )
            self._emit_plan(active)
            self._persist(active)

            selected = self._select_next(active, executed)

        self._push_observation(self.observation_builder.build_plan_observation(clone_plan(active)), pass_index)
        self.emitter.emit_debug(lambda: {"stage": "plan-observation", "plan": clone_plan(active)})

        if plan_has_open_steps(active):
            return True
        try:
            self.plan_manager.reset()
        except Exception as e:
            self._status("warn", "Failed to clear persistent plan state after completion.", str(e))
        return False

    # -- entry point --------------------------------------------------------

    async def execute_pass(self, pass_index: int) -> bool:
        payload_size: int | None = None
        if self.payload_guard is not None:
            payload_size = self.payload_guard.guard(self.history, self.model_name, pass_index)

        await self._prepare_history()

        raw = await self._request_completion(pass_index)
        if raw is None:
            return False
        if self.payload_guard is not None:
            self.payload_guard.record(payload_size)

        self.history.append(create_chat_entry("assistant", raw, pass_index))

        parsed = self._parse_and_validate(raw, pass_index)
        if parsed is None:
            return True

        self.emitter.emit(AssistantMessageEvent(message=str(parsed.get("message") or "")))

        incoming = parsed.get("plan") if isinstance(parsed.get("plan"), list) else None
        active = self._reconcile_plan(incoming)
        self._emit_plan(active)

        if self._select_next(active, set()) is None:
            return self._handle_idle(parsed, active, incoming, pass_index)
        return await self._execute_steps(active, pass_index)
