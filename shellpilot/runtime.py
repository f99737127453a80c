"""Conversation orchestrator: wires collaborators and drives passes per human turn."""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Any

from shellpilot.approval import ApprovalGate
from shellpilot.cancellation import CancellationCoordinator, EscState
from shellpilot.config import get_config
from shellpilot.events import (
    AsyncQueue,
    BannerEvent,
    ErrorEvent,
    EventObserver,
    PassEvent,
    RequestInputEvent,
    RuntimeEmitter,
)
from shellpilot.exceptions import PayloadGuardTripped, ShellpilotError
from shellpilot.history import History, create_chat_entry
from shellpilot.instructions import build_system_prompt
from shellpilot.llm import LLMProvider, get_provider
from shellpilot.logging import bind_pass, get_logger
from shellpilot.memory import HistoryCompactor, MemoryPolicies
from shellpilot.observation import ObservationBuilder
from shellpilot.pass_executor import CommandRunner, PassExecutor, PlanReminderTracker
from shellpilot.payload_guard import PayloadGuard
from shellpilot.plan import PlanManager
from shellpilot.stats import CommandStats
from shellpilot.tools.shell import ShellExecutor

log = get_logger(__name__)

BANNER_TITLE = "Shellpilot - AI Agent with JSON Protocol"
USER_INPUT_PROMPT = "\n ▷ "
EXIT_WORDS = {"exit", "quit"}


class PromptCoordinator:
    """Matches runtime prompt requests with answers arriving from the UI."""

    def __init__(
        self,
        emitter: RuntimeEmitter,
        cancellation: CancellationCoordinator | None = None,
        esc_state: EscState | None = None,
    ):
        self.emitter = emitter
        self.cancellation = cancellation
        self.esc_state = esc_state
        self._buffered: deque[str] = deque()
        self._waiters: deque[asyncio.Future[str]] = deque()

    @property
    def has_buffered(self) -> bool:
        return bool(self._buffered)

    async def request(self, prompt: str, metadata: dict[str, Any] | None = None) -> str:
        self.emitter.emit(RequestInputEvent(prompt=prompt, metadata=dict(metadata or {})))
        if self._buffered:
            return self._buffered.popleft()

        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def handle_prompt(self, value: Any) -> None:
        text = value if isinstance(value, str) else ""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(text)
                return
        self._buffered.append(text)

    def handle_cancel(self, payload: Any = None) -> None:
        if self.cancellation is not None:
            self.cancellation.cancel("ui-cancel")
        if self.esc_state is not None and self.esc_state.has_waiters:
            self.esc_state.trigger(payload if payload is not None else {"reason": "ui-cancel"})
        self.emitter.emit_status("warn", "Cancellation requested by UI.")

    def close(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result("")


class AgentRuntime:
    """Owns history and the event queues for one session.

    UIs push ``{"type": "prompt"|"cancel"}`` dicts into ``inputs`` (or call
    :meth:`submit_prompt` / :meth:`cancel`) and consume event dicts from
    ``outputs``. :meth:`start` runs until the human types ``exit`` or the
    input queue closes.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        command_runner: CommandRunner | None = None,
        approval_gate: ApprovalGate | None = None,
        plan_manager: PlanManager | None = None,
        memory_policies: MemoryPolicies | None = None,
        compactor: HistoryCompactor | None = None,
        payload_guard: PayloadGuard | None = None,
        stats: CommandStats | None = None,
        observation_builder: ObservationBuilder | None = None,
        system_prompt: str | None = None,
        auto_approve: bool | None = None,
        no_human: bool | None = None,
        plan_merge: bool | None = None,
        debug: bool | None = None,
        observers: list[EventObserver] | None = None,
        workdir: Path | str | None = None,
    ):
        cfg = get_config()
        self.outputs: AsyncQueue[dict[str, Any]] = AsyncQueue()
        self.inputs: AsyncQueue[dict[str, Any]] = AsyncQueue()

        self._auto_approve = cfg.agent.auto_approve if auto_approve is None else auto_approve
        self._no_human = cfg.agent.no_human if no_human is None else no_human
        self._debug = cfg.agent.debug if debug is None else debug
        merge = cfg.agent.plan_merge if plan_merge is None else plan_merge

        self.emitter = RuntimeEmitter(
            self.outputs,
            observers=observers,
            id_prefix=cfg.agent.id_prefix,
            is_debug_enabled=lambda: self._debug,
        )
        self.cancellation = CancellationCoordinator()
        self.esc_state = EscState()
        self.prompts = PromptCoordinator(self.emitter, self.cancellation, self.esc_state)
        self.history = History()

        self.provider = provider or get_provider()
        self.approval_gate = approval_gate or ApprovalGate(
            ask_human=self.prompts.request,
            auto_approve=lambda: self._auto_approve,
            emitter=self.emitter,
        )
        self.plan_manager = plan_manager or PlanManager(
            emitter=self.emitter,
            merge_enabled=merge,
            persistence_path=cfg.agent.plan_path or None,
        )
        self.memory_policies = memory_policies or MemoryPolicies()
        self.compactor = compactor or HistoryCompactor(
            self.provider,
            usage_threshold=cfg.memory.compaction_threshold,
            context_window=cfg.model.context_window,
        )
        self.payload_guard = payload_guard or PayloadGuard()
        self.stats = stats or CommandStats()
        self._workdir = Path(workdir) if workdir else Path.cwd()
        self._system_prompt = system_prompt

        self.executor = PassExecutor(
            history=self.history,
            emitter=self.emitter,
            provider=self.provider,
            command_runner=command_runner or ShellExecutor(),
            approval_gate=self.approval_gate,
            plan_manager=self.plan_manager,
            cancellation=self.cancellation,
            esc_state=self.esc_state,
            observation_builder=observation_builder or ObservationBuilder(),
            stats=self.stats,
            compactor=self.compactor,
            payload_guard=self.payload_guard,
            reminder_tracker=PlanReminderTracker(),
            get_no_human=self.is_no_human,
            set_no_human=self.set_no_human,
            plan_reminder_message=cfg.agent.plan_reminder_message,
            model_name=cfg.model.model,
            context_window=cfg.model.context_window,
        )

        self._pass_index = 0
        self._running = False

    # -- public surface -----------------------------------------------------

    @property
    def pass_index(self) -> int:
        return self._pass_index

    def is_no_human(self) -> bool:
        return self._no_human

    def set_no_human(self, value: bool) -> None:
        self._no_human = bool(value)

    def toggle_plan_merging(self) -> bool:
        """Flip plan merging; later passes pick up the new mode."""
        enabled = self.plan_manager.toggle_merging()
        self.emitter.emit_status("info", f"Plan merging {'enabled' if enabled else 'disabled'}.")
        return enabled

    def submit_prompt(self, value: str) -> bool:
        return self.inputs.push({"type": "prompt", "prompt": value})

    def cancel(self, payload: Any = None) -> bool:
        return self.inputs.push({"type": "cancel", "payload": payload})

    def get_history_snapshot(self) -> list[dict[str, Any]]:
        return self.history.snapshot()

    # -- internals ----------------------------------------------------------

    def _next_pass(self) -> int:
        self._pass_index += 1
        self.emitter.emit(PassEvent(pass_index=self._pass_index))
        return self._pass_index

    def _enforce_memory(self, current_pass: int) -> None:
        self.memory_policies.enforce(self.history, current_pass)

    async def _process_inputs(self) -> None:
        try:
            async for event in self.inputs:
                if not isinstance(event, dict):
                    continue
                if event.get("type") == "cancel":
                    self.prompts.handle_cancel(event.get("payload"))
                elif event.get("type") == "prompt":
                    self.prompts.handle_prompt(event.get("prompt", event.get("value", "")))
        except Exception as e:
            log.error("Input processing failed", error=str(e))
            self.emitter.emit(ErrorEvent(message="Input processing terminated unexpectedly.", details=str(e)))
        finally:
            self.prompts.close()

    def _seed_history(self) -> None:
        if len(self.history):
            return
        prompt = self._system_prompt
        if prompt is None:
            prompt = build_system_prompt(self._workdir)
        if prompt:
            self.history.append(create_chat_entry("system", prompt, 0))

    def _emit_startup(self) -> None:
        self.emitter.emit(BannerEvent(title=BANNER_TITLE))
        self.emitter.emit_status("info", "Submit prompts to drive the conversation.")
        if self._auto_approve:
            self.emitter.emit_status(
                "warn",
                "Full auto-approval mode enabled via CLI flag. All commands will run without prompting.",
            )
        if self._no_human:
            self.emitter.emit_status(
                "warn",
                "No-human mode enabled. Agent will auto-respond with "
                f'"{get_config().agent.no_human_auto_message}" until the AI replies "done".',
            )

    async def _run_turn(self, user_input: str) -> None:
        current_pass = self._next_pass()
        self.history.append(create_chat_entry("user", user_input, current_pass))
        self._enforce_memory(current_pass)

        while True:
            with bind_pass(current_pass):
                should_continue = await self.executor.execute_pass(current_pass)
            self._enforce_memory(current_pass)
            if not should_continue:
                return
            current_pass = self._next_pass()

    async def start(self) -> None:
        if self._running:
            raise ShellpilotError("Agent runtime already started.")
        self._running = True
        input_task = asyncio.create_task(self._process_inputs())

        self.plan_manager.load()
        self._emit_startup()
        self._seed_history()

        try:
            while True:
                no_human = self.is_no_human()
                if no_human:
                    user_input = get_config().agent.no_human_auto_message
                else:
                    if self.inputs.closed and not self.prompts.has_buffered:
                        break
                    user_input = await self.prompts.request(USER_INPUT_PROMPT, {"scope": "user-input"})

                user_input = user_input.strip()
                if not user_input:
                    if self.inputs.closed and not no_human:
                        break
                    continue

                if user_input.lower() in EXIT_WORDS:
                    self.emitter.emit_status("info", "Goodbye!")
                    break

                try:
                    await self._run_turn(user_input)
                except PayloadGuardTripped:
                    raise
                except ShellpilotError as e:
                    log.error("Agent loop error", error=str(e))
                    self.emitter.emit(ErrorEvent(message="Agent loop encountered an error.", details=str(e)))
        finally:
            self.inputs.close()
            self.outputs.close()
            await input_task
            self._running = False
