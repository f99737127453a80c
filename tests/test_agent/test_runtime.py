import asyncio
import json
from typing import Any

import pytest

from shellpilot.config import AllowlistEntry
from shellpilot.approval import ApprovalGate
from shellpilot.events import AsyncQueue, RuntimeEmitter
from shellpilot.exceptions import PayloadGuardTripped
from shellpilot.llm import RESPONSE_TOOL_NAME, LLMProvider, LLMResponse, Message, ToolCall, ToolDefinition
from shellpilot.memory import DementiaPolicy, MemoryPolicies, AmnesiaManager
from shellpilot.payload_guard import PayloadGuard
from shellpilot.runtime import AgentRuntime, PromptCoordinator
from shellpilot.stats import CommandStats
from shellpilot.tools.shell import ExecutionResult


class QueueProvider(LLMProvider):
    def __init__(self, payloads: list[dict[str, Any]]):
        self.payloads = list(payloads)

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        return LLMResponse(
            content="",
            tool_calls=[ToolCall(id="call", name=RESPONSE_TOOL_NAME, arguments=json.dumps(payload))],
        )

    def count_tokens(self, text: str) -> int:
        return len(text.split())


class EchoRunner:
    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, run, cwd=None, timeout_sec=None, shell=None, abort_event=None) -> ExecutionResult:
        self.calls.append(run)
        return ExecutionResult(stdout="file.txt", exit_code=0)


def _runtime(provider: LLMProvider, tmp_path, runner: EchoRunner | None = None, **kwargs) -> AgentRuntime:
    kwargs.setdefault("payload_guard", PayloadGuard(enabled=False, dump_dir=tmp_path / "dumps"))
    return AgentRuntime(
        provider=provider,
        command_runner=runner or EchoRunner(),
        stats=CommandStats(path=tmp_path / "stats.json"),
        memory_policies=MemoryPolicies(AmnesiaManager(10), DementiaPolicy(30)),
        system_prompt="system prompt",
        auto_approve=False,
        no_human=False,
        **kwargs,
    )


async def _collect(runtime: AgentRuntime) -> list[dict[str, Any]]:
    return [event async for event in runtime.outputs]


@pytest.mark.asyncio
async def test_exit_stops_runtime_with_goodbye(tmp_path):
    runtime = _runtime(QueueProvider([{"message": "unused", "plan": []}]), tmp_path)
    runtime.submit_prompt("exit")

    await asyncio.wait_for(runtime.start(), timeout=5)
    events = await _collect(runtime)

    assert events[0]["type"] == "banner"
    assert events[-1]["message"] == "Goodbye!"
    assert runtime.pass_index == 0
    assert runtime.get_history_snapshot()[0]["role"] == "system"


@pytest.mark.asyncio
async def test_turn_runs_passes_until_executor_stops(tmp_path):
    plan = [{"id": "a", "title": "List", "status": "pending", "command": {"run": "ls"}}]
    provider = QueueProvider([{"message": "Listing.", "plan": plan}, {"message": "All done.", "plan": []}])
    runner = EchoRunner()
    runtime = _runtime(provider, tmp_path, runner)
    runtime.approval_gate.allowlist = [AllowlistEntry(name="ls")]

    runtime.submit_prompt("show me the files")
    runtime.submit_prompt("quit")
    await asyncio.wait_for(runtime.start(), timeout=5)
    events = await _collect(runtime)

    assert runner.calls == ["ls"]
    passes = [event["pass_index"] for event in events if event["type"] == "pass"]
    assert passes == [1]
    snapshot = runtime.get_history_snapshot()
    assert [entry["role"] for entry in snapshot[:3]] == ["system", "user", "assistant"]
    assert snapshot[1]["content"] == "show me the files"
    assert json.loads((tmp_path / "stats.json").read_text(encoding="utf-8")) == {"ls": 1}


@pytest.mark.asyncio
async def test_no_human_mode_auto_responds_until_done(tmp_path):
    provider = QueueProvider([{"message": "Still going.", "plan": []}, {"message": "done", "plan": []}])
    runtime = _runtime(provider, tmp_path)
    runtime.set_no_human(True)
    runtime.submit_prompt("exit")

    await asyncio.wait_for(runtime.start(), timeout=5)
    events = await _collect(runtime)

    user_turns = [entry["content"] for entry in runtime.get_history_snapshot() if entry["role"] == "user"]
    assert user_turns == ["continue or say 'done'", "continue or say 'done'"]
    assert not runtime.is_no_human()
    assert any(event["type"] == "status" and "No-human mode enabled" in event["message"] for event in events)


@pytest.mark.asyncio
async def test_closing_inputs_ends_session(tmp_path):
    runtime = _runtime(QueueProvider([{"message": "unused", "plan": []}]), tmp_path)
    start = asyncio.create_task(runtime.start())
    await asyncio.sleep(0)
    runtime.inputs.close()

    await asyncio.wait_for(start, timeout=5)
    assert runtime.outputs.closed


@pytest.mark.asyncio
async def test_payload_guard_trip_closes_outputs_and_propagates(tmp_path):
    class TrippingGuard(PayloadGuard):
        def guard(self, history, model, pass_index=None):
            raise PayloadGuardTripped(previous=10, current=10_000, pass_index=pass_index, dump_path=None)

    runtime = _runtime(
        QueueProvider([{"message": "x", "plan": []}]),
        tmp_path,
        payload_guard=TrippingGuard(enabled=True, dump_dir=tmp_path),
    )
    runtime.submit_prompt("hello")

    with pytest.raises(PayloadGuardTripped):
        await asyncio.wait_for(runtime.start(), timeout=5)
    assert runtime.outputs.closed


@pytest.mark.asyncio
async def test_prompt_coordinator_buffers_and_resolves():
    outputs = AsyncQueue()
    coordinator = PromptCoordinator(RuntimeEmitter(outputs))

    coordinator.handle_prompt("early answer")
    assert await coordinator.request("first?") == "early answer"

    pending = asyncio.create_task(coordinator.request("second?", {"scope": "user-input"}))
    await asyncio.sleep(0)
    coordinator.handle_prompt("late answer")
    assert await pending == "late answer"

    requests = [event for event in outputs.drain() if event["type"] == "request-input"]
    assert [event["prompt"] for event in requests] == ["first?", "second?"]
    assert requests[1]["metadata"] == {"scope": "user-input"}


@pytest.mark.asyncio
async def test_prompt_coordinator_cancel_and_close():
    from shellpilot.cancellation import CancellationCoordinator, EscState

    outputs = AsyncQueue()
    cancellation = CancellationCoordinator()
    canceled = []
    cancellation.register("op", on_cancel=canceled.append)
    esc = EscState()
    coordinator = PromptCoordinator(RuntimeEmitter(outputs), cancellation, esc)

    waiter = asyncio.create_task(esc.wait())
    await asyncio.sleep(0)
    coordinator.handle_cancel()

    assert canceled == ["ui-cancel"]
    assert await waiter == {"reason": "ui-cancel"}
    assert outputs.drain()[-1]["message"] == "Cancellation requested by UI."

    pending = asyncio.create_task(coordinator.request("anything?"))
    await asyncio.sleep(0)
    coordinator.close()
    assert await pending == ""


def test_auto_approve_flag_flows_into_gate(tmp_path):
    runtime = AgentRuntime(
        provider=QueueProvider([{"message": "x", "plan": []}]),
        command_runner=EchoRunner(),
        stats=CommandStats(path=tmp_path / "stats.json"),
        payload_guard=PayloadGuard(enabled=False, dump_dir=tmp_path),
        system_prompt="",
        auto_approve=True,
    )
    assert isinstance(runtime.approval_gate, ApprovalGate)
    assert runtime.approval_gate.should_auto_approve({"run": "make deploy"}).source == "flag"


def test_toggle_plan_merging_reports_new_mode(tmp_path):
    runtime = _runtime(QueueProvider([{"message": "x", "plan": []}]), tmp_path, plan_merge=True)

    assert runtime.toggle_plan_merging() is False
    assert not runtime.executor.plan_manager.is_merging_enabled()
    assert runtime.toggle_plan_merging() is True

    messages = [event["message"] for event in runtime.outputs.drain() if event["type"] == "status"]
    assert messages == ["Plan merging disabled.", "Plan merging enabled."]
