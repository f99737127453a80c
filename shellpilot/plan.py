"""Hierarchical plan bookkeeping.

The plan is a tree of step dicts exactly as the model sends them (after
normalization). ``PlanManager`` owns the canonical copy across passes; every
value it hands out, and every plan it emits, is a deep copy.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Callable, Iterator

from shellpilot.events import PlanEvent, PlanProgressEvent, RuntimeEmitter
from shellpilot.logging import get_logger

log = get_logger(__name__)

PlanStep = dict[str, Any]
Plan = list[PlanStep]

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_ABANDONED = "abandoned"

_TERMINAL_STATES = {STATUS_COMPLETED, STATUS_FAILED}
_CHILD_KEY = "substeps"


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------


def _status(step: Any) -> str:
    if not isinstance(step, dict):
        return ""
    value = step.get("status")
    return value.strip().lower() if isinstance(value, str) else ""


def is_terminal_status(status: Any) -> bool:
    return isinstance(status, str) and status.strip().lower() in _TERMINAL_STATES


def is_abandoned_status(status: Any) -> bool:
    return isinstance(status, str) and status.strip().lower() == STATUS_ABANDONED


def _children(step: PlanStep) -> Plan:
    children = step.get(_CHILD_KEY)
    return children if isinstance(children, list) else []


def iter_plan_steps(plan: Any) -> Iterator[PlanStep]:
    """Depth-first walk over every step dict in the tree."""
    if not isinstance(plan, list):
        return
    for step in plan:
        if not isinstance(step, dict):
            continue
        yield step
        yield from iter_plan_steps(_children(step))


def clone_plan(plan: Any) -> Plan:
    if not isinstance(plan, list):
        return []
    return copy.deepcopy(plan)


# ---------------------------------------------------------------------------
# Keys and lookup
# ---------------------------------------------------------------------------


def _identifier(step: PlanStep) -> str:
    for key in ("step", "id"):
        value = step.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            text = str(value).strip()
            if text:
                return text
    return ""


def plan_step_key(step: Any, fallback_index: int) -> str:
    """Stable matching key: step label, then title, then position."""
    if not isinstance(step, dict):
        return f"index:{fallback_index}"
    identifier = _identifier(step)
    if identifier:
        return f"id:{identifier.lower()}"
    title = step.get("title")
    if isinstance(title, str) and title.strip():
        return f"title:{title.strip().lower()}"
    return f"index:{fallback_index}"


def build_plan_lookup(plan: Any) -> dict[str, PlanStep]:
    """Map step identifiers to steps across the whole tree, first one wins."""
    lookup: dict[str, PlanStep] = {}
    for index, step in enumerate(iter_plan_steps(plan)):
        identifier = _identifier(step) or f"index:{index}"
        lookup.setdefault(identifier, step)
    return lookup


def plan_step_is_blocked(step: PlanStep, lookup: dict[str, PlanStep]) -> bool:
    """A step waits until every ``waitingForId`` dependency has completed."""
    dependencies = step.get("waitingForId")
    if not isinstance(dependencies, list) or not dependencies:
        return False
    for raw in dependencies:
        dependency_id = str(raw).strip() if isinstance(raw, str) else ""
        if not dependency_id:
            return True
        dependency = lookup.get(dependency_id)
        if dependency is None or _status(dependency) != STATUS_COMPLETED:
            return True
    return False


# ---------------------------------------------------------------------------
# Executable step collection
# ---------------------------------------------------------------------------


def has_command_payload(command: Any) -> bool:
    if not isinstance(command, dict):
        return False
    run = command.get("run")
    shell = command.get("shell")
    return bool((isinstance(run, str) and run.strip()) or (isinstance(shell, str) and shell.strip()))


def has_incomplete_children(step: PlanStep) -> bool:
    return any(
        isinstance(child, dict) and not is_terminal_status(child.get("status"))
        for child in _children(step)
    )


def collect_executable_steps(plan: Any) -> list[tuple[PlanStep, dict[str, Any]]]:
    """Return ``(step, command)`` pairs ready to run, in depth-first order."""
    executable: list[tuple[PlanStep, dict[str, Any]]] = []
    lookup = build_plan_lookup(plan)

    def visit(steps: Plan) -> None:
        for step in steps:
            if not isinstance(step, dict):
                continue
            visit(_children(step))
            if is_terminal_status(step.get("status")):
                continue
            if has_incomplete_children(step):
                continue
            if plan_step_is_blocked(step, lookup):
                continue
            if has_command_payload(step.get("command")):
                executable.append((step, step["command"]))

    if isinstance(plan, list):
        visit(plan)
    return executable


def plan_has_open_steps(plan: Any) -> bool:
    return any(not is_terminal_status(step.get("status")) for step in iter_plan_steps(plan))


# ---------------------------------------------------------------------------
# Age bookkeeping
# ---------------------------------------------------------------------------


def ensure_plan_ages(plan: Any) -> None:
    for step in iter_plan_steps(plan):
        age = step.get("age")
        if isinstance(age, bool) or not isinstance(age, int) or age < 0:
            step["age"] = 0


def increment_running_ages(plan: Any) -> None:
    """Running steps age by one per pass, whether or not they executed."""
    for step in iter_plan_steps(plan):
        age = step.get("age")
        if isinstance(age, bool) or not isinstance(age, int) or age < 0:
            step["age"] = 0
        if _status(step) == STATUS_RUNNING:
            step["age"] += 1


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def _commands_equal(left: Any, right: Any) -> bool:
    def comparable(command: Any) -> dict[str, Any]:
        if not isinstance(command, dict):
            return {}
        return {k: v for k, v in command.items() if v is not None and k != "max_bytes"}

    return comparable(left) == comparable(right)


def _merge_step(existing: PlanStep, incoming: PlanStep) -> PlanStep | None:
    if is_abandoned_status(incoming.get("status")):
        return None

    for key in ("title", "priority"):
        if key in incoming:
            existing[key] = copy.deepcopy(incoming[key])
    existing["waitingForId"] = copy.deepcopy(incoming.get("waitingForId") or [])

    incoming_command = incoming.get("command")
    incoming_status = _status(incoming)
    if incoming_status != STATUS_COMPLETED and isinstance(incoming_command, dict):
        if not _commands_equal(existing.get("command"), incoming_command):
            existing["command"] = copy.deepcopy(incoming_command)
            if _status(existing) == STATUS_FAILED:
                existing["status"] = STATUS_PENDING

    if isinstance(incoming.get(_CHILD_KEY), list):
        existing[_CHILD_KEY] = merge_plan_trees(_children(existing), incoming[_CHILD_KEY])
    return existing


def merge_plan_trees(existing_plan: Any, incoming_plan: Any) -> Plan:
    """Reconcile the persisted tree with the model's latest snapshot.

    Persisted runtime state (status, age, observation) is kept for steps the
    incoming plan mentions; steps it does not mention are kept as they are.
    New steps start as pending and abandoned steps are dropped.
    """
    existing = existing_plan if isinstance(existing_plan, list) else []
    incoming = incoming_plan if isinstance(incoming_plan, list) else []
    if not incoming:
        return []

    existing_index = {
        plan_step_key(step, index): step
        for index, step in reversed(list(enumerate(existing)))
    }
    used: set[str] = set()
    result: Plan = []

    for index, item in enumerate(incoming):
        if not isinstance(item, dict):
            continue
        key = plan_step_key(item, index)
        match = existing_index.get(key)
        if match is not None and isinstance(match, dict):
            used.add(key)
            merged = _merge_step(match, item)
            if merged is not None:
                result.append(merged)
        elif not is_abandoned_status(item.get("status")):
            cloned = copy.deepcopy(item)
            cloned["status"] = STATUS_PENDING
            result.append(cloned)

    for index, step in enumerate(existing):
        if plan_step_key(step, index) not in used:
            result.append(step)
    return result


# ---------------------------------------------------------------------------
# Progress and rendering
# ---------------------------------------------------------------------------


def compute_plan_progress(plan: Any) -> dict[str, Any]:
    steps = [step for step in plan if isinstance(step, dict)] if isinstance(plan, list) else []
    total = len(steps)
    completed = sum(1 for step in steps if is_terminal_status(step.get("status")))
    ratio = min(1.0, max(0.0, completed / total)) if total else 0.0
    return {
        "completed_steps": completed,
        "remaining_steps": max(0, total - completed),
        "total_steps": total,
        "ratio": ratio,
    }


def plan_to_markdown(plan: Any) -> str:
    header = "# Active Plan\n\n"
    lines: list[str] = []

    def render(steps: Plan, depth: int) -> None:
        for index, step in enumerate(steps):
            if not isinstance(step, dict):
                continue
            title = step.get("title") if isinstance(step.get("title"), str) else ""
            title = title.strip() or f"Task {index + 1}"
            status = _status(step)
            details: list[str] = []
            if isinstance(step.get("priority"), int):
                details.append(f"priority {step['priority']}")
            waiting = [str(v).strip() for v in step.get("waitingForId") or [] if str(v).strip()]
            if waiting:
                details.append(f"waiting for {', '.join(waiting)}")
            suffix = f" ({', '.join(details)})" if details else ""
            status_text = f" [{status}]" if status else ""
            lines.append(f"{'  ' * depth}Step {index + 1} - {title}{status_text}{suffix}")
            render(_children(step), depth + 1)

    if isinstance(plan, list):
        render(plan, 0)
    if not lines:
        return f"{header}_No active plan._\n"
    return header + "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Plan manager
# ---------------------------------------------------------------------------


class PlanManager:
    """Owns the persisted plan for one runtime.

    ``update`` takes the model's plan for the pass, ``get`` returns the
    persisted snapshot, ``reset`` clears it and ``sync`` stores the executor's
    mutated copy. All four return deep copies.
    """

    def __init__(
        self,
        emitter: RuntimeEmitter | None = None,
        merge_enabled: bool | Callable[[], bool] = True,
        persistence_path: Path | str | None = None,
    ):
        self._emitter = emitter
        self._merge_flag = merge_enabled
        self._plan: Plan = []
        self._last_progress: str | None = None
        self._path = Path(persistence_path).expanduser() if persistence_path else None

    def is_merging_enabled(self) -> bool:
        flag = self._merge_flag
        return bool(flag() if callable(flag) else flag)

    def toggle_merging(self) -> bool:
        self._merge_flag = not self.is_merging_enabled()
        return self._merge_flag

    def _status(self, level: str, message: str, details: Any = None) -> None:
        if self._emitter is not None:
            self._emitter.emit_status(level, message, details)

    def get(self) -> Plan:
        return clone_plan(self._plan)

    def update(self, incoming: Any) -> Plan:
        if not isinstance(incoming, list):
            self._status("warn", "Plan manager received an invalid plan snapshot. Ignoring payload.")
            incoming = []
        incoming = clone_plan(incoming)
        merge = self.is_merging_enabled()

        if not incoming:
            if not merge:
                if self._plan:
                    self._status(
                        "info",
                        "Cleared active plan after receiving an empty plan while merging is disabled.",
                    )
                self._plan = []
        elif merge and self._plan:
            self._plan = merge_plan_trees(self._plan, incoming)
        else:
            if self._plan:
                self._status(
                    "info",
                    "Replacing active plan with assistant update because plan merging is disabled.",
                )
            self._plan = incoming

        ensure_plan_ages(self._plan)
        self._after_mutation()
        return self.get()

    def sync(self, plan: Any) -> Plan:
        if not isinstance(plan, list):
            self._status("warn", "Plan manager received an invalid plan snapshot during sync. Resetting plan.")
            self._plan = []
        else:
            self._plan = clone_plan(plan)
        self._after_mutation()
        return self.get()

    def reset(self) -> Plan:
        if self._plan:
            self._plan = []
            self._after_mutation()
        return self.get()

    def load(self) -> Plan:
        """Restore the plan saved by a previous run, if persistence is configured."""
        if self._path is None or not self._path.exists():
            return self.get()
        try:
            loaded = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Failed to load plan snapshot", path=str(self._path), error=str(e))
            self._status("warn", "Failed to load plan snapshot. Resetting plan.", str(e))
            loaded = []
        self._plan = loaded if isinstance(loaded, list) else []
        self._after_mutation()
        return self.get()

    def emit_plan(self, plan: Any | None = None) -> None:
        """Emit a plan event carrying a deep copy of ``plan`` (or the persisted plan)."""
        if self._emitter is None:
            return
        snapshot = clone_plan(self._plan if plan is None else plan)
        self._emitter.emit(PlanEvent(plan=snapshot))

    def _after_mutation(self) -> None:
        self._emit_progress()
        self._persist()

    def _emit_progress(self) -> None:
        progress = compute_plan_progress(self._plan)
        if progress["total_steps"] == 0:
            self._last_progress = None
            return
        signature = f"{progress['completed_steps']}|{progress['total_steps']}"
        if signature == self._last_progress:
            return
        self._last_progress = signature
        if self._emitter is not None:
            self._emitter.emit(PlanProgressEvent(progress=progress))

    def _persist(self) -> None:
        if self._path is None:
            return
        try:
            if not self._plan:
                self._path.unlink(missing_ok=True)
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(self._plan, indent=2), encoding="utf-8")
        except OSError as e:
            log.warning("Failed to persist plan snapshot", path=str(self._path), error=str(e))
