"""Conversation history entries and the owned history sequence.

The history is appended to by the runtime (user turns) and the pass executor
(assistant replies, observations). Memory policies are the only writers that
rewrite or remove entries, and they do so through ``History`` methods rather
than by holding on to the underlying list.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence

from shellpilot.exceptions import HistoryError

DEFAULT_EVENT_TYPE = "chat-message"
JSON_INDENT = 2

PLAN_UPDATE_MESSAGE = "Here is the updated plan with the latest command observations."

_VALID_ROLES = {"system", "user", "assistant"}


@dataclass
class HistoryEntry:
    """One conversational turn artifact."""

    role: str
    content: str
    pass_index: int = 0
    event_type: str = DEFAULT_EVENT_TYPE
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise HistoryError(f"Unsupported history role: {self.role!r}")
        if not isinstance(self.content, str):
            self.content = json.dumps(self.content, indent=JSON_INDENT)
        if not str(self.event_type or "").strip():
            self.event_type = DEFAULT_EVENT_TYPE

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event_type": self.event_type,
            "role": self.role,
            "pass": self.pass_index,
            "content": self.content,
        }
        for key, value in self.extra.items():
            data.setdefault(key, copy.deepcopy(value))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
        role = data.get("role") or payload.get("role") or ""
        content = data["content"] if "content" in data else payload.get("content", "")
        raw_pass = data.get("pass", 0)
        known = {"event_type", "eventType", "role", "pass", "content", "payload"}
        return cls(
            role=str(role),
            content=content if isinstance(content, str) else json.dumps(content, indent=JSON_INDENT),
            pass_index=int(raw_pass) if isinstance(raw_pass, (int, float)) else 0,
            event_type=str(data.get("event_type") or data.get("eventType") or DEFAULT_EVENT_TYPE),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_model_message(self) -> dict[str, str]:
        """Project the entry into the ``{role, content}`` message shape."""
        return {"role": self.role, "content": self.content}


class History:
    """Ordered, single-owner sequence of history entries."""

    def __init__(self, entries: Sequence[HistoryEntry] | None = None):
        self._entries: list[HistoryEntry] = list(entries or [])

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(tuple(self._entries))

    def __getitem__(self, index: int) -> HistoryEntry:
        return self._entries[index]

    @property
    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def append(self, entry: HistoryEntry) -> None:
        if not isinstance(entry, HistoryEntry):
            raise HistoryError("History entries must be HistoryEntry instances.")
        self._entries.append(entry)

    def replace(self, index: int, entry: HistoryEntry) -> None:
        self._entries[index] = entry

    def remove_at(self, index: int) -> HistoryEntry:
        return self._entries.pop(index)

    def remove_where(self, predicate: Callable[[HistoryEntry], bool]) -> int:
        """Remove every entry matching ``predicate``; returns how many were removed."""
        kept = [entry for entry in self._entries if not predicate(entry)]
        removed = len(self._entries) - len(kept)
        if removed:
            self._entries = kept
        return removed

    def replace_range(self, start: int, stop: int, entries: Sequence[HistoryEntry]) -> None:
        self._entries[start:stop] = list(entries)

    def highest_pass(self) -> int:
        return max((entry.pass_index for entry in self._entries), default=0)

    def snapshot(self) -> list[dict[str, Any]]:
        """Deep-copied dict view, safe to hand to consumers."""
        return [entry.to_dict() for entry in self._entries]

    def to_model_messages(self) -> list[dict[str, str]]:
        return [entry.to_model_message() for entry in self._entries]


def create_chat_entry(role: str, content: Any, pass_index: int) -> HistoryEntry:
    return HistoryEntry(role=role, content=content, pass_index=pass_index)


def _has_keys(value: Any) -> bool:
    return isinstance(value, dict) and bool(value)


def format_observation_content(
    observation: dict[str, Any],
    command: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Turn an observation record into the JSON payload stored in history."""
    payload = observation.get("observation_for_llm") if isinstance(observation, dict) else None
    metadata = observation.get("observation_metadata") if isinstance(observation, dict) else None

    if isinstance(payload, dict) and isinstance(payload.get("plan"), list):
        content: dict[str, Any] = {
            "type": "plan-update",
            "message": PLAN_UPDATE_MESSAGE,
            "plan": payload["plan"],
        }
        if _has_keys(metadata):
            content["metadata"] = metadata
        return content

    if not isinstance(payload, dict):
        raise HistoryError("Observation payload is required to build history content.")

    summary: list[str] = []
    details: str | None = None
    if payload.get("json_parse_error") is True:
        summary.append("I could not parse the previous assistant JSON response.")
    elif payload.get("schema_validation_error") is True:
        summary.append("The previous assistant response failed schema validation.")
    elif payload.get("response_validation_error") is True:
        summary.append("The previous assistant response failed protocol validation checks.")
    elif payload.get("canceled_by_human") is True:
        summary.append("A human reviewer declined the proposed command.")
    elif payload.get("operation_canceled") is True:
        summary.append("The operation was canceled before completion.")
    else:
        if isinstance(command, dict):
            summary.append("I executed the approved command from the active plan.")
        else:
            summary.append("I have an update from the last command execution.")
        if isinstance(payload.get("exit_code"), int):
            summary.append(f"It finished with exit code {payload['exit_code']}.")
        if payload.get("truncated"):
            summary.append(
                str(payload.get("truncation_notice") or "Note: the output shown below is truncated.")
            )

    if "message" in payload and any(
        payload.get(flag) is True
        for flag in (
            "json_parse_error",
            "schema_validation_error",
            "response_validation_error",
            "canceled_by_human",
            "operation_canceled",
        )
    ):
        details = str(payload["message"])

    content = {"type": "observation", "payload": payload, "summary": " ".join(summary)}
    if details is not None:
        content["details"] = details
    if _has_keys(metadata):
        content["metadata"] = metadata
    return content


def create_observation_entry(
    observation: dict[str, Any],
    pass_index: int,
    command: dict[str, Any] | None = None,
) -> HistoryEntry:
    """Observations are fed back to the model as user turns."""
    content = format_observation_content(observation, command)
    return HistoryEntry(
        role="user",
        content=json.dumps(content, indent=JSON_INDENT),
        pass_index=pass_index,
    )


def create_plan_reminder_entry(reminder_message: str | None, pass_index: int) -> HistoryEntry:
    content: dict[str, Any] = {
        "type": "plan-reminder",
        "message": "I still have unfinished steps in the active plan. "
        "I am reminding myself to keep working on them.",
    }
    if reminder_message and reminder_message.strip():
        content["auto_response"] = reminder_message.strip()
    return HistoryEntry(
        role="assistant",
        content=json.dumps(content, indent=JSON_INDENT),
        pass_index=pass_index,
    )


def create_refusal_auto_response_entry(auto_response: str | None, pass_index: int) -> HistoryEntry:
    content: dict[str, Any] = {
        "type": "refusal-reminder",
        "message": "The previous response appeared to be a refusal, so I nudged myself to continue.",
    }
    if auto_response and auto_response.strip():
        content["auto_response"] = auto_response.strip()
    return HistoryEntry(
        role="assistant",
        content=json.dumps(content, indent=JSON_INDENT),
        pass_index=pass_index,
    )
