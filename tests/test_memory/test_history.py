import json

import pytest

from shellpilot.exceptions import HistoryError
from shellpilot.history import (
    History,
    HistoryEntry,
    create_chat_entry,
    create_observation_entry,
    create_plan_reminder_entry,
    format_observation_content,
)


def test_entry_serializes_non_string_content():
    entry = create_chat_entry("assistant", {"message": "hi"}, 3)
    assert json.loads(entry.content) == {"message": "hi"}
    assert entry.to_dict() == {
        "event_type": "chat-message",
        "role": "assistant",
        "pass": 3,
        "content": entry.content,
    }


def test_entry_rejects_unknown_role():
    with pytest.raises(HistoryError):
        HistoryEntry(role="tool", content="x")


def test_from_dict_accepts_legacy_payload_shape():
    entry = HistoryEntry.from_dict(
        {"eventType": "chat-message", "pass": 4, "payload": {"role": "user", "content": "hello"}, "tag": "x"}
    )
    assert entry.role == "user"
    assert entry.content == "hello"
    assert entry.pass_index == 4
    assert entry.extra == {"tag": "x"}


def test_snapshot_is_detached_from_history():
    history = History([HistoryEntry(role="user", content="a", extra={"meta": {"k": 1}})])
    snapshot = history.snapshot()
    snapshot[0]["meta"]["k"] = 2
    snapshot[0]["content"] = "changed"
    assert history[0].content == "a"
    assert history[0].extra["meta"]["k"] == 1


def test_history_mutators():
    history = History([create_chat_entry("user", str(index), index) for index in range(5)])
    assert history.remove_where(lambda entry: entry.pass_index % 2 == 1) == 2
    history.replace_range(0, 2, [create_chat_entry("system", "merged", 2)])
    assert [entry.content for entry in history] == ["merged", "4"]
    assert history.highest_pass() == 4
    assert history.to_model_messages() == [
        {"role": "system", "content": "merged"},
        {"role": "user", "content": "4"},
    ]


def test_command_observation_summary():
    content = format_observation_content(
        {
            "observation_for_llm": {"stdout": "ok", "stderr": "", "exit_code": 0, "truncated": True},
            "observation_metadata": {"runtime_ms": 3},
        },
        command={"run": "ls"},
    )
    assert content["type"] == "observation"
    assert content["summary"] == (
        "I executed the approved command from the active plan. It finished with exit code 0. "
        "Note: the output shown below is truncated."
    )
    assert content["metadata"] == {"runtime_ms": 3}


def test_error_observation_carries_details():
    entry = create_observation_entry(
        {"observation_for_llm": {"json_parse_error": True, "message": "resend JSON"}}, pass_index=2
    )
    content = json.loads(entry.content)
    assert entry.role == "user"
    assert content["summary"] == "I could not parse the previous assistant JSON response."
    assert content["details"] == "resend JSON"
    assert "metadata" not in content


def test_observation_requires_payload():
    with pytest.raises(HistoryError):
        format_observation_content({"observation_metadata": {}})


def test_plan_reminder_entry_is_assistant_turn():
    entry = create_plan_reminder_entry("  keep going  ", 6)
    assert entry.role == "assistant"
    assert json.loads(entry.content)["auto_response"] == "keep going"
