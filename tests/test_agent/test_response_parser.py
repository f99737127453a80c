import json

from shellpilot.response_parser import (
    DEFAULT_COMMAND_MAX_BYTES,
    STRATEGY_BALANCED_SLICE,
    STRATEGY_CODE_FENCE,
    STRATEGY_DIRECT,
    STRATEGY_ESCAPED_NEWLINES,
    normalize_assistant_payload,
    normalize_command,
    parse_assistant_response,
)


def test_direct_json_is_parsed_without_recovery():
    result = parse_assistant_response('{"message": "hi", "plan": []}')
    assert result.ok
    assert result.strategy == STRATEGY_DIRECT
    assert result.value == {"message": "hi", "plan": []}
    assert result.attempts == []


def test_code_fence_recovery():
    raw = 'Here you go:\n```json\n{"message": "fenced"}\n```\n'
    result = parse_assistant_response(raw)
    assert result.ok
    assert result.strategy == STRATEGY_CODE_FENCE
    assert result.value["message"] == "fenced"
    assert [attempt.strategy for attempt in result.attempts] == [STRATEGY_DIRECT]


def test_balanced_slice_ignores_braces_inside_strings():
    raw = 'Sure! {"message": "use {braces} carefully", "plan": []} trailing words'
    result = parse_assistant_response(raw)
    assert result.ok
    assert result.strategy == STRATEGY_BALANCED_SLICE
    assert result.value["message"] == "use {braces} carefully"


def test_raw_newlines_inside_strings_are_escaped():
    raw = '{"message": "line one\nline two"}'
    result = parse_assistant_response(raw)
    assert result.ok
    assert result.strategy == STRATEGY_ESCAPED_NEWLINES
    assert result.value["message"] == "line one\nline two"


def test_blank_input_fails_without_attempts():
    result = parse_assistant_response("   ")
    assert not result.ok
    assert result.attempts == []
    assert "empty" in result.error


def test_unparseable_text_reports_every_attempt():
    result = parse_assistant_response("definitely not json { at all")
    assert not result.ok
    assert result.value is None
    assert result.attempts
    assert result.attempts[0].strategy == STRATEGY_DIRECT
    assert result.error.startswith("Failed to parse assistant JSON response.")


def test_json_array_is_not_accepted_as_response():
    result = parse_assistant_response("[1, 2, 3]")
    assert not result.ok


def test_normalize_command_from_string_and_list():
    assert normalize_command("  ls -la ") == {"run": "ls -la", "max_bytes": DEFAULT_COMMAND_MAX_BYTES}
    assert normalize_command(["git", " status ", None]) == {
        "run": "git status",
        "max_bytes": DEFAULT_COMMAND_MAX_BYTES,
    }


def test_normalize_command_lone_shell_becomes_run():
    assert normalize_command({"shell": "echo hi"}) == {"run": "echo hi", "max_bytes": DEFAULT_COMMAND_MAX_BYTES}


def test_normalize_command_nested_run_object():
    command = normalize_command({"run": {"command": "pytest -q", "cwd": "/repo"}, "reason": "tests"})
    assert command["run"] == "pytest -q"
    assert command["cwd"] == "/repo"
    assert command["reason"] == "tests"
    assert "shell" not in command


def test_normalize_command_nested_shell_keeps_sibling_values():
    command = normalize_command({"shell": {"command": "make", "shell": "bash", "cwd": "/a"}, "cwd": "/b"})
    assert command["run"] == "make"
    assert command["shell"] == "bash"
    assert command["cwd"] == "/b"


def test_normalize_command_keeps_valid_max_bytes():
    assert normalize_command({"run": "ls", "max_bytes": 10})["max_bytes"] == 10
    assert normalize_command({"run": "ls", "max_bytes": 0})["max_bytes"] == DEFAULT_COMMAND_MAX_BYTES


def test_payload_normalization_walks_child_aliases():
    payload = normalize_assistant_payload(
        {
            "message": "plan",
            "plan": [
                {
                    "id": "a",
                    "title": "Parent",
                    "status": "pending",
                    "age": -4,
                    "children": [{"id": "b", "title": "Child", "status": "pending", "command": "ls"}],
                }
            ],
        }
    )
    parent = payload["plan"][0]
    assert parent["age"] == 0
    assert "children" not in parent
    assert parent["substeps"][0]["command"]["run"] == "ls"


def test_parsed_value_round_trips_through_json():
    raw = json.dumps({"message": "ok", "plan": [{"id": "x", "title": "t", "status": "pending", "command": "pwd"}]})
    result = parse_assistant_response(raw)
    assert result.value["plan"][0]["command"] == {"run": "pwd", "max_bytes": DEFAULT_COMMAND_MAX_BYTES}
