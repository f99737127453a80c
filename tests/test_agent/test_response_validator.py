from shellpilot.response_validator import validate_response, validate_response_schema


def _step(step_id: str, **overrides):
    step = {"id": step_id, "title": f"Step {step_id}", "status": "pending", "command": {"run": "ls"}}
    step.update(overrides)
    return step


def test_schema_accepts_minimal_response():
    outcome = validate_response_schema({"message": "hello"})
    assert outcome.valid
    assert outcome.errors == []


def test_schema_reports_missing_message_and_unknown_keys():
    outcome = validate_response_schema({"plan": [], "extra": True})
    assert not outcome.valid
    errors = [error.to_dict() for error in outcome.errors]
    assert {"path": "response", "message": 'Missing required property "message".', "keyword": "required"} in errors
    assert any(error["keyword"] == "additionalProperties" for error in errors)


def test_schema_rejects_unknown_status():
    outcome = validate_response_schema({"message": "x", "plan": [_step("a", status="paused")]})
    assert not outcome.valid
    assert outcome.errors[0].keyword == "enum"
    assert outcome.errors[0].path == "response.plan[0].status"


def test_schema_caps_top_level_steps_without_merging():
    payload = {"message": "x", "plan": [_step(str(index)) for index in range(4)]}
    assert validate_response_schema(payload, merge_mode=True).valid

    outcome = validate_response_schema(payload, merge_mode=False)
    assert not outcome.valid
    assert outcome.errors[0].keyword == "maxItems"


def test_schema_accepts_waiting_for_id_alias():
    payload = {"message": "x", "plan": [_step("a"), _step("b", waitingForId=["a"])]}
    assert validate_response_schema(payload).valid


def test_schema_rejects_numeric_command_fields_sent_as_strings():
    payload = {
        "message": "x",
        "plan": [_step("a", command={"run": "ls", "tail_lines": "5", "timeout_sec": "30"})],
    }
    outcome = validate_response_schema(payload)

    assert not outcome.valid
    paths = {error.path for error in outcome.errors}
    assert paths == {"response.plan[0].command.tail_lines", "response.plan[0].command.timeout_sec"}
    assert {error.keyword for error in outcome.errors} == {"int_type"}


def test_semantic_validation_passes_well_formed_plan():
    payload = {
        "message": "x",
        "plan": [
            _step("a"),
            {
                "id": "b",
                "title": "Parent",
                "status": "pending",
                "waitingForId": ["a"],
                "substeps": [_step("c")],
            },
        ],
    }
    outcome = validate_response(payload)
    assert outcome.valid, outcome.errors


def test_semantic_validation_requires_commands_on_open_leaf_steps():
    outcome = validate_response({"message": "x", "plan": [{"id": "a", "title": "No command", "status": "running"}]})
    assert not outcome.valid
    assert outcome.errors == ["plan[0] requires a non-empty command while the step is running."]


def test_terminal_steps_do_not_need_commands():
    outcome = validate_response({"message": "x", "plan": [{"id": "a", "title": "Done", "status": "completed"}]})
    assert outcome.valid


def test_semantic_validation_flags_duplicate_ids_and_bad_dependencies():
    outcome = validate_response(
        {
            "message": "x",
            "plan": [
                _step("a", waitingForId=["a"]),
                _step("a"),
                _step("b", waitingForId=["missing"]),
            ],
        }
    )
    assert not outcome.valid
    assert "plan[0].waitingForId[0] cannot reference the task itself." in outcome.errors
    assert 'plan[1] reuses id "a" which already exists in the plan.' in outcome.errors
    assert 'plan[2].waitingForId references unknown id "missing".' in outcome.errors


def test_semantic_validation_rejects_non_object_payload():
    outcome = validate_response(["not", "an", "object"])
    assert not outcome.valid
    assert outcome.messages() == ["Assistant response must be a JSON object."]
