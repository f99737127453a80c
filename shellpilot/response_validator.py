"""Protocol validation for parsed assistant responses.

Two layers run in sequence: a structural schema check (pydantic models that
mirror the tool definition) and semantic rules the schema cannot express.
Both return human-readable errors instead of raising, so the pass executor
can feed them back to the model as a corrective observation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

PLAN_STATUSES = ("pending", "running", "completed", "failed", "abandoned")
TERMINAL_STATUSES = {"completed", "failed", "abandoned"}
LEGACY_MAX_TOP_LEVEL_STEPS = 3


class ProtocolCommand(BaseModel):
    """Command attached to a plan step."""

    model_config = ConfigDict(extra="forbid")

    reason: str | None = None
    shell: str | None = None
    run: str | None = None
    cwd: str | None = None
    timeout_sec: int | None = Field(default=None, ge=1, strict=True)
    filter_regex: str | None = None
    tail_lines: int | None = Field(default=None, ge=1, strict=True)
    max_bytes: int | None = Field(default=None, ge=1, strict=True)
    key: str | None = None


class ProtocolPlanStep(BaseModel):
    """Single node of the plan tree."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str | None = None
    step: str | None = None
    title: str
    status: Literal["pending", "running", "completed", "failed", "abandoned"]
    age: int = Field(default=0, ge=0, strict=True)
    priority: int | None = Field(default=None, strict=True)
    waiting_for_id: list[str] = Field(default_factory=list, alias="waitingForId")
    command: ProtocolCommand | None = None
    observation: dict[str, Any] | None = None
    substeps: list["ProtocolPlanStep"] = Field(default_factory=list)


class ProtocolResponse(BaseModel):
    """Envelope returned through the response tool."""

    model_config = ConfigDict(extra="forbid")

    message: str
    plan: list[ProtocolPlanStep] = Field(default_factory=list)


@dataclass
class SchemaError:
    path: str
    message: str
    keyword: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message, "keyword": self.keyword}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class ValidationOutcome:
    valid: bool
    errors: list[Any] = field(default_factory=list)

    def messages(self) -> list[str]:
        return [str(error) for error in self.errors]


def _format_path(loc: tuple[Any, ...]) -> str:
    label = "response"
    for segment in loc:
        if isinstance(segment, int):
            label += f"[{segment}]"
        elif str(segment).isidentifier():
            label += f".{segment}"
        else:
            label += f"['{segment}']"
    return label


def _describe(error: dict[str, Any]) -> SchemaError:
    loc = tuple(error.get("loc") or ())
    kind = str(error.get("type") or "unknown")
    if kind == "missing" and loc:
        return SchemaError(_format_path(loc[:-1]), f'Missing required property "{loc[-1]}".', "required")
    if kind == "extra_forbidden" and loc:
        return SchemaError(_format_path(loc[:-1]), f'Unexpected property "{loc[-1]}".', "additionalProperties")
    if kind == "literal_error":
        return SchemaError(_format_path(loc), f"Must be one of: {', '.join(PLAN_STATUSES)}.", "enum")
    message = str(error.get("msg") or "failed validation.").strip()
    return SchemaError(_format_path(loc), message, kind)


def validate_response_schema(payload: Any, *, merge_mode: bool = True) -> ValidationOutcome:
    """Check the parsed payload against the protocol models.

    Without plan merging the legacy schema applies and the top level of the
    plan is capped at three steps.
    """
    if not isinstance(payload, dict):
        return ValidationOutcome(False, [SchemaError("response", "Must be of type object.", "type")])
    try:
        ProtocolResponse.model_validate(payload)
    except PydanticValidationError as e:
        return ValidationOutcome(False, [_describe(err) for err in e.errors()])

    plan = payload.get("plan") or []
    if not merge_mode and len(plan) > LEGACY_MAX_TOP_LEVEL_STEPS:
        return ValidationOutcome(
            False,
            [
                SchemaError(
                    "response.plan",
                    f"Must NOT have more than {LEGACY_MAX_TOP_LEVEL_STEPS} items.",
                    "maxItems",
                )
            ],
        )
    return ValidationOutcome(True)


def _has_command_payload(command: Any) -> bool:
    if not isinstance(command, dict):
        return False
    run = command.get("run")
    shell = command.get("shell")
    return bool((isinstance(run, str) and run.strip()) or (isinstance(shell, str) and shell.strip()))


def _step_id(step: dict[str, Any]) -> str:
    for key in ("id", "step"):
        value = step.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _validate_step(
    step: Any,
    path: str,
    ids: dict[str, str],
    steps: list[tuple[str, str, dict[str, Any]]],
    errors: list[str],
) -> None:
    if not isinstance(step, dict):
        errors.append(f"{path} must be an object.")
        return

    step_id = _step_id(step)
    if not step_id:
        errors.append(f'{path} is missing a non-empty "id".')
    elif step_id in ids:
        errors.append(f'{path} reuses id "{step_id}" which already exists in the plan.')
    else:
        ids[step_id] = path

    title = step.get("title")
    if not isinstance(title, str) or not title.strip():
        errors.append(f'{path} is missing a non-empty "title".')

    status = step.get("status")
    if status not in PLAN_STATUSES:
        errors.append(
            f'{path} has invalid status "{status}". Expected one of: {", ".join(PLAN_STATUSES)}.'
        )

    command = step.get("command")
    if command is not None and not isinstance(command, dict):
        errors.append(f"{path}.command must be an object when present.")

    substeps = step.get("substeps")
    has_children = isinstance(substeps, list) and len(substeps) > 0
    if status not in TERMINAL_STATUSES:
        if not has_children and not _has_command_payload(command):
            errors.append(f"{path} requires a non-empty command while the step is {status or 'active'}.")
    elif isinstance(command, dict) and set(command) - {"max_bytes"} and not _has_command_payload(command):
        errors.append(f"{path}.command must include execution details when provided.")

    waiting_for = step.get("waitingForId", [])
    if not isinstance(waiting_for, list):
        errors.append(f"{path}.waitingForId must be an array.")
        waiting_for = []
    dependencies: list[str] = []
    for index, dependency in enumerate(waiting_for):
        if not isinstance(dependency, str):
            errors.append(f"{path}.waitingForId[{index}] must be a string.")
            continue
        trimmed = dependency.strip()
        if not trimmed:
            errors.append(f"{path}.waitingForId[{index}] must not be empty.")
        elif trimmed == step_id:
            errors.append(f"{path}.waitingForId[{index}] cannot reference the task itself.")
        elif trimmed not in dependencies:
            dependencies.append(trimmed)
    steps.append((path, step_id, {"dependencies": dependencies}))

    if substeps is not None and not isinstance(substeps, list):
        errors.append(f"{path}.substeps must be an array.")
    elif has_children:
        for index, child in enumerate(substeps):
            _validate_step(child, f"{path}.substeps[{index}]", ids, steps, errors)


def validate_response(payload: Any) -> ValidationOutcome:
    """Apply protocol rules that the schema cannot express."""
    if not isinstance(payload, dict):
        return ValidationOutcome(False, ["Assistant response must be a JSON object."])

    errors: list[str] = []
    message = payload.get("message")
    if message is not None and not isinstance(message, str):
        errors.append('"message" must be a string when provided.')

    plan = payload.get("plan", [])
    if plan is None:
        plan = []
    if not isinstance(plan, list):
        errors.append('"plan" must be an array.')
        return ValidationOutcome(False, errors)

    ids: dict[str, str] = {}
    steps: list[tuple[str, str, dict[str, Any]]] = []
    for index, step in enumerate(plan):
        _validate_step(step, f"plan[{index}]", ids, steps, errors)

    for path, _, info in steps:
        for dependency in info["dependencies"]:
            if dependency not in ids:
                errors.append(f'{path}.waitingForId references unknown id "{dependency}".')

    return ValidationOutcome(not errors, errors)
