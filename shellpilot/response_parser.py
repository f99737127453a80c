"""Recover the structured protocol message from raw assistant text.

Models do not always return clean JSON: some wrap it in a fenced block, some
surround it with prose, some emit literal newlines inside string values. The
parser tries a fixed sequence of strategies and reports which one succeeded,
so callers can flag degraded-but-recovered responses.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

STRATEGY_DIRECT = "direct"
STRATEGY_CODE_FENCE = "code_fence"
STRATEGY_BALANCED_SLICE = "balanced_slice"
STRATEGY_ESCAPED_NEWLINES = "escaped_newlines"

DEFAULT_COMMAND_MAX_BYTES = 200_000

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]+?)```", re.IGNORECASE)
_CHILD_KEY = "substeps"
_CHILD_ALIASES = ("children", "steps")
_RUN_ALIASES = ("cmd", "command_line")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


@dataclass
class ParseAttempt:
    strategy: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"strategy": self.strategy, "message": self.error}


@dataclass
class ParseResult:
    """Outcome of :func:`parse_assistant_response`."""

    ok: bool
    value: dict[str, Any] | None = None
    strategy: str | None = None
    normalized_text: str = ""
    attempts: list[ParseAttempt] = field(default_factory=list)
    error: str = ""


# ---------------------------------------------------------------------------
# Command normalization
# ---------------------------------------------------------------------------


def _first_non_empty(*candidates: Any) -> str:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def _apply_command_defaults(command: dict[str, Any]) -> dict[str, Any]:
    max_bytes = command.get("max_bytes")
    if isinstance(max_bytes, bool) or not isinstance(max_bytes, (int, float)) or max_bytes < 1:
        command["max_bytes"] = DEFAULT_COMMAND_MAX_BYTES
    return command


def _normalize_flat(command: dict[str, Any]) -> dict[str, Any]:
    run = _first_non_empty(command.get("run"), *(command.get(alias) for alias in _RUN_ALIASES))
    shell = _first_non_empty(command.get("shell"))
    rest = {
        key: value
        for key, value in command.items()
        if key not in ("run", "shell", *_RUN_ALIASES)
    }
    if run:
        rest["run"] = run
        if shell:
            rest["shell"] = shell
    elif shell:
        # A lone shell string is almost always the command itself.
        rest["run"] = shell
    return rest


def _normalize_nested_run(command: dict[str, Any]) -> dict[str, Any]:
    nested = dict(command["run"])
    rest = {
        key: value
        for key, value in command.items()
        if key not in ("run", "shell", *_RUN_ALIASES)
    }
    nested_rest = {
        key: value
        for key, value in nested.items()
        if key not in ("run", "command", "shell", *_RUN_ALIASES)
    }
    merged = {**rest, **nested_rest}
    run = _first_non_empty(
        nested.get("command"),
        nested.get("run"),
        *(nested.get(alias) for alias in _RUN_ALIASES),
        *(command.get(alias) for alias in _RUN_ALIASES),
    )
    shell = _first_non_empty(nested.get("shell"), command.get("shell"))
    if run:
        merged["run"] = run
    elif shell:
        merged["run"] = shell
    if shell and merged.get("run") and shell != merged["run"]:
        merged["shell"] = shell
    return merged


def _normalize_nested_shell(command: dict[str, Any]) -> dict[str, Any]:
    nested = dict(command["shell"])
    rest = {
        key: value
        for key, value in command.items()
        if key not in ("shell", *_RUN_ALIASES)
    }
    nested_rest = {
        key: value
        for key, value in nested.items()
        if key not in ("run", "command", "shell", *_RUN_ALIASES)
    }
    # Sibling fields win over nested ones so explicit values are never overwritten.
    merged = {**nested_rest, **rest}
    run = _first_non_empty(
        rest.get("run"),
        nested.get("command"),
        nested.get("run"),
        *(nested.get(alias) for alias in _RUN_ALIASES),
        *(command.get(alias) for alias in _RUN_ALIASES),
    )
    shell = _first_non_empty(nested.get("shell"))
    if run:
        merged["run"] = run
    else:
        merged.pop("run", None)
    if shell and shell != merged.get("run"):
        merged["shell"] = shell
    return merged


def normalize_command(command: Any) -> Any:
    """Bring the command shapes models emit into ``{run, shell, ...}`` form."""
    if isinstance(command, str):
        text = command.strip()
        return _apply_command_defaults({"run": text} if text else {})
    if isinstance(command, (list, tuple)):
        parts = [str(part).strip() for part in command if part is not None]
        parts = [part for part in parts if part]
        return _apply_command_defaults({"run": " ".join(parts)} if parts else {})
    if not isinstance(command, dict):
        return command
    if isinstance(command.get("run"), dict):
        return _apply_command_defaults(_normalize_nested_run(command))
    if isinstance(command.get("shell"), dict):
        return _apply_command_defaults(_normalize_nested_shell(command))
    return _apply_command_defaults(_normalize_flat(command))


def normalize_plan_step(step: Any) -> Any:
    if not isinstance(step, dict):
        return step

    normalized = dict(step)
    if "command" in normalized and normalized["command"] is not None:
        normalized["command"] = normalize_command(normalized["command"])

    age = normalized.get("age")
    if isinstance(age, bool) or not isinstance(age, int) or age < 0:
        normalized["age"] = 0

    children = normalized.get(_CHILD_KEY)
    if not isinstance(children, list):
        children = next(
            (normalized[alias] for alias in _CHILD_ALIASES if isinstance(normalized.get(alias), list)),
            None,
        )
    if children is not None:
        normalized[_CHILD_KEY] = [normalize_plan_step(child) for child in children]
    else:
        normalized.pop(_CHILD_KEY, None)

    for alias in _CHILD_ALIASES:
        normalized.pop(alias, None)
    return normalized


def normalize_plan(plan: Any) -> Any:
    if not isinstance(plan, list):
        return plan
    return [normalize_plan_step(step) for step in plan]


def normalize_assistant_payload(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    normalized = dict(payload)
    if "command" in normalized and normalized["command"] is not None:
        normalized["command"] = normalize_command(normalized["command"])
    if isinstance(normalized.get("plan"), list):
        normalized["plan"] = normalize_plan(normalized["plan"])
    return normalized


# ---------------------------------------------------------------------------
# Extraction strategies
# ---------------------------------------------------------------------------


def extract_code_fence(text: str) -> str | None:
    match = _CODE_FENCE_RE.search(text)
    if not match:
        return None
    inner = match.group(1).strip()
    return inner or None


def extract_balanced_json(text: str) -> str | None:
    """Return the first balanced ``{...}`` run, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def escape_control_characters(text: str) -> str | None:
    """Escape raw control characters that appear inside JSON string literals.

    Returns None when nothing needed escaping.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    changed = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            elif ord(char) < 0x20:
                out.append(_CONTROL_ESCAPES.get(char, f"\\u{ord(char):04x}"))
                changed = True
                continue
        elif char == '"':
            in_string = True
        out.append(char)
    return "".join(out) if changed else None


def _load_object(text: str) -> dict[str, Any]:
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"Expected a JSON object, got {type(value).__name__}")
    return value


def _attempt(text: str, strategy: str, attempts: list[ParseAttempt]) -> ParseResult | None:
    try:
        value = _load_object(text)
    except ValueError as e:
        attempts.append(ParseAttempt(strategy=strategy, error=str(e)))
        return None
    return ParseResult(
        ok=True,
        value=normalize_assistant_payload(value),
        strategy=strategy,
        normalized_text=text,
        attempts=attempts,
    )


def parse_assistant_response(raw: Any) -> ParseResult:
    """Parse raw assistant text, trying each recovery strategy in order."""
    attempts: list[ParseAttempt] = []
    if not isinstance(raw, str) or not raw.strip():
        return ParseResult(ok=False, attempts=attempts, error="Assistant response was empty or missing.")

    text = raw.strip()

    result = _attempt(text, STRATEGY_DIRECT, attempts)
    if result:
        return result

    fenced = extract_code_fence(text)
    if fenced:
        result = _attempt(fenced, STRATEGY_CODE_FENCE, attempts)
        if result:
            return result

    sliced = extract_balanced_json(text)
    if sliced:
        result = _attempt(sliced, STRATEGY_BALANCED_SLICE, attempts)
        if result:
            return result

    escaped = escape_control_characters(text)
    if escaped:
        result = _attempt(escaped, STRATEGY_ESCAPED_NEWLINES, attempts)
        if result:
            return result
        escaped_slice = extract_balanced_json(escaped)
        if escaped_slice and escaped_slice != escaped:
            result = _attempt(escaped_slice, STRATEGY_ESCAPED_NEWLINES, attempts)
            if result:
                return result

    message = "Failed to parse assistant JSON response."
    if attempts:
        message = f"{message} {attempts[0].error}"
    return ParseResult(ok=False, attempts=attempts, error=message)
