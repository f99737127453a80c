"""Turn command results into observations for the model and previews for UIs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from shellpilot.logging import get_logger
from shellpilot.tools.shell import ExecutionResult

log = get_logger(__name__)

MAX_OBSERVATION_BYTES = 50 * 1024
CORRUPT_OUTPUT_MESSAGE = "!!!corrupt command, excessive output!!!"
PREVIEW_LINES = 20
SNIP_MARKER = "<snip....>"


def combine_std_streams(stdout: str, stderr: str, exit_code: int | None) -> tuple[str, str]:
    """Successful commands that only wrote to stderr report it as stdout."""
    if exit_code == 0 and not stdout.strip() and stderr.strip():
        return stderr, ""
    return stdout, stderr


def apply_filter(text: str, regex: str | None) -> str:
    """Keep lines matching ``regex`` (case-insensitive)."""
    if not regex:
        return text
    try:
        pattern = re.compile(regex, re.IGNORECASE)
    except re.error as e:
        log.warning("Invalid filter regex", pattern=regex, error=str(e))
        return text
    return "\n".join(line for line in text.split("\n") if pattern.search(line))


def tail_lines(text: str, lines: int | None) -> str:
    if not lines or lines < 1:
        return text
    return "\n".join(text.split("\n")[-lines:])


def build_preview(text: str, lines: int = PREVIEW_LINES) -> str:
    if not text:
        return ""
    return "\n".join(text.split("\n")[:lines])


def truncate_output(text: Any, head: int = 5000, tail: int = 5000, marker: str = SNIP_MARKER) -> str:
    """Keep the first ``head`` and last ``tail`` lines around a snip marker."""
    if text is None:
        return ""
    value = str(text)
    if not value:
        return ""
    lines = value.split("\n")
    if len(lines) <= head + tail:
        return value
    parts: list[str] = []
    if head > 0:
        parts.append("\n".join(lines[:head]))
    parts.append(marker)
    if tail > 0:
        parts.append("\n".join(lines[-tail:]))
    return "\n".join(parts)


def _line_count(text: str) -> int:
    return len(text.split("\n")) if text else 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BuiltObservation:
    """Observation for the model plus the matching preview for a UI."""

    observation: dict[str, Any]
    preview: dict[str, str]


class ObservationBuilder:
    """Shapes raw command output into the observation fed back to the model."""

    def __init__(self, now: Callable[[], datetime] | None = None):
        self._now = now or _utc_now

    def _timestamp(self) -> str:
        return self._now().isoformat()

    def build(self, command: dict[str, Any] | None, result: ExecutionResult) -> BuiltObservation:
        command = command or {}
        combined_stdout, combined_stderr = combine_std_streams(result.stdout, result.stderr, result.exit_code)
        oversized = (
            len(combined_stdout.encode("utf-8")) + len(combined_stderr.encode("utf-8"))
            > MAX_OBSERVATION_BYTES
        )

        stdout, stderr = combined_stdout, combined_stderr
        filter_regex = command.get("filter_regex")
        tail = command.get("tail_lines")
        if not isinstance(tail, int) or isinstance(tail, bool):
            tail = None
        if oversized:
            stdout = stderr = CORRUPT_OUTPUT_MESSAGE
            truncated = True
        else:
            if isinstance(filter_regex, str):
                stdout = apply_filter(stdout, filter_regex)
                stderr = apply_filter(stderr, filter_regex)
            if tail:
                stdout = tail_lines(stdout, tail)
                stderr = tail_lines(stderr, tail)
            filtered = bool(filter_regex) and (stdout, stderr) != (combined_stdout, combined_stderr)
            tailed = bool(tail) and (
                _line_count(result.stdout) > tail or _line_count(result.stderr) > tail
            )
            truncated = filtered or tailed

        for_llm: dict[str, Any] = {"stdout": stdout, "stderr": stderr}
        exit_code = 1 if oversized else result.exit_code
        if isinstance(exit_code, int):
            for_llm["exit_code"] = exit_code
        for_llm["truncated"] = truncated

        observation = {
            "observation_for_llm": for_llm,
            "observation_metadata": {
                "runtime_ms": result.runtime_ms,
                "killed": result.killed,
                "timestamp": self._timestamp(),
            },
        }
        preview = {
            "stdout": stdout,
            "stderr": stderr,
            "stdout_preview": build_preview(stdout),
            "stderr_preview": build_preview(stderr),
        }
        return BuiltObservation(observation=observation, preview=preview)

    def build_cancellation_observation(
        self,
        reason: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "operation_canceled": True,
                "reason": reason,
                "message": message,
            },
            "observation_metadata": {"timestamp": self._timestamp(), **(metadata or {})},
        }

    def build_rejection_observation(self) -> dict[str, Any]:
        return {
            "observation_for_llm": {
                "canceled_by_human": True,
                "message": (
                    "Human declined to execute the proposed command and asked the AI to "
                    "propose an alternative approach without executing a command."
                ),
            },
            "observation_metadata": {"timestamp": self._timestamp()},
        }

    def build_plan_observation(self, plan: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "observation_for_llm": {"plan": plan},
            "observation_metadata": {"timestamp": self._timestamp()},
        }

    def build_error_observation(self, flag: str, message: str, **fields: Any) -> dict[str, Any]:
        """Corrective observation for protocol failures (parse, schema, validation)."""
        return {
            "observation_for_llm": {flag: True, "message": message, **fields},
            "observation_metadata": {"timestamp": self._timestamp()},
        }
