"""Command usage counters kept in a small JSON file."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from shellpilot.config import get_config
from shellpilot.logging import get_logger

log = get_logger(__name__)

UNKNOWN_COMMAND_KEY = "unknown"


def resolve_command_key(command: Any) -> str:
    """Stats bucket: explicit ``key``, else the first token of ``run``."""
    if isinstance(command, str):
        return command.strip() or UNKNOWN_COMMAND_KEY
    if not isinstance(command, dict):
        return UNKNOWN_COMMAND_KEY
    key = command.get("key")
    if isinstance(key, str) and key.strip():
        return key.strip()
    run = command.get("run")
    if isinstance(run, str) and run.strip():
        return run.split()[0]
    return UNKNOWN_COMMAND_KEY


def _coerce_counts(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    counts: dict[str, int] = {}
    for key, value in raw.items():
        if not key:
            continue
        try:
            counts[str(key)] = int(value)
        except (TypeError, ValueError):
            continue
    return counts


class CommandStats:
    """Per-command execution counters."""

    def __init__(self, path: Path | str | None = None):
        cfg = get_config().stats
        self.enabled = cfg.enabled
        self.path = Path(path or cfg.path).expanduser()

    def load(self) -> dict[str, int]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            return _coerce_counts(json.loads(raw))
        except ValueError:
            log.warning("Ignoring unreadable command stats file", path=str(self.path))
            return {}

    def increment(self, command: Any) -> bool:
        """Bump the counter for ``command``; returns False when the write failed."""
        if not self.enabled:
            return False
        key = resolve_command_key(command)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            counts = self.load()
            counts[key] = counts.get(key, 0) + 1
            fd, tmp_name = tempfile.mkstemp(prefix="._cmdstats_", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(counts, handle)
                os.replace(tmp_name, self.path)
            finally:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
        except OSError as e:
            log.warning("Stats tracking failed", key=key, path=str(self.path), error=str(e))
            return False
        return True
