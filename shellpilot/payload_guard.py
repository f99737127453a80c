"""Request payload growth circuit breaker.

If the next model request is much larger than the last one that went out,
something is feeding runaway output back into history. The guard dumps the
history for inspection and raises ``PayloadGuardTripped``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shellpilot.config import get_config
from shellpilot.exceptions import PayloadGuardTripped
from shellpilot.history import History
from shellpilot.llm import RESPONSE_TOOL_NAME
from shellpilot.logging import get_logger

log = get_logger(__name__)


class PayloadGuard:
    """Compares each request size against the previous one."""

    def __init__(
        self,
        growth_factor: float | None = None,
        min_growth_bytes: int | None = None,
        dump_dir: Path | str | None = None,
        enabled: bool | None = None,
    ):
        cfg = get_config().guard
        self.growth_factor = float(growth_factor if growth_factor is not None else cfg.growth_factor)
        self.min_growth_bytes = int(min_growth_bytes if min_growth_bytes is not None else cfg.min_growth_bytes)
        self.dump_dir = Path(dump_dir or cfg.history_dump_dir).expanduser()
        self.enabled = cfg.enabled if enabled is None else enabled
        self.last_size: int | None = None

    @staticmethod
    def estimate(history: History, model: str | None) -> int:
        payload = {
            "model": model,
            "input": history.to_model_messages(),
            "tool_choice": {"type": "function", "name": RESPONSE_TOOL_NAME},
        }
        return len(json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))

    def is_growth_unsafe(self, previous: int, current: int) -> bool:
        factor = current / previous if previous > 0 else float("inf")
        return factor >= self.growth_factor and (current - previous) > self.min_growth_bytes

    def _dump(self, snapshot: list[dict[str, Any]], pass_index: int | None) -> Path | None:
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        prefix = f"pass-{pass_index}-" if pass_index is not None else "pass-unknown-"
        path = self.dump_dir / f"{prefix}{stamp}.json"
        try:
            self.dump_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        except OSError as e:
            log.error("Failed to dump history snapshot", path=str(path), error=str(e))
            return None
        log.error("Dumped history snapshot", path=str(path))
        return path

    def guard(self, history: History, model: str | None, pass_index: int | None = None) -> int:
        """Return the estimated size, or raise when growth is unsafe."""
        current = self.estimate(history, model)
        previous = self.last_size
        if not self.enabled or previous is None or not self.is_growth_unsafe(previous, current):
            return current

        log.error(
            "Request payload grew unexpectedly",
            previous=previous,
            current=current,
            pass_index=pass_index,
        )
        dump_path = self._dump(history.snapshot(), pass_index)
        raise PayloadGuardTripped(
            previous=previous,
            current=current,
            pass_index=pass_index,
            dump_path=str(dump_path) if dump_path else None,
        )

    def record(self, size: int | None) -> None:
        """Store the size of a request that was actually sent."""
        if size is not None:
            self.last_size = int(size)
