"""Cooperative cancellation for model requests and shell commands.

Operations register themselves on a LIFO stack. An untargeted ``cancel()``
only ever reaches the innermost live operation, so a single ESC press tears
down a running command while the surrounding model request stays active.
The next press then reaches the model request.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable

from shellpilot.logging import get_logger

log = get_logger(__name__)

CancelCallback = Callable[[Any], None]

_tokens = itertools.count(1)


@dataclass
class CancellationEntry:
    """One registered abortable operation."""

    description: str
    cancel_fn: CancelCallback | None = None
    canceled: bool = False
    reason: Any = None
    error: BaseException | None = None
    removed: bool = False
    token: int = field(default_factory=lambda: next(_tokens))
    created_at: float = field(default_factory=time.monotonic)


class CancellationHandle:
    """Handle returned by :meth:`CancellationCoordinator.register`."""

    def __init__(self, coordinator: "CancellationCoordinator", entry: CancellationEntry):
        self._coordinator = coordinator
        self._entry = entry

    @property
    def token(self) -> int:
        return self._entry.token

    @property
    def entry(self) -> CancellationEntry:
        return self._entry

    def cancel(self, reason: Any = None) -> bool:
        return self._coordinator._mark_canceled(self._entry, reason)

    def is_canceled(self) -> bool:
        return self._entry.canceled

    def set_cancel_callback(self, fn: CancelCallback | None) -> None:
        self._entry.cancel_fn = fn if callable(fn) else None

    def update_description(self, description: str) -> None:
        normalized = str(description or "").strip()
        if normalized:
            self._entry.description = normalized

    def unregister(self) -> None:
        if not self._entry.removed:
            self._coordinator._remove(self._entry)


class CancellationCoordinator:
    """LIFO stack of abortable operations, one instance per session."""

    def __init__(self) -> None:
        self._stack: list[CancellationEntry] = []

    def _cleanup(self) -> None:
        self._stack = [entry for entry in self._stack if not entry.removed]

    def _top(self) -> CancellationEntry | None:
        self._cleanup()
        return self._stack[-1] if self._stack else None

    def _remove(self, entry: CancellationEntry) -> None:
        entry.removed = True
        if entry in self._stack:
            self._stack.remove(entry)

    def _mark_canceled(self, entry: CancellationEntry, reason: Any) -> bool:
        if entry.canceled:
            return False
        entry.canceled = True
        entry.reason = reason
        if entry.cancel_fn is not None:
            try:
                entry.cancel_fn(reason)
            except Exception as e:
                entry.error = e
                log.warning(
                    "Cancel callback raised",
                    operation=entry.description,
                    error=str(e),
                )
        self._remove(entry)
        return True

    def register(
        self,
        description: str = "operation",
        on_cancel: CancelCallback | None = None,
    ) -> CancellationHandle:
        """Push a new top-of-stack operation."""
        self._cleanup()
        entry = CancellationEntry(
            description=str(description or "operation"),
            cancel_fn=on_cancel if callable(on_cancel) else None,
        )
        self._stack.append(entry)
        return CancellationHandle(self, entry)

    def cancel(self, reason: Any = None) -> bool:
        """Cancel the innermost live operation; False when nothing was canceled."""
        active = self._top()
        if active is None:
            return False
        return self._mark_canceled(active, reason)

    def is_canceled(self, token: int | None = None) -> bool:
        if token is not None:
            return any(entry.token == token and entry.canceled for entry in self._stack)
        active = self._top()
        return active.canceled if active else False

    def get_active_operation(self) -> str | None:
        active = self._top()
        return active.description if active else None

    def __len__(self) -> int:
        self._cleanup()
        return len(self._stack)

    @contextmanager
    def scope(
        self,
        description: str,
        on_cancel: CancelCallback | None = None,
    ) -> Iterator[CancellationHandle]:
        """Register for the duration of a block and always release on exit."""
        handle = self.register(description, on_cancel)
        try:
            yield handle
        finally:
            handle.unregister()


class EscState:
    """Latch set by ESC or UI cancel requests, awaited alongside long operations."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.payload: Any = None
        self._waiters = 0

    @property
    def triggered(self) -> bool:
        return self._event.is_set()

    @property
    def has_waiters(self) -> bool:
        return self._waiters > 0

    def trigger(self, payload: Any = None) -> None:
        self.payload = payload
        self._event.set()

    def reset(self) -> None:
        self.payload = None
        self._event.clear()

    async def wait(self) -> Any:
        self._waiters += 1
        try:
            await self._event.wait()
        finally:
            self._waiters -= 1
        return self.payload
