"""Runtime events and the queues that carry them to UIs.

Every event is serialized to a plain dict on emission. Consumers only ever
see deep copies, so mutating a received plan can never leak back into the
executor's state.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, ClassVar, Generic, TypeVar

from shellpilot.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RuntimeEvent:
    """Base for all events emitted by the runtime."""

    type: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type
        return data


@dataclass
class BannerEvent(RuntimeEvent):
    type: ClassVar[str] = "banner"
    title: str
    subtitle: str | None = None


@dataclass
class StatusEvent(RuntimeEvent):
    type: ClassVar[str] = "status"
    level: str
    message: str
    details: Any = None


@dataclass
class ThinkingEvent(RuntimeEvent):
    type: ClassVar[str] = "thinking"
    state: str


@dataclass
class AssistantMessageEvent(RuntimeEvent):
    type: ClassVar[str] = "assistant-message"
    message: str


@dataclass
class PlanEvent(RuntimeEvent):
    type: ClassVar[str] = "plan"
    plan: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PlanProgressEvent(RuntimeEvent):
    type: ClassVar[str] = "plan-progress"
    progress: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextUsageEvent(RuntimeEvent):
    type: ClassVar[str] = "context-usage"
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class CommandResultEvent(RuntimeEvent):
    type: ClassVar[str] = "command-result"
    command: dict[str, Any]
    result: dict[str, Any]
    preview: dict[str, Any] = field(default_factory=dict)
    execution: dict[str, Any] = field(default_factory=dict)
    plan_step: dict[str, Any] | None = None


@dataclass
class ErrorEvent(RuntimeEvent):
    type: ClassVar[str] = "error"
    message: str
    details: Any = None
    raw: Any = None


@dataclass
class SchemaValidationFailedEvent(RuntimeEvent):
    type: ClassVar[str] = "schema_validation_failed"
    message: str
    errors: list[dict[str, Any]] = field(default_factory=list)
    raw: str = ""


@dataclass
class RequestInputEvent(RuntimeEvent):
    type: ClassVar[str] = "request-input"
    prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DebugEvent(RuntimeEvent):
    type: ClassVar[str] = "debug"
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PassEvent(RuntimeEvent):
    type: ClassVar[str] = "pass"
    pass_index: int


_QUEUE_DONE = object()


class QueueClosed(Exception):
    """Raised by :meth:`AsyncQueue.next` once the queue is closed and drained."""

    pass


class AsyncQueue(Generic[T]):
    """Unbounded asyncio queue with a terminal close signal."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, item: T) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_QUEUE_DONE)

    async def next(self) -> T:
        item = await self._queue.get()
        if item is _QUEUE_DONE:
            # Leave the marker in place for any other reader.
            self._queue.put_nowait(_QUEUE_DONE)
            raise QueueClosed()
        return item

    def drain(self) -> list[T]:
        """Pop everything that is currently buffered, without waiting."""
        items: list[T] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _QUEUE_DONE:
                self._queue.put_nowait(_QUEUE_DONE)
                break
            items.append(item)
        return items

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.next()
        except QueueClosed:
            raise StopAsyncIteration from None


EventObserver = Callable[[dict[str, Any]], None]
IdGenerator = Callable[[int], str | None]


class RuntimeEmitter:
    """Assigns ids to events, clones them, and fans them out."""

    def __init__(
        self,
        outputs: AsyncQueue[dict[str, Any]],
        observers: list[EventObserver] | None = None,
        id_prefix: str = "key",
        id_generator: IdGenerator | None = None,
        is_debug_enabled: Callable[[], bool] | None = None,
    ):
        self.outputs = outputs
        self.observers = list(observers or [])
        self.id_prefix = id_prefix
        self.id_generator = id_generator
        self._is_debug_enabled = is_debug_enabled or (lambda: False)
        self._counter = 0

    def _next_id(self) -> str:
        if self.id_generator is not None:
            try:
                generated = self.id_generator(self._counter)
            except Exception as e:
                log.warning("Event id generator failed", error=str(e))
                generated = None
            if generated:
                return str(generated)
        event_id = f"{self.id_prefix}{self._counter}"
        self._counter += 1
        return event_id

    def emit(self, event: RuntimeEvent | dict[str, Any]) -> dict[str, Any]:
        if isinstance(event, RuntimeEvent):
            data = event.to_dict()
        elif isinstance(event, dict) and event.get("type"):
            data = copy.deepcopy(event)
        else:
            raise TypeError("Runtime events must be RuntimeEvent instances or typed dicts.")

        data["id"] = self._next_id()
        self.outputs.push(data)

        for observer in self.observers:
            try:
                observer(copy.deepcopy(data))
            except Exception as e:
                log.warning("Event observer raised", event_type=data["type"], error=str(e))
                self.outputs.push(
                    StatusEvent(level="warn", message="eventObservers item threw.").to_dict()
                )
        return data

    def emit_status(self, level: str, message: str, details: Any = None) -> dict[str, Any]:
        return self.emit(StatusEvent(level=level, message=message, details=details))

    def emit_debug(self, payload: dict[str, Any] | Callable[[], dict[str, Any] | None]) -> None:
        if not self._is_debug_enabled():
            return
        try:
            resolved = payload() if callable(payload) else payload
        except Exception as e:
            self.emit_status("warn", "Failed to prepare debug payload.", str(e))
            return
        if resolved:
            self.emit(DebugEvent(payload=resolved))
