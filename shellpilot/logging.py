"""structlog setup for the agent runtime.

Lines go to stderr unless the CLI installs a sink, in which case they are
printed through its rich console between rendered events. Inside
:func:`bind_pass` every line carries the pass index it belongs to.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog

from shellpilot.config import get_config

LogSink = Callable[[str], None]

_sink: LogSink | None = None


class _LineSink:
    """Stream handed to ``PrintLogger``; forwards whole lines to ``sink``."""

    def __init__(self, sink: LogSink):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        *lines, self._pending = (self._pending + text).split("\n")
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            line, self._pending = self._pending, ""
            self._sink(line)


def set_system_log_sink(sink: LogSink | None) -> None:
    """Install (or clear with None) the callback that receives rendered lines.

    Takes effect on the next :func:`configure_logging` call.
    """
    global _sink
    _sink = sink


def configure_logging() -> None:
    """Apply the ``logging`` section of the active config."""
    settings = get_config().logging
    threshold = logging.getLevelName(settings.level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_LineSink(_sink) if _sink else sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def bind_pass(pass_index: int) -> Iterator[None]:
    """Tag log lines emitted within the block with ``pass_index``."""
    with structlog.contextvars.bound_contextvars(pass_index=pass_index):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name) if name else structlog.get_logger()
