"""History pruning: amnesia, dementia, and model-assisted compaction.

All three operate on the pass index of each entry, never on wall-clock time.
System entries are left alone unless a policy is told otherwise.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from shellpilot.config import get_config
from shellpilot.history import JSON_INDENT, History, HistoryEntry
from shellpilot.instructions import InstructionLoader
from shellpilot.llm import LLMProvider, Message
from shellpilot.logging import get_logger

log = get_logger(__name__)

DEFAULT_AMNESIA_THRESHOLD = 10
DEFAULT_DEMENTIA_LIMIT = 30
DEFAULT_USAGE_THRESHOLD = 0.5
COMPACTED_PREFIX = "Compacted memory:"

_UNSET = object()


# ---------------------------------------------------------------------------
# Amnesia
# ---------------------------------------------------------------------------


@dataclass
class AmnesiaContext:
    """What a rule sees for one stale entry.

    ``content`` is parsed lazily; ``parsed`` tells whether the entry held JSON.
    Rules request changes through :meth:`remove` and :meth:`rewrite`.
    """

    entry: HistoryEntry
    _content: Any = field(default=_UNSET, repr=False)
    parsed: bool = False
    should_remove: bool = False
    rewritten: bool = False

    def read(self) -> Any:
        if self._content is _UNSET:
            try:
                self._content = json.loads(self.entry.content)
                self.parsed = True
            except (TypeError, ValueError):
                self._content = None
        return self._content

    def remove(self) -> None:
        self.should_remove = True

    def rewrite(self, content: Any) -> None:
        self.read()
        self._content = content
        self.rewritten = True


AmnesiaRule = Callable[[AmnesiaContext], None]


def drop_plan_updates(context: AmnesiaContext) -> None:
    content = context.read()
    if isinstance(content, dict) and content.get("type") == "plan-update":
        context.remove()


def strip_plan_payload(context: AmnesiaContext) -> None:
    content = context.read()
    if isinstance(content, dict) and "plan" in content:
        context.rewrite({k: v for k, v in content.items() if k != "plan"})


DEFAULT_AMNESIA_RULES: tuple[AmnesiaRule, ...] = (drop_plan_updates, strip_plan_payload)


class AmnesiaManager:
    """Strips or drops bulky payloads from entries older than the threshold."""

    def __init__(self, threshold: int = DEFAULT_AMNESIA_THRESHOLD, rules: list[AmnesiaRule] | None = None):
        self.threshold = max(0, int(threshold))
        self.rules = list(rules) if rules else list(DEFAULT_AMNESIA_RULES)

    def apply(self, history: History, current_pass: int) -> bool:
        """Returns True when any entry was rewritten or removed."""
        if not len(history) or not self.threshold:
            return False

        cutoff = current_pass - self.threshold
        mutated = False
        for index in range(len(history) - 1, -1, -1):
            entry = history[index]
            if entry.role == "system" or entry.pass_index >= cutoff:
                continue

            context = AmnesiaContext(entry=entry)
            for rule in self.rules:
                try:
                    rule(context)
                except Exception as e:
                    log.warning("Amnesia rule failed", rule=getattr(rule, "__name__", repr(rule)), error=str(e))
                if context.should_remove:
                    break

            if context.should_remove:
                history.remove_at(index)
                mutated = True
            elif context.rewritten and context.parsed:
                history.replace(
                    index,
                    HistoryEntry(
                        role=entry.role,
                        content=json.dumps(context.read(), indent=JSON_INDENT),
                        pass_index=entry.pass_index,
                        event_type=entry.event_type,
                        extra=dict(entry.extra),
                    ),
                )
                mutated = True
        return mutated


# ---------------------------------------------------------------------------
# Dementia
# ---------------------------------------------------------------------------


class DementiaPolicy:
    """Evicts every entry older than ``current_pass - limit``.

    Entries exactly at the boundary survive. A limit of 0 disables the policy.
    """

    def __init__(self, limit: int = DEFAULT_DEMENTIA_LIMIT, preserve_system_messages: bool = True):
        self.limit = max(0, int(limit))
        self.preserve_system_messages = preserve_system_messages

    def apply(self, history: History, current_pass: int) -> bool:
        if not len(history) or not self.limit:
            return False
        cutoff = current_pass - self.limit
        removed = history.remove_where(
            lambda entry: entry.pass_index < cutoff
            and not (self.preserve_system_messages and entry.role == "system")
        )
        return removed > 0


# ---------------------------------------------------------------------------
# Context usage
# ---------------------------------------------------------------------------


@dataclass
class ContextUsage:
    total_tokens: int
    max_tokens: int
    remaining_tokens: int
    percent_used: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "max_tokens": self.max_tokens,
            "remaining_tokens": self.remaining_tokens,
            "percent_used": self.percent_used,
        }


def _default_count_tokens(text: str) -> int:
    return len(text) // 4


def estimate_context_usage(
    history: History,
    context_window: int | None = None,
    count_tokens: Callable[[str], int] | None = None,
) -> ContextUsage:
    window = int(context_window or get_config().model.context_window or 0)
    counter = count_tokens or _default_count_tokens
    total = sum(counter(entry.content) for entry in history)
    percent = round(total / window * 100, 2) if window > 0 else 0.0
    return ContextUsage(
        total_tokens=total,
        max_tokens=window,
        remaining_tokens=max(0, window - total),
        percent_used=percent,
    )


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


class HistoryCompactor:
    """Summarizes the oldest half of history once usage crosses a threshold."""

    def __init__(
        self,
        provider: LLMProvider,
        usage_threshold: float = DEFAULT_USAGE_THRESHOLD,
        context_window: int | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.provider = provider
        self.usage_threshold = usage_threshold
        self.context_window = context_window
        self.instructions = instructions or InstructionLoader()

    def _format_entries(self, entries: list[HistoryEntry]) -> str:
        blocks = []
        for index, entry in enumerate(entries, start=1):
            content = re.sub(r"[ \t]+", " ", entry.content.strip())
            blocks.append(f"Entry {index} ({entry.role}, pass {entry.pass_index}):\n{content}")
        return "\n\n".join(blocks)

    async def _summarize(self, entries: list[HistoryEntry]) -> str:
        messages = [
            Message(role="system", content=self.instructions.load("compaction_summary_system_prompt.md")),
            Message(
                role="user",
                content=self.instructions.render(
                    "compaction_summary_user_prompt.md",
                    count=len(entries),
                    formatted=self._format_entries(entries),
                ),
            ),
        ]
        response = await self.provider.complete(messages=messages, tools=None)
        return (response.content or "").strip()

    async def compact_if_needed(self, history: History) -> bool:
        """Returns True when history was compacted. Never raises."""
        if not len(history):
            return False

        usage = estimate_context_usage(history, self.context_window, self.provider.count_tokens)
        if usage.max_tokens <= 0 or usage.total_tokens / usage.max_tokens <= self.usage_threshold:
            return False

        start = 1 if history[0].role == "system" else 0
        available = len(history) - start
        if available <= 1:
            return False
        count = max(1, available // 2)
        to_compact = list(history.entries[start : start + count])

        try:
            summary = await self._summarize(to_compact)
        except Exception as e:
            log.warning("History compaction failed", entries=count, error=str(e))
            return False
        if not summary:
            log.warning("History compaction produced an empty summary", entries=count)
            return False

        original_length = len(history)
        compacted = HistoryEntry(
            role="system",
            content=f"{COMPACTED_PREFIX}\n{summary}",
            pass_index=max(entry.pass_index for entry in to_compact),
        )
        history.replace_range(start, start + count, [compacted])
        log.info(
            "Compacted history entries",
            entries_compacted=count,
            original_length=original_length,
            resulting_length=len(history),
        )
        return True


class MemoryPolicies:
    """Runs amnesia then dementia after each pass."""

    def __init__(
        self,
        amnesia: AmnesiaManager | None = None,
        dementia: DementiaPolicy | None = None,
    ):
        cfg = get_config().memory
        self.amnesia = amnesia if amnesia is not None else AmnesiaManager(cfg.amnesia_threshold)
        self.dementia = (
            dementia
            if dementia is not None
            else DementiaPolicy(cfg.dementia_limit, cfg.preserve_system_messages)
        )

    def enforce(self, history: History, current_pass: int) -> bool:
        if current_pass <= 0:
            return False
        mutated = False
        try:
            mutated = self.amnesia.apply(history, current_pass) or mutated
        except Exception as e:
            log.warning("Failed to apply amnesia filter", error=str(e))
        try:
            mutated = self.dementia.apply(history, current_pass) or mutated
        except Exception as e:
            log.warning("Failed to apply dementia pruning", error=str(e))
        if mutated:
            log.debug("Memory policy applied", history_length=len(history))
        return mutated
