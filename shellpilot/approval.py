"""Command approval gate.

A command runs without asking when it is on the allowlist, was approved for
the session earlier, or the global auto-approve flag is on, in that order.
Otherwise the human picks one of three answers: run once, run for the rest of
the session, or reject.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Literal

from shellpilot.config import AllowlistEntry, get_config
from shellpilot.events import RuntimeEmitter
from shellpilot.logging import get_logger
from shellpilot.tools.shell import tokenize_shell_command

log = get_logger(__name__)

APPROVAL_PROMPT = "\n".join(
    [
        "Approve running this command?",
        "  1) Yes (run once)",
        "  2) Yes, for entire session (add to in-memory approvals)",
        "  3) No, tell the AI to do something else",
        "Select 1, 2, or 3: ",
    ]
)
INVALID_CHOICE_MESSAGE = "Please enter 1, 2, or 3."
REJECTION_REASON = "human_declined"

_ALLOWED_SHELLS = {"bash", "sh"}

_UNSAFE_PATTERNS = [
    re.compile(r"[\r\n]"),
    re.compile(r";"),
    re.compile(r"&&"),
    re.compile(r"\|\|"),
    re.compile(r"\|"),
    re.compile(r"`"),
    re.compile(r"\$\("),
    re.compile(r"<\("),
    re.compile(r">\("),
    re.compile(r"(^|[^&])&([^&>]|$)"),
    re.compile(r"<<<?"),
    re.compile(r"&>"),
    re.compile(r"\d*>>?"),
    re.compile(r"\d+>&\d+"),
]
_SUDO_RE = re.compile(r"^\s*sudo\b")

_CURL_WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_CURL_UPLOAD_FLAGS = {
    "-d",
    "--data",
    "--data-raw",
    "--data-binary",
    "--data-urlencode",
    "-F",
    "--form",
    "-T",
    "--upload-file",
}

SessionSignature = str
AskHuman = Callable[[str, dict[str, Any]], Awaitable[str | None]]


@dataclass
class AutoApproval:
    approved: bool
    source: Literal["allowlist", "session", "flag"] | None = None


@dataclass
class Approved:
    source: Literal["allowlist", "session", "flag", "human_once", "human_session", "none"]


@dataclass
class Rejected:
    reason: str = REJECTION_REASON


ApprovalOutcome = Approved | Rejected


@dataclass
class HumanDecision:
    decision: Literal["approve_once", "approve_session", "reject"]
    reason: str | None = None


def command_signature(command: dict[str, Any]) -> SessionSignature:
    """Key under which a session approval is remembered."""
    return json.dumps(
        {
            "shell": command.get("shell") or "bash",
            "run": str(command.get("run") or "").strip(),
            "cwd": command.get("cwd") or ".",
        },
        sort_keys=True,
    )


class SessionApprovalStore:
    """In-memory set of commands approved for the rest of the session."""

    def __init__(self) -> None:
        self._approved: set[SessionSignature] = set()

    def __len__(self) -> int:
        return len(self._approved)

    def __contains__(self, command: object) -> bool:
        return isinstance(command, dict) and command_signature(command) in self._approved

    def add(self, command: dict[str, Any]) -> None:
        self._approved.add(command_signature(command))

    def clear(self) -> None:
        self._approved.clear()


def is_command_string_safe(run: str) -> bool:
    """True for a single simple command without chaining or redirection."""
    text = str(run or "")
    if not text.strip():
        return False
    if _SUDO_RE.match(text):
        return False
    return not any(pattern.search(text) for pattern in _UNSAFE_PATTERNS)


def _first_subcommand(args: list[str]) -> str:
    for token in args:
        if not token.startswith("-"):
            return token
    return ""


def _flag_values(args: list[str], *names: str) -> list[str]:
    """Values given to ``names``, both as ``-o value`` and ``--opt=value``."""
    values: list[str] = []
    for index, token in enumerate(args):
        for name in names:
            if token == name and index + 1 < len(args):
                values.append(args[index + 1])
            elif name.startswith("--") and token.startswith(f"{name}="):
                values.append(token.split("=", 1)[1])
    return values


def _violates_command_rules(base: str, args: list[str]) -> bool:
    if base == "sed":
        return any(token.startswith("-i") or token.startswith("--in-place") for token in args)

    if base == "find":
        return any(token in {"-exec", "-execdir", "-ok", "-okdir", "-delete"} for token in args)

    if base == "curl":
        methods = _flag_values(args, "-X", "--request")
        if any(method.upper() in _CURL_WRITE_METHODS for method in methods):
            return True
        for token in args:
            if token in _CURL_UPLOAD_FLAGS or any(
                token.startswith(f"{flag}=") for flag in _CURL_UPLOAD_FLAGS if flag.startswith("--")
            ):
                return True
            if token in {"-O", "--remote-name", "--remote-name-all"}:
                return True
        return any(target != "-" for target in _flag_values(args, "-o", "--output"))

    if base == "wget":
        if "--spider" in args:
            return False
        targets = _flag_values(args, "-O", "--output-document")
        return any(target != "-" for target in targets) or not targets

    if base == "ping":
        counts = _flag_values(args, "-c")
        if not counts:
            return True
        try:
            count = int(counts[-1])
        except ValueError:
            return True
        return not 1 <= count <= 3

    return False


def is_preapproved_command(command: dict[str, Any], allowlist: Iterable[AllowlistEntry]) -> bool:
    """Allowlist check for a single simple command and its first sub-command."""
    if not isinstance(command, dict):
        return False
    shell = command.get("shell")
    if shell and str(shell).strip() not in _ALLOWED_SHELLS:
        return False

    run = str(command.get("run") or "").strip()
    if not is_command_string_safe(run):
        return False

    try:
        tokens = tokenize_shell_command(run)
    except ValueError:
        return False
    if not tokens:
        return False
    base, args = tokens[0], tokens[1:]
    if "/" in base:
        return False

    for entry in allowlist:
        if entry.name != base:
            continue
        if entry.subcommands and _first_subcommand(args) not in entry.subcommands:
            return False
        return not _violates_command_rules(base, args)
    return False


def parse_decision(raw: str | None) -> HumanDecision | None:
    answer = str(raw or "").strip().lower()
    if answer in {"1", "y", "yes"}:
        return HumanDecision("approve_once")
    if answer == "2":
        return HumanDecision("approve_session")
    if answer in {"3", "n", "no"}:
        return HumanDecision("reject", REJECTION_REASON)
    return None


class ApprovalGate:
    """Decides whether a proposed command may run."""

    def __init__(
        self,
        ask_human: AskHuman | None = None,
        allowlist: list[AllowlistEntry] | None = None,
        session_store: SessionApprovalStore | None = None,
        auto_approve: bool | Callable[[], bool] = False,
        emitter: RuntimeEmitter | None = None,
    ):
        self.ask_human = ask_human
        self.allowlist = list(get_config().approval.allowlist if allowlist is None else allowlist)
        self.session_store = session_store or SessionApprovalStore()
        self._auto_approve = auto_approve
        self._emitter = emitter

    def auto_approve_enabled(self) -> bool:
        flag = self._auto_approve
        return bool(flag() if callable(flag) else flag)

    def _status(self, level: str, message: str) -> None:
        if self._emitter is not None:
            self._emitter.emit_status(level, message)

    def should_auto_approve(self, command: dict[str, Any] | None) -> AutoApproval:
        if not command:
            return AutoApproval(False)
        if is_preapproved_command(command, self.allowlist):
            return AutoApproval(True, "allowlist")
        if command in self.session_store:
            return AutoApproval(True, "session")
        if self.auto_approve_enabled():
            return AutoApproval(True, "flag")
        return AutoApproval(False)

    def approve_session(self, command: dict[str, Any]) -> None:
        self.session_store.add(command)

    async def request_human_decision(self, command: dict[str, Any]) -> HumanDecision:
        """Ask until the human picks one of the three answers."""
        if self.ask_human is None:
            log.warning("No human available for approval, rejecting", command=command.get("run"))
            return HumanDecision("reject", REJECTION_REASON)

        metadata = {"scope": "approval", "command": dict(command)}
        while True:
            decision = parse_decision(await self.ask_human(APPROVAL_PROMPT, metadata))
            if decision is None:
                self._status("warn", INVALID_CHOICE_MESSAGE)
                continue
            if decision.decision == "approve_session":
                self.approve_session(command)
            log.info("Approval decision", decision=decision.decision, command=command.get("run"))
            return decision

    async def evaluate(self, command: dict[str, Any]) -> ApprovalOutcome:
        auto = self.should_auto_approve(command)
        if auto.approved:
            return Approved(auto.source or "none")

        decision = await self.request_human_decision(command)
        if decision.decision == "reject":
            return Rejected(decision.reason or REJECTION_REASON)
        if decision.decision == "approve_session":
            return Approved("human_session")
        return Approved("human_once")
