import pytest

from shellpilot.approval import (
    APPROVAL_PROMPT,
    INVALID_CHOICE_MESSAGE,
    ApprovalGate,
    Approved,
    Rejected,
    SessionApprovalStore,
    is_command_string_safe,
    is_preapproved_command,
    parse_decision,
)
from shellpilot.config import AllowlistEntry
from shellpilot.events import AsyncQueue, RuntimeEmitter

ALLOWLIST = [
    AllowlistEntry(name="ls"),
    AllowlistEntry(name="git", subcommands=["status", "diff"]),
    AllowlistEntry(name="sed"),
    AllowlistEntry(name="find"),
    AllowlistEntry(name="curl"),
    AllowlistEntry(name="wget"),
    AllowlistEntry(name="ping"),
]


class ScriptedHuman:
    def __init__(self, answers: list[str | None]):
        self.answers = list(answers)
        self.prompts: list[tuple[str, dict]] = []

    async def __call__(self, prompt: str, metadata: dict) -> str | None:
        self.prompts.append((prompt, metadata))
        return self.answers.pop(0)


@pytest.mark.parametrize(
    "run",
    ["ls; rm -rf /", "ls && pwd", "ls | wc -l", "echo `id`", "echo $(id)", "ls > out.txt", "sleep 1 &", "sudo ls"],
)
def test_chained_or_redirected_commands_are_not_safe(run: str):
    assert not is_command_string_safe(run)


def test_plain_command_is_safe():
    assert is_command_string_safe("ls -la /tmp")
    assert not is_command_string_safe("   ")


@pytest.mark.parametrize(
    "run, expected",
    [
        ("ls -la", True),
        ("git status", True),
        ("git push", False),
        ("sed -n 1,5p file.txt", True),
        ("sed -i s/a/b/ file.txt", False),
        ("find . -name '*.py'", True),
        ("find . -delete", False),
        ("curl https://example.com", True),
        ("curl -X POST https://example.com", False),
        ("curl -o page.html https://example.com", False),
        ("curl -o - https://example.com", True),
        ("wget --spider https://example.com", True),
        ("wget -O - https://example.com", True),
        ("wget https://example.com", False),
        ("ping -c 2 example.com", True),
        ("ping -c 10 example.com", False),
        ("ping example.com", False),
        ("LD_PRELOAD=evil.so ls", False),
        ("nohup ls", False),
        ("rm -rf build", False),
        ("/bin/ls", False),
    ],
)
def test_allowlist_rules(run: str, expected: bool):
    assert is_preapproved_command({"run": run}, ALLOWLIST) is expected


def test_allowlist_requires_posix_shell():
    assert is_preapproved_command({"run": "ls", "shell": "bash"}, ALLOWLIST)
    assert not is_preapproved_command({"run": "ls", "shell": "zsh"}, ALLOWLIST)


def test_parse_decision_accepts_aliases():
    assert parse_decision(" 1 ").decision == "approve_once"
    assert parse_decision("YES").decision == "approve_once"
    assert parse_decision("2").decision == "approve_session"
    assert parse_decision("n").decision == "reject"
    assert parse_decision("maybe") is None
    assert parse_decision(None) is None


def test_session_store_matches_on_shell_run_and_cwd():
    store = SessionApprovalStore()
    store.add({"run": " make test ", "cwd": "."})
    assert {"run": "make test", "shell": "bash"} in store
    assert {"run": "make test", "cwd": "/elsewhere"} not in store
    assert "make test" not in store


@pytest.mark.asyncio
async def test_human_session_approval_is_remembered():
    human = ScriptedHuman(["2"])
    gate = ApprovalGate(ask_human=human, allowlist=[])
    command = {"run": "make build"}

    assert gate.should_auto_approve(command).approved is False
    assert await gate.evaluate(command) == Approved("human_session")

    auto = gate.should_auto_approve(command)
    assert auto.approved and auto.source == "session"
    assert await gate.evaluate(command) == Approved("session")
    assert len(human.prompts) == 1
    assert human.prompts[0][0] == APPROVAL_PROMPT
    assert human.prompts[0][1] == {"scope": "approval", "command": {"run": "make build"}}


@pytest.mark.asyncio
async def test_invalid_answers_reprompt_with_warning():
    outputs = AsyncQueue()
    human = ScriptedHuman(["", "what", "1"])
    gate = ApprovalGate(ask_human=human, allowlist=[], emitter=RuntimeEmitter(outputs))

    decision = await gate.request_human_decision({"run": "make"})

    assert decision.decision == "approve_once"
    warnings = [event["message"] for event in outputs.drain() if event["type"] == "status"]
    assert warnings == [INVALID_CHOICE_MESSAGE, INVALID_CHOICE_MESSAGE]
    assert {"run": "make"} not in gate.session_store


@pytest.mark.asyncio
async def test_reject_and_flag_paths():
    gate = ApprovalGate(ask_human=ScriptedHuman(["3"]), allowlist=[])
    assert await gate.evaluate({"run": "rm -rf build"}) == Rejected("human_declined")

    flagged = ApprovalGate(allowlist=[], auto_approve=lambda: True)
    auto = flagged.should_auto_approve({"run": "rm -rf build"})
    assert auto.approved and auto.source == "flag"


def test_allowlist_takes_precedence_over_flag():
    gate = ApprovalGate(allowlist=ALLOWLIST, auto_approve=True)
    assert gate.should_auto_approve({"run": "ls"}).source == "allowlist"
    assert gate.should_auto_approve(None).approved is False


@pytest.mark.asyncio
async def test_missing_human_rejects():
    gate = ApprovalGate(allowlist=[])
    decision = await gate.request_human_decision({"run": "make"})
    assert decision.decision == "reject"
