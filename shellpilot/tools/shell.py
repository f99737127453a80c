"""Shell command execution and command-line tokenizing helpers."""

import asyncio
import os
import re
import shlex
import signal
import time
from functools import lru_cache
from itertools import groupby
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from shellpilot.config import get_config
from shellpilot.logging import get_logger

log = get_logger(__name__)

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_CONTROL_OPERATORS = frozenset({";", "&&", "||", "|", "&"})
# Prefixes that run another program; the program after them is what counts.
_PASSTHROUGH_PREFIXES = frozenset({"sudo", "command", "builtin", "nohup", "time", "exec"})


@lru_cache(maxsize=128)
def _blocked_regex(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def tokenize_shell_command(command: str) -> list[str]:
    """POSIX-split ``command``, keeping ``;``, ``&`` and ``|`` runs as tokens."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Token lists for each simple command between control operators.

    Raises ``ValueError`` for unbalanced quoting.
    """
    tokens = tokenize_shell_command(command)
    return [
        list(group)
        for is_operator, group in groupby(tokens, key=lambda token: token in _CONTROL_OPERATORS)
        if not is_operator
    ]


def segment_base_command(tokens: list[str]) -> str:
    """First token of a segment that names the program actually run."""
    for token in (str(t).strip() for t in tokens):
        if not token or token in _PASSTHROUGH_PREFIXES:
            continue
        if "/" not in token and _ENV_ASSIGNMENT.match(token):
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    try:
        segments = split_shell_segments(str(command or "").strip())
    except ValueError:
        return []
    return [base for base in map(segment_base_command, segments) if base]


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Check ``command`` against the blocked list.

    Patterns without whitespace are anchored against each segment's program
    name; patterns containing whitespace are searched in the joined segment
    text. Empty or unparseable commands are always refused.

    Returns:
        ``(blocked, reason)`` where reason is the matching pattern or a code
    """
    text = str(command or "").strip()
    if not text:
        return True, "empty_command"
    try:
        segments = split_shell_segments(text)
    except ValueError:
        return True, "unparseable_command"

    programs = [base for base in map(segment_base_command, segments) if base]
    if not programs:
        return True, "unparseable_command"
    joined = [" ".join(segment) for segment in segments]

    for pattern in (str(p or "").strip() for p in blocked_patterns or []):
        if not pattern:
            continue
        regex = _blocked_regex(pattern)
        if any(ch.isspace() for ch in pattern):
            hit = any(regex.search(segment) for segment in joined)
        else:
            hit = any(regex.match(program) for program in programs)
        if hit:
            return True, pattern
    return False, ""


class ExecutionResult(BaseModel):
    """Outcome of one command execution."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    killed: bool = False
    runtime_ms: int = 0


class ShellExecutor:
    """Run plan commands in a subprocess.

    The process is raced against an optional abort event and the per-command
    timeout; either one kills it and reports ``killed=True``.
    """

    def __init__(
        self,
        default_timeout_sec: int | None = None,
        default_cwd: str | None = None,
        blocked: list[str] | None = None,
    ):
        config = get_config()
        self.default_timeout_sec = int(default_timeout_sec or config.shell.default_timeout_sec or 60)
        self.default_cwd = default_cwd or config.shell.default_cwd or "."
        self.blocked = list(config.shell.blocked if blocked is None else blocked)

    def _resolve_cwd(self, cwd: str | None) -> Path:
        raw = Path(cwd or self.default_cwd).expanduser()
        return raw if raw.is_absolute() else (Path.cwd() / raw)

    async def _build_process(self, run: str, cwd: Path, shell: str | None) -> asyncio.subprocess.Process:
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")
        if shell:
            return await asyncio.create_subprocess_exec(
                shell,
                "-c",
                run,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
                start_new_session=True,
            )
        return await asyncio.create_subprocess_shell(
            run,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=env,
            start_new_session=True,
        )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> tuple[bytes, bytes]:
        if process.returncode is None:
            # The command runs in its own session; kill its whole process group.
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except PermissionError:
                process.kill()
            except ProcessLookupError:
                pass
        try:
            return await communicate_task
        except asyncio.CancelledError:
            return b"", b""

    async def execute(
        self,
        run: str,
        cwd: str | None = None,
        timeout_sec: int | None = None,
        shell: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Execute ``run`` and return its captured output.

        Args:
            run: Shell command line
            cwd: Working directory, defaults to the configured one
            timeout_sec: Per-command timeout override
            shell: Optional shell executable used as ``<shell> -c <run>``
            abort_event: Set to kill the process early

        Returns:
            ExecutionResult with output, exit code and timing
        """
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        blocked, matched = is_blocked_shell_command(run, self.blocked)
        if blocked:
            log.warning("Blocked shell command", command=run, reason=matched)
            return ExecutionResult(stderr=f"Command blocked: {matched}", exit_code=1, runtime_ms=elapsed_ms())

        if abort_event is not None and abort_event.is_set():
            return ExecutionResult(stderr="Command was canceled.", exit_code=None, killed=True)

        workdir = self._resolve_cwd(cwd)
        if not workdir.is_dir():
            return ExecutionResult(
                stderr=f"Working directory does not exist: {workdir}",
                exit_code=1,
                runtime_ms=elapsed_ms(),
            )

        timeout = max(1, int(timeout_sec or self.default_timeout_sec))
        log.info("Executing shell command", command=run, cwd=str(workdir), timeout=timeout)

        process = await self._build_process(run, workdir, shell)
        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if abort_event is not None:
            abort_wait_task = asyncio.create_task(abort_event.wait())

        killed = False
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if communicate_task in done:
                stdout, stderr = communicate_task.result()
            else:
                killed = True
                reason = "aborted" if abort_wait_task is not None and abort_wait_task in done else "timed out"
                log.warning("Killing shell command", command=run, reason=reason)
                stdout, stderr = await self._terminate(process, communicate_task)
                if reason == "timed out":
                    stderr += f"\nCommand timed out after {timeout}s".encode()
        except asyncio.CancelledError:
            await self._terminate(process, communicate_task)
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        return ExecutionResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=None if killed else (process.returncode if process.returncode is not None else 1),
            killed=killed,
            runtime_ms=elapsed_ms(),
        )
