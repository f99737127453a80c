"""Command execution capability for Shellpilot."""

from shellpilot.tools.shell import (
    ExecutionResult,
    ShellExecutor,
    extract_shell_base_commands,
    is_blocked_shell_command,
    split_shell_segments,
)

__all__ = [
    "ExecutionResult",
    "ShellExecutor",
    "extract_shell_base_commands",
    "is_blocked_shell_command",
    "split_shell_segments",
]
