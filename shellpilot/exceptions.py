"""Custom exceptions for Shellpilot."""


class ShellpilotError(Exception):
    """Base exception for Shellpilot."""

    pass


class ConfigurationError(ShellpilotError):
    """Configuration-related errors."""

    pass


class LLMError(ShellpilotError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class HistoryError(ShellpilotError):
    """Invalid history entry or mutation."""

    pass


class PayloadGuardTripped(ShellpilotError):
    """Request payload grew past the failsafe limits."""

    def __init__(self, previous: int, current: int, pass_index: int | None, dump_path: str | None):
        super().__init__(
            f"Request payload ballooned from {previous}B to {current}B "
            f"on pass {pass_index if pass_index is not None else 'unknown'}"
        )
        self.previous = previous
        self.current = current
        self.pass_index = pass_index
        self.dump_path = dump_path
