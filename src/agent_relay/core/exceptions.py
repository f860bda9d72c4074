from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for agent-relay errors."""


class ConfigError(RelayError):
    """Raised when configuration cannot be loaded or is invalid."""


class ValidationError(RelayError):
    """Raised for bad input, before any state is mutated."""


class ExecutorError(RelayError):
    """Base class for executor invocation outcomes that are not a success."""

    def user_message(self) -> str:
        return str(self)


class TransientExecutorError(ExecutorError):
    """Resuming a session failed; the invocation may be retried once fresh."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ExecutorFailure(ExecutorError):
    """The executor exited nonzero for a reason other than a stale session."""

    def __init__(self, exit_code: Optional[int], detail: str) -> None:
        self.exit_code = exit_code
        self.detail = detail
        super().__init__(f"Executor exited with code {exit_code}: {detail}")


class ExecutorTimeout(ExecutorError):
    """The executor exceeded its wall-clock budget and was killed."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        minutes = timeout_seconds / 60.0
        super().__init__(
            f"Executor timed out after {timeout_seconds:g}s ({minutes:.1f} min)."
        )


class ExecutorSpawnError(ExecutorError):
    """The executor process could not be launched."""


class SandboxError(RelayError):
    """Raised when a sandbox environment cannot be provisioned."""


class SandboxUnavailableError(SandboxError):
    """Raised when the container engine is not usable on this host."""


__all__ = [
    "ConfigError",
    "ExecutorError",
    "ExecutorFailure",
    "ExecutorSpawnError",
    "ExecutorTimeout",
    "RelayError",
    "SandboxError",
    "SandboxUnavailableError",
    "TransientExecutorError",
    "ValidationError",
]
