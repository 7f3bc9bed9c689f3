"""
Exception hierarchy for snaptriage.

Only StorageError is a server-side failure. The other classes describe why a
run did not fully succeed and end up as well-formed results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snaptriage._types import ExecutionOutcome


class SnapTriageError(Exception):
    """Base class for all snaptriage errors."""

    pass


class ConfigurationError(SnapTriageError):
    """Raised when settings or a rule table are invalid."""

    pass


class PolicyViolation(SnapTriageError):
    """
    Raised when a command is blocked by the command policy.

    Attributes:
        rule: Name of the rule that blocked the command.
        reason: Human-readable reason.
        command: The command that was blocked.
    """

    def __init__(self, rule: str, reason: str, command: str = "") -> None:
        self.rule = rule
        self.reason = reason
        self.command = command
        super().__init__(f"Policy violation ({rule}): {reason}")


class SandboxSetupError(SnapTriageError):
    """Raised when the isolated working copy cannot be created."""

    pass


class ExecutionError(SnapTriageError):
    """Raised when the command process cannot be started at all."""

    pass


class ExecutionTimeout(SnapTriageError):
    """
    Deadline exceeded. Carries the partial outcome captured before termination.
    """

    def __init__(self, timeout: float, outcome: ExecutionOutcome | None = None) -> None:
        self.timeout = timeout
        self.outcome = outcome
        super().__init__(f"Command timed out after {timeout}s")


class AnalysisError(SnapTriageError):
    """Raised for log input that cannot be decoded or classified."""

    pass


class StorageError(SnapTriageError):
    """Raised when a run result cannot be persisted or read back."""

    pass
