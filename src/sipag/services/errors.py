"""Failures the sipag CLI reports to the operator instead of crashing.

Orchestration code never raises these mid-cycle: tracker and sandbox trouble
is logged and skipped. They cover the few places where the worker cannot
start or cannot trust its own state, and each subclass pins its code so
callers only supply the message.
"""

from __future__ import annotations

from typing import ClassVar, Literal

ServiceFailureCode = Literal[
    "validation_failed",
    "dependency_missing",
    "policy_blocked",
    "io_failed",
    "unexpected_state",
]


class ServiceFailure(Exception):
    """Base for failures with a stable code and an optional recovery hint.

    Chain the underlying exception with ``raise ... from exc``.

    >>> PolicyBlockedError("repo locked", recovery_hint="pass --force").describe()
    'repo locked (pass --force)'
    """

    code: ClassVar[ServiceFailureCode]

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__(message)
        self.recovery_hint = recovery_hint

    def describe(self) -> str:
        """Return the message with the recovery hint appended."""
        message = str(self)
        if self.recovery_hint:
            return f"{message} ({self.recovery_hint})"
        return message


class ValidationFailedError(ServiceFailure):
    """A repository slug or worker setting was rejected."""

    code = "validation_failed"


class DependencyMissingError(ServiceFailure):
    """``gh`` or ``docker`` is not on PATH."""

    code = "dependency_missing"


class PolicyBlockedError(ServiceFailure):
    """Another live worker holds the repository lock."""

    code = "policy_blocked"


class IoFailedError(ServiceFailure):
    code = "io_failed"


class UnexpectedStateError(ServiceFailure):
    """A state record decoded but lacks its repo or issue number."""

    code = "unexpected_state"
