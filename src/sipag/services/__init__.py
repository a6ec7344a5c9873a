"""Service failure contracts shared by worker components."""

from .errors import (
    DependencyMissingError,
    IoFailedError,
    PolicyBlockedError,
    ServiceFailure,
    ServiceFailureCode,
    UnexpectedStateError,
    ValidationFailedError,
)

__all__ = [
    "DependencyMissingError",
    "IoFailedError",
    "PolicyBlockedError",
    "ServiceFailure",
    "ServiceFailureCode",
    "UnexpectedStateError",
    "ValidationFailedError",
]
