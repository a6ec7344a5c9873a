"""Worker runtime package."""

from .models import (
    AutoMergeResult,
    CycleSummary,
    DiscoveryResult,
    DispatchOutcome,
    ReconcileResult,
    RecoveryResult,
)

__all__ = [
    "AutoMergeResult",
    "CycleSummary",
    "DiscoveryResult",
    "DispatchOutcome",
    "ReconcileResult",
    "RecoveryResult",
]
