"""Worker runtime data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


@dataclass(frozen=True)
class IssueCandidate:
    number: int
    title: str
    body: str = ""


@dataclass(frozen=True)
class IterationCandidate:
    pr_num: int
    title: str
    branch: str


@dataclass(frozen=True)
class ConflictFixCandidate:
    pr_num: int
    title: str
    branch: str


@dataclass(frozen=True)
class DiscoveryResult:
    issues: tuple[IssueCandidate, ...] = ()
    iterations: tuple[IterationCandidate, ...] = ()
    conflict_fixes: tuple[ConflictFixCandidate, ...] = ()
    adopted_existing_prs: int = 0


@dataclass(frozen=True)
class DispatchOutcome:
    kind: Literal["issue", "pr", "conflict-fix"]
    number: int
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ReconcileResult:
    scanned: int
    reconciled: int
    recovery_prs: int
    deleted_branches: int
    failed: int
    superseded_prs: int = 0


@dataclass(frozen=True)
class RecoveryResult:
    adopted: tuple[int, ...] = ()
    finalized_done: tuple[int, ...] = ()
    finalized_failed: tuple[int, ...] = ()

    @property
    def total(self) -> int:
        return len(self.adopted) + len(self.finalized_done) + len(self.finalized_failed)


@dataclass(frozen=True)
class AutoMergeResult:
    considered: int
    merged: tuple[int, ...] = ()
    failed: tuple[int, ...] = ()


@dataclass
class CycleSummary:
    """Counts reported at the end of each scheduling cycle."""

    cycle: int
    reconciled: int = 0
    recovery_prs: int = 0
    merged: int = 0
    recovered: int = 0
    dispatched: int = 0
    iterations: int = 0
    conflict_fixes: int = 0
    succeeded: int = 0
    failed: int = 0
    draining: bool = False
    outcomes: list[DispatchOutcome] = field(default_factory=list)

    def record(self, outcomes: list[DispatchOutcome]) -> None:
        for outcome in outcomes:
            self.outcomes.append(outcome)
            if outcome.kind == "issue":
                self.dispatched += 1
            elif outcome.kind == "conflict-fix":
                self.conflict_fixes += 1
            else:
                self.iterations += 1
            if outcome.succeeded:
                self.succeeded += 1
            else:
                self.failed += 1
