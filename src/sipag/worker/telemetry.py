"""Worker runtime telemetry helpers."""

from __future__ import annotations

import time
from collections.abc import Callable

from .models import CycleSummary


def step(
    label: str,
    *,
    timings: list[tuple[str, float]],
    say: Callable[[str], None],
    log_debug: Callable[[str], None] | None = None,
) -> Callable[[str | None], None]:
    """Render start/finish status for a named cycle step."""
    if log_debug is not None:
        log_debug(f"step start label={label}")
    start = time.perf_counter()

    def finish(extra: str | None = None) -> None:
        elapsed = time.perf_counter() - start
        timings.append((label, elapsed))
        suffix = f" ({elapsed:.2f}s)" if elapsed >= 0.5 else ""
        if extra:
            say(f"{label}{suffix}: {extra}")
        else:
            say(f"{label}{suffix}")
        if log_debug is not None:
            log_debug(f"step finish label={label} elapsed={elapsed:.2f}s")

    return finish


def report_timings(
    timings: list[tuple[str, float]], *, say: Callable[[str], None]
) -> None:
    """Render the slowest steps of a cycle."""
    slow = [(label, elapsed) for label, elapsed in timings if elapsed >= 0.5]
    if not slow:
        return
    say("Timing summary:")
    for label, elapsed in sorted(slow, key=lambda item: item[1], reverse=True):
        say(f"- {label}: {elapsed:.2f}s")


def summary_line(summary: CycleSummary) -> str:
    """Return the one-line cycle summary."""
    return (
        f"Cycle {summary.cycle}: "
        f"dispatched={summary.dispatched} iterations={summary.iterations} "
        f"conflict_fixes={summary.conflict_fixes} "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"reconciled={summary.reconciled} recovery_prs={summary.recovery_prs} "
        f"merged={summary.merged} recovered={summary.recovered}"
    )


def report_cycle_summary(
    summary: CycleSummary,
    *,
    say: Callable[[str], None],
    log_debug: Callable[[str], None] | None = None,
) -> None:
    """Render the end-of-cycle summary."""
    say(summary_line(summary))
    if summary.draining:
        say("- Draining: no new work will be picked up")
    for outcome in summary.outcomes:
        if not outcome.succeeded:
            label = "#" if outcome.kind == "issue" else "PR #"
            say(f"- {label}{outcome.number} exited {outcome.exit_code}")
    if log_debug is not None:
        log_debug(f"summary cycle={summary.cycle} outcomes={len(summary.outcomes)}")
