"""Implementation for the ``sipag drain`` and ``sipag resume`` commands."""

from __future__ import annotations

from .. import paths
from ..io import say
from ..worker.drain import DrainSignal


def request_drain(args: object) -> None:
    """Ask running workers to finish their current batch and stop."""
    signal = DrainSignal(paths.sipag_data_dir())
    if signal.is_set():
        say("Drain already requested.")
        return
    signal.set()
    say("Drain requested: workers will finish in-flight batches and exit.")


def clear_drain(args: object) -> None:
    """Clear the drain signal so workers pick up new work again."""
    signal = DrainSignal(paths.sipag_data_dir())
    if not signal.is_set():
        say("No drain in effect.")
        return
    signal.clear()
    say("Drain cleared.")
