"""Scheduling loop: recover once, then reconcile, merge, discover, dispatch."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .. import log, paths
from ..config import WorkerConfig
from . import telemetry
from .auto_merge import auto_merge
from .discovery import discover
from .dispatch import Dispatcher
from .drain import DrainSignal
from .models import CycleSummary, RecoveryResult
from .ports import Notifier, Sandbox, Tracker
from .reconcile import reconcile
from .recovery import CrashRecovery
from .state import FileStateStore


@dataclass
class WorkerLoop:
    """One scheduler for one repository.

    Assumes it is the only scheduler for ``repo``; callers hold the
    repository lock for the loop's lifetime.
    """

    repo: str
    config: WorkerConfig
    data_dir: Path
    tracker: Tracker
    sandbox: Sandbox
    store: FileStateStore
    notifier: Notifier
    sleep: Callable[[float], None] = time.sleep
    seen: set[int] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.drain = DrainSignal(self.data_dir)
        self.dispatcher = Dispatcher(
            repo=self.repo,
            config=self.config,
            tracker=self.tracker,
            sandbox=self.sandbox,
            store=self.store,
            notifier=self.notifier,
            data_dir=self.data_dir,
        )
        self.recovery = CrashRecovery(self.dispatcher)

    def banner(self) -> None:
        log.info(f"sipag work: {self.repo}")
        log.info(
            f"label={self.config.work_label} batch_size={self.config.batch_size} "
            f"poll_interval={self.config.poll_interval}s timeout={self.config.timeout}s"
        )
        log.info(f"logs: {paths.logs_dir(self.data_dir)}")

    def recover(self) -> RecoveryResult:
        result = self.recovery.run(self.seen)
        if result.total:
            log.info(
                f"recovery: adopted={len(result.adopted)} "
                f"done={len(result.finalized_done)} failed={len(result.finalized_failed)}"
            )
        return result

    def run(self) -> int:
        """Run cycles until drained or, in once mode, after one cycle.

        Returns:
            Number of cycles executed.
        """
        paths.ensure_dir(paths.workers_dir(self.data_dir))
        paths.ensure_dir(paths.logs_dir(self.data_dir))
        self.banner()
        recovered = self.recover()
        cycles = 0
        while True:
            if self.drain.is_set():
                log.info("Drain signal detected; not picking up new work.")
                break
            cycles += 1
            summary = self.run_cycle(cycles)
            if cycles == 1:
                summary.recovered = recovered.total
            telemetry.report_cycle_summary(summary, say=log.info, log_debug=log.debug)
            if self.config.once:
                break
            if self.drain.is_set():
                log.info("Drain signal detected; stopping after this cycle.")
                break
            log.debug(f"sleeping {self.config.poll_interval}s")
            self.sleep(float(self.config.poll_interval))
        return cycles

    def run_cycle(self, cycle: int) -> CycleSummary:
        summary = CycleSummary(cycle=cycle)
        timings: list[tuple[str, float]] = []

        finish = telemetry.step("reconcile", timings=timings, say=log.debug)
        reconciled = reconcile(
            self.repo, config=self.config, tracker=self.tracker, store=self.store
        )
        summary.reconciled = reconciled.reconciled
        summary.recovery_prs = reconciled.recovery_prs
        finish(f"closed={reconciled.reconciled} recovery_prs={reconciled.recovery_prs}")

        if self.config.auto_merge:
            finish = telemetry.step("auto-merge", timings=timings, say=log.debug)
            merged = auto_merge(
                self.repo, config=self.config, tracker=self.tracker, notifier=self.notifier
            )
            summary.merged = len(merged.merged)
            finish(f"merged={len(merged.merged)}")

        if self.drain.is_set():
            summary.draining = True
            return summary

        finish = telemetry.step("discover", timings=timings, say=log.debug)
        discovery = discover(
            self.repo,
            config=self.config,
            tracker=self.tracker,
            store=self.store,
            seen=self.seen,
            in_flight=self.dispatcher.markers,
        )
        finish(
            f"issues={len(discovery.issues)} iterations={len(discovery.iterations)} "
            f"conflict_fixes={len(discovery.conflict_fixes)}"
        )

        if discovery.issues or discovery.iterations or discovery.conflict_fixes:
            log.info(
                f"Found {len(discovery.issues)} issue(s), "
                f"{len(discovery.iterations)} PR(s) needing iteration and "
                f"{len(discovery.conflict_fixes)} PR(s) with conflicts"
            )
        finish = telemetry.step("dispatch", timings=timings, say=log.debug)
        summary.record(self.dispatcher.dispatch(discovery, should_stop=self.drain.is_set))
        finish(None)
        summary.draining = self.drain.is_set()
        telemetry.report_timings(timings, say=log.debug)
        return summary
