"""Startup crash recovery: adopt live sandboxes, finalize dead ones.

Runs once before the first cycle. Records left ``enqueued``, ``running`` or
``recovering`` by a previous scheduler are matched against the container
runtime:

- container alive: the record moves to ``recovering``, the task id is marked
  seen for this run, and an observer thread waits for the container under a
  fresh timeout, then records the outcome like a normal dispatch.
- container gone: an existing PR for the branch settles the task as done;
  otherwise it becomes failed and its work label is restored so discovery
  picks it up again.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from .. import log
from ..github import TrackerError
from .decision import decide_finalization
from .dispatch import Dispatcher
from .models import RecoveryResult
from .sandbox import SandboxError
from .state import WorkerState

LOST_CONTAINER_EXIT_CODE = -1


@dataclass
class CrashRecovery:
    """Adopt-or-finalize pass over records from a previous process."""

    dispatcher: Dispatcher
    observers: list[threading.Thread] = field(default_factory=list)

    @property
    def repo(self) -> str:
        return self.dispatcher.repo

    def run(self, seen: set[int]) -> RecoveryResult:
        """Recover every active record for the repository.

        Args:
            seen: Task ids adopted by this run are added here so discovery
                does not dispatch them again; each is removed once its
                observer has recorded the outcome.
        """
        store = self.dispatcher.store
        records = store.list_active(self.repo)
        if not records:
            return RecoveryResult()
        try:
            alive = self.dispatcher.sandbox.running()
        except SandboxError as exc:
            log.warning(f"recovery: cannot list containers, leaving {len(records)} record(s): {exc}")
            return RecoveryResult()
        adopted: list[int] = []
        done: list[int] = []
        failed: list[int] = []
        for record in records:
            if record.container_name and record.container_name in alive:
                seen.add(record.issue_num)
                self._adopt(record, seen)
                adopted.append(record.issue_num)
                continue
            if self._finalize(record) == "done":
                done.append(record.issue_num)
            else:
                failed.append(record.issue_num)
        return RecoveryResult(
            adopted=tuple(adopted), finalized_done=tuple(done), finalized_failed=tuple(failed)
        )

    def _adopt(self, record: WorkerState, seen: set[int]) -> None:
        self.dispatcher.store.write(self.repo, record.issue_num, "recovering")
        log.info(f"recovery: adopting running container {record.container_name} (#{record.issue_num})")
        observer = threading.Thread(
            target=self._observe,
            args=(record, seen),
            name=f"sipag-observe-{record.issue_num}",
            daemon=True,
        )
        self.observers.append(observer)
        observer.start()

    def _observe(self, record: WorkerState, seen: set[int]) -> None:
        try:
            with log.task_tag(record.container_name or f"issue-{record.issue_num}"):
                self._settle(record)
        finally:
            # A settled task follows the normal discovery rules again.
            seen.discard(record.issue_num)

    def _settle(self, record: WorkerState) -> None:
        timeout = self.dispatcher.config.timeout
        try:
            exit_code = self.dispatcher.sandbox.wait(
                record.container_name, timeout_seconds=timeout
            )
        except SandboxError as exc:
            log.warning(f"recovery: lost track of {record.container_name}: {exc}")
            exit_code = None
        if exit_code is None:
            exit_code = 0 if self._pr_exists(record) else LOST_CONTAINER_EXIT_CODE
        self.dispatcher.finish_issue(
            record.issue_num,
            title=record.issue_title,
            branch=record.branch,
            exit_code=exit_code,
        )

    def _pr_exists(self, record: WorkerState) -> bool:
        if not record.branch:
            return False
        try:
            return self.dispatcher.tracker.find_pr_for_branch(self.repo, record.branch) is not None
        except TrackerError as exc:
            log.warning(f"recovery: PR lookup for {record.branch} failed: {exc}")
            return False

    def _finalize(self, record: WorkerState) -> str:
        config = self.dispatcher.config
        tracker = self.dispatcher.tracker
        store = self.dispatcher.store
        pr = None
        if record.status != "enqueued" and record.branch:
            try:
                pr = tracker.find_pr_for_branch(self.repo, record.branch)
            except TrackerError as exc:
                log.warning(f"recovery: PR lookup for {record.branch} failed: {exc}")
        outcome = decide_finalization(container_alive=False, pr_exists=pr is not None)
        if outcome == "done" and pr is not None:
            tracker.transition_label(self.repo, record.issue_num, remove=config.in_progress_label)
            store.write(
                self.repo,
                record.issue_num,
                "done",
                exit_code=0,
                pr_num=pr.number,
                pr_url=pr.url,
            )
            log.success(f"recovery: #{record.issue_num} finished with PR #{pr.number}")
            return "done"
        tracker.transition_label(
            self.repo,
            record.issue_num,
            remove=config.in_progress_label,
            add=config.work_label,
        )
        store.write(
            self.repo, record.issue_num, "failed", exit_code=LOST_CONTAINER_EXIT_CODE
        )
        log.warning(
            f"recovery: #{record.issue_num} container {record.container_name or '?'} is gone; "
            "marked failed for retry"
        )
        return "failed"

    def join(self, timeout: float | None = None) -> None:
        """Wait for adopted containers' observers to record their outcome."""
        for observer in self.observers:
            observer.join(timeout)
