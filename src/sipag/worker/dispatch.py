"""Batch dispatch of task, PR-iteration and conflict-fix sandboxes."""

from __future__ import annotations

import concurrent.futures
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from .. import log, paths
from ..config import WorkerConfig
from ..github import PrFeedback, TrackerError
from . import events, naming, prompts
from .decision import exit_status, linked_issue_number
from .models import (
    ConflictFixCandidate,
    DiscoveryResult,
    DispatchOutcome,
    IssueCandidate,
    IterationCandidate,
)
from .models_boundary import GithubPullRequestBoundary
from .ports import Notifier, Sandbox, Tracker
from .sandbox import CONFLICT_FIX_WORKER_SCRIPT, ISSUE_WORKER_SCRIPT, ITERATION_WORKER_SCRIPT
from .state import FileStateStore

ItemT = TypeVar("ItemT")

SANDBOX_ERROR_EXIT_CODE = 1


class IterationMarkers:
    """In-memory set of PR numbers with an iteration or conflict fix in flight.

    One claim per PR covers both kinds, so the two never run on the same
    branch at once.
    """

    def __init__(self) -> None:
        self._active: set[int] = set()
        self._lock = threading.Lock()

    def claim(self, pr_num: int) -> bool:
        """Mark a PR as in flight; ``False`` if it already was."""
        with self._lock:
            if pr_num in self._active:
                return False
            self._active.add(pr_num)
            return True

    def release(self, pr_num: int) -> None:
        with self._lock:
            self._active.discard(pr_num)

    def __contains__(self, pr_num: object) -> bool:
        with self._lock:
            return pr_num in self._active


def run_in_batches(
    items: Sequence[ItemT],
    worker: Callable[[ItemT], DispatchOutcome | None],
    *,
    batch_size: int,
    should_stop: Callable[[], bool] | None = None,
) -> list[DispatchOutcome]:
    """Run ``worker`` over ``items`` with at most ``batch_size`` in flight.

    Each batch is joined before the next one starts. ``should_stop`` is
    checked before every batch; a batch already running always completes.
    An exception from one item is logged and does not stop the others.
    """
    size = max(int(batch_size), 1)
    outcomes: list[DispatchOutcome] = []
    for start in range(0, len(items), size):
        if should_stop is not None and should_stop():
            log.info(f"dispatch: stop requested; {len(items) - start} item(s) left for later")
            break
        batch = list(items[start : start + size])
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix="sipag-dispatch"
        ) as pool:
            futures = [pool.submit(worker, item) for item in batch]
            for item, future in zip(batch, futures):
                try:
                    outcome = future.result()
                except Exception as exc:
                    log.error(f"dispatch: {item} raised {type(exc).__name__}: {exc}")
                    continue
                if outcome is not None:
                    outcomes.append(outcome)
    return outcomes


@dataclass
class Dispatcher:
    """Claims tasks, launches sandboxes and records their outcome."""

    repo: str
    config: WorkerConfig
    tracker: Tracker
    sandbox: Sandbox
    store: FileStateStore
    notifier: Notifier
    data_dir: Path
    markers: IterationMarkers = field(default_factory=IterationMarkers)

    def dispatch(
        self,
        discovery: DiscoveryResult,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[DispatchOutcome]:
        """Dispatch conflict fixes, then PR iterations, then new tasks.

        Each group runs in joined batches of ``config.batch_size``.
        """
        outcomes = run_in_batches(
            discovery.conflict_fixes,
            self.dispatch_conflict_fix,
            batch_size=self.config.batch_size,
            should_stop=should_stop,
        )
        outcomes.extend(
            run_in_batches(
                discovery.iterations,
                self.dispatch_iteration,
                batch_size=self.config.batch_size,
                should_stop=should_stop,
            )
        )
        outcomes.extend(
            run_in_batches(
                discovery.issues,
                self.dispatch_issue,
                batch_size=self.config.batch_size,
                should_stop=should_stop,
            )
        )
        return outcomes

    # Tasks

    def _payload(self, issue_num: int, **extra: object) -> dict[str, object]:
        payload: dict[str, object] = {"repo": self.repo, "issue": issue_num}
        payload.update(extra)
        return payload

    def dispatch_issue(self, candidate: IssueCandidate) -> DispatchOutcome:
        with log.task_tag(naming.issue_container_name(candidate.number)):
            return self._run_issue(candidate)

    def _run_issue(self, candidate: IssueCandidate) -> DispatchOutcome:
        issue_num = candidate.number
        container = naming.issue_container_name(issue_num)
        log_path = paths.task_log_path(self.data_dir, self.repo, issue_num)
        self.store.write(
            self.repo,
            issue_num,
            "enqueued",
            issue_title=candidate.title,
            container_name=container,
            log_path=str(log_path),
        )
        self.tracker.transition_label(
            self.repo,
            issue_num,
            remove=self.config.work_label,
            add=self.config.in_progress_label,
        )
        title, body = candidate.title, candidate.body
        try:
            issue = self.tracker.get_issue(self.repo, issue_num)
            title, body = issue.title or title, issue.body
        except TrackerError as exc:
            log.warning(f"dispatch: using listed title/body for #{issue_num}: {exc}")
        branch = naming.branch_name(issue_num, title, prefix=self.config.branch_prefix)
        self.store.write(
            self.repo,
            issue_num,
            "running",
            issue_title=title,
            branch=branch,
            container_name=container,
            log_path=str(log_path),
        )
        log.info(f"dispatch: #{issue_num} {title} -> {branch}")
        self.notifier.emit(
            events.TASK_STARTED,
            self._payload(issue_num, issue_title=title, branch=branch, log=str(log_path)),
        )
        try:
            exit_code = self.sandbox.run(
                container,
                image=self.config.image,
                script=ISSUE_WORKER_SCRIPT,
                env={
                    "REPO": self.repo,
                    "ISSUE_NUM": str(issue_num),
                    "BRANCH": branch,
                    "ISSUE_TITLE": title,
                    "PR_BODY": naming.pr_body(issue_num, body),
                    "PROMPT": prompts.issue_prompt(
                        repo=self.repo, issue_num=issue_num, title=title, body=body, branch=branch
                    ),
                },
                timeout_seconds=self.config.timeout,
                log_path=log_path,
            )
        except Exception as exc:
            log.error(f"dispatch: sandbox for #{issue_num} could not run: {exc}")
            exit_code = SANDBOX_ERROR_EXIT_CODE
        self.finish_issue(issue_num, title=title, branch=branch, exit_code=exit_code, body=body)
        return DispatchOutcome(kind="issue", number=issue_num, exit_code=exit_code)

    def finish_issue(
        self,
        issue_num: int,
        *,
        title: str,
        branch: str,
        exit_code: int,
        body: str | None = None,
    ) -> None:
        """Record a sandbox exit and release or settle the task's labels."""
        if exit_status(exit_code) == "failed":
            self.tracker.transition_label(
                self.repo,
                issue_num,
                remove=self.config.in_progress_label,
                add=self.config.work_label,
            )
            record = self.store.write(self.repo, issue_num, "failed", exit_code=exit_code)
            log.warning(f"dispatch: #{issue_num} failed with exit code {exit_code}")
            self.notifier.emit(
                events.TASK_FAILED,
                self._payload(
                    issue_num,
                    issue_title=title,
                    branch=branch,
                    exit_code=exit_code,
                    duration=record.duration_s,
                    log=record.log_path,
                ),
            )
            return
        self.tracker.transition_label(
            self.repo, issue_num, remove=self.config.in_progress_label
        )
        pr = self.ensure_pr(issue_num, title=title, branch=branch, body=body)
        record = self.store.write(
            self.repo,
            issue_num,
            "done",
            exit_code=exit_code,
            pr_num=pr.number if pr else None,
            pr_url=pr.url if pr else None,
        )
        log.success(
            f"dispatch: #{issue_num} done"
            + (f" (PR #{pr.number})" if pr else " (no PR found)")
        )
        self.notifier.emit(
            events.TASK_COMPLETED,
            self._payload(
                issue_num,
                issue_title=title,
                branch=branch,
                pr_num=record.pr_num,
                pr_url=record.pr_url,
                exit_code=exit_code,
                duration=record.duration_s,
                log=record.log_path,
            ),
        )

    def ensure_pr(
        self, issue_num: int, *, title: str, branch: str, body: str | None = None
    ) -> GithubPullRequestBoundary | None:
        """Return the PR for ``branch``, opening one when the branch has work."""
        try:
            pr = self.tracker.find_pr_for_branch(self.repo, branch)
            if pr is not None:
                return pr
            if self.tracker.commits_ahead(self.repo, branch) <= 0:
                return None
            if body is None:
                body = self.tracker.get_issue(self.repo, issue_num).body
            log.info(f"dispatch: opening PR for {branch}")
            return self.tracker.create_pr(
                self.repo,
                branch=branch,
                title=title,
                body=naming.pr_body(issue_num, body, recovered=True),
            )
        except TrackerError as exc:
            log.warning(f"dispatch: PR lookup for {branch} failed: {exc}")
            return None

    # PR iterations

    def dispatch_iteration(self, candidate: IterationCandidate) -> DispatchOutcome | None:
        pr_num = candidate.pr_num
        if not self.markers.claim(pr_num):
            log.debug(f"dispatch: PR #{pr_num} iteration already in flight")
            return None
        try:
            with log.task_tag(naming.pr_container_name(pr_num)):
                return self._run_iteration(candidate)
        finally:
            self.markers.release(pr_num)

    def _run_iteration(self, candidate: IterationCandidate) -> DispatchOutcome | None:
        pr_num = candidate.pr_num
        try:
            pr = self.tracker.get_pr(self.repo, pr_num)
        except TrackerError as exc:
            log.warning(f"dispatch: skipping PR #{pr_num} iteration: {exc}")
            return None
        branch = pr.head_ref_name or candidate.branch
        issue_num = linked_issue_number(pr.body)
        issue_body = ""
        if issue_num is not None:
            try:
                issue_body = self.tracker.get_issue(self.repo, issue_num).body
            except TrackerError as exc:
                log.warning(f"dispatch: issue #{issue_num} body unavailable: {exc}")
        try:
            feedback = self.tracker.pr_feedback(self.repo, pr)
        except TrackerError as exc:
            log.warning(f"dispatch: feedback for PR #{pr_num} unavailable: {exc}")
            feedback = PrFeedback()
        try:
            diff = self.tracker.pr_diff(self.repo, pr_num)
        except TrackerError as exc:
            log.warning(f"dispatch: diff for PR #{pr_num} unavailable: {exc}")
            diff = ""
        payload: dict[str, object] = {
            "repo": self.repo,
            "pr_num": pr_num,
            "pr_url": pr.url,
            "branch": branch,
            "issue": issue_num,
        }
        log.info(f"dispatch: iterating on PR #{pr_num} ({branch})")
        self.notifier.emit(events.PR_ITERATION_STARTED, payload)
        log_path = paths.logs_dir(self.data_dir) / f"{paths.repo_slug(self.repo)}--pr-{pr_num}.log"
        exit_code = self.sandbox.run(
            naming.pr_container_name(pr_num),
            image=self.config.image,
            script=ITERATION_WORKER_SCRIPT,
            env={
                "REPO": self.repo,
                "BRANCH": branch,
                "PROMPT": prompts.iteration_prompt(
                    repo=self.repo,
                    pr_num=pr_num,
                    pr_title=pr.title or candidate.title,
                    branch=branch,
                    issue_num=issue_num,
                    issue_body=issue_body,
                    feedback=feedback,
                    diff=diff,
                ),
            },
            timeout_seconds=self.config.timeout,
            log_path=log_path,
        )
        self.notifier.emit(events.PR_ITERATION_DONE, {**payload, "exit_code": exit_code})
        if exit_code == 0:
            log.success(f"dispatch: PR #{pr_num} iteration finished")
        else:
            log.warning(f"dispatch: PR #{pr_num} iteration exited {exit_code}")
        return DispatchOutcome(kind="pr", number=pr_num, exit_code=exit_code)

    # Conflict fixes

    def dispatch_conflict_fix(self, candidate: ConflictFixCandidate) -> DispatchOutcome | None:
        pr_num = candidate.pr_num
        if not self.markers.claim(pr_num):
            log.debug(f"dispatch: PR #{pr_num} already has a sandbox in flight")
            return None
        try:
            with log.task_tag(naming.conflict_container_name(pr_num)):
                return self._run_conflict_fix(candidate)
        finally:
            self.markers.release(pr_num)

    def _run_conflict_fix(self, candidate: ConflictFixCandidate) -> DispatchOutcome | None:
        pr_num = candidate.pr_num
        try:
            pr = self.tracker.get_pr(self.repo, pr_num)
        except TrackerError as exc:
            log.warning(f"dispatch: skipping conflict fix for PR #{pr_num}: {exc}")
            return None
        branch = pr.head_ref_name or candidate.branch
        if not branch:
            log.warning(f"dispatch: PR #{pr_num} has no head branch; skipping conflict fix")
            return None
        title = pr.title or candidate.title
        log.info(f"dispatch: merging default branch into PR #{pr_num} ({branch})")
        log_path = (
            paths.logs_dir(self.data_dir)
            / f"{paths.repo_slug(self.repo)}--pr-{pr_num}-conflict-fix.log"
        )
        exit_code = self.sandbox.run(
            naming.conflict_container_name(pr_num),
            image=self.config.image,
            script=CONFLICT_FIX_WORKER_SCRIPT,
            env={
                "REPO": self.repo,
                "BRANCH": branch,
                "PROMPT": prompts.conflict_fix_prompt(
                    repo=self.repo,
                    pr_num=pr_num,
                    pr_title=title,
                    branch=branch,
                    pr_body=pr.body,
                ),
            },
            timeout_seconds=self.config.timeout,
            log_path=log_path,
        )
        if exit_code == 0:
            log.success(f"dispatch: PR #{pr_num} conflicts resolved")
        else:
            log.warning(f"dispatch: PR #{pr_num} conflict fix exited {exit_code}")
        return DispatchOutcome(kind="conflict-fix", number=pr_num, exit_code=exit_code)
