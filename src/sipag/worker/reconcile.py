"""Reconcile merged work and orphaned sandbox branches."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .. import log
from ..config import WorkerConfig
from ..github import TrackerError
from ..services.errors import IoFailedError, UnexpectedStateError
from . import naming
from .decision import linked_issue_number
from .models import ReconcileResult
from .ports import Tracker
from .state import FileStateStore


@dataclass(frozen=True)
class _MergedPass:
    scanned: int
    reconciled: int
    deleted: int
    failed: int
    superseded: int = 0


@dataclass(frozen=True)
class _SweepPass:
    recovery_prs: int
    deleted: int
    failed: int


def _delete_branch(tracker: Tracker, repo: str, branch: str | None) -> bool:
    if not branch:
        return False
    try:
        tracker.delete_branch(repo, branch)
    except TrackerError as exc:
        log.warning(f"reconcile: failed to delete branch {branch}: {exc}")
        return False
    log.info(f"reconcile: deleted branch {branch}")
    return True


def close_superseded_prs(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    merged_by: Mapping[int, int],
) -> int:
    """Close other open sandbox PRs for issues that a merged PR already closed.

    Their branches are deleted too, so the orphan sweep does not reopen them.

    Args:
        merged_by: Issue number to the number of the PR that closed it.

    Returns:
        Number of PRs closed.
    """
    if not merged_by:
        return 0
    try:
        open_prs = tracker.list_open_prs(repo)
    except TrackerError as exc:
        log.warning(f"reconcile: listing open PRs failed: {exc}")
        return 0
    closed = 0
    for pr in open_prs:
        if not (pr.head_ref_name or "").startswith(config.branch_prefix):
            continue
        issue_num = linked_issue_number(pr.body)
        merged_pr = merged_by.get(issue_num) if issue_num is not None else None
        if merged_pr is None or merged_pr == pr.number:
            continue
        try:
            tracker.close_pr(
                repo, pr.number, comment=f"Superseded by merged PR #{merged_pr}"
            )
        except TrackerError as exc:
            log.warning(f"reconcile: closing superseded PR #{pr.number} failed: {exc}")
            continue
        closed += 1
        log.info(f"reconcile: closed PR #{pr.number}; #{issue_num} landed in PR #{merged_pr}")
        _delete_branch(tracker, repo, pr.head_ref_name)
    return closed


def reconcile_merged_issues(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    store: FileStateStore,
) -> _MergedPass:
    """Close in-progress issues whose closing PR has merged."""
    try:
        issues = tracker.list_issues(repo, config.in_progress_label)
    except TrackerError as exc:
        log.warning(f"reconcile: listing in-progress issues failed: {exc}")
        return _MergedPass(scanned=0, reconciled=0, deleted=0, failed=1)
    reconciled = deleted = failed = 0
    merged_by: dict[int, int] = {}
    for issue in issues:
        try:
            pr = tracker.find_merged_pr_closing_issue(repo, issue.number)
        except TrackerError as exc:
            log.warning(f"reconcile: cross-reference lookup for #{issue.number} failed: {exc}")
            failed += 1
            continue
        if pr is None:
            continue
        try:
            tracker.close_issue(repo, issue.number, comment=f"Closed by merged PR #{pr.number}")
        except TrackerError as exc:
            log.warning(f"reconcile: closing #{issue.number} failed: {exc}")
            failed += 1
            continue
        tracker.transition_label(repo, issue.number, remove=config.in_progress_label)
        branch = pr.head_ref_name
        if not branch:
            try:
                branch = tracker.get_pr(repo, pr.number).head_ref_name
            except TrackerError as exc:
                log.warning(f"reconcile: head branch of PR #{pr.number} unknown: {exc}")
        store.write(
            repo,
            issue.number,
            "done",
            issue_title=issue.title,
            branch=branch,
            pr_num=pr.number,
            pr_url=pr.url,
        )
        reconciled += 1
        merged_by[issue.number] = pr.number
        log.success(f"reconcile: #{issue.number} closed by merged PR #{pr.number}")
        if _delete_branch(tracker, repo, branch):
            deleted += 1
    superseded = close_superseded_prs(
        repo, config=config, tracker=tracker, merged_by=merged_by
    )
    return _MergedPass(
        scanned=len(issues),
        reconciled=reconciled,
        deleted=deleted,
        failed=failed,
        superseded=superseded,
    )


def _task_in_flight(store: FileStateStore, repo: str, issue_num: int) -> bool:
    try:
        record = store.read(repo, issue_num)
    except (IoFailedError, UnexpectedStateError):
        return False
    return record is not None and record.is_active


def sweep_orphaned_branches(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    store: FileStateStore,
) -> _SweepPass:
    """Recover sandbox branches that never got a PR.

    Branches with an open PR are left alone; branches whose PR merged are
    deleted; branches with commits ahead of trunk get a recovery PR built from
    the task's title and body.
    """
    try:
        branches = tracker.list_branches(repo, config.branch_prefix)
    except TrackerError as exc:
        log.warning(f"reconcile: listing branches failed: {exc}")
        return _SweepPass(recovery_prs=0, deleted=0, failed=1)
    recovery_prs = deleted = failed = 0
    for branch in branches:
        issue_num = naming.issue_num_from_branch(branch, prefix=config.branch_prefix)
        if issue_num is not None and _task_in_flight(store, repo, issue_num):
            continue
        try:
            pr = tracker.find_pr_for_branch(repo, branch)
        except TrackerError as exc:
            log.warning(f"reconcile: PR lookup for {branch} failed: {exc}")
            failed += 1
            continue
        if pr is not None and pr.is_open:
            continue
        if pr is not None and pr.is_merged:
            if _delete_branch(tracker, repo, branch):
                deleted += 1
            continue
        if issue_num is None:
            log.debug(f"reconcile: cannot parse task id from {branch}; skipping")
            continue
        try:
            ahead = tracker.commits_ahead(repo, branch)
            if ahead <= 0:
                log.trace(f"reconcile: {branch} has no commits ahead; skipping")
                continue
            issue = tracker.get_issue(repo, issue_num)
            created = tracker.create_pr(
                repo,
                branch=branch,
                title=issue.title or branch,
                body=naming.pr_body(issue_num, issue.body, recovered=True),
            )
        except TrackerError as exc:
            log.warning(f"reconcile: recovering {branch} failed: {exc}")
            failed += 1
            continue
        recovery_prs += 1
        label = f"PR #{created.number}" if created else "a PR"
        log.success(f"reconcile: opened {label} for orphaned branch {branch} ({ahead} ahead)")
    return _SweepPass(recovery_prs=recovery_prs, deleted=deleted, failed=failed)


def reconcile(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    store: FileStateStore,
) -> ReconcileResult:
    merged = reconcile_merged_issues(repo, config=config, tracker=tracker, store=store)
    sweep = sweep_orphaned_branches(repo, config=config, tracker=tracker, store=store)
    return ReconcileResult(
        scanned=merged.scanned,
        reconciled=merged.reconciled,
        recovery_prs=sweep.recovery_prs,
        deleted_branches=merged.deleted + sweep.deleted,
        failed=merged.failed + sweep.failed,
        superseded_prs=merged.superseded,
    )
