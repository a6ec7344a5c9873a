"""Discovery of dispatchable tasks and PRs awaiting iteration."""

from __future__ import annotations

from collections.abc import Container, Sequence

from .. import log
from ..config import WorkerConfig
from ..github import TrackerError
from ..services.errors import IoFailedError, UnexpectedStateError
from .decision import decide_issue_action, needs_conflict_fix, needs_iteration
from .models import ConflictFixCandidate, DiscoveryResult, IssueCandidate, IterationCandidate
from .models_boundary import GithubPullRequestBoundary
from .ports import Tracker
from .state import FileStateStore


def _record_status(store: FileStateStore, repo: str, issue_num: int) -> str | None:
    try:
        record = store.read(repo, issue_num)
    except (IoFailedError, UnexpectedStateError) as exc:
        log.warning(f"discover: treating unreadable record for #{issue_num} as failed: {exc}")
        return "failed"
    return record.status if record else None


def discover_issues(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    store: FileStateStore,
    seen: Container[int] = frozenset(),
) -> tuple[list[IssueCandidate], int]:
    """Return labelled issues eligible for dispatch.

    Issues without a record that an open or merged PR already closes are
    recorded as done and skipped.

    Returns:
        The candidates (oldest first) and the number of issues adopted as
        already completed by an existing PR.
    """
    try:
        issues = tracker.list_issues(repo, config.work_label)
    except TrackerError as exc:
        log.warning(f"discover: listing issues for {repo} failed: {exc}")
        return [], 0
    candidates: list[IssueCandidate] = []
    adopted = 0
    for issue in issues:
        if issue.number in seen:
            log.trace(f"discover: #{issue.number} adopted this run; skipping")
            continue
        status = _record_status(store, repo, issue.number)
        existing_pr = None
        if status is None:
            try:
                existing_pr = tracker.find_pr_closing_issue(repo, issue.number)
            except TrackerError as exc:
                log.warning(f"discover: PR lookup for #{issue.number} failed: {exc}")
                continue
        action = decide_issue_action(status, has_existing_pr=existing_pr is not None)
        if action == "dispatch":
            candidates.append(
                IssueCandidate(number=issue.number, title=issue.title, body=issue.body)
            )
            continue
        if action == "skip_existing_pr" and existing_pr is not None:
            store.write(
                repo,
                issue.number,
                "done",
                issue_title=issue.title,
                branch=existing_pr.head_ref_name,
                pr_num=existing_pr.number,
                pr_url=existing_pr.url,
            )
            adopted += 1
            log.info(f"discover: #{issue.number} already has PR #{existing_pr.number}; marked done")
            continue
        log.trace(f"discover: #{issue.number} {action}")
    return candidates, adopted


def _open_prs(repo: str, tracker: Tracker) -> list[GithubPullRequestBoundary]:
    try:
        return tracker.list_open_prs(repo)
    except TrackerError as exc:
        log.warning(f"discover: listing PRs for {repo} failed: {exc}")
        return []


def discover_iterations(
    repo: str,
    *,
    tracker: Tracker,
    in_flight: Container[int] = frozenset(),
    prs: Sequence[GithubPullRequestBoundary] | None = None,
) -> list[IterationCandidate]:
    """Return open PRs with feedback newer than their last commit."""
    if prs is None:
        prs = _open_prs(repo, tracker)
    candidates: list[IterationCandidate] = []
    for pr in prs:
        if pr.number in in_flight:
            continue
        if not needs_iteration(pr):
            continue
        candidates.append(
            IterationCandidate(pr_num=pr.number, title=pr.title, branch=pr.head_ref_name or "")
        )
    return candidates


def discover_conflict_fixes(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    in_flight: Container[int] = frozenset(),
    prs: Sequence[GithubPullRequestBoundary] | None = None,
) -> list[ConflictFixCandidate]:
    """Return sandbox PRs with merge conflicts, lowest number first.

    PRs with an iteration or conflict fix already in flight are skipped.
    """
    if prs is None:
        prs = _open_prs(repo, tracker)
    candidates = [
        ConflictFixCandidate(pr_num=pr.number, title=pr.title, branch=pr.head_ref_name or "")
        for pr in prs
        if pr.number not in in_flight
        and needs_conflict_fix(pr, branch_prefix=config.branch_prefix)
    ]
    return sorted(candidates, key=lambda candidate: candidate.pr_num)


def discover(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    store: FileStateStore,
    seen: Container[int] = frozenset(),
    in_flight: Container[int] = frozenset(),
) -> DiscoveryResult:
    issues, adopted = discover_issues(
        repo, config=config, tracker=tracker, store=store, seen=seen
    )
    prs = _open_prs(repo, tracker)
    iterations = discover_iterations(repo, tracker=tracker, in_flight=in_flight, prs=prs)
    conflict_fixes = discover_conflict_fixes(
        repo, config=config, tracker=tracker, in_flight=in_flight, prs=prs
    )
    return DiscoveryResult(
        issues=tuple(issues),
        iterations=tuple(iterations),
        conflict_fixes=tuple(conflict_fixes),
        adopted_existing_prs=adopted,
    )
