"""Pure decision rules for discovery, finalization, iteration, conflicts and merging.

Nothing in this module performs I/O; callers gather tracker and state inputs
and act on the returned decision.
"""

from __future__ import annotations

import re
from typing import Literal

from ..config import parse_timestamp
from .models_boundary import GithubPullRequestBoundary
from .state import ACTIVE_STATUSES

IssueAction = Literal["dispatch", "skip_completed", "skip_in_flight", "skip_existing_pr"]
Finalization = Literal["still_running", "done", "failed"]

CHANGES_REQUESTED = "CHANGES_REQUESTED"
_MERGEABLE = "MERGEABLE"
_CONFLICTING = "CONFLICTING"
_MERGE_STATE_CLEAN = "CLEAN"
_CLOSING_KEYWORDS = r"(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)"
_LINKED_ISSUE_PATTERN = re.compile(rf"\b{_CLOSING_KEYWORDS}:?\s+#(\d+)\b", re.IGNORECASE)


def closing_reference_pattern(issue_num: int) -> re.Pattern[str]:
    """Return an anchored ``closes #N`` matcher for one issue.

    The trailing word boundary keeps ``#6`` from matching ``#66``.

    Example:
        >>> bool(closing_reference_pattern(6).search("Fixes #66"))
        False
        >>> bool(closing_reference_pattern(66).search("Fixes #66."))
        True
    """
    return re.compile(rf"\b{_CLOSING_KEYWORDS}:?\s+#{issue_num}\b", re.IGNORECASE)


def body_closes_issue(body: str | None, issue_num: int) -> bool:
    if not body:
        return False
    return closing_reference_pattern(issue_num).search(body) is not None


def linked_issue_number(body: str | None) -> int | None:
    """Return the first issue a PR body declares it closes."""
    if not body:
        return None
    match = _LINKED_ISSUE_PATTERN.search(body)
    return int(match.group(1)) if match else None


def decide_issue_action(status: str | None, *, has_existing_pr: bool = False) -> IssueAction:
    """Decide what discovery does with one labelled issue.

    Args:
        status: Persisted record status, or ``None`` when no record exists.
        has_existing_pr: Whether an open or merged PR already closes the
            issue. Only consulted when there is no record.

    Returns:
        The action to take. Failed records are always re-dispatched.
    """
    if status == "done":
        return "skip_completed"
    if status in ACTIVE_STATUSES:
        return "skip_in_flight"
    if status == "failed":
        return "dispatch"
    if has_existing_pr:
        return "skip_existing_pr"
    return "dispatch"


def decide_finalization(*, container_alive: bool, pr_exists: bool) -> Finalization:
    """Decide the fate of a record whose scheduler went away."""
    if container_alive:
        return "still_running"
    if pr_exists:
        return "done"
    return "failed"


def exit_status(exit_code: int) -> Literal["done", "failed"]:
    """Map a sandbox exit code to a terminal status."""
    return "done" if exit_code == 0 else "failed"


def needs_iteration(pr: GithubPullRequestBoundary) -> bool:
    """Return whether a PR has feedback newer than its last commit.

    Feedback is a changes-requested review or any conversation comment. The
    most recent commit is the staleness anchor: anything at or before it is
    considered addressed.
    """
    anchor = pr.last_commit_at()
    for review in pr.reviews:
        if str(review.state or "").upper() != CHANGES_REQUESTED:
            continue
        submitted = parse_timestamp(review.submitted_at)
        if submitted is not None and submitted > anchor:
            return True
    for comment in pr.comments:
        created = parse_timestamp(comment.created_at)
        if created is not None and created > anchor:
            return True
    return False


def is_auto_mergeable(pr: GithubPullRequestBoundary, *, branch_prefix: str) -> bool:
    """Return whether a PR passes the auto-merge gate.

    Only sandbox-authored, non-draft PRs that GitHub reports as mergeable with
    a clean merge state and no outstanding changes-requested review qualify.
    """
    head = pr.head_ref_name or ""
    if not head.startswith(branch_prefix):
        return False
    if pr.is_draft:
        return False
    if str(pr.mergeable or "").upper() != _MERGEABLE:
        return False
    if str(pr.merge_state_status or "").upper() != _MERGE_STATE_CLEAN:
        return False
    return str(pr.review_decision or "").upper() != CHANGES_REQUESTED


def needs_conflict_fix(pr: GithubPullRequestBoundary, *, branch_prefix: str) -> bool:
    """Return whether a sandbox PR has confirmed merge conflicts.

    ``UNKNOWN`` mergeability is not a conflict; GitHub reports it while the
    merge check is still being computed.
    """
    head = pr.head_ref_name or ""
    if not head.startswith(branch_prefix):
        return False
    return str(pr.mergeable or "").upper() == _CONFLICTING
