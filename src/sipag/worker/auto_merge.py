"""Auto-merge gate for clean sandbox-authored PRs."""

from __future__ import annotations

from .. import log
from ..config import WorkerConfig
from ..github import TrackerError
from . import events
from .decision import is_auto_mergeable
from .models import AutoMergeResult
from .ports import Notifier, Tracker


def auto_merge(
    repo: str,
    *,
    config: WorkerConfig,
    tracker: Tracker,
    notifier: Notifier,
) -> AutoMergeResult:
    """Squash-merge every eligible PR once, in listing order.

    A failed merge is logged and left for the next cycle to re-evaluate.
    """
    try:
        prs = tracker.list_open_prs(repo)
    except TrackerError as exc:
        log.warning(f"auto-merge: listing PRs for {repo} failed: {exc}")
        return AutoMergeResult(considered=0)
    eligible = [pr for pr in prs if is_auto_mergeable(pr, branch_prefix=config.branch_prefix)]
    merged: list[int] = []
    failed: list[int] = []
    for pr in eligible:
        try:
            tracker.merge_pr(repo, pr.number, subject=pr.title or f"PR #{pr.number}")
        except TrackerError as exc:
            log.warning(f"auto-merge: PR #{pr.number} not merged: {exc}")
            failed.append(pr.number)
            continue
        merged.append(pr.number)
        log.success(f"auto-merge: merged PR #{pr.number} {pr.title}")
        notifier.emit(
            events.PR_AUTO_MERGED,
            {
                "repo": repo,
                "pr_num": pr.number,
                "pr_url": pr.url,
                "branch": pr.head_ref_name,
                "issue_title": pr.title,
            },
        )
    return AutoMergeResult(considered=len(prs), merged=tuple(merged), failed=tuple(failed))
