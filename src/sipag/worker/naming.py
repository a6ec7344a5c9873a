"""Deterministic names for branches, containers and PR bodies."""

from __future__ import annotations

import re

SLUG_MAX_LENGTH = 50
ISSUE_CONTAINER_PREFIX = "sipag-issue-"
PR_CONTAINER_PREFIX = "sipag-pr-"
CONFLICT_CONTAINER_PREFIX = "sipag-conflict-"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_LEADING_DIGITS = re.compile(r"^(\d+)(?:-|$)")


def slugify(title: str) -> str:
    """Return a branch-safe slug for a task title.

    Example:
        >>> slugify("Fix: the   login bug!")
        'fix-the-login-bug'
        >>> slugify("***")
        ''
    """
    slug = _NON_ALNUM.sub("-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def branch_name(issue_num: int, title: str, *, prefix: str) -> str:
    """Return the sandbox branch for a task.

    Example:
        >>> branch_name(42, "Fix the bug", prefix="sipag/issue-")
        'sipag/issue-42-fix-the-bug'
    """
    slug = slugify(title)
    if not slug:
        return f"{prefix}{issue_num}"
    return f"{prefix}{issue_num}-{slug}"


def issue_num_from_branch(branch: str, *, prefix: str) -> int | None:
    """Recover the task id embedded in a sandbox branch name.

    Example:
        >>> issue_num_from_branch("sipag/issue-7-add-docs", prefix="sipag/issue-")
        7
        >>> issue_num_from_branch("sipag/issue-abc", prefix="sipag/issue-") is None
        True
    """
    if not branch.startswith(prefix):
        return None
    match = _LEADING_DIGITS.match(branch[len(prefix) :])
    if not match:
        return None
    return int(match.group(1))


def issue_container_name(issue_num: int) -> str:
    return f"{ISSUE_CONTAINER_PREFIX}{issue_num}"


def pr_container_name(pr_num: int) -> str:
    return f"{PR_CONTAINER_PREFIX}{pr_num}"


def conflict_container_name(pr_num: int) -> str:
    return f"{CONFLICT_CONTAINER_PREFIX}{pr_num}"


def pr_body(issue_num: int, issue_body: str, *, recovered: bool = False) -> str:
    """Render the PR body that links the PR back to its task."""
    note = (
        "*This PR was opened by a sipag worker to recover an orphaned branch.*"
        if recovered
        else "*This PR was opened by a sipag worker. Commits will appear as work progresses.*"
    )
    body = issue_body.strip()
    sections = [f"Closes #{issue_num}"]
    if body:
        sections.append(body)
    sections.append(f"---\n{note}")
    return "\n\n".join(sections)
