"""Worker prompt rendering helpers."""

from __future__ import annotations

from ..github import PrFeedback

DIFF_MAX_CHARS = 50_000


def issue_prompt(
    *,
    repo: str,
    issue_num: int,
    title: str,
    body: str,
    branch: str,
) -> str:
    """Build the prompt for a fresh task sandbox."""
    lines = [
        f"You are working on the repository {repo}.",
        "",
        f"Your task is issue #{issue_num}: {title.strip()}",
        "",
        body.strip() or "(the issue has no description)",
        "",
        "Instructions:",
        f"- You are on branch {branch}; a draft PR for it may already be open.",
        "- If no PR exists yet, open a draft PR early so progress is visible.",
        "- Implement the change described above and add or update tests.",
        "- Run the project's test suite and fix failures before finishing.",
        "- Commit in small, self-describing steps and push after each commit.",
        "- When the work is complete, mark the PR ready for review.",
        f"- The PR body must keep the line `Closes #{issue_num}`.",
    ]
    return "\n".join(lines)


def truncate_diff(diff: str, *, limit: int = DIFF_MAX_CHARS) -> str:
    """Cap a diff at ``limit`` characters, noting the truncation.

    Example:
        >>> truncate_diff("abcdef", limit=3)
        'abc\\n... (diff truncated)'
    """
    if len(diff) <= limit:
        return diff
    return f"{diff[:limit]}\n... (diff truncated)"


def iteration_prompt(
    *,
    repo: str,
    pr_num: int,
    pr_title: str,
    branch: str,
    issue_num: int | None,
    issue_body: str,
    feedback: PrFeedback,
    diff: str,
) -> str:
    """Build the prompt for a PR-iteration sandbox."""
    lines = [
        f"You are addressing review feedback on PR #{pr_num} in {repo}: {pr_title.strip()}",
        f"The branch {branch} is already checked out.",
    ]
    if issue_num is not None:
        lines.extend(["", f"Original issue #{issue_num}:", issue_body.strip() or "(no description)"])
    if feedback.reviews:
        lines.extend(["", "Changes requested by reviewers:"])
        lines.extend(f"- {entry}" for entry in feedback.reviews)
    if feedback.comments:
        lines.extend(["", "PR comments:"])
        lines.extend(f"- {entry}" for entry in feedback.comments)
    if feedback.inline_comments:
        lines.extend(["", "Inline review comments:"])
        lines.extend(f"- {entry}" for entry in feedback.inline_comments)
    if diff.strip():
        lines.extend(["", "Current diff:", "```diff", truncate_diff(diff), "```"])
    lines.extend(
        [
            "",
            "Instructions:",
            "- Make surgical changes that address the feedback above and nothing else.",
            "- Add new commits on top of the branch; never rewrite history.",
            "- Never force-push.",
            "- Run the tests, commit, and push when done.",
        ]
    )
    return "\n".join(lines)


def conflict_fix_prompt(
    *,
    repo: str,
    pr_num: int,
    pr_title: str,
    branch: str,
    pr_body: str,
) -> str:
    """Build the prompt for resolving merge conflicts on a PR branch.

    The sandbox only runs the agent when merging the default branch forward
    stops on conflicts, so the prompt starts from a half-finished merge.
    """
    lines = [
        f"PR #{pr_num} in {repo} has merge conflicts: {pr_title.strip()}",
        f"The branch {branch} is checked out and a merge of the default branch",
        "into it stopped on conflicts.",
        "",
        "PR description:",
        pr_body.strip() or "(no description)",
        "",
        "Instructions:",
        "- Resolve every conflict, keeping the intent of both this PR and the default branch.",
        "- Run the tests and fix anything the merge broke.",
        "- Conclude the merge with a merge commit and push the branch.",
        "- Never rebase, rewrite history or force-push.",
    ]
    return "\n".join(lines)
