"""GitHub tracker gateway backed by the ``gh`` CLI.

This module is the external-service boundary: it issues queries and
mutations and validates payloads, but holds no scheduling logic. Query
failures raise :class:`TrackerError`; callers log and move on so the next
cycle retries naturally. Label mutations never raise.
"""

from __future__ import annotations

import json
import shutil
import time
from dataclasses import dataclass

from . import exec as exec_util
from . import log
from .worker.decision import CHANGES_REQUESTED, body_closes_issue
from .worker.models_boundary import (
    GithubIssueBoundary,
    GithubPullRequestBoundary,
    parse_inline_comment_boundary,
    parse_issue_boundary,
    parse_pr_boundary,
)

_GH_TIMEOUT_SECONDS = 60.0
_GH_RETRY_ATTEMPTS = 3
_GH_RETRY_BACKOFF_SECONDS = 0.5
_GH_RETRY_ERROR_MARKERS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "connection aborted",
    "network",
    "tls",
    "rate limit",
    "502",
    "503",
    "504",
)
_LIST_LIMIT = "100"
_ISSUE_FIELDS = "number,title,body,labels,state,url"
_PR_FIELDS = (
    "number,title,body,url,state,headRefName,isDraft,mergeable,mergeStateStatus,"
    "reviewDecision,mergedAt,reviews,comments,commits"
)
_PR_LOOKUP_FIELDS = "number,title,body,url,state,headRefName,mergedAt"

_DEFAULT_BRANCH_CACHE: dict[str, str] = {}


class TrackerError(RuntimeError):
    """A tracker query or mutation failed."""


@dataclass(frozen=True)
class GithubClient:
    """Typed command-boundary adapter for GitHub CLI calls."""

    timeout_seconds: float = _GH_TIMEOUT_SECONDS
    retry_attempts: int = _GH_RETRY_ATTEMPTS
    retry_backoff_seconds: float = _GH_RETRY_BACKOFF_SECONDS

    def available(self) -> bool:
        return shutil.which("gh") is not None

    def run(self, cmd: list[str]) -> str:
        attempts = max(int(self.retry_attempts), 1)
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            result = exec_util.run_with_runner(
                exec_util.CommandRequest(
                    argv=tuple(cmd),
                    capture_output=True,
                    text=True,
                    timeout_seconds=self.timeout_seconds,
                )
            )
            if result is None:
                raise TrackerError("missing required command: gh")
            if result.returncode == 0:
                return result.stdout
            message = (result.stderr or result.stdout or "").strip()
            last_error = message or f"command failed: {' '.join(cmd)}"
            if attempt < attempts and _is_retryable_message(last_error):
                log.debug(f"gh retry attempt={attempt} error={last_error}")
                time.sleep(self.retry_backoff_seconds * attempt)
                continue
            raise TrackerError(last_error)
        raise TrackerError(last_error or f"command failed: {' '.join(cmd)}")

    def run_json(self, cmd: list[str]) -> object:
        output = self.run(cmd)
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"unparsable gh output for {' '.join(cmd[:3])}: {exc}") from exc

    def run_json_lines(self, cmd: list[str]) -> list[object]:
        """Run a ``--jq '.[]'`` style command and decode one JSON value per line."""
        entries: list[object] = []
        for line in self.run(cmd).splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                entries.append(json.loads(stripped))
            except json.JSONDecodeError as exc:
                raise TrackerError(f"unparsable gh output line: {exc}") from exc
        return entries


_DEFAULT_GITHUB_CLIENT = GithubClient()


def _is_retryable_message(message: str) -> bool:
    normalized = message.strip().lower()
    if not normalized:
        return False
    return any(marker in normalized for marker in _GH_RETRY_ERROR_MARKERS)


def _run(cmd: list[str]) -> str:
    return _DEFAULT_GITHUB_CLIENT.run(cmd)


def _run_json(cmd: list[str]) -> object:
    return _DEFAULT_GITHUB_CLIENT.run_json(cmd)


def _run_json_lines(cmd: list[str]) -> list[object]:
    return _DEFAULT_GITHUB_CLIENT.run_json_lines(cmd)


def gh_available() -> bool:
    return _DEFAULT_GITHUB_CLIENT.available()


def clear_runtime_cache() -> None:
    """Clear in-process lookup caches."""
    _DEFAULT_BRANCH_CACHE.clear()


def _expect_list(payload: object, *, what: str) -> list[object]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise TrackerError(f"unexpected gh output for {what}")
    return payload


def _parse_issue(payload: object, *, source: str) -> GithubIssueBoundary:
    try:
        return parse_issue_boundary(payload, source=source)
    except ValueError as exc:
        raise TrackerError(str(exc)) from exc


def _parse_pr(payload: object, *, source: str) -> GithubPullRequestBoundary:
    try:
        return parse_pr_boundary(payload, source=source)
    except ValueError as exc:
        raise TrackerError(str(exc)) from exc


def _pr_number_from_url(url: str) -> int | None:
    tail = url.strip().rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


@dataclass(frozen=True)
class PrFeedback:
    """Review feedback gathered for a PR-iteration prompt."""

    reviews: tuple[str, ...] = ()
    comments: tuple[str, ...] = ()
    inline_comments: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.reviews or self.comments or self.inline_comments)


class GithubTracker:
    """Tracker port implementation over ``gh``."""

    # Issues

    def list_issues(self, repo: str, label: str) -> list[GithubIssueBoundary]:
        """Return open issues carrying ``label``, oldest first."""
        payload = _run_json(
            [
                "gh",
                "issue",
                "list",
                "--repo",
                repo,
                "--state",
                "open",
                "--label",
                label,
                "--json",
                _ISSUE_FIELDS,
                "--limit",
                _LIST_LIMIT,
            ]
        )
        issues = [
            _parse_issue(entry, source=f"{repo} issue list")
            for entry in _expect_list(payload, what="issue list")
        ]
        issues.sort(key=lambda issue: issue.number)
        return issues

    def get_issue(self, repo: str, issue_num: int) -> GithubIssueBoundary:
        payload = _run_json(
            ["gh", "issue", "view", str(issue_num), "--repo", repo, "--json", _ISSUE_FIELDS]
        )
        return _parse_issue(payload, source=f"{repo}#{issue_num}")

    def transition_label(
        self,
        repo: str,
        issue_num: int,
        *,
        remove: str | None = None,
        add: str | None = None,
    ) -> None:
        """Swap labels on an issue. Failures are logged and swallowed."""
        if remove:
            try:
                _run(
                    ["gh", "issue", "edit", str(issue_num), "--repo", repo, "--remove-label", remove]
                )
            except TrackerError as exc:
                log.warning(f"label: failed to remove {remove!r} from {repo}#{issue_num}: {exc}")
        if add:
            try:
                _run(["gh", "issue", "edit", str(issue_num), "--repo", repo, "--add-label", add])
            except TrackerError as exc:
                log.warning(f"label: failed to add {add!r} to {repo}#{issue_num}: {exc}")

    def close_issue(self, repo: str, issue_num: int, *, comment: str) -> None:
        _run(["gh", "issue", "close", str(issue_num), "--repo", repo, "--comment", comment])

    # Pull requests

    def list_open_prs(self, repo: str) -> list[GithubPullRequestBoundary]:
        """Return open PRs with mergeability, review, comment and commit metadata."""
        payload = _run_json(
            [
                "gh",
                "pr",
                "list",
                "--repo",
                repo,
                "--state",
                "open",
                "--json",
                _PR_FIELDS,
                "--limit",
                _LIST_LIMIT,
            ]
        )
        return [
            _parse_pr(entry, source=f"{repo} pr list")
            for entry in _expect_list(payload, what="pr list")
        ]

    def get_pr(self, repo: str, pr_num: int) -> GithubPullRequestBoundary:
        payload = _run_json(
            ["gh", "pr", "view", str(pr_num), "--repo", repo, "--json", _PR_FIELDS]
        )
        return _parse_pr(payload, source=f"{repo} PR #{pr_num}")

    def find_pr_for_branch(self, repo: str, branch: str) -> GithubPullRequestBoundary | None:
        """Return the open or merged PR whose head is ``branch``.

        Closed-unmerged PRs are ignored; an open PR wins over a merged one.
        """
        payload = _run_json(
            [
                "gh",
                "pr",
                "list",
                "--repo",
                repo,
                "--head",
                branch,
                "--state",
                "all",
                "--json",
                _PR_LOOKUP_FIELDS,
            ]
        )
        candidates = [
            _parse_pr(entry, source=f"{repo}:{branch}")
            for entry in _expect_list(payload, what="pr list --head")
        ]
        open_prs = [pr for pr in candidates if pr.is_open]
        if open_prs:
            return open_prs[0]
        merged = [pr for pr in candidates if pr.is_merged]
        return merged[0] if merged else None

    def find_pr_closing_issue(
        self, repo: str, issue_num: int
    ) -> GithubPullRequestBoundary | None:
        """Return an open or merged PR whose body closes ``issue_num``.

        The search narrows candidates; the anchored ``closes #N`` match
        decides.
        """
        payload = _run_json(
            [
                "gh",
                "pr",
                "list",
                "--repo",
                repo,
                "--state",
                "all",
                "--search",
                f"{issue_num} in:body",
                "--json",
                _PR_LOOKUP_FIELDS,
                "--limit",
                "50",
            ]
        )
        for entry in _expect_list(payload, what="pr search"):
            pr = _parse_pr(entry, source=f"{repo} pr search #{issue_num}")
            if not body_closes_issue(pr.body, issue_num):
                continue
            if pr.is_open or pr.is_merged:
                return pr
        return None

    def find_merged_pr_closing_issue(
        self, repo: str, issue_num: int
    ) -> GithubPullRequestBoundary | None:
        """Resolve the merged PR linked to an issue through its timeline.

        Only ``cross-referenced`` events whose source is a merged PR from the
        same repository with an anchored ``closes #N`` body count.
        """
        events = _run_json_lines(
            [
                "gh",
                "api",
                f"repos/{repo}/issues/{issue_num}/timeline",
                "--paginate",
                "--jq",
                ".[]",
            ]
        )
        for event in events:
            if not isinstance(event, dict) or event.get("event") != "cross-referenced":
                continue
            source = event.get("source")
            issue = source.get("issue") if isinstance(source, dict) else None
            if not isinstance(issue, dict):
                continue
            pull_request = issue.get("pull_request")
            if not isinstance(pull_request, dict) or not pull_request.get("merged_at"):
                continue
            source_repo = issue.get("repository")
            if isinstance(source_repo, dict) and source_repo.get("full_name") not in (None, repo):
                continue
            if not body_closes_issue(issue.get("body"), issue_num):
                continue
            number = issue.get("number")
            if not isinstance(number, int):
                continue
            return _parse_pr(
                {
                    "number": number,
                    "title": issue.get("title"),
                    "body": issue.get("body"),
                    "url": issue.get("html_url"),
                    "state": "MERGED",
                    "mergedAt": pull_request.get("merged_at"),
                },
                source=f"{repo}#{issue_num} timeline",
            )
        return None

    def create_pr(
        self, repo: str, *, branch: str, title: str, body: str
    ) -> GithubPullRequestBoundary | None:
        """Open a PR for ``branch`` and return it when it can be resolved."""
        output = _run(
            [
                "gh",
                "pr",
                "create",
                "--repo",
                repo,
                "--head",
                branch,
                "--title",
                title,
                "--body",
                body,
            ]
        )
        url = output.strip().splitlines()[-1] if output.strip() else ""
        number = _pr_number_from_url(url) if url else None
        if number is None:
            return self.find_pr_for_branch(repo, branch)
        return _parse_pr(
            {
                "number": number,
                "title": title,
                "body": body,
                "url": url,
                "state": "OPEN",
                "headRefName": branch,
            },
            source=f"{repo} pr create",
        )

    def merge_pr(self, repo: str, pr_num: int, *, subject: str) -> None:
        _run(
            [
                "gh",
                "pr",
                "merge",
                str(pr_num),
                "--repo",
                repo,
                "--squash",
                "--subject",
                subject,
            ]
        )

    def close_pr(self, repo: str, pr_num: int, *, comment: str | None = None) -> None:
        cmd = ["gh", "pr", "close", str(pr_num), "--repo", repo]
        if comment:
            cmd.extend(["--comment", comment])
        _run(cmd)

    def pr_feedback(self, repo: str, pr: GithubPullRequestBoundary) -> PrFeedback:
        """Collect changes-requested reviews, comments and inline comments."""
        reviews = tuple(
            review.body.strip()
            for review in pr.reviews
            if str(review.state or "").upper() == CHANGES_REQUESTED and review.body.strip()
        )
        comments = tuple(
            _attributed(comment.author.login if comment.author else None, comment.body)
            for comment in pr.comments
            if comment.body.strip()
        )
        inline: list[str] = []
        try:
            entries = _run_json_lines(
                ["gh", "api", f"repos/{repo}/pulls/{pr.number}/comments", "--paginate", "--jq", ".[]"]
            )
        except TrackerError as exc:
            log.warning(f"feedback: inline comments unavailable for {repo} PR #{pr.number}: {exc}")
            entries = []
        for entry in entries:
            try:
                comment = parse_inline_comment_boundary(entry, source=f"{repo} PR #{pr.number}")
            except ValueError:
                continue
            if not comment.body.strip():
                continue
            location = comment.path or "?"
            if comment.line is not None:
                location = f"{location}:{comment.line}"
            inline.append(f"{location}: {comment.body.strip()}")
        return PrFeedback(reviews=reviews, comments=comments, inline_comments=tuple(inline))

    def pr_diff(self, repo: str, pr_num: int) -> str:
        return _run(["gh", "pr", "diff", str(pr_num), "--repo", repo])

    # Branches

    def default_branch(self, repo: str) -> str:
        cached = _DEFAULT_BRANCH_CACHE.get(repo)
        if cached:
            return cached
        output = _run(
            [
                "gh",
                "repo",
                "view",
                repo,
                "--json",
                "defaultBranchRef",
                "--jq",
                ".defaultBranchRef.name",
            ]
        ).strip()
        if not output:
            raise TrackerError(f"could not resolve default branch for {repo}")
        _DEFAULT_BRANCH_CACHE[repo] = output
        return output

    def list_branches(self, repo: str, prefix: str) -> list[str]:
        output = _run(
            ["gh", "api", f"repos/{repo}/branches", "--paginate", "--jq", ".[].name"]
        )
        return sorted(
            name.strip()
            for name in output.splitlines()
            if name.strip().startswith(prefix)
        )

    def commits_ahead(self, repo: str, branch: str) -> int:
        """Return how many commits ``branch`` has beyond the default branch."""
        base = self.default_branch(repo)
        output = _run(
            ["gh", "api", f"repos/{repo}/compare/{base}...{branch}", "--jq", ".ahead_by"]
        ).strip()
        try:
            return int(output)
        except ValueError as exc:
            raise TrackerError(f"unexpected compare output for {branch}: {output!r}") from exc

    def delete_branch(self, repo: str, branch: str) -> None:
        _run(["gh", "api", "-X", "DELETE", f"repos/{repo}/git/refs/heads/{branch}"])


def _attributed(login: str | None, body: str) -> str:
    text = body.strip()
    return f"@{login}: {text}" if login else text
