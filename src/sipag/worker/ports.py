"""Typed runtime ports used by worker orchestration services."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .models_boundary import GithubIssueBoundary, GithubPullRequestBoundary

if TYPE_CHECKING:
    from ..github import PrFeedback


class Tracker(Protocol):
    """Issue/PR tracker operations required by the worker."""

    def list_issues(self, repo: str, label: str) -> list[GithubIssueBoundary]: ...

    def get_issue(self, repo: str, issue_num: int) -> GithubIssueBoundary: ...

    def transition_label(
        self,
        repo: str,
        issue_num: int,
        *,
        remove: str | None = None,
        add: str | None = None,
    ) -> None: ...

    def close_issue(self, repo: str, issue_num: int, *, comment: str) -> None: ...

    def list_open_prs(self, repo: str) -> list[GithubPullRequestBoundary]: ...

    def get_pr(self, repo: str, pr_num: int) -> GithubPullRequestBoundary: ...

    def find_pr_for_branch(
        self, repo: str, branch: str
    ) -> GithubPullRequestBoundary | None: ...

    def find_pr_closing_issue(
        self, repo: str, issue_num: int
    ) -> GithubPullRequestBoundary | None: ...

    def find_merged_pr_closing_issue(
        self, repo: str, issue_num: int
    ) -> GithubPullRequestBoundary | None: ...

    def create_pr(
        self, repo: str, *, branch: str, title: str, body: str
    ) -> GithubPullRequestBoundary | None: ...

    def merge_pr(self, repo: str, pr_num: int, *, subject: str) -> None: ...

    def close_pr(self, repo: str, pr_num: int, *, comment: str | None = None) -> None: ...

    def pr_feedback(self, repo: str, pr: GithubPullRequestBoundary) -> PrFeedback: ...

    def pr_diff(self, repo: str, pr_num: int) -> str: ...

    def list_branches(self, repo: str, prefix: str) -> list[str]: ...

    def commits_ahead(self, repo: str, branch: str) -> int: ...

    def delete_branch(self, repo: str, branch: str) -> None: ...


class Sandbox(Protocol):
    """Isolated execution runtime for task and PR-iteration agents."""

    def run(
        self,
        name: str,
        *,
        image: str,
        script: str,
        env: Mapping[str, str],
        timeout_seconds: int,
        log_path: Path | None,
    ) -> int: ...

    def running(self) -> set[str]: ...

    def wait(self, name: str, *, timeout_seconds: int) -> int | None: ...


class Notifier(Protocol):
    """Fire-and-forget lifecycle event sink."""

    def emit(self, event: str, payload: Mapping[str, object]) -> None: ...
