# ruff: noqa: E402

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Mapping
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from sipag.config import WorkerConfig
from sipag.github import PrFeedback, TrackerError
from sipag.worker.dispatch import Dispatcher
from sipag.worker.models_boundary import GithubIssueBoundary, GithubPullRequestBoundary
from sipag.worker.state import FileStateStore

REPO = "acme/widgets"


def make_issue(number: int, title: str = "", body: str = "", **extra: object) -> GithubIssueBoundary:
    payload: dict[str, object] = {
        "number": number,
        "title": title or f"Issue {number}",
        "body": body,
        "state": "OPEN",
        "url": f"https://github.com/{REPO}/issues/{number}",
    }
    payload.update(extra)
    return GithubIssueBoundary.model_validate(payload)


def make_pr(number: int, **fields: object) -> GithubPullRequestBoundary:
    payload: dict[str, object] = {
        "number": number,
        "title": f"PR {number}",
        "body": "",
        "url": f"https://github.com/{REPO}/pull/{number}",
        "state": "OPEN",
    }
    payload.update(fields)
    return GithubPullRequestBoundary.model_validate(payload)


def make_config(**overrides: object) -> WorkerConfig:
    return WorkerConfig(**overrides)


class FakeTracker:
    """In-memory tracker recording every mutating call."""

    def __init__(self) -> None:
        self.issues: dict[int, GithubIssueBoundary] = {}
        self.labels: dict[int, set[str]] = {}
        self.open_prs: list[GithubPullRequestBoundary] = []
        self.prs: dict[int, GithubPullRequestBoundary] = {}
        self.branch_prs: dict[str, GithubPullRequestBoundary] = {}
        self.closing_prs: dict[int, GithubPullRequestBoundary] = {}
        self.merged_closing_prs: dict[int, GithubPullRequestBoundary] = {}
        self.branches: list[str] = []
        self.ahead: dict[str, int] = {}
        self.feedback: dict[int, PrFeedback] = {}
        self.diffs: dict[int, str] = {}
        self.fail_merge: set[int] = set()
        self.fail_get_issue = False
        self.created_prs: list[dict[str, object]] = []
        self.merged: list[int] = []
        self.closed_issues: list[tuple[int, str]] = []
        self.deleted_branches: list[str] = []
        self.closed_prs: list[tuple[int, str | None]] = []
        self.label_calls: list[tuple[int, str | None, str | None]] = []
        self._next_pr = 900
        self._lock = threading.Lock()

    def add_issue(self, issue: GithubIssueBoundary, *labels: str) -> None:
        self.issues[issue.number] = issue
        self.labels[issue.number] = set(labels)

    def list_issues(self, repo: str, label: str) -> list[GithubIssueBoundary]:
        return [
            issue
            for number, issue in sorted(self.issues.items())
            if label in self.labels.get(number, set())
        ]

    def get_issue(self, repo: str, issue_num: int) -> GithubIssueBoundary:
        if self.fail_get_issue or issue_num not in self.issues:
            raise TrackerError(f"issue #{issue_num} not found")
        return self.issues[issue_num]

    def transition_label(
        self,
        repo: str,
        issue_num: int,
        *,
        remove: str | None = None,
        add: str | None = None,
    ) -> None:
        with self._lock:
            self.label_calls.append((issue_num, remove, add))
            labels = self.labels.setdefault(issue_num, set())
            if remove:
                labels.discard(remove)
            if add:
                labels.add(add)

    def close_issue(self, repo: str, issue_num: int, *, comment: str) -> None:
        self.closed_issues.append((issue_num, comment))

    def list_open_prs(self, repo: str) -> list[GithubPullRequestBoundary]:
        return list(self.open_prs)

    def get_pr(self, repo: str, pr_num: int) -> GithubPullRequestBoundary:
        if pr_num in self.prs:
            return self.prs[pr_num]
        for pr in self.open_prs:
            if pr.number == pr_num:
                return pr
        raise TrackerError(f"PR #{pr_num} not found")

    def find_pr_for_branch(self, repo: str, branch: str) -> GithubPullRequestBoundary | None:
        return self.branch_prs.get(branch)

    def find_pr_closing_issue(
        self, repo: str, issue_num: int
    ) -> GithubPullRequestBoundary | None:
        return self.closing_prs.get(issue_num)

    def find_merged_pr_closing_issue(
        self, repo: str, issue_num: int
    ) -> GithubPullRequestBoundary | None:
        return self.merged_closing_prs.get(issue_num)

    def create_pr(
        self, repo: str, *, branch: str, title: str, body: str
    ) -> GithubPullRequestBoundary | None:
        with self._lock:
            self._next_pr += 1
            number = self._next_pr
            self.created_prs.append({"branch": branch, "title": title, "body": body})
        pr = make_pr(number, title=title, body=body, headRefName=branch)
        self.branch_prs[branch] = pr
        return pr

    def merge_pr(self, repo: str, pr_num: int, *, subject: str) -> None:
        if pr_num in self.fail_merge:
            raise TrackerError(f"PR #{pr_num} is not mergeable")
        self.merged.append(pr_num)

    def close_pr(self, repo: str, pr_num: int, *, comment: str | None = None) -> None:
        self.closed_prs.append((pr_num, comment))

    def pr_feedback(self, repo: str, pr: GithubPullRequestBoundary) -> PrFeedback:
        return self.feedback.get(pr.number, PrFeedback())

    def pr_diff(self, repo: str, pr_num: int) -> str:
        return self.diffs.get(pr_num, "")

    def list_branches(self, repo: str, prefix: str) -> list[str]:
        return [branch for branch in self.branches if branch.startswith(prefix)]

    def commits_ahead(self, repo: str, branch: str) -> int:
        return self.ahead.get(branch, 0)

    def delete_branch(self, repo: str, branch: str) -> None:
        self.deleted_branches.append(branch)


class FakeSandbox:
    """Sandbox double that tracks how many runs overlap."""

    def __init__(
        self,
        *,
        exit_codes: Mapping[str, int] | None = None,
        delay: float = 0.0,
        alive: set[str] | None = None,
        wait_codes: Mapping[str, int | None] | None = None,
    ) -> None:
        self.exit_codes = dict(exit_codes or {})
        self.delay = delay
        self.alive = set(alive or ())
        self.wait_codes = dict(wait_codes or {})
        self.runs: list[dict[str, object]] = []
        self.waited: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(
        self,
        name: str,
        *,
        image: str,
        script: str,
        env: Mapping[str, str],
        timeout_seconds: int,
        log_path: Path | None,
    ) -> int:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.runs.append(
                {
                    "name": name,
                    "image": image,
                    "script": script,
                    "env": dict(env),
                    "timeout": timeout_seconds,
                    "log_path": log_path,
                }
            )
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.exit_codes.get(name, 0)
        finally:
            with self._lock:
                self.active -= 1

    def running(self) -> set[str]:
        return set(self.alive)

    def wait(self, name: str, *, timeout_seconds: int) -> int | None:
        self.waited.append(name)
        return self.wait_codes.get(name, 0)

    @property
    def names(self) -> list[str]:
        return [str(run["name"]) for run in self.runs]


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []
        self._lock = threading.Lock()

    def emit(self, event: str, payload: Mapping[str, object]) -> None:
        with self._lock:
            self.events.append((event, dict(payload)))

    def names(self) -> list[str]:
        return [event for event, _payload in self.events]


def make_dispatcher(
    data_dir: Path,
    *,
    tracker: FakeTracker | None = None,
    sandbox: FakeSandbox | None = None,
    notifier: RecordingNotifier | None = None,
    config: WorkerConfig | None = None,
) -> Dispatcher:
    return Dispatcher(
        repo=REPO,
        config=config or make_config(),
        tracker=tracker or FakeTracker(),
        sandbox=sandbox or FakeSandbox(),
        store=FileStateStore(data_dir),
        notifier=notifier or RecordingNotifier(),
        data_dir=data_dir,
    )
