import threading
from pathlib import Path

import pytest

from sipag.github import PrFeedback
from sipag.worker import events
from sipag.worker.dispatch import SANDBOX_ERROR_EXIT_CODE, IterationMarkers, run_in_batches
from sipag.worker.sandbox import CONFLICT_FIX_WORKER_SCRIPT
from sipag.worker.models import (
    ConflictFixCandidate,
    DiscoveryResult,
    DispatchOutcome,
    IssueCandidate,
    IterationCandidate,
)
from tests.sipag.helpers import (
    REPO,
    FakeSandbox,
    FakeTracker,
    RecordingNotifier,
    make_config,
    make_dispatcher,
    make_issue,
    make_pr,
)


def test_run_in_batches_bounds_concurrency_and_joins() -> None:
    active = 0
    peak = 0
    lock = threading.Lock()
    release = threading.Event()
    seen_batches: list[list[int]] = []

    def worker(item: int) -> DispatchOutcome:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        release.wait(0.05)
        with lock:
            active -= 1
            if not seen_batches or len(seen_batches[-1]) == 2:
                seen_batches.append([])
            seen_batches[-1].append(item)
        return DispatchOutcome(kind="issue", number=item, exit_code=0)

    outcomes = run_in_batches([1, 2, 3, 4, 5], worker, batch_size=2)

    assert peak <= 2
    assert sorted(outcome.number for outcome in outcomes) == [1, 2, 3, 4, 5]
    assert [sorted(batch) for batch in seen_batches] == [[1, 2], [3, 4], [5]]


def test_run_in_batches_stops_between_batches() -> None:
    calls: list[int] = []
    checks = iter([False, True])

    def worker(item: int) -> DispatchOutcome:
        calls.append(item)
        return DispatchOutcome(kind="issue", number=item, exit_code=0)

    outcomes = run_in_batches([1, 2, 3], worker, batch_size=2, should_stop=lambda: next(checks))

    assert sorted(calls) == [1, 2]
    assert len(outcomes) == 2


def test_dispatch_bounds_sandboxes_to_batch_size(tmp_path: Path) -> None:
    tracker = FakeTracker()
    for number in range(1, 6):
        tracker.add_issue(make_issue(number), "approved")
    sandbox = FakeSandbox(delay=0.05)
    dispatcher = make_dispatcher(
        tmp_path, tracker=tracker, sandbox=sandbox, config=make_config(batch_size=2)
    )
    discovery = DiscoveryResult(
        issues=tuple(IssueCandidate(number=n, title=f"Issue {n}") for n in range(1, 6))
    )

    outcomes = dispatcher.dispatch(discovery)

    assert sandbox.max_active == 2
    assert len(sandbox.runs) == 5
    assert all(outcome.succeeded for outcome in outcomes)


def test_successful_task_opens_pr_and_records_done(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(42, "Add docs", "Write the page."), "approved")
    branch = "sipag/issue-42-add-docs"
    tracker.ahead[branch] = 2
    sandbox = FakeSandbox()
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox, notifier=notifier)

    outcome = dispatcher.dispatch_issue(IssueCandidate(number=42, title="Add docs"))

    assert outcome == DispatchOutcome(kind="issue", number=42, exit_code=0)
    run = sandbox.runs[0]
    assert run["name"] == "sipag-issue-42"
    assert run["env"]["BRANCH"] == branch
    assert run["env"]["ISSUE_NUM"] == "42"
    assert run["env"]["PR_BODY"].startswith("Closes #42")
    assert "Write the page." in run["env"]["PROMPT"]
    assert run["log_path"] == tmp_path / "logs" / "acme--widgets--42.log"
    record = dispatcher.store.read(REPO, 42)
    assert record is not None
    assert record.status == "done"
    assert record.exit_code == 0
    assert record.pr_num == 901
    assert tracker.created_prs[0]["branch"] == branch
    assert "recover" in str(tracker.created_prs[0]["body"])
    assert tracker.labels[42] == set()
    assert notifier.names() == [events.TASK_STARTED, events.TASK_COMPLETED]
    assert notifier.events[1][1]["pr_num"] == 901


def test_successful_task_reuses_existing_pr(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(8, "Tidy"), "approved")
    tracker.branch_prs["sipag/issue-8-tidy"] = make_pr(55)
    dispatcher = make_dispatcher(tmp_path, tracker=tracker)

    dispatcher.dispatch_issue(IssueCandidate(number=8, title="Tidy"))

    record = dispatcher.store.read(REPO, 8)
    assert record is not None and record.pr_num == 55
    assert tracker.created_prs == []


def test_failed_task_restores_work_label(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(9, "Break"), "approved")
    sandbox = FakeSandbox(exit_codes={"sipag-issue-9": 124})
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox, notifier=notifier)

    outcome = dispatcher.dispatch_issue(IssueCandidate(number=9, title="Break"))

    assert not outcome.succeeded
    assert tracker.labels[9] == {"approved"}
    assert tracker.label_calls == [
        (9, "approved", "in-progress"),
        (9, "in-progress", "approved"),
    ]
    record = dispatcher.store.read(REPO, 9)
    assert record is not None
    assert record.status == "failed"
    assert record.exit_code == 124
    assert notifier.names() == [events.TASK_STARTED, events.TASK_FAILED]


def test_issue_refetch_failure_uses_listed_fields(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.fail_get_issue = True
    sandbox = FakeSandbox()
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox)

    dispatcher.dispatch_issue(IssueCandidate(number=4, title="Listed title", body="Listed body"))

    assert sandbox.runs[0]["env"]["ISSUE_TITLE"] == "Listed title"
    assert "Listed body" in sandbox.runs[0]["env"]["PROMPT"]


def test_iteration_runs_with_feedback_and_clears_marker(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(3, "Root", "Original ask"))
    tracker.prs[12] = make_pr(12, title="Fix root", body="Closes #3", headRefName="sipag/issue-3-root")
    tracker.feedback[12] = PrFeedback(reviews=("Please add tests",))
    tracker.diffs[12] = "diff --git a/x b/x"
    sandbox = FakeSandbox()
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox, notifier=notifier)

    outcome = dispatcher.dispatch_iteration(
        IterationCandidate(pr_num=12, title="Fix root", branch="sipag/issue-3-root")
    )

    assert outcome == DispatchOutcome(kind="pr", number=12, exit_code=0)
    run = sandbox.runs[0]
    assert run["name"] == "sipag-pr-12"
    prompt = run["env"]["PROMPT"]
    assert "Please add tests" in prompt
    assert "Original ask" in prompt
    assert "diff --git" in prompt
    assert "Never force-push." in prompt
    assert 12 not in dispatcher.markers
    assert notifier.names() == [events.PR_ITERATION_STARTED, events.PR_ITERATION_DONE]


def test_iteration_marker_cleared_when_sandbox_raises(tmp_path: Path) -> None:
    class ExplodingSandbox(FakeSandbox):
        def run(self, name: str, **kwargs: object) -> int:  # type: ignore[override]
            raise RuntimeError("docker vanished")

    tracker = FakeTracker()
    tracker.prs[12] = make_pr(12, headRefName="sipag/issue-3-root")
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=ExplodingSandbox())

    with pytest.raises(RuntimeError, match="docker vanished"):
        dispatcher.dispatch_iteration(IterationCandidate(pr_num=12, title="x", branch="b"))

    assert 12 not in dispatcher.markers


def test_iteration_skipped_while_marker_held(tmp_path: Path) -> None:
    sandbox = FakeSandbox()
    dispatcher = make_dispatcher(tmp_path, sandbox=sandbox)
    assert dispatcher.markers.claim(12)

    outcome = dispatcher.dispatch_iteration(IterationCandidate(pr_num=12, title="x", branch="b"))

    assert outcome is None
    assert sandbox.runs == []


def test_dispatch_runs_iterations_before_issues(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(1), "approved")
    tracker.prs[20] = make_pr(20, headRefName="sipag/issue-2-x")
    sandbox = FakeSandbox()
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox)

    outcomes = dispatcher.dispatch(
        DiscoveryResult(
            issues=(IssueCandidate(number=1, title="Issue 1"),),
            iterations=(IterationCandidate(pr_num=20, title="PR 20", branch="sipag/issue-2-x"),),
        )
    )

    assert sandbox.names == ["sipag-pr-20", "sipag-issue-1"]
    assert [outcome.kind for outcome in outcomes] == ["pr", "issue"]


def test_iteration_markers_claim_is_exclusive() -> None:
    markers = IterationMarkers()
    assert markers.claim(1)
    assert not markers.claim(1)
    markers.release(1)
    assert markers.claim(1)


def test_run_in_batches_keeps_going_after_a_worker_raises(
    capsys: pytest.CaptureFixture[str],
) -> None:
    def worker(item: int) -> DispatchOutcome:
        if item == 1:
            raise OSError("log path not writable")
        return DispatchOutcome(kind="issue", number=item, exit_code=0)

    outcomes = run_in_batches([1, 2, 3], worker, batch_size=1)

    assert [outcome.number for outcome in outcomes] == [2, 3]
    assert "log path not writable" in capsys.readouterr().err


def test_sandbox_error_marks_task_failed_and_releases_label(tmp_path: Path) -> None:
    class BrokenSandbox(FakeSandbox):
        def run(self, name: str, **kwargs: object) -> int:  # type: ignore[override]
            raise OSError("log path not writable")

    tracker = FakeTracker()
    tracker.add_issue(make_issue(6, "Flaky"), "approved")
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(
        tmp_path, tracker=tracker, sandbox=BrokenSandbox(), notifier=notifier
    )

    outcome = dispatcher.dispatch_issue(IssueCandidate(number=6, title="Flaky"))

    assert outcome.exit_code == SANDBOX_ERROR_EXIT_CODE
    record = dispatcher.store.read(REPO, 6)
    assert record is not None and record.status == "failed"
    assert tracker.labels[6] == {"approved"}
    assert notifier.names() == [events.TASK_STARTED, events.TASK_FAILED]


def test_conflict_fix_running_blocks_iteration_for_same_pr(tmp_path: Path) -> None:
    sandbox = FakeSandbox()
    dispatcher = make_dispatcher(tmp_path, sandbox=sandbox)
    assert dispatcher.markers.claim(20)

    fix = dispatcher.dispatch_conflict_fix(
        ConflictFixCandidate(pr_num=20, title="x", branch="sipag/issue-2-a")
    )
    iteration = dispatcher.dispatch_iteration(
        IterationCandidate(pr_num=20, title="x", branch="sipag/issue-2-a")
    )

    assert fix is None
    assert iteration is None
    assert sandbox.runs == []


def test_conflict_fix_runs_merge_script_on_pr_branch(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.prs[20] = make_pr(
        20, headRefName="sipag/issue-2-a", mergeable="CONFLICTING", body="Closes #2"
    )
    sandbox = FakeSandbox(exit_codes={"sipag-conflict-20": 0})
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox)

    outcome = dispatcher.dispatch_conflict_fix(
        ConflictFixCandidate(pr_num=20, title="PR 20", branch="sipag/issue-2-a")
    )

    assert outcome == DispatchOutcome(kind="conflict-fix", number=20, exit_code=0)
    run = sandbox.runs[0]
    assert run["name"] == "sipag-conflict-20"
    assert run["script"] == CONFLICT_FIX_WORKER_SCRIPT
    env = run["env"]
    assert isinstance(env, dict)
    assert env["BRANCH"] == "sipag/issue-2-a"
    assert "Closes #2" in env["PROMPT"]
    assert run["log_path"] == tmp_path / "logs" / "acme--widgets--pr-20-conflict-fix.log"
    assert 20 not in dispatcher.markers


def test_dispatch_runs_conflict_fixes_before_iterations_and_issues(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(1), "approved")
    tracker.prs[20] = make_pr(20, headRefName="sipag/issue-2-x")
    tracker.prs[30] = make_pr(30, headRefName="sipag/issue-3-y", mergeable="CONFLICTING")
    sandbox = FakeSandbox()
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox)

    outcomes = dispatcher.dispatch(
        DiscoveryResult(
            issues=(IssueCandidate(number=1, title="Issue 1"),),
            iterations=(IterationCandidate(pr_num=20, title="PR 20", branch="sipag/issue-2-x"),),
            conflict_fixes=(
                ConflictFixCandidate(pr_num=30, title="PR 30", branch="sipag/issue-3-y"),
            ),
        )
    )

    assert sandbox.names == ["sipag-conflict-30", "sipag-pr-20", "sipag-issue-1"]
    assert [outcome.kind for outcome in outcomes] == ["conflict-fix", "pr", "issue"]


def test_conflict_fix_skipped_when_pr_lookup_fails(tmp_path: Path) -> None:
    sandbox = FakeSandbox()
    dispatcher = make_dispatcher(tmp_path, sandbox=sandbox)

    outcome = dispatcher.dispatch_conflict_fix(
        ConflictFixCandidate(pr_num=99, title="gone", branch="sipag/issue-9-a")
    )

    assert outcome is None
    assert sandbox.runs == []
    assert 99 not in dispatcher.markers


def test_dispatch_lines_are_tagged_with_container(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    tracker = FakeTracker()
    tracker.add_issue(make_issue(9, "Break"), "approved")
    sandbox = FakeSandbox(exit_codes={"sipag-issue-9": 2})
    dispatcher = make_dispatcher(tmp_path, tracker=tracker, sandbox=sandbox)

    dispatcher.dispatch_issue(IssueCandidate(number=9, title="Break"))

    err = capsys.readouterr().err
    assert "[sipag-issue-9]" in err
