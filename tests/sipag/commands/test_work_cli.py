from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

import sipag.cli as cli
from sipag.commands import work as work_cmd
from sipag.services.errors import DependencyMissingError, PolicyBlockedError, ValidationFailedError

runner = CliRunner()


def test_work_forwards_options() -> None:
    captured: dict[str, SimpleNamespace] = {}

    def fake_start(args: SimpleNamespace) -> None:
        captured["args"] = args

    with patch("sipag.cli.work_cmd.start_worker", fake_start):
        result = runner.invoke(
            cli.app,
            ["work", "acme/widgets", "--once", "--batch-size", "3", "--timeout", "600", "--force"],
        )

    assert result.exit_code == 0
    args = captured["args"]
    assert args.repo == "acme/widgets"
    assert args.once is True
    assert args.batch_size == 3
    assert args.timeout == 600
    assert args.poll_interval is None
    assert args.force is True


def test_service_failure_exits_with_hint() -> None:
    def fake_start(args: SimpleNamespace) -> None:
        raise PolicyBlockedError("another sipag worker is running", recovery_hint="pass --force")

    with patch("sipag.cli.work_cmd.start_worker", fake_start):
        result = runner.invoke(cli.app, ["work", "acme/widgets"])

    assert result.exit_code == 1
    assert "another sipag worker is running (pass --force)" in result.output


def test_global_log_level_flag_sets_runtime_level() -> None:
    with (
        patch("sipag.cli.status_cmd", lambda _args: None),
        patch("sipag.cli.sipag_log.set_level") as mock_set_level,
    ):
        result = runner.invoke(cli.app, ["--log-level", "debug", "status"])

    assert result.exit_code == 0
    mock_set_level.assert_called_once_with("debug")


def test_global_log_level_rejects_unknown_values() -> None:
    result = runner.invoke(cli.app, ["--log-level", "loud", "status"], color=False)

    assert result.exit_code != 0
    assert "expected one of" in result.output.lower()


def test_drain_and_resume_toggle_signal(tmp_path: Path) -> None:
    drain_file = Path(tmp_path / "sipag-data" / "drain")

    first = runner.invoke(cli.app, ["drain"])
    assert first.exit_code == 0
    assert drain_file.exists()
    assert "Drain requested" in first.output

    again = runner.invoke(cli.app, ["drain"])
    assert "already requested" in again.output

    resumed = runner.invoke(cli.app, ["resume"])
    assert resumed.exit_code == 0
    assert not drain_file.exists()


def test_status_json_lists_records(tmp_path: Path) -> None:
    from sipag.worker.state import FileStateStore

    store = FileStateStore(tmp_path / "sipag-data")
    store.write("acme/widgets", 4, "running", issue_title="Cache")
    store.write("acme/other", 5, "done", exit_code=0)

    result = runner.invoke(cli.app, ["status", "acme/widgets", "--format", "json"])

    assert result.exit_code == 0
    assert '"issue_num": 4' in result.output
    assert '"issue_num": 5' not in result.output
    assert '"draining": false' in result.output


def test_status_rejects_bad_repo() -> None:
    result = runner.invoke(cli.app, ["status", "not-a-repo"])

    assert result.exit_code == 1
    assert "invalid repository" in result.output


def test_validate_repo() -> None:
    assert work_cmd.validate_repo(" acme/widgets ") == "acme/widgets"
    with pytest.raises(ValidationFailedError):
        work_cmd.validate_repo("acme")


def test_start_worker_requires_gh(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(work_cmd, "gh_available", lambda: False)

    with pytest.raises(DependencyMissingError, match="gh"):
        work_cmd.start_worker(SimpleNamespace(repo="acme/widgets"))


def test_start_worker_runs_loop_under_lock(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(work_cmd, "gh_available", lambda: True)
    monkeypatch.setattr(work_cmd.shutil, "which", lambda name: f"/usr/bin/{name}")
    started: dict[str, object] = {}

    class FakeLoop:
        def __init__(self, **kwargs: object) -> None:
            started.update(kwargs)

        def run(self) -> int:
            return 1

    monkeypatch.setattr(work_cmd, "WorkerLoop", FakeLoop)

    work_cmd.start_worker(SimpleNamespace(repo="acme/widgets", once=True, batch_size=9))

    config = started["config"]
    assert started["repo"] == "acme/widgets"
    assert config.once is True  # type: ignore[attr-defined]
    assert config.batch_size == 5  # type: ignore[attr-defined]


def test_work_reports_out_of_range_option(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(work_cmd, "gh_available", lambda: True)
    monkeypatch.setattr(work_cmd.shutil, "which", lambda name: f"/usr/bin/{name}")

    result = runner.invoke(cli.app, ["work", "acme/widgets", "--timeout", "0"])

    assert result.exit_code == 1
    assert "invalid worker settings" in result.output
    assert "check the command-line options" in result.output


def test_command_package_keeps_submodules_importable() -> None:
    assert callable(cli.drain_cmd.request_drain)
    assert callable(cli.drain_cmd.clear_drain)
    assert callable(cli.status_module.show_status)
