"""Implementation for the ``sipag work`` command."""

from __future__ import annotations

import re
import shutil

from .. import log, paths
from ..config import load_worker_config
from ..github import GithubTracker, gh_available
from ..services.errors import DependencyMissingError, ValidationFailedError
from ..worker.events import LifecycleNotifier
from ..worker.lock import RepoLock
from ..worker.loop import WorkerLoop
from ..worker.sandbox import DockerSandbox
from ..worker.state import FileStateStore

_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

_OVERRIDE_KEYS = ("batch_size", "poll_interval", "timeout", "image", "work_label")


def validate_repo(value: object) -> str:
    repo = str(value or "").strip()
    if not _REPO_RE.match(repo):
        raise ValidationFailedError(
            f"invalid repository {repo!r}", recovery_hint="expected OWNER/REPO"
        )
    return repo


def _check_dependencies() -> None:
    if not gh_available():
        raise DependencyMissingError(
            "missing required command: gh",
            recovery_hint="install the GitHub CLI and run 'gh auth login'",
        )
    if shutil.which("docker") is None:
        raise DependencyMissingError(
            "missing required command: docker",
            recovery_hint="install Docker and make sure the daemon is running",
        )


def _overrides(args: object) -> dict[str, object]:
    overrides: dict[str, object] = {
        key: getattr(args, key, None) for key in _OVERRIDE_KEYS
    }
    if getattr(args, "once", False):
        overrides["once"] = True
    return overrides


def start_worker(args: object) -> None:
    """Run the worker loop for one repository until drained."""
    repo = validate_repo(getattr(args, "repo", None))
    _check_dependencies()
    data_dir = paths.sipag_data_dir()
    config = load_worker_config(repo, data_dir=data_dir, overrides=_overrides(args))
    force = bool(getattr(args, "force", False))
    with RepoLock(data_dir, repo, force=force):
        loop = WorkerLoop(
            repo=repo,
            config=config,
            data_dir=data_dir,
            tracker=GithubTracker(),
            sandbox=DockerSandbox(),
            store=FileStateStore(data_dir),
            notifier=LifecycleNotifier.for_data_dir(data_dir),
        )
        cycles = loop.run()
    log.debug(f"worker exiting after {cycles} cycle(s)")
