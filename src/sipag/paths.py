"""Path helpers for locating sipag data directories and files."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir

SIPAG_APP_NAME = "sipag"
SIPAG_DIR_ENV = "SIPAG_DIR"
WORKERS_DIRNAME = "workers"
LOGS_DIRNAME = "logs"
HOOKS_DIRNAME = "hooks"
LOCKS_DIRNAME = "locks"
REPOS_DIRNAME = "repos"
CONFIG_FILENAME = "config"
DRAIN_FILENAME = "drain"
EVENT_LOG_FILENAME = "worker.log"


def sipag_data_dir() -> Path:
    """Return the base sipag data directory.

    ``SIPAG_DIR`` overrides the platform default.

    Returns:
        Path to the sipag data directory.

    Example:
        >>> isinstance(sipag_data_dir(), Path)
        True
    """
    override = os.environ.get(SIPAG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(user_data_dir(SIPAG_APP_NAME))


def repo_slug(repo: str) -> str:
    """Return the filesystem-safe form of an ``owner/name`` repository.

    Example:
        >>> repo_slug("acme/widgets")
        'acme--widgets'
    """
    return repo.replace("/", "--")


def workers_dir(data_dir: Path) -> Path:
    """Return the directory holding per-task state records."""
    return data_dir / WORKERS_DIRNAME


def logs_dir(data_dir: Path) -> Path:
    return data_dir / LOGS_DIRNAME


def hooks_dir(data_dir: Path) -> Path:
    return data_dir / HOOKS_DIRNAME


def locks_dir(data_dir: Path) -> Path:
    return data_dir / LOCKS_DIRNAME


def global_config_path(data_dir: Path) -> Path:
    """Return the global ``key=value`` config file path.

    Example:
        >>> global_config_path(Path("/tmp/sipag")).as_posix()
        '/tmp/sipag/config'
    """
    return data_dir / CONFIG_FILENAME


def repo_config_path(data_dir: Path, repo: str) -> Path:
    """Return the per-repository config file path.

    Example:
        >>> repo_config_path(Path("/tmp/sipag"), "acme/widgets").as_posix()
        '/tmp/sipag/repos/acme--widgets/config'
    """
    return data_dir / REPOS_DIRNAME / repo_slug(repo) / CONFIG_FILENAME


def drain_path(data_dir: Path) -> Path:
    return data_dir / DRAIN_FILENAME


def event_log_path(data_dir: Path) -> Path:
    return logs_dir(data_dir) / EVENT_LOG_FILENAME


def task_log_path(data_dir: Path, repo: str, issue_num: int) -> Path:
    """Return the sandbox output log path for a task.

    Example:
        >>> task_log_path(Path("/tmp/sipag"), "acme/widgets", 7).name
        'acme--widgets--7.log'
    """
    return logs_dir(data_dir) / f"{repo_slug(repo)}--{issue_num}.log"


def lock_path(data_dir: Path, repo: str) -> Path:
    return locks_dir(data_dir) / f"{repo_slug(repo)}.lock"


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) when missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path
