"""Per-repository PID lock enforcing one scheduler per repository."""

from __future__ import annotations

import os
import signal
import time
from pathlib import Path
from types import TracebackType

from .. import log, paths
from ..services.errors import PolicyBlockedError


def _read_pid(path: Path) -> int | None:
    if not path.exists():
        return None
    try:
        value = int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return value if value > 0 else None


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RepoLock:
    """PID file at ``<data_dir>/locks/<owner--repo>.lock``.

    Stale files left by dead processes are overwritten. With ``force`` a live
    holder is sent SIGTERM first.
    """

    def __init__(self, data_dir: Path, repo: str, *, force: bool = False) -> None:
        self.repo = repo
        self.path = paths.lock_path(data_dir, repo)
        self.force = force
        self._held = False

    def holder(self) -> int | None:
        pid = _read_pid(self.path)
        if pid is None or pid == os.getpid() or not _pid_running(pid):
            return None
        return pid

    def acquire(self) -> RepoLock:
        pid = self.holder()
        if pid is not None:
            if not self.force:
                raise PolicyBlockedError(
                    f"another sipag worker (PID {pid}) is already running for {self.repo}",
                    recovery_hint="stop it first or pass --force",
                )
            log.warning(f"lock: terminating existing worker PID {pid} for {self.repo}")
            os.kill(pid, signal.SIGTERM)
            time.sleep(0.5)
        paths.ensure_dir(self.path.parent)
        self.path.write_text(f"{os.getpid()}\n", encoding="utf-8")
        self._held = True
        return self

    def release(self) -> None:
        if not self._held:
            return
        if _read_pid(self.path) == os.getpid():
            self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> RepoLock:
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
