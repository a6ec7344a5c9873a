"""Fire-and-forget lifecycle notifications.

Every event is appended to the JSONL event log and handed to an optional
executable hook under ``<data_dir>/hooks``. Neither path may block or fail the
worker loop.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .. import exec as exec_util
from .. import log, paths
from ..config import utc_now

TASK_STARTED = "task.started"
TASK_COMPLETED = "task.completed"
TASK_FAILED = "task.failed"
PR_ITERATION_STARTED = "pr-iteration.started"
PR_ITERATION_DONE = "pr-iteration.done"
PR_AUTO_MERGED = "pr.auto-merged"

EVENT_HOOKS = {
    TASK_STARTED: "on-worker-started",
    TASK_COMPLETED: "on-worker-completed",
    TASK_FAILED: "on-worker-failed",
    PR_ITERATION_STARTED: "on-pr-iteration-started",
    PR_ITERATION_DONE: "on-pr-iteration-done",
    PR_AUTO_MERGED: "on-pr-merged",
}


def hook_env(event: str, payload: Mapping[str, object]) -> dict[str, str]:
    """Render an event payload as ``SIPAG_*`` variables.

    Example:
        >>> hook_env("task.failed", {"issue": 7, "pr_num": None})
        {'SIPAG_EVENT': 'task.failed', 'SIPAG_ISSUE': '7'}
    """
    env = {"SIPAG_EVENT": event}
    for key, value in payload.items():
        if value is None:
            continue
        env[f"SIPAG_{key.upper()}"] = str(value)
    return env


@dataclass
class EventLog:
    """Append-only JSONL log of lifecycle events."""

    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def append(self, event: str, payload: Mapping[str, object]) -> None:
        record = {"ts": utc_now(), "event": event, **payload}
        line = json.dumps(record, default=str)
        with self._lock:
            try:
                paths.ensure_dir(self.path.parent)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
                    handle.write("\n")
            except OSError as exc:
                log.warning(f"events: failed to append to {self.path}: {exc}")


@dataclass(frozen=True)
class HookRunner:
    """Spawn user hooks detached from the worker process."""

    hooks_dir: Path

    def hook_path(self, event: str) -> Path | None:
        name = EVENT_HOOKS.get(event)
        if name is None:
            return None
        return self.hooks_dir / name

    def fire(self, event: str, payload: Mapping[str, object]) -> bool:
        """Start the hook for ``event`` if one is installed.

        Returns:
            ``True`` when a hook process was spawned.
        """
        path = self.hook_path(event)
        if path is None or not path.is_file() or not os.access(path, os.X_OK):
            return False
        env = dict(os.environ)
        env.update(hook_env(event, payload))
        spawned = exec_util.run_detached([str(path)], env=env)
        if not spawned:
            log.warning(f"hooks: failed to start {path}")
        return spawned


@dataclass(frozen=True)
class LifecycleNotifier:
    """Default notifier: event log plus hooks."""

    event_log: EventLog
    hooks: HookRunner

    @classmethod
    def for_data_dir(cls, data_dir: Path) -> LifecycleNotifier:
        return cls(
            event_log=EventLog(paths.event_log_path(data_dir)),
            hooks=HookRunner(paths.hooks_dir(data_dir)),
        )

    def emit(self, event: str, payload: Mapping[str, object]) -> None:
        log.debug(f"event {event} {dict(payload)}")
        self.event_log.append(event, payload)
        self.hooks.fire(event, payload)
