"""Persisted per-task lifecycle records.

One JSON file per (repository, issue) key lives under
``<data_dir>/workers/<owner--repo>--<issue>.json``. The file is the single
source of truth for a task's lifecycle status; labels on the tracker only
mirror it.
"""

from __future__ import annotations

import datetime as dt
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .. import log, paths
from ..config import format_timestamp, parse_timestamp
from ..services.errors import IoFailedError, UnexpectedStateError

WorkerStatus = Literal["enqueued", "running", "recovering", "done", "failed"]

WORKER_STATUSES: tuple[str, ...] = get_args(WorkerStatus)
ACTIVE_STATUSES = frozenset({"enqueued", "running", "recovering"})
TERMINAL_STATUSES = frozenset({"done", "failed"})


class WorkerState(BaseModel):
    """Lifecycle record for one task."""

    model_config = ConfigDict(extra="ignore")

    repo: str
    issue_num: int
    issue_title: str = ""
    branch: str = ""
    container_name: str = ""
    pr_num: int | None = None
    pr_url: str | None = None
    status: WorkerStatus = "enqueued"
    started_at: str | None = None
    ended_at: str | None = None
    duration_s: int | None = None
    exit_code: int | None = None
    log_path: str | None = None

    @field_validator("repo", mode="before")
    @classmethod
    def _require_repo(cls, value: object) -> object:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("missing repo")
        return value.strip()

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> str:
        # Unknown statuses become failed so the task is retried, not stuck.
        if isinstance(value, str) and value.strip().lower() in WORKER_STATUSES:
            return value.strip().lower()
        return "failed"

    @field_validator("issue_title", "branch", "container_name", mode="before")
    @classmethod
    def _default_text(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def parse_worker_state(payload: object, *, source: str) -> WorkerState:
    """Validate a raw record payload.

    Raises:
        UnexpectedStateError: The payload lacks ``repo``/``issue_num`` or is
            not an object.
    """
    try:
        return WorkerState.model_validate(payload)
    except ValidationError as exc:
        raise UnexpectedStateError(f"invalid worker state ({source}): {exc}") from exc


def _utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


class FileStateStore:
    """File-backed state store with atomic per-record writes.

    No locking is provided: one scheduler per repository is the only writer,
    and within a cycle each key is written by a single dispatcher thread.
    """

    def __init__(
        self, data_dir: Path, *, now: Callable[[], dt.datetime] = _utc_now
    ) -> None:
        self.workers_dir = paths.workers_dir(data_dir)
        self._now = now

    def path_for(self, repo: str, issue_num: int) -> Path:
        return self.workers_dir / f"{paths.repo_slug(repo)}--{issue_num}.json"

    def read(self, repo: str, issue_num: int) -> WorkerState | None:
        """Return the record for a key, or ``None`` when absent.

        Raises:
            IoFailedError: The file exists but cannot be read or decoded.
            UnexpectedStateError: The file decodes but is not a valid record.
        """
        path = self.path_for(repo, issue_num)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise IoFailedError(f"failed to read {path}: {exc}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise IoFailedError(f"corrupt worker state {path}: {exc}") from exc
        return parse_worker_state(payload, source=str(path))

    def save(self, state: WorkerState) -> WorkerState:
        """Persist a record as-is using write-to-temp then rename."""
        paths.ensure_dir(self.workers_dir)
        path = self.path_for(state.repo, state.issue_num)
        tmp_path = path.with_suffix(".json.tmp")
        content = json.dumps(state.model_dump(), indent=2)
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        return state

    def write(
        self,
        repo: str,
        issue_num: int,
        status: WorkerStatus,
        *,
        exit_code: int | None = None,
        **fields: object,
    ) -> WorkerState:
        """Create or update the record for a key.

        ``started_at`` is preserved across updates of the same attempt and
        reset when a task is enqueued again. ``ended_at``, ``duration_s`` and
        ``exit_code`` are only set for terminal statuses.

        Args:
            repo: Repository ``owner/name``.
            issue_num: Task id.
            status: New lifecycle status.
            exit_code: Sandbox exit code (terminal statuses only).
            **fields: Other record fields to update; ``None`` values keep the
                existing value.

        Returns:
            The persisted record.
        """
        try:
            existing = self.read(repo, issue_num)
        except (IoFailedError, UnexpectedStateError) as exc:
            log.warning(f"state: overwriting unreadable record for {repo}#{issue_num}: {exc}")
            existing = None
        data: dict[str, object] = (
            existing.model_dump() if existing else {"repo": repo, "issue_num": issue_num}
        )
        for key, value in fields.items():
            if key not in WorkerState.model_fields:
                raise TypeError(f"unknown worker state field: {key}")
            if value is not None:
                data[key] = value
        now = self._now()
        new_attempt = status == "enqueued" or existing is None
        if new_attempt and "started_at" not in fields:
            data["started_at"] = format_timestamp(now)
        elif not data.get("started_at"):
            data["started_at"] = format_timestamp(now)
        data["status"] = status
        if status in TERMINAL_STATUSES:
            data["ended_at"] = format_timestamp(now)
            started = parse_timestamp(data.get("started_at"))
            data["duration_s"] = (
                max(int((now - started).total_seconds()), 0) if started else None
            )
            data["exit_code"] = exit_code
        else:
            data["ended_at"] = None
            data["duration_s"] = None
            data["exit_code"] = None
        state = WorkerState.model_validate(data)
        return self.save(state)

    def list_all(self) -> list[WorkerState]:
        """Return every readable record, sorted by repository and issue.

        Invalid files are skipped with a warning.
        """
        if not self.workers_dir.exists():
            return []
        records: list[WorkerState] = []
        for path in sorted(self.workers_dir.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                records.append(parse_worker_state(payload, source=str(path)))
            except (OSError, json.JSONDecodeError, UnexpectedStateError) as exc:
                log.warning(f"state: skipping unreadable record {path.name}: {exc}")
        records.sort(key=lambda record: (record.repo, record.issue_num))
        return records

    def list_active(self, repo: str | None = None) -> list[WorkerState]:
        return [
            record
            for record in self.list_all()
            if record.is_active and (repo is None or record.repo == repo)
        ]

