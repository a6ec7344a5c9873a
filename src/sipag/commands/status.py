"""Implementation for the ``sipag status`` command."""

from __future__ import annotations

import json

from rich import box
from rich.console import Console
from rich.table import Table

from .. import paths
from ..io import die, say
from ..worker.drain import DrainSignal
from ..worker.state import FileStateStore, WorkerState
from .work import validate_repo

_FORMATS = {"table", "json"}

_STATUS_STYLES = {
    "enqueued": "cyan",
    "running": "yellow",
    "recovering": "magenta",
    "done": "green",
    "failed": "red",
}


def _render_table(records: list[WorkerState]) -> Table:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("Repo")
    table.add_column("Issue", justify="right")
    table.add_column("Status")
    table.add_column("PR", justify="right")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Title", overflow="ellipsis")
    for record in records:
        style = _STATUS_STYLES.get(record.status, "")
        table.add_row(
            record.repo,
            f"#{record.issue_num}",
            f"[{style}]{record.status}[/{style}]" if style else record.status,
            f"#{record.pr_num}" if record.pr_num else "-",
            record.started_at or "-",
            f"{record.duration_s}s" if record.duration_s is not None else "-",
            record.issue_title,
        )
    return table


def show_status(args: object) -> None:
    """Show task records and whether a drain is in effect."""
    format_value = str(getattr(args, "format", "table") or "table").lower()
    if format_value not in _FORMATS:
        die(f"unsupported format: {format_value}")
    repo_arg = getattr(args, "repo", None)
    repo = validate_repo(repo_arg) if repo_arg else None

    data_dir = paths.sipag_data_dir()
    records = [
        record
        for record in FileStateStore(data_dir).list_all()
        if repo is None or record.repo == repo
    ]
    draining = DrainSignal(data_dir).is_set()

    if format_value == "json":
        payload = {
            "draining": draining,
            "workers": [record.model_dump() for record in records],
        }
        say(json.dumps(payload, indent=2))
        return

    if draining:
        say("Drain in effect: workers will not pick up new work.")
    if not records:
        say("No worker records.")
        return
    Console(soft_wrap=True).print(_render_table(records))
