"""Command-line entry point for sipag."""

from __future__ import annotations

from collections.abc import Callable
from types import SimpleNamespace
from typing import Annotated

import typer

from . import __version__
from . import log as sipag_log
from .commands import drain as drain_cmd
from .commands import status as status_module
from .commands import work as work_cmd
from .io import die
from .services.errors import ServiceFailure

app = typer.Typer(
    name="sipag",
    help="Turn labelled GitHub issues into pull requests using sandboxed agents.",
    no_args_is_help=True,
    add_completion=False,
)


def status_cmd(args: SimpleNamespace) -> None:
    status_module.show_status(args)


def _invoke(command: Callable[[SimpleNamespace], None], args: SimpleNamespace) -> None:
    try:
        command(args)
    except ServiceFailure as exc:
        die(exc.describe())
    except KeyboardInterrupt:
        die("interrupted", code=130)


def _validate_log_level(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in sipag_log.LEVEL_NAMES:
        raise typer.BadParameter(f"expected one of: {', '.join(sipag_log.LEVEL_NAMES)}")
    return normalized


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sipag {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            callback=_validate_log_level,
            help="Log verbosity (trace, debug, info, success, warning, error).",
        ),
    ] = None,
    no_color: Annotated[
        bool, typer.Option("--no-color", help="Disable colorized output.")
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version", callback=_version_callback, is_eager=True, help="Show the version."
        ),
    ] = False,
) -> None:
    if log_level is not None:
        sipag_log.set_level(log_level)
    if no_color:
        sipag_log.set_no_color(True)


@app.command("work")
def work(
    repo: Annotated[str, typer.Argument(help="Repository as OWNER/REPO.")],
    once: Annotated[
        bool, typer.Option("--once", help="Run a single cycle and exit.")
    ] = False,
    batch_size: Annotated[
        int | None, typer.Option("--batch-size", help="Concurrent sandboxes per batch (1-5).")
    ] = None,
    poll_interval: Annotated[
        int | None, typer.Option("--poll-interval", help="Seconds between cycles.")
    ] = None,
    timeout: Annotated[
        int | None, typer.Option("--timeout", help="Per-sandbox timeout in seconds.")
    ] = None,
    image: Annotated[
        str | None, typer.Option("--image", help="Sandbox container image.")
    ] = None,
    work_label: Annotated[
        str | None, typer.Option("--work-label", help="Label marking issues ready for work.")
    ] = None,
    force: Annotated[
        bool, typer.Option("--force", help="Replace a worker already running for REPO.")
    ] = False,
) -> None:
    """Poll REPO and dispatch labelled issues to sandboxed agents."""
    args = SimpleNamespace(
        repo=repo,
        once=once,
        batch_size=batch_size,
        poll_interval=poll_interval,
        timeout=timeout,
        image=image,
        work_label=work_label,
        force=force,
    )
    _invoke(work_cmd.start_worker, args)


@app.command("drain")
def drain() -> None:
    """Ask running workers to finish their current batch and exit."""
    _invoke(drain_cmd.request_drain, SimpleNamespace())


@app.command("resume")
def resume() -> None:
    """Clear a pending drain request."""
    _invoke(drain_cmd.clear_drain, SimpleNamespace())


@app.command("status")
def status(
    repo: Annotated[
        str | None, typer.Argument(help="Limit output to OWNER/REPO.")
    ] = None,
    format: Annotated[
        str, typer.Option("--format", help="Output format: table or json.")
    ] = "table",
) -> None:
    """Show task records and drain state."""
    _invoke(status_cmd, SimpleNamespace(repo=repo, format=format))


def main() -> None:
    app()
