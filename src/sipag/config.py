"""Worker configuration resolution.

Configuration is an immutable :class:`WorkerConfig` resolved once when the
worker loop starts. Each setting is taken from the first layer that supplies a
valid value, in this order:

1. caller overrides (CLI flags)
2. ``SIPAG_*`` environment variables
3. the per-repository file ``<data_dir>/repos/<owner--repo>/config``
4. the global file ``<data_dir>/config``
5. built-in defaults

Config files hold ``key=value`` lines; blank lines and ``#`` comments are
ignored.

Example:
    >>> from sipag.config import utc_now
    >>> utc_now().endswith("Z")
    True
"""

from __future__ import annotations

import datetime as dt
import os
from collections.abc import Callable, Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from . import log, paths
from .services.errors import ValidationFailedError

MAX_BATCH_SIZE = 5
DEFAULT_IMAGE = "ghcr.io/dorky-robot/sipag-worker:latest"
ENV_PREFIX = "SIPAG_"


class WorkerConfig(BaseModel):
    """Resolved worker settings for one scheduler run."""

    model_config = ConfigDict(frozen=True)

    work_label: str = "approved"
    in_progress_label: str = "in-progress"
    batch_size: int = 1
    poll_interval: int = 120
    timeout: int = 1800
    image: str = DEFAULT_IMAGE
    auto_merge: bool = True
    branch_prefix: str = "sipag/issue-"
    once: bool = False

    @field_validator("batch_size", mode="after")
    @classmethod
    def _clamp_batch_size(cls, value: int) -> int:
        return max(1, min(value, MAX_BATCH_SIZE))

    @field_validator("poll_interval", "timeout", mode="after")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value


def utc_now() -> str:
    """Return the current UTC timestamp in ISO-8601 format.

    Returns:
        UTC timestamp like ``2026-01-18T12:34:56Z``.

    Example:
        >>> timestamp = utc_now()
        >>> timestamp.endswith("Z")
        True
    """
    now = dt.datetime.now(tz=dt.timezone.utc).replace(microsecond=0)
    return now.isoformat().replace("+00:00", "Z")


def format_timestamp(value: dt.datetime) -> str:
    """Render a datetime as a ``Z``-suffixed UTC ISO-8601 string."""
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat().replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: object) -> dt.datetime | None:
    """Parse ISO-8601 timestamps used by GitHub APIs and state records.

    Example:
        >>> parse_timestamp("2026-01-18T12:34:56Z").isoformat()
        '2026-01-18T12:34:56+00:00'
        >>> parse_timestamp("not a date") is None
        True
    """
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    normalized = raw
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = dt.datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _parse_text(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise ValueError("empty value")
    return value


def _parse_int(raw: str) -> int:
    return int(raw.strip())


def _parse_positive_int(raw: str) -> int:
    value = int(raw.strip())
    if value <= 0:
        raise ValueError("must be positive")
    return value


def _parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


_PARSERS: dict[str, Callable[[str], object]] = {
    "work_label": _parse_text,
    "in_progress_label": _parse_text,
    "batch_size": _parse_int,
    "poll_interval": _parse_positive_int,
    "timeout": _parse_positive_int,
    "image": _parse_text,
    "auto_merge": _parse_bool,
    "branch_prefix": _parse_text,
}


def parse_config_file(path: Path) -> dict[str, str]:
    """Parse a ``key=value`` config file.

    Args:
        path: File to read. A missing file yields an empty mapping.

    Returns:
        Raw string values keyed by setting name.

    Example:
        >>> parse_config_file(Path("/nonexistent/sipag/config"))
        {}
    """
    if not path.is_file():
        return {}
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if sep != "=":
            log.debug(f"config {path}: ignoring line without '=': {stripped}")
            continue
        key = key.strip()
        if key not in _PARSERS:
            log.debug(f"config {path}: ignoring unknown key {key}")
            continue
        values[key] = value.strip()
    return values


def _env_layer(environ: Mapping[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for key in _PARSERS:
        raw = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is not None:
            values[key] = raw
    return values


def load_worker_config(
    repo: str | None = None,
    *,
    data_dir: Path | None = None,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkerConfig:
    """Resolve the worker configuration for a repository.

    Args:
        repo: ``owner/name`` slug; enables the per-repository file layer.
        data_dir: Base data directory (defaults to ``paths.sipag_data_dir()``).
        overrides: Caller-supplied values; ``None`` entries are ignored.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Frozen configuration with the batch size clamped to ``[1, 5]``.

    Raises:
        ValidationFailedError: An override is outside its allowed range.
    """
    base_dir = data_dir or paths.sipag_data_dir()
    env = os.environ if environ is None else environ
    layers: list[tuple[str, dict[str, str]]] = [
        ("environment", _env_layer(env)),
    ]
    if repo:
        repo_file = paths.repo_config_path(base_dir, repo)
        layers.append((str(repo_file), parse_config_file(repo_file)))
    global_file = paths.global_config_path(base_dir)
    layers.append((str(global_file), parse_config_file(global_file)))

    resolved: dict[str, object] = {}
    for key, parser in _PARSERS.items():
        for source, layer in layers:
            if key not in layer:
                continue
            try:
                resolved[key] = parser(layer[key])
            except ValueError:
                log.warning(f"config: ignoring invalid {key}={layer[key]!r} from {source}")
                continue
            break

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        resolved[key] = value

    try:
        config = WorkerConfig.model_validate(resolved)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationFailedError(
            f"invalid worker settings: {problems}",
            recovery_hint="check the command-line options",
        ) from exc
    log.debug(
        "config resolved "
        f"work_label={config.work_label} batch_size={config.batch_size} "
        f"poll_interval={config.poll_interval} timeout={config.timeout} image={config.image}"
    )
    return config
