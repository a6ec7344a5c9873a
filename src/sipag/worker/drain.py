"""File-based drain signal shared by the CLI and the worker loop."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .. import paths


@dataclass(frozen=True)
class DrainSignal:
    """Presence of ``<data_dir>/drain`` asks workers to stop taking new work."""

    data_dir: Path

    @property
    def path(self) -> Path:
        return paths.drain_path(self.data_dir)

    def is_set(self) -> bool:
        return self.path.exists()

    def set(self) -> None:
        paths.ensure_dir(self.data_dir)
        self.path.touch()

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
