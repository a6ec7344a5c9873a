# ruff: noqa: E402

import os
import sys
from pathlib import Path

import pytest
from _pytest.doctest import DoctestModule

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import sipag.github as github
import sipag.log as sipag_log

DOCTEST_MODULES = {
    ROOT / "src" / "sipag" / "__init__.py",
    ROOT / "src" / "sipag" / "config.py",
    ROOT / "src" / "sipag" / "io.py",
    ROOT / "src" / "sipag" / "paths.py",
    ROOT / "src" / "sipag" / "services" / "errors.py",
    ROOT / "src" / "sipag" / "worker" / "decision.py",
    ROOT / "src" / "sipag" / "worker" / "events.py",
    ROOT / "src" / "sipag" / "worker" / "naming.py",
    ROOT / "src" / "sipag" / "worker" / "prompts.py",
}


@pytest.fixture(autouse=True)
def _isolated_sipag_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("SIPAG_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SIPAG_DIR", str(tmp_path / "sipag-data"))
    monkeypatch.setattr(sipag_log, "_configured_level", None)
    monkeypatch.setattr(sipag_log, "_no_color", False)
    github.clear_runtime_cache()


def pytest_collect_file(
    parent: pytest.Collector, file_path: Path
) -> DoctestModule | None:
    path = file_path if isinstance(file_path, Path) else Path(str(file_path))
    if path in DOCTEST_MODULES:
        return DoctestModule.from_parent(parent, path=path)
    return None
