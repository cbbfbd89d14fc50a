from __future__ import annotations

import stat
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from claude_telegram.config import Settings
from claude_telegram.session import SessionStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("CLAUDE_TELEGRAM_TOKEN", "CLAUDE_TELEGRAM_WORKSPACE", "CLAUDE_TELEGRAM_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(workspace: Path) -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {"token": "123:abc", "workspace": workspace, "whitelist": [1]}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def sessions(workspace: Path) -> SessionStore:
    return SessionStore(workspace)


@pytest.fixture
def fake_claude(tmp_path: Path) -> Callable[[str], str]:
    """Write an executable stand-in for the Claude CLI and return its path."""

    counter = {"n": 0}

    def _write(body: str) -> str:
        counter["n"] += 1
        script = tmp_path / f"fake_claude_{counter['n']}.py"
        script.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return _write
