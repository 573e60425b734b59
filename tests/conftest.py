"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ralph_loop.loop.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def ralph_home(tmp_path: Path, monkeypatch) -> Path:
    """Point HOME and every RALPH_* storage dir into ``tmp_path``."""

    home = tmp_path / "home"
    home.mkdir()
    for key in list(os.environ):
        if key.startswith("RALPH_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("RALPH_LOG_DIR", str(home / "logs"))
    monkeypatch.setenv("RALPH_PROGRESS_DIR", str(home / "progress"))
    monkeypatch.setenv("RALPH_STATE_DIR", str(home / "state"))
    return home


@pytest.fixture()
def echo_agent_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE
