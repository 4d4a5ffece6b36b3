"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parent.parent / "src"


@pytest.fixture()
def echo_agent_env(monkeypatch) -> dict[str, str]:
    """Environment for echo agent subprocesses that can import the package from ``src``."""

    pythonpath = os.pathsep.join(filter(None, [str(SRC_DIR), os.environ.get("PYTHONPATH")]))
    monkeypatch.setenv("PYTHONPATH", pythonpath)
    for name in list(os.environ):
        if name.startswith("ECHO_AGENT_"):
            monkeypatch.delenv(name)
    return os.environ.copy()


@pytest.fixture()
def clean_env(monkeypatch, tmp_path) -> Path:
    """Run from an empty directory with no runner-related environment variables."""

    for name in list(os.environ):
        if name.startswith(("AGENT_TASKFLOW_", "OPENAI_")):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path
