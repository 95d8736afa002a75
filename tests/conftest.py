"""Shared fixtures: isolated host settings and scripted external plugins."""

import json
import logging
import os
import shlex
import stat
import sys
from pathlib import Path

import pytest

MOCK_PLUGIN = Path(__file__).parent / "fixtures" / "mock_plugin.py"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep every test away from the real user config and CI flags."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in ("METAREPO_PLUGIN_TIMEOUT", "METAREPO_PLUGINS_DIR",
                 "METAREPO_EXPERIMENTAL", "METAREPO_NON_INTERACTIVE", "CI"):
        monkeypatch.delenv(name, raising=False)

    # cli._setup_logger detaches the package logger from the root logger
    logger = logging.getLogger("metarepo")
    logger.handlers[:] = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


class MockPlugin:
    def __init__(self, name: str, path: Path, spy: Path):
        self.name = name
        self.path = path
        self.spy = spy

    def events(self):
        if not self.spy.exists():
            return []
        return [json.loads(line) for line in self.spy.read_text().splitlines() if line.strip()]

    def received(self):
        return [e for e in self.events() if e["event"] == "received"]

    def received_types(self):
        return [e["type"] for e in self.received()]


@pytest.fixture
def make_plugin(tmp_path):
    """Write an executable wrapper around tests/fixtures/mock_plugin.py."""
    if os.name == "nt":
        pytest.skip("shell wrappers need a POSIX shell")

    bin_dir = tmp_path / "plugins-bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name, mode="ok", reported_name=None, experimental=False, filename=None):
        spy = tmp_path / f"{name}.spy.jsonl"
        cmd = [sys.executable, str(MOCK_PLUGIN), "--name", name, "--mode", mode, "--spy", str(spy)]
        if reported_name:
            cmd += ["--reported-name", reported_name]
        if experimental:
            cmd.append("--experimental")

        path = bin_dir / (filename or f"metarepo-plugin-{name}")
        path.write_text("#!/bin/sh\nexec " + " ".join(shlex.quote(c) for c in cmd) + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return MockPlugin(name, path, spy)

    return _make
