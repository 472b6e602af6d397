"""Shared fixtures for vendrag tests."""

import json
from pathlib import Path

import pytest

from vendrag.settings import Settings


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path_factory, monkeypatch):
    """Keep tests away from the real ~/.vendrag and runner environment."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setattr(Settings, "CONFIG_PATH", home / ".vendrag" / "config.yaml")
    for var in ("VENDRAG_CONFIG", "VENDRAG_SKIP_INSTALL", "UV", "PIPX_HOME", "PIPX_BIN_DIR"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def settings():
    return Settings(Settings.get_default())


class CannedProducer:
    """Snapshot producer returning fixed file sets per version."""

    def __init__(self, snapshots: dict):
        self.snapshots = snapshots
        self.calls = []

    def produce(self, version, selection):
        from vendrag.upgrade.snapshot import Snapshot

        self.calls.append((version, selection))
        return Snapshot(self.snapshots.get(version, {}), version=version)


@pytest.fixture
def canned_producer():
    return CannedProducer


def write_project(root: Path, state: dict, files: dict = None) -> Path:
    """Create a project with vendrag.json and the given files."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "vendrag.json").write_text(json.dumps(state, indent=2) + "\n")
    for rel_path, content in (files or {}).items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def make_project():
    return write_project
