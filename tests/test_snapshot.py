"""
Tests for snapshot producers.

The external producer is exercised with a fake ``run`` callable so no
package runner is ever spawned.
"""

import shutil
import subprocess
from dataclasses import replace
from pathlib import Path

import pytest

from vendrag.errors import SnapshotError
from vendrag.installer import TEMPLATES_DIR, Installer, Registry
from vendrag.modules import ModuleSelection
from vendrag.upgrade.planner import DiffPlanner, PlanAction, read_text_if_exists
from vendrag.upgrade.snapshot import (
    CurrentSnapshotProducer,
    ExternalSnapshotProducer,
    Snapshot,
    collect_snapshot_files,
    looks_like_unsupported_flag,
    runner_command,
    strip_newer_only_flags,
)


@pytest.fixture
def selection():
    return ModuleSelection(
        install_dir="rag",
        store_adapter="sqlalchemy",
        extractors=("pdf-text-layer",),
        connectors=("notion",),
        batteries=("reranker",),
    )


class FakeRunner:
    """
    Stands in for subprocess.run.

    missing: runner executables that raise FileNotFoundError
    responses: list of (returncode, stdout, stderr) consumed per call;
               the last one repeats
    """

    def __init__(self, missing=(), responses=((0, "", ""),), write_files=True):
        self.missing = set(missing)
        self.responses = list(responses)
        self.write_files = write_files
        self.calls = []

    def __call__(self, cmd, cwd=None, **kwargs):
        self.calls.append((cmd, kwargs))
        if cmd[0] in self.missing:
            raise FileNotFoundError(cmd[0])
        code, stdout, stderr = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if code == 0 and self.write_files:
            self._simulate(cmd, Path(cwd))
        return subprocess.CompletedProcess(cmd, code, stdout, stderr)

    @staticmethod
    def _simulate(cmd, cwd):
        if "init" in cmd:
            install_dir = cmd[cmd.index("--dir") + 1]
            (cwd / install_dir).mkdir(parents=True, exist_ok=True)
            (cwd / install_dir / "__init__.py").write_text("# old core\n")
            (cwd / "vendrag_config.py").write_text("# old config\n")
        elif "add" in cmd:
            name = cmd[cmd.index("add") + 1:][0]
            if name in ("extractor", "battery"):
                name = cmd[cmd.index("add") + 2]
            (cwd / "rag" / f"{name}.py").write_text(f"# {name}\n")


# ============================================================================
# Snapshot
# ============================================================================

class TestSnapshot:

    def test_is_immutable(self):
        snapshot = Snapshot({"a": "1"})

        with pytest.raises(TypeError):
            snapshot["a"] = "2"

    def test_paths_are_posix_and_sorted(self):
        snapshot = Snapshot({"rag\\z.py": "z", "rag/a.py": "a"}, version="0.3.0")

        assert list(snapshot) == ["rag/a.py", "rag/z.py"]
        assert snapshot["rag/z.py"] == "z"
        assert snapshot.version == "0.3.0"
        assert len(snapshot) == 2


class TestCollectSnapshotFiles:

    def test_collects_install_dir_and_config(self, tmp_path):
        (tmp_path / "rag" / "core").mkdir(parents=True)
        (tmp_path / "rag" / "core" / "engine.py").write_text("engine")
        (tmp_path / "vendrag_config.py").write_text("config")
        (tmp_path / "unrelated.py").write_text("not vendored")

        files = collect_snapshot_files(tmp_path, "rag")

        assert files == {"rag/core/engine.py": "engine", "vendrag_config.py": "config"}

    def test_skips_bytecode(self, tmp_path):
        (tmp_path / "rag" / "__pycache__").mkdir(parents=True)
        (tmp_path / "rag" / "__pycache__" / "engine.cpython-312.pyc").write_bytes(b"\x00")
        (tmp_path / "rag" / "engine.py").write_text("engine")

        assert list(collect_snapshot_files(tmp_path, "rag")) == ["rag/engine.py"]

    def test_missing_install_dir(self, tmp_path):
        assert collect_snapshot_files(tmp_path, "rag") == {}

    def test_keeps_line_endings(self, tmp_path):
        (tmp_path / "rag").mkdir()
        (tmp_path / "rag" / "engine.py").write_bytes(b"a\r\nb\r\n")
        (tmp_path / "vendrag_config.py").write_bytes(b"c\r\n")

        files = collect_snapshot_files(tmp_path, "rag")

        assert files == {"rag/engine.py": "a\r\nb\r\n", "vendrag_config.py": "c\r\n"}


# ============================================================================
# Current producer
# ============================================================================

class TestCurrentSnapshotProducer:

    def test_produces_full_file_set(self, selection):
        snapshot = CurrentSnapshotProducer().produce("0.4.0", selection)

        assert "vendrag_config.py" in snapshot
        assert "rag/__init__.py" in snapshot
        assert "rag/core/engine.py" in snapshot
        assert "rag/store/sqlalchemy_store.py" in snapshot
        assert "rag/embedding/litellm.py" in snapshot
        assert "rag/extractors/pdf_text_layer.py" in snapshot
        assert "rag/connectors/notion.py" in snapshot
        assert "rag/batteries/reranker.py" in snapshot
        assert "vendrag.json" not in snapshot

    def test_is_deterministic(self, selection):
        producer = CurrentSnapshotProducer()

        first = producer.produce("0.4.0", selection)
        second = producer.produce("0.4.0", selection)

        assert dict(first) == dict(second)

    def test_scratch_directory_is_removed(self, selection, tmp_path, monkeypatch):
        monkeypatch.setattr("tempfile.tempdir", str(tmp_path))

        CurrentSnapshotProducer().produce("0.4.0", selection)

        assert list(tmp_path.iterdir()) == []

    def test_alias_is_rendered(self):
        selection = ModuleSelection(install_dir="src/app/rag", store_adapter="psycopg", alias_base="app.rag")

        snapshot = CurrentSnapshotProducer().produce("0.4.0", selection)

        assert "from app.rag.store.psycopg_store import PsycopgStore" in snapshot["vendrag_config.py"]

    def test_crlf_templates_plan_as_unchanged_after_init(self, selection, tmp_path):
        templates = tmp_path / "templates"
        shutil.copytree(TEMPLATES_DIR, templates)
        for path in templates.rglob("*.tmpl"):
            path.write_bytes(path.read_bytes().replace(b"\r\n", b"\n").replace(b"\n", b"\r\n"))
        installer = Installer(Registry.load(templates), tool_version="0.4.0")
        project = tmp_path / "app"
        project.mkdir()
        installer.init(project, replace(selection, extractors=(), connectors=(), batteries=()))
        for kind, name in (("extractor", "pdf-text-layer"), ("connector", "notion"), ("battery", "reranker")):
            installer.add(project, kind, name)

        snapshot = CurrentSnapshotProducer(installer).produce("0.4.0", selection)
        plan = DiffPlanner().plan(snapshot, snapshot, [], read_text_if_exists(project))

        assert b"\r\n" in (project / "rag" / "core" / "engine.py").read_bytes()
        assert {item.action for item in plan.items} == {PlanAction.UNCHANGED}


# ============================================================================
# External producer
# ============================================================================

class TestExternalSnapshotProducer:

    def test_runs_init_then_adds(self, settings, selection):
        run = FakeRunner()

        snapshot = ExternalSnapshotProducer(settings, run=run).produce("0.3.0", selection)

        commands = [cmd for cmd, _ in run.calls]
        assert commands[0][:4] == ["uvx", "--from", "vendrag==0.3.0", "vendrag"]
        assert commands[0][4] == "init"
        assert "--provider" in commands[0]
        assert [c[4:6] for c in commands[1:]] == [["add", "extractor"], ["add", "notion"], ["add", "battery"]]
        assert dict(snapshot) == {
            "rag/__init__.py": "# old core\n",
            "rag/notion.py": "# notion\n",
            "rag/pdf-text-layer.py": "# pdf-text-layer\n",
            "rag/reranker.py": "# reranker\n",
            "vendrag_config.py": "# old config\n",
        }
        assert snapshot.version == "0.3.0"

    def test_skips_install_in_scratch_project(self, settings, selection):
        run = FakeRunner()

        ExternalSnapshotProducer(settings, run=run).produce("0.3.0", selection)

        _, kwargs = run.calls[0]
        assert kwargs["env"]["VENDRAG_SKIP_INSTALL"] == "1"
        assert kwargs["timeout"] == 300.0

    def test_falls_back_to_next_runner(self, settings, selection):
        run = FakeRunner(missing={"uvx"})

        ExternalSnapshotProducer(settings, run=run).produce("0.3.0", selection)

        runners = [cmd[0] for cmd, _ in run.calls]
        assert runners[0] == "uvx"
        assert set(runners[1:]) == {"pipx"}
        assert run.calls[1][0][:5] == ["pipx", "run", "--spec", "vendrag==0.3.0", "vendrag"]

    def test_no_runner_lists_candidates(self, settings, selection):
        run = FakeRunner(missing={"uvx", "pipx"})

        with pytest.raises(SnapshotError, match="Tried: uvx, pipx"):
            ExternalSnapshotProducer(settings, run=run).produce("0.3.0", selection)

    def test_environment_runner_comes_first(self, settings, monkeypatch):
        monkeypatch.setenv("PIPX_HOME", "/opt/pipx")

        assert ExternalSnapshotProducer(settings).candidates() == ["pipx", "uvx"]

    def test_uv_environment_is_not_duplicated(self, settings, monkeypatch):
        monkeypatch.setenv("UV", "/usr/bin/uv")

        assert ExternalSnapshotProducer(settings).candidates() == ["uvx", "pipx"]

    def test_retries_without_newer_flags(self, settings):
        selection = ModuleSelection(install_dir="rag", store_adapter="sqlalchemy")
        run = FakeRunner(responses=[
            (2, "", "vendrag init: error: unrecognized arguments: --provider litellm"),
            (0, "", ""),
        ])

        ExternalSnapshotProducer(settings, run=run).produce("0.2.0", selection)

        first, second = run.calls[0][0], run.calls[1][0]
        assert "--provider" in first
        assert "--provider" not in second
        assert "litellm" not in second
        assert second[4:] == ["init", "--yes", "--store", "sqlalchemy", "--dir", "rag", "--alias", "rag", "--no-install"]

    def test_persistent_failure_surfaces_output(self, settings):
        selection = ModuleSelection(install_dir="rag", store_adapter="sqlalchemy")
        run = FakeRunner(responses=[
            (2, "", "error: unrecognized arguments: --provider litellm"),
            (1, "partial output", "Traceback: boom"),
        ])

        with pytest.raises(SnapshotError) as exc_info:
            ExternalSnapshotProducer(settings, run=run).produce("0.2.0", selection)

        message = str(exc_info.value)
        assert "exit code: 1" in message
        assert "partial output" in message
        assert "Traceback: boom" in message
        assert len(run.calls) == 2

    def test_other_failures_are_not_retried(self, settings):
        selection = ModuleSelection(install_dir="rag", store_adapter="sqlalchemy")
        run = FakeRunner(responses=[(1, "", "No matching distribution found for vendrag==9.9.9")])

        with pytest.raises(SnapshotError, match="No matching distribution"):
            ExternalSnapshotProducer(settings, run=run).produce("9.9.9", selection)

        assert len(run.calls) == 1

    def test_timeout_is_reported(self, settings):
        selection = ModuleSelection(install_dir="rag", store_adapter="sqlalchemy")

        def run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output=b"resolving...")

        with pytest.raises(SnapshotError, match="Timed out after 300s"):
            ExternalSnapshotProducer(settings, run=run).produce("0.3.0", selection)

    def test_version_is_required(self, settings, selection):
        with pytest.raises(SnapshotError):
            ExternalSnapshotProducer(settings, run=FakeRunner()).produce("", selection)


class TestFlagHelpers:

    def test_strip_newer_only_flags(self):
        args = ["init", "--yes", "--provider", "openai", "--no-install", "--quiet"]
        assert strip_newer_only_flags(args) == ["init", "--yes", "--no-install"]

    @pytest.mark.parametrize("output", [
        "error: unrecognized arguments: --quiet",
        "Error: No such option: --provider",
        "unknown option '--provider'",
    ])
    def test_unsupported_flag_output(self, output):
        assert looks_like_unsupported_flag(output)

    def test_ordinary_failure_is_not_a_flag_problem(self):
        assert not looks_like_unsupported_flag("ModuleNotFoundError: No module named 'yaml'")

    def test_unknown_runner(self):
        with pytest.raises(SnapshotError):
            runner_command("npx", "vendrag", "1.0.0")
