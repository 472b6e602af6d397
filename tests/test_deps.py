"""
Tests for dependency reconciliation and pyproject.toml I/O.
"""

import subprocess
import tomllib
from unittest.mock import patch

import pytest

from vendrag.errors import DependencyWriteError
from vendrag.modules import ModuleSelection
from vendrag.upgrade.deps import (
    DependencyKind,
    DependencyReconciler,
    canonicalize_name,
    detect_package_manager,
    install_command,
    install_dependencies,
    read_manifest,
    required_dependencies,
    requirement_name,
    write_manifest,
)


@pytest.fixture
def selection():
    return ModuleSelection(
        install_dir="rag",
        store_adapter="sqlalchemy",
        embedding_provider="openai",
        extractors=("pdf-text-layer",),
        connectors=("notion",),
        batteries=("debug",),
    )


class TestNames:

    @pytest.mark.parametrize("name,expected", [
        ("SQLAlchemy", "sqlalchemy"),
        ("psycopg_pool", "psycopg-pool"),
        ("zope.interface", "zope-interface"),
        ("Notion__Client", "notion-client"),
    ])
    def test_canonicalize(self, name, expected):
        assert canonicalize_name(name) == expected

    @pytest.mark.parametrize("requirement,expected", [
        ("sqlalchemy>=2.0", "sqlalchemy"),
        ("psycopg[binary]>=3.2", "psycopg"),
        ("Django==5.1 ; python_version >= '3.11'", "django"),
        ("pgvector", "pgvector"),
    ])
    def test_requirement_name(self, requirement, expected):
        assert requirement_name(requirement) == expected


class TestRequiredDependencies:

    def test_union_of_selection(self, selection):
        deps, dev_deps = required_dependencies(selection)

        assert {"litellm", "sqlalchemy", "psycopg[binary]", "pgvector"} <= set(deps)
        assert "openai" in deps
        assert "pypdf" in deps
        assert "notion-client" in deps
        assert "websockets" in deps
        assert dev_deps == {}

    def test_django_has_dev_deps(self):
        deps, dev_deps = required_dependencies(ModuleSelection(install_dir="rag", store_adapter="django"))

        assert "django" in deps
        assert "django-stubs" in dev_deps

    def test_modules_without_deps(self):
        deps, _ = required_dependencies(ModuleSelection(
            install_dir="rag", store_adapter="psycopg", extractors=("file-text",), batteries=("eval",),
        ))

        assert set(deps) == {"litellm", "psycopg[binary]", "psycopg-pool"}


class TestReconcile:

    def test_adds_missing_to_empty_manifest(self, selection):
        manifest, changes = DependencyReconciler().reconcile({}, selection)

        names = [c.name for c in changes]
        assert names == sorted(names)
        assert "litellm" in names
        assert all(c.kind == DependencyKind.RUNTIME for c in changes)
        assert all(c.action == "add" for c in changes)
        assert "litellm>=1.50" in manifest["project"]["dependencies"]

    def test_never_overwrites_pinned_version(self, selection):
        manifest = {"project": {"name": "app", "dependencies": ["SQLAlchemy==1.4.54", "litellm"]}}

        updated, changes = DependencyReconciler().reconcile(manifest, selection)

        deps = updated["project"]["dependencies"]
        assert deps[:2] == ["SQLAlchemy==1.4.54", "litellm"]
        assert not any(d.startswith("sqlalchemy") for d in deps)
        assert "sqlalchemy" not in [c.name for c in changes]
        assert "litellm" not in [c.name for c in changes]

    def test_dev_entry_blocks_runtime_add(self, selection):
        manifest = {
            "project": {"dependencies": []},
            "dependency-groups": {"dev": ["websockets>=12"]},
        }

        updated, changes = DependencyReconciler().reconcile(manifest, selection)

        assert "websockets" not in [c.name for c in changes]
        assert updated["dependency-groups"]["dev"] == ["websockets>=12"]

    def test_never_removes_entries(self, selection):
        manifest = {"project": {"dependencies": ["requests>=2"]}, "tool": {"ruff": {"line-length": 100}}}

        updated, _ = DependencyReconciler().reconcile(manifest, selection)

        assert "requests>=2" in updated["project"]["dependencies"]
        assert updated["tool"] == {"ruff": {"line-length": 100}}

    def test_satisfied_manifest_is_unchanged(self, selection):
        first, _ = DependencyReconciler().reconcile({}, selection)

        second, changes = DependencyReconciler().reconcile(first, selection)

        assert changes == []
        assert second is first

    def test_dev_deps_go_to_dependency_group(self):
        selection = ModuleSelection(install_dir="rag", store_adapter="django")

        updated, changes = DependencyReconciler().reconcile({"project": {"dependencies": []}}, selection)

        assert updated["dependency-groups"]["dev"] == ["django-stubs>=5.0"]
        assert [c for c in changes if c.kind == DependencyKind.DEV][0].name == "django-stubs"

    def test_input_manifest_not_mutated(self, selection):
        manifest = {"project": {"dependencies": ["requests"]}}

        DependencyReconciler().reconcile(manifest, selection)

        assert manifest == {"project": {"dependencies": ["requests"]}}


class TestManifestIO:

    def test_missing_manifest_reads_empty(self, tmp_path):
        assert read_manifest(tmp_path) == {}

    def test_invalid_toml_raises(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project\nname = ")

        with pytest.raises(DependencyWriteError):
            read_manifest(tmp_path)

    def test_write_then_read(self, tmp_path, selection):
        manifest, _ = DependencyReconciler().reconcile({"project": {"name": "app"}}, selection)

        write_manifest(tmp_path, manifest)

        with open(tmp_path / "pyproject.toml", "rb") as f:
            assert tomllib.load(f) == manifest.unwrap()

    def test_comments_and_layout_survive(self, tmp_path, selection):
        original = (
            "# my project\n"
            "[project]\n"
            "name = \"app\"  # keep me\n"
            "dependencies = [\n"
            "    \"requests>=2\",\n"
            "]\n"
            "\n"
            "[tool.ruff]\n"
            "line-length = 100  # team rule\n"
        )
        (tmp_path / "pyproject.toml").write_text(original)

        manifest, changes = DependencyReconciler().reconcile(read_manifest(tmp_path), selection)
        write_manifest(tmp_path, manifest)

        text = (tmp_path / "pyproject.toml").read_text()
        assert changes
        assert text.startswith("# my project\n[project]\nname = \"app\"  # keep me\n")
        assert text.endswith("[tool.ruff]\nline-length = 100  # team rule\n")
        with open(tmp_path / "pyproject.toml", "rb") as f:
            deps = tomllib.load(f)["project"]["dependencies"]
        assert deps[0] == "requests>=2"
        assert deps[1:] == [c.requirement for c in changes]

    def test_parsed_manifest_is_not_mutated(self, tmp_path, selection):
        (tmp_path / "pyproject.toml").write_text("[project]\ndependencies = []\n")
        manifest = read_manifest(tmp_path)

        DependencyReconciler().reconcile(manifest, selection)

        assert list(manifest["project"]["dependencies"]) == []

    def test_unwritable_manifest_raises(self, tmp_path):
        (tmp_path / "pyproject.toml").mkdir()

        with pytest.raises(DependencyWriteError):
            write_manifest(tmp_path, {"project": {}})


class TestInstall:

    @pytest.mark.parametrize("lock_file,manager", [
        ("uv.lock", "uv"),
        ("poetry.lock", "poetry"),
        ("pdm.lock", "pdm"),
    ])
    def test_detects_from_lock_file(self, tmp_path, lock_file, manager):
        (tmp_path / lock_file).write_text("")
        assert detect_package_manager(tmp_path) == manager

    def test_defaults_to_pip(self, tmp_path):
        assert detect_package_manager(tmp_path) == "pip"
        assert install_command("pip") == "pip install -e ."

    def test_runs_detected_manager(self, tmp_path):
        (tmp_path / "uv.lock").write_text("")

        with patch("vendrag.upgrade.deps.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess(["uv"], 0)
            ran = install_dependencies(tmp_path, timeout=10)

        assert ran == "uv sync"
        assert mock_run.call_args[0][0] == ["uv", "sync"]

    def test_failure_raises(self, tmp_path):
        with patch("vendrag.upgrade.deps.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess(["pip"], 1)
            with pytest.raises(DependencyWriteError, match="Exit code: 1"):
                install_dependencies(tmp_path)

    def test_missing_manager_raises(self, tmp_path):
        (tmp_path / "poetry.lock").write_text("")

        with patch("vendrag.upgrade.deps.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(DependencyWriteError, match="poetry not found"):
                install_dependencies(tmp_path)

    def test_timeout_raises(self, tmp_path):
        with patch(
            "vendrag.upgrade.deps.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="pip", timeout=5),
        ):
            with pytest.raises(DependencyWriteError, match="timed out"):
                install_dependencies(tmp_path, timeout=5)
