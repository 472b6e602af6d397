"""
Snapshots of vendored sources.

A snapshot is the complete file set a given tool version would vendor for
a module selection: every file under the install dir plus the top-level
config file. Upgrades diff two snapshots (the version the project was
installed from, and the running version) against the working tree.

Producers:
- CurrentSnapshotProducer: runs this package's installer in-process
- ExternalSnapshotProducer: runs a published version through a package
  runner (uvx, pipx) as a subprocess

Both work in a scratch directory that is removed on every exit path.
"""

import logging
import os
import re
import subprocess
import tempfile
from dataclasses import replace
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterator, Mapping, Optional, Protocol

import tomlkit

from ..errors import SnapshotError
from ..installer import CONFIG_TARGET, Installer
from ..modules import ModuleSelection
from ..settings import Settings
from ..state import to_posix

logger = logging.getLogger(__name__)


# Flags older published versions may not understand, with their value count.
NEWER_ONLY_FLAGS = {
    "--provider": 1,
    "--quiet": 0,
}

_UNSUPPORTED_FLAG_RE = re.compile(
    r"unrecognized arguments?|unrecognized option|no such option|unknown option|unexpected argument",
    re.IGNORECASE,
)

_SKIPPED_DIRS = {"__pycache__"}
_SKIPPED_SUFFIXES = {".pyc", ".pyo"}


# ============================================================================
# Snapshot
# ============================================================================

class Snapshot(Mapping[str, str]):
    """Immutable mapping of project-relative POSIX path -> file content."""

    def __init__(self, files: Mapping[str, str], version: str = ""):
        self._files = MappingProxyType({to_posix(k): v for k, v in files.items()})
        self.version = version

    def __getitem__(self, path: str) -> str:
        return self._files[to_posix(path)]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._files))

    def __len__(self) -> int:
        return len(self._files)

    def __repr__(self) -> str:
        return f"Snapshot(version={self.version!r}, files={len(self._files)})"


class SnapshotProducer(Protocol):
    """Anything that can reconstruct the vendored file set for a version."""

    def produce(self, version: str, selection: ModuleSelection) -> Snapshot: ...


def collect_snapshot_files(project_root: Path, install_dir: str) -> dict[str, str]:
    """
    Read every vendored file plus the top-level config file.

    Returns:
        Mapping of project-relative POSIX path -> content
    """
    project_root = Path(project_root)
    files: dict[str, str] = {}

    install_abs = project_root / install_dir
    if install_abs.is_dir():
        for path in sorted(install_abs.rglob("*")):
            if not path.is_file():
                continue
            if _SKIPPED_DIRS.intersection(path.relative_to(install_abs).parts[:-1]):
                continue
            if path.suffix in _SKIPPED_SUFFIXES:
                continue
            rel = path.relative_to(project_root).as_posix()
            files[rel] = _read_raw(path)

    config_abs = project_root / CONFIG_TARGET
    if config_abs.is_file():
        files[CONFIG_TARGET] = _read_raw(config_abs)

    return files


def _read_raw(path: Path) -> str:
    # Line endings are kept as written, same as the planner's disk reader.
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _bare_selection(selection: ModuleSelection) -> ModuleSelection:
    """The selection ``init`` is run with; modules are added one by one."""
    return replace(selection, extractors=(), connectors=(), batteries=())


# ============================================================================
# Current version (in-process)
# ============================================================================

class CurrentSnapshotProducer:
    """
    Snapshot of what the running version vendors.

    Usage:
        producer = CurrentSnapshotProducer()
        theirs = producer.produce(__version__, selection)
    """

    def __init__(self, installer: Optional[Installer] = None):
        self.installer = installer or Installer()

    def produce(self, version: str, selection: ModuleSelection) -> Snapshot:
        if version and version != self.installer.tool_version:
            logger.warning(
                "Current producer renders %s, not the requested %s",
                self.installer.tool_version, version,
            )

        with tempfile.TemporaryDirectory(prefix="vendrag-current-") as tmpdir:
            root = Path(tmpdir)
            self.installer.init(root, _bare_selection(selection))
            for extractor in selection.extractors:
                self.installer.add(root, "extractor", extractor)
            for connector in selection.connectors:
                self.installer.add(root, "connector", connector)
            for battery in selection.batteries:
                self.installer.add(root, "battery", battery)
            files = collect_snapshot_files(root, selection.install_dir)

        logger.debug("Current snapshot: %d file(s)", len(files))
        return Snapshot(files, version=self.installer.tool_version)


# ============================================================================
# Published version (subprocess)
# ============================================================================

def runner_command(runner: str, package: str, version: str) -> list[str]:
    """Command prefix that runs ``package==version`` through a runner."""
    spec = f"{package}=={version}"
    if runner == "uvx":
        return ["uvx", "--from", spec, package]
    if runner == "pipx":
        return ["pipx", "run", "--spec", spec, package]
    raise SnapshotError(f"Unsupported package runner: {runner}")


def environment_runner() -> Optional[str]:
    """Runner matching the environment we were launched from, if any."""
    if os.environ.get("UV"):
        return "uvx"
    if os.environ.get("PIPX_HOME") or os.environ.get("PIPX_BIN_DIR"):
        return "pipx"
    return None


def strip_newer_only_flags(args: list[str]) -> list[str]:
    """Drop flags (and their values) that older versions reject."""
    stripped = []
    skip = 0
    for arg in args:
        if skip:
            skip -= 1
            continue
        if arg in NEWER_ONLY_FLAGS:
            skip = NEWER_ONLY_FLAGS[arg]
            continue
        stripped.append(arg)
    return stripped


def looks_like_unsupported_flag(output: str) -> bool:
    return bool(_UNSUPPORTED_FLAG_RE.search(output))


def _format_output(stdout: Optional[str], stderr: Optional[str]) -> str:
    combined = "\n".join(s.strip() for s in (stdout or "", stderr or "") if s and s.strip())
    return f"\n\nOutput:\n{combined}" if combined else ""


class ExternalSnapshotProducer:
    """
    Snapshot of what a published version vendored.

    Runs ``init`` and one ``add`` per module of the published package in a
    scratch project. Runner candidates are tried in order; the first one
    that can be spawned is used for every command of the snapshot.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.settings = settings or Settings.load()
        self._run = run

    def candidates(self) -> list[str]:
        ordered = []
        preferred = environment_runner()
        if preferred:
            ordered.append(preferred)
        ordered.extend(self.settings.runners)
        seen = set()
        return [r for r in ordered if not (r in seen or seen.add(r))]

    def produce(self, version: str, selection: ModuleSelection) -> Snapshot:
        if not version:
            raise SnapshotError("A version is required to reconstruct a published snapshot")

        with tempfile.TemporaryDirectory(prefix="vendrag-external-") as tmpdir:
            root = Path(tmpdir)
            write_minimal_pyproject(root)

            runner = None
            commands = [_bare_selection(selection).init_args()] + selection.add_args()
            for args in commands:
                runner = self._run_cli(root, version, args, runner)
            files = collect_snapshot_files(root, selection.install_dir)

        logger.debug("Snapshot of %s: %d file(s)", version, len(files))
        return Snapshot(files, version=version)

    def _run_cli(self, root: Path, version: str, args: list[str], runner: Optional[str]) -> str:
        """
        Run one CLI command of the published version.

        Returns:
            The runner that was used

        Raises:
            SnapshotError: No runner, timeout, or nonzero exit after retry
        """
        result, runner = self._spawn(root, version, args, runner)
        if result.returncode == 0:
            return runner

        output = f"{result.stdout or ''}\n{result.stderr or ''}"
        stripped = strip_newer_only_flags(args)
        if stripped != args and looks_like_unsupported_flag(output):
            logger.info("vendrag %s rejected newer flags; retrying without them", version)
            result, runner = self._spawn(root, version, stripped, runner)
            if result.returncode == 0:
                return runner
            args = stripped

        cmd = " ".join(runner_command(runner, self.settings.package_name, version) + args)
        raise SnapshotError(
            f"Failed to run {cmd} (exit code: {result.returncode})"
            f"{_format_output(result.stdout, result.stderr)}"
        )

    def _spawn(
        self,
        root: Path,
        version: str,
        args: list[str],
        runner: Optional[str],
    ) -> tuple[subprocess.CompletedProcess, str]:
        candidates = [runner] if runner else self.candidates()
        tried = []
        timeout = self.settings.timeout("runner")

        for candidate in candidates:
            cmd = runner_command(candidate, self.settings.package_name, version) + args
            tried.append(candidate)
            logger.debug("Running %s", " ".join(cmd))
            try:
                result = self._run(
                    cmd,
                    cwd=root,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env={**os.environ, "VENDRAG_SKIP_INSTALL": "1"},
                )
            except FileNotFoundError:
                logger.debug("Package runner not found: %s", candidate)
                continue
            except subprocess.TimeoutExpired as e:
                raise SnapshotError(
                    f"Timed out after {timeout:.0f}s running {' '.join(cmd)}"
                    f"{_format_output(_text(e.stdout), _text(e.stderr))}"
                ) from e
            if result.stdout:
                logger.debug(result.stdout.rstrip())
            return result, candidate

        raise SnapshotError(
            "No package runner found to reconstruct the previous version. "
            f"Tried: {', '.join(tried) or '(none configured)'}"
        )


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value or ""


def write_minimal_pyproject(root: Path) -> None:
    """Make the scratch directory look like a project to the installer."""
    root.mkdir(parents=True, exist_ok=True)
    manifest = {
        "project": {
            "name": "vendrag-upgrade-snapshot",
            "version": "0.0.0",
            "dependencies": [],
        }
    }
    (root / "pyproject.toml").write_text(tomlkit.dumps(manifest), encoding="utf-8")
