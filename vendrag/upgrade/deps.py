"""
Dependency reconciliation for pyproject.toml.

Recomputes the packages the vendored sources import from the module
selection and adds the missing ones to the project manifest. Entries the
project already has (runtime or dev, any version) are never touched.

Runtime dependencies live in ``[project].dependencies`` and dev
dependencies in ``[dependency-groups].dev``.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

import tomlkit
from tomlkit.exceptions import TOMLKitError

from ..errors import DependencyWriteError
from ..modules import ModuleSelection

logger = logging.getLogger(__name__)


MANIFEST_FILE = "pyproject.toml"


# ============================================================================
# Dependency tables (PyPI name -> version specifier)
# ============================================================================

# Every adapter embeds through litellm.
BASE_DEPS = {
    "litellm": ">=1.50",
}

ADAPTER_DEPS = {
    "sqlalchemy": {
        "sqlalchemy": ">=2.0",
        "psycopg[binary]": ">=3.2",
        "pgvector": ">=0.3",
    },
    "psycopg": {
        "psycopg[binary]": ">=3.2",
        "psycopg-pool": ">=3.2",
    },
    "django": {
        "django": ">=5.0",
        "pgvector": ">=0.3",
    },
}

ADAPTER_DEV_DEPS = {
    "django": {
        "django-stubs": ">=5.0",
    },
}

EMBEDDING_PROVIDER_DEPS = {
    "openai": {"openai": ">=1.50"},
    "google": {"google-genai": ">=1.0"},
    "azure": {"openai": ">=1.50"},
    "vertex": {"google-cloud-aiplatform": ">=1.70"},
    "bedrock": {"boto3": ">=1.35"},
    "cohere": {"cohere": ">=5.0"},
    "mistral": {"mistralai": ">=1.0"},
    "together": {"together": ">=1.3"},
    "ollama": {"ollama": ">=0.4"},
    "voyage": {"voyageai": ">=0.3"},
}

EXTRACTOR_DEPS = {
    "pdf-text-layer": {"pypdf": ">=5.0"},
    "pdf-ocr": {"pytesseract": ">=0.3", "pdf2image": ">=1.17"},
    "image-ocr": {"pillow": ">=10.0"},
    "file-docx": {"python-docx": ">=1.1"},
    "file-pptx": {"python-pptx": ">=1.0"},
    "file-xlsx": {"openpyxl": ">=3.1"},
}

CONNECTOR_DEPS = {
    "notion": {"notion-client": ">=2.2"},
    "google-drive": {
        "google-api-python-client": ">=2.150",
        "google-auth": ">=2.35",
    },
    "onedrive": {"msal": ">=1.31", "httpx": ">=0.27"},
    "dropbox": {"dropbox": ">=12.0"},
}

BATTERY_DEPS = {
    "reranker": {"cohere": ">=5.0"},
    "debug": {"websockets": ">=13.0"},
}


class DependencyKind(str, Enum):
    RUNTIME = "runtime"
    DEV = "dev"


@dataclass(frozen=True)
class DependencyChange:
    """One manifest entry added by reconciliation."""
    name: str
    version: str
    kind: DependencyKind = DependencyKind.RUNTIME
    action: str = "add"

    @property
    def requirement(self) -> str:
        return f"{self.name}{self.version}"


# ============================================================================
# Names
# ============================================================================

_NAME_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


def canonicalize_name(name: str) -> str:
    """PEP 503 normalized project name."""
    return re.sub(r"[-_.]+", "-", name).lower()


def requirement_name(requirement: str) -> Optional[str]:
    """Canonical project name of a PEP 508 requirement string."""
    match = _NAME_RE.match(requirement)
    if not match:
        return None
    return canonicalize_name(match.group(1))


def required_dependencies(selection: ModuleSelection) -> tuple[dict[str, str], dict[str, str]]:
    """
    Dependencies the vendored sources need for a selection.

    Returns:
        (runtime deps, dev deps), each PyPI name -> version specifier
    """
    deps = dict(BASE_DEPS)
    dev_deps: dict[str, str] = {}

    deps.update(ADAPTER_DEPS.get(selection.store_adapter, {}))
    dev_deps.update(ADAPTER_DEV_DEPS.get(selection.store_adapter, {}))
    deps.update(EMBEDDING_PROVIDER_DEPS.get(selection.embedding_provider, {}))
    for extractor in selection.extractors:
        deps.update(EXTRACTOR_DEPS.get(extractor, {}))
    for connector in selection.connectors:
        deps.update(CONNECTOR_DEPS.get(connector, {}))
    for battery in selection.batteries:
        deps.update(BATTERY_DEPS.get(battery, {}))

    return deps, dev_deps


# ============================================================================
# Reconciler
# ============================================================================

class DependencyReconciler:
    """
    Adds missing dependencies to a parsed pyproject manifest.

    Usage:
        manifest = read_manifest(root)
        manifest, changes = DependencyReconciler().reconcile(manifest, selection)
        if changes:
            write_manifest(root, manifest)
    """

    def reconcile(self, manifest: Mapping, selection: ModuleSelection) -> tuple[Mapping, list[DependencyChange]]:
        """
        Add missing requirements to a copy of the manifest.

        The copy keeps the original's comments and formatting. When nothing
        is missing the manifest passed in is returned as is.
        """
        deps, dev_deps = required_dependencies(selection)

        project = manifest.get("project") or {}
        groups = manifest.get("dependency-groups") or {}
        runtime = list(project.get("dependencies") or [])
        dev = list(groups.get("dev") or [])

        present = {requirement_name(r) for r in runtime + dev if isinstance(r, str)}
        present.discard(None)

        changes = []
        for kind, wanted in ((DependencyKind.RUNTIME, deps), (DependencyKind.DEV, dev_deps)):
            for name, version in sorted(wanted.items()):
                if requirement_name(name) in present:
                    continue
                present.add(requirement_name(name))
                changes.append(DependencyChange(name, version, kind))

        if not changes:
            return manifest, []

        result = tomlkit.parse(tomlkit.dumps(manifest))
        for change in changes:
            if change.kind == DependencyKind.DEV:
                _array(_table(result, "dependency-groups"), "dev").append(change.requirement)
            else:
                _array(_table(result, "project"), "dependencies").append(change.requirement)
        return result, changes


def _table(document, key: str):
    if key not in document:
        document[key] = tomlkit.table()
    return document[key]


def _array(table, key: str):
    if key not in table:
        table[key] = tomlkit.array().multiline(True)
    return table[key]


# ============================================================================
# Manifest I/O
# ============================================================================

def read_manifest(project_root: Path) -> Mapping:
    """Parse pyproject.toml; a missing manifest reads as empty."""
    path = Path(project_root) / MANIFEST_FILE
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8", newline="") as f:
            return tomlkit.parse(f.read())
    except (OSError, UnicodeDecodeError, TOMLKitError) as e:
        raise DependencyWriteError(f"Could not read {path}: {e}") from e


def write_manifest(project_root: Path, manifest: Mapping) -> Path:
    """Write the manifest back, keeping comments and layout of a parsed document."""
    path = Path(project_root) / MANIFEST_FILE
    try:
        text = tomlkit.dumps(manifest)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    except (OSError, TOMLKitError, TypeError, ValueError) as e:
        raise DependencyWriteError(f"Could not write {path}: {e}") from e
    logger.debug("Wrote %s", path)
    return path


# ============================================================================
# Installation
# ============================================================================

LOCK_FILES = (
    ("uv.lock", "uv"),
    ("poetry.lock", "poetry"),
    ("pdm.lock", "pdm"),
)

INSTALL_COMMANDS = {
    "uv": ["uv", "sync"],
    "poetry": ["poetry", "install"],
    "pdm": ["pdm", "install"],
    "pip": ["pip", "install", "-e", "."],
}


def detect_package_manager(project_root: Path) -> str:
    for lock_file, manager in LOCK_FILES:
        if (Path(project_root) / lock_file).exists():
            return manager
    return "pip"


def install_command(manager: str) -> str:
    return " ".join(INSTALL_COMMANDS.get(manager, INSTALL_COMMANDS["pip"]))


def install_dependencies(project_root: Path, timeout: Optional[float] = None) -> str:
    """
    Run the project's package manager.

    Returns:
        The command line that was run

    Raises:
        DependencyWriteError: If the installer is missing, times out or fails
    """
    manager = detect_package_manager(project_root)
    cmd = INSTALL_COMMANDS.get(manager, INSTALL_COMMANDS["pip"])
    cmd_line = " ".join(cmd)
    logger.info("Installing dependencies with %s", cmd_line)

    try:
        result = subprocess.run(cmd, cwd=project_root, timeout=timeout)
    except FileNotFoundError as e:
        raise DependencyWriteError(f"Dependency installation failed: {cmd[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise DependencyWriteError(
            f"Dependency installation timed out after {timeout:.0f}s ({cmd_line})"
        ) from e

    if result.returncode != 0:
        raise DependencyWriteError(
            f"Dependency installation failed ({cmd_line}). Exit code: {result.returncode}"
        )
    return cmd_line
