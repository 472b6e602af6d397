"""
Project state persistence.

The project state file (vendrag.json at the project root) records the
module selection, the tool version the vendored files came from, and the
ledger of every file path vendrag has introduced into the project.

Writes are atomic (temp file + fsync + rename) so an interrupted upgrade
never leaves a half-written state file behind.
"""

import json
import logging
import os
import random
from pathlib import Path
from typing import Iterable, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import StateError
from .modules import ModuleSelection

logger = logging.getLogger(__name__)


STATE_FILE = "vendrag.json"
STATE_VERSION = 2


# ============================================================================
# Models
# ============================================================================

class InstalledFrom(BaseModel):
    """Which tool version produced the vendored files."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    tool_version: Optional[str] = Field(None, alias="toolVersion")


class ProjectState(BaseModel):
    """
    Persisted project state record.

    Field names are camelCase on disk. Unknown keys are kept so a newer
    state file survives a rewrite by an older tool.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    install_dir: Optional[str] = Field(None, alias="installDir")
    store_adapter: Optional[str] = Field(None, alias="storeAdapter")
    alias_base: Optional[str] = Field(None, alias="aliasBase")
    embedding_provider: Optional[str] = Field(None, alias="embeddingProvider")
    version: Optional[int] = None
    installed_from: Optional[InstalledFrom] = Field(None, alias="installedFrom")
    connectors: list[str] = Field(default_factory=list)
    extractors: list[str] = Field(default_factory=list)
    batteries: list[str] = Field(default_factory=list)
    managed_files: list[str] = Field(default_factory=list, alias="managedFiles")

    @property
    def installed_version(self) -> str:
        """The recorded installed-from tool version ('' if unknown)."""
        if self.installed_from is None:
            return ""
        return (self.installed_from.tool_version or "").strip()

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def selection(self) -> ModuleSelection:
        """Module selection described by this state."""
        return ModuleSelection.from_state(self.to_dict())

    @classmethod
    def from_selection(
        cls,
        selection: ModuleSelection,
        tool_version: str,
        managed_files: Iterable[str] = (),
    ) -> "ProjectState":
        return cls(
            install_dir=selection.install_dir,
            store_adapter=selection.store_adapter,
            alias_base=selection.alias_base,
            embedding_provider=selection.embedding_provider,
            version=STATE_VERSION,
            installed_from=InstalledFrom(tool_version=tool_version),
            connectors=list(selection.connectors),
            extractors=list(selection.extractors),
            batteries=list(selection.batteries),
            managed_files=sorted(set(managed_files)),
        )


# ============================================================================
# Managed File Ledger
# ============================================================================

def to_posix(path: str) -> str:
    """Normalize a project-relative path to forward slashes."""
    return path.replace("\\", "/")


class ManagedFileLedger:
    """
    Set of project-relative paths owned by vendrag.

    The ledger only ever grows: extend() returns a new ledger that is a
    superset of the current one.
    """

    def __init__(self, paths: Iterable[str] = ()):
        self._paths = frozenset(to_posix(p) for p in paths if p)

    def __contains__(self, path: str) -> bool:
        return to_posix(path) in self._paths

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._paths))

    def __len__(self) -> int:
        return len(self._paths)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ManagedFileLedger):
            return NotImplemented
        return self._paths == other._paths

    def __repr__(self) -> str:
        return f"ManagedFileLedger({sorted(self._paths)!r})"

    @property
    def paths(self) -> list[str]:
        return sorted(self._paths)

    def extend(self, paths: Iterable[str]) -> "ManagedFileLedger":
        return ManagedFileLedger(self._paths | {to_posix(p) for p in paths if p})

    @classmethod
    def from_state(cls, state: ProjectState) -> "ManagedFileLedger":
        return cls(state.managed_files)


# ============================================================================
# Load / Save
# ============================================================================

def state_path(project_root: Path) -> Path:
    return Path(project_root) / STATE_FILE


def load_state(project_root: Path) -> Optional[ProjectState]:
    """
    Load project state.

    Returns:
        ProjectState, or None if the state file does not exist

    Raises:
        StateError: If the file is unreadable, not JSON, or malformed
    """
    path = state_path(project_root)
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StateError(f"Could not read {path}: {e}") from e

    if not isinstance(data, dict):
        raise StateError(f"{path} must contain a JSON object")

    try:
        return ProjectState.model_validate(data)
    except PydanticValidationError as e:
        raise StateError(f"Invalid {STATE_FILE}: {e}") from e


def save_state(project_root: Path, state: ProjectState) -> Path:
    """
    Write project state atomically.

    Returns:
        Path of the written state file
    """
    path = state_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = path.with_suffix(f".tmp.{random.randint(0, 999999)}")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(state.to_dict(), indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise StateError(f"Could not write {path}: {e}") from e

    logger.debug("Wrote state to %s", path)
    return path
