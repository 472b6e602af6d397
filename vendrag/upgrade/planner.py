"""
Upgrade planning and application.

DiffPlanner compares three views of every tracked file:

- base:   what the installed-from version vendored
- ours:   what is on disk now
- theirs: what the running version vendors

and assigns each path an action. PlanApplier then writes the actions that
carry content. Nothing here touches the project until apply() is called.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from ..errors import ApplyError, ValidationError
from ..state import ManagedFileLedger, to_posix
from .merge import MergeEngine

logger = logging.getLogger(__name__)


DiskReader = Callable[[str], Optional[str]]


class PlanAction(str, Enum):
    """What an upgrade does with one file."""
    ADD = "add"
    UPDATE = "update"
    MERGE = "merge"
    CONFLICT = "conflict"
    KEEP = "keep"
    REMOVED_UPSTREAM = "removed-upstream"
    SKIP = "skip"
    UNCHANGED = "unchanged"


# Actions whose plan items carry content to write.
WRITING_ACTIONS = frozenset({
    PlanAction.ADD,
    PlanAction.UPDATE,
    PlanAction.MERGE,
    PlanAction.CONFLICT,
})

# Report order.
ACTION_ORDER = (
    PlanAction.ADD,
    PlanAction.UPDATE,
    PlanAction.MERGE,
    PlanAction.CONFLICT,
    PlanAction.KEEP,
    PlanAction.REMOVED_UPSTREAM,
    PlanAction.SKIP,
    PlanAction.UNCHANGED,
)


# Report labels that differ from the action name.
SUMMARY_LABELS = {
    PlanAction.CONFLICT: "conflicts",
    PlanAction.SKIP: "skipped",
}


class OverwritePolicy(str, Enum):
    SKIP = "skip"
    FORCE = "force"


@dataclass(frozen=True)
class FilePlanItem:
    """Planned action for one project-relative path."""
    path: str
    action: PlanAction
    content: Optional[str] = None

    def __post_init__(self):
        if (self.content is not None) != (self.action in WRITING_ACTIONS):
            raise ValueError(f"{self.action.value} item for {self.path} has wrong content presence")


@dataclass
class UpgradePlan:
    """Sorted plan items, per-action counts and the tracked path set."""
    items: list[FilePlanItem] = field(default_factory=list)
    tracked_paths: list[str] = field(default_factory=list)

    @property
    def counts(self) -> dict[PlanAction, int]:
        counter = Counter(item.action for item in self.items)
        return {action: counter.get(action, 0) for action in ACTION_ORDER}

    @property
    def conflicts(self) -> list[str]:
        return [i.path for i in self.items if i.action == PlanAction.CONFLICT]

    @property
    def changed_count(self) -> int:
        """Number of files apply() would write."""
        return sum(1 for i in self.items if i.content is not None)

    def summary_lines(self) -> list[str]:
        counts = self.counts
        lines = [f"- files-changed: {self.changed_count}"]
        lines += [f"- {SUMMARY_LABELS.get(action, action.value)}: {counts[action]}" for action in ACTION_ORDER]
        return lines

    def to_dict(self) -> dict:
        """Plain representation for CI and external reporting."""
        return {
            "counts": {action.value: n for action, n in self.counts.items()},
            "files": [{"path": i.path, "action": i.action.value} for i in self.items],
            "conflicts": self.conflicts,
        }


# ============================================================================
# Planner
# ============================================================================

def read_text_if_exists(project_root: Path) -> DiskReader:
    """Disk reader returning file text, or None if the path is not a file."""
    project_root = Path(project_root)

    def reader(rel_path: str) -> Optional[str]:
        path = project_root / rel_path
        if not path.is_file():
            return None
        try:
            with open(path, encoding="utf-8", newline="") as f:
                return f.read()
        except UnicodeDecodeError as e:
            raise ValidationError(
                f"Could not read {rel_path} as UTF-8 ({e.reason} at byte {e.start}). "
                "Convert it to UTF-8 or remove it before upgrading."
            ) from e
        except OSError as e:
            raise ValidationError(f"Could not read {rel_path}: {e}") from e

    return reader


class DiffPlanner:
    """
    Classifies every tracked path into a PlanAction.

    Usage:
        planner = DiffPlanner()
        plan = planner.plan(base, theirs, ledger, read_text_if_exists(root))
    """

    def __init__(self, merge_engine: Optional[MergeEngine] = None):
        self.merge_engine = merge_engine or MergeEngine()

    def plan(
        self,
        base: Mapping[str, str],
        theirs: Mapping[str, str],
        ledger: Iterable[str],
        disk_reader: DiskReader,
        overwrite: str = OverwritePolicy.SKIP,
    ) -> UpgradePlan:
        base = {to_posix(k): v for k, v in base.items()}
        theirs = {to_posix(k): v for k, v in theirs.items()}
        tracked = sorted(set(ManagedFileLedger(ledger)) | set(base) | set(theirs))
        force = OverwritePolicy(overwrite) == OverwritePolicy.FORCE

        items = []
        for path in tracked:
            item = self.classify(path, base.get(path), disk_reader(path), theirs.get(path), force)
            if item is not None:
                logger.debug("%s: %s", path, item.action.value)
                items.append(item)

        return UpgradePlan(items=items, tracked_paths=tracked)

    def classify(
        self,
        path: str,
        base: Optional[str],
        ours: Optional[str],
        theirs: Optional[str],
        force: bool = False,
    ) -> Optional[FilePlanItem]:
        """Classify one path; None means there is nothing to report."""
        if ours is None:
            if theirs is None:
                return None
            return FilePlanItem(path, PlanAction.ADD, theirs)

        if theirs is None:
            if base is None:
                return FilePlanItem(path, PlanAction.KEEP)
            return FilePlanItem(path, PlanAction.REMOVED_UPSTREAM)

        if base is None:
            # Present on both sides but never snapshotted: only force replaces it.
            if force:
                return FilePlanItem(path, PlanAction.UPDATE, theirs)
            return FilePlanItem(path, PlanAction.SKIP)

        if ours == base:
            if theirs == base:
                return FilePlanItem(path, PlanAction.UNCHANGED)
            return FilePlanItem(path, PlanAction.UPDATE, theirs)

        if theirs == base:
            return FilePlanItem(path, PlanAction.KEEP)

        result = self.merge_engine.merge(base, ours, theirs)
        action = PlanAction.CONFLICT if result.had_conflict else PlanAction.MERGE
        return FilePlanItem(path, action, result.merged_text)


# ============================================================================
# Applier
# ============================================================================

class PlanApplier:
    """Writes plan items that carry content."""

    def apply(self, project_root: Path, plan: UpgradePlan) -> list[str]:
        """
        Write every add/update/merge/conflict item.

        Returns:
            Paths written, in plan order

        Raises:
            ApplyError: A file could not be written; earlier files stay written
        """
        project_root = Path(project_root)
        written = []
        for item in plan.items:
            if item.content is None:
                continue
            target = project_root / item.path
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, "w", encoding="utf-8", newline="") as f:
                    f.write(item.content)
            except OSError as e:
                raise ApplyError(
                    f"Could not write {item.path}: {e.strerror or e}. "
                    f"{len(written)} file(s) were already written; state was not updated."
                ) from e
            written.append(item.path)
        logger.info("Applied %d file(s)", len(written))
        return written
