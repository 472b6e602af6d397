"""
Upgrade engine for vendored sources.

Rebuilds what the installed-from and running versions vendor, classifies
every managed file, merges local edits with upstream changes, and keeps
the project's dependencies in step with its module selection.
"""

from .merge import MergeEngine, MergeResult
from .planner import (
    DiffPlanner,
    FilePlanItem,
    OverwritePolicy,
    PlanAction,
    PlanApplier,
    UpgradePlan,
    read_text_if_exists,
)
from .snapshot import (
    CurrentSnapshotProducer,
    ExternalSnapshotProducer,
    Snapshot,
    SnapshotProducer,
)
from .deps import DependencyChange, DependencyReconciler
from .orchestrator import (
    UpgradeOptions,
    UpgradeOrchestrator,
    UpgradeOutcome,
    UpgradeStage,
    find_project_root,
)

__all__ = [
    "MergeEngine",
    "MergeResult",
    "DiffPlanner",
    "FilePlanItem",
    "OverwritePolicy",
    "PlanAction",
    "PlanApplier",
    "UpgradePlan",
    "read_text_if_exists",
    "CurrentSnapshotProducer",
    "ExternalSnapshotProducer",
    "Snapshot",
    "SnapshotProducer",
    "DependencyChange",
    "DependencyReconciler",
    "UpgradeOptions",
    "UpgradeOrchestrator",
    "UpgradeOutcome",
    "UpgradeStage",
    "find_project_root",
]
