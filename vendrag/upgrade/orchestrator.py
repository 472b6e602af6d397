"""
Upgrade orchestration.

Stages run in a fixed order:

    Validate -> SnapshotBase -> SnapshotTheirs -> Plan -> Confirm
             -> Apply -> PersistState -> ReconcileDeps -> Report

Everything before Apply only reads the project and writes to scratch
directories, so stopping at Confirm (or running with dry_run) leaves the
project untouched. One upgrade runs per project at a time.
"""

import hashlib
import logging
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from filelock import FileLock, Timeout

from .. import __version__
from ..errors import ValidationError, VendragError
from ..settings import Settings
from ..state import (
    STATE_FILE,
    STATE_VERSION,
    ManagedFileLedger,
    ProjectState,
    load_state,
    save_state,
)
from ..vcs import GitStatus, get_git_status
from .deps import (
    DependencyChange,
    DependencyReconciler,
    detect_package_manager,
    install_command,
    install_dependencies,
    read_manifest,
    write_manifest,
)
from .merge import MergeEngine
from .planner import DiffPlanner, OverwritePolicy, PlanApplier, UpgradePlan, read_text_if_exists
from .snapshot import CurrentSnapshotProducer, ExternalSnapshotProducer, SnapshotProducer

logger = logging.getLogger(__name__)


PROJECT_MARKERS = (STATE_FILE, "pyproject.toml")


class UpgradeStage(str, Enum):
    VALIDATE = "validate"
    SNAPSHOT_BASE = "snapshot-base"
    SNAPSHOT_THEIRS = "snapshot-theirs"
    PLAN = "plan"
    CONFIRM = "confirm"
    APPLY = "apply"
    PERSIST_STATE = "persist-state"
    RECONCILE_DEPS = "reconcile-deps"
    REPORT = "report"


@dataclass
class UpgradeOptions:
    """Flags of ``vendrag upgrade``."""
    from_version: Optional[str] = None
    overwrite: str = OverwritePolicy.SKIP.value
    dry_run: bool = False
    no_install: bool = False
    allow_dirty: bool = False
    yes: bool = False


@dataclass
class UpgradeOutcome:
    """What an upgrade run did, for printing or for CI."""
    stage: UpgradeStage
    plan: Optional[UpgradePlan] = None
    dependency_changes: list[DependencyChange] = field(default_factory=list)
    report: list[str] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False

    @property
    def applied(self) -> bool:
        return not self.cancelled and not self.dry_run and self.stage == UpgradeStage.REPORT

    @property
    def conflicts(self) -> list[str]:
        return self.plan.conflicts if self.plan else []

    def to_dict(self) -> dict:
        """JSON-ready summary of the run."""
        return {
            "stage": self.stage.value,
            "applied": self.applied,
            "dryRun": self.dry_run,
            "cancelled": self.cancelled,
            "plan": self.plan.to_dict() if self.plan else None,
            "dependencies": [
                {"name": c.name, "version": c.version, "kind": c.kind.value, "action": c.action}
                for c in self.dependency_changes
            ],
            "report": self.report,
        }


def find_project_root(start: Path) -> Optional[Path]:
    """Nearest ancestor (or start itself) holding vendrag.json or pyproject.toml."""
    current = Path(start).resolve()
    for directory in [current, *current.parents]:
        if any((directory / marker).exists() for marker in PROJECT_MARKERS):
            return directory
    return None


def lock_path(project_root: Path) -> Path:
    """Per-project lock file outside the project directory."""
    digest = hashlib.sha256(str(Path(project_root).resolve()).encode()).hexdigest()[:16]
    return Path(tempfile.gettempdir()) / f"vendrag-upgrade-{digest}.lock"


def prompt_yes_no(message: str) -> bool:
    """Ask on stdin; anything but y/yes (including EOF) is no."""
    try:
        response = input(f"{message} [y/N]: ")
    except EOFError:
        return False
    return response.strip().lower() in ("y", "yes")


def stdin_is_interactive() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()


class UpgradeOrchestrator:
    """
    Runs one upgrade of a project's vendored sources.

    Usage:
        orchestrator = UpgradeOrchestrator(project_root, UpgradeOptions(yes=True))
        outcome = orchestrator.run()
        print("\\n".join(outcome.report))

    Producers, prompting and git queries are injectable so tests can run
    the whole pipeline on canned snapshots.
    """

    def __init__(
        self,
        project_root: Path,
        options: Optional[UpgradeOptions] = None,
        settings: Optional[Settings] = None,
        base_producer: Optional[SnapshotProducer] = None,
        theirs_producer: Optional[SnapshotProducer] = None,
        confirm: Callable[[str], bool] = prompt_yes_no,
        is_interactive: Callable[[], bool] = stdin_is_interactive,
        git_status: Optional[Callable[[Path], GitStatus]] = None,
        install: Callable[..., str] = install_dependencies,
        tool_version: str = __version__,
    ):
        self.project_root = Path(project_root)
        self.options = options or UpgradeOptions()
        self.settings = settings or Settings.load()
        self.base_producer = base_producer or ExternalSnapshotProducer(self.settings)
        self.theirs_producer = theirs_producer or CurrentSnapshotProducer()
        self.confirm = confirm
        self.is_interactive = is_interactive
        self.git_status = git_status or (
            lambda root: get_git_status(root, timeout=self.settings.timeout("git"))
        )
        self.install = install
        self.tool_version = tool_version
        self.planner = DiffPlanner(MergeEngine(timeout=self.settings.timeout("merge")))
        self.applier = PlanApplier()
        self.reconciler = DependencyReconciler()
        # Last stage entered; on failure this is where the run stopped.
        self.stage = UpgradeStage.VALIDATE

    @property
    def non_interactive(self) -> bool:
        return self.options.yes or not self.is_interactive()

    def run(self) -> UpgradeOutcome:
        """
        Run the upgrade under the per-project lock.

        Raises:
            ValidationError: Missing state, no base version, dirty tree, or lock held
            SnapshotError: A snapshot could not be produced
            ApplyError: A planned file could not be written
            DependencyWriteError: The manifest could not be updated
        """
        lock = FileLock(str(lock_path(self.project_root)), timeout=0)
        try:
            lock.acquire()
        except Timeout as e:
            raise ValidationError(
                f"Another upgrade is already running for {self.project_root}"
            ) from e
        try:
            return self._run()
        except VendragError:
            logger.debug("Upgrade stopped during %s", self.stage.value)
            raise
        finally:
            lock.release()

    def _enter(self, stage: UpgradeStage) -> None:
        logger.debug("Stage: %s", stage.value)
        self.stage = stage

    # ========================================================================
    # Stages
    # ========================================================================

    def _run(self) -> UpgradeOutcome:
        options = self.options

        self._enter(UpgradeStage.VALIDATE)
        state = self._load_state()
        from_version = (options.from_version or state.installed_version).strip()
        if not from_version:
            raise ValidationError(
                "Missing base version. Provide --from-version <x> or ensure "
                f"{STATE_FILE} has installedFrom.toolVersion."
            )
        git = self.git_status(self.project_root)
        if git.is_repo and git.is_dirty and not options.allow_dirty:
            if self.non_interactive:
                raise ValidationError(
                    "Working tree has uncommitted changes. Commit or stash before "
                    "running upgrade, or pass --allow-dirty."
                )
            if not self.confirm(
                "Uncommitted changes detected. Commit or stash before upgrading. Continue anyway?"
            ):
                return self._cancelled(UpgradeStage.VALIDATE)

        selection = state.selection()
        logger.info("Upgrading %s from %s to %s", selection.install_dir, from_version, self.tool_version)

        self._enter(UpgradeStage.SNAPSHOT_BASE)
        base = self.base_producer.produce(from_version, selection)
        self._enter(UpgradeStage.SNAPSHOT_THEIRS)
        theirs = self.theirs_producer.produce(self.tool_version, selection)

        self._enter(UpgradeStage.PLAN)
        plan = self.planner.plan(
            base,
            theirs,
            state.managed_files,
            read_text_if_exists(self.project_root),
            options.overwrite,
        )
        summary = ["Upgrade plan:", *plan.summary_lines()]

        if options.dry_run:
            return UpgradeOutcome(
                stage=UpgradeStage.PLAN,
                plan=plan,
                report=summary + ["Dry run: no files will be written."],
                dry_run=True,
            )

        self._enter(UpgradeStage.CONFIRM)
        if not self.non_interactive:
            message = "\n".join(summary + ["Proceed and apply changes?"])
            if not self.confirm(message):
                return self._cancelled(UpgradeStage.CONFIRM, plan)

        self._enter(UpgradeStage.APPLY)
        self.applier.apply(self.project_root, plan)

        self._enter(UpgradeStage.PERSIST_STATE)
        ledger = ManagedFileLedger.from_state(state).extend(plan.tracked_paths)
        updated = ProjectState.model_validate({
            **state.to_dict(),
            "version": STATE_VERSION,
            "installedFrom": {"toolVersion": self.tool_version},
            "managedFiles": ledger.paths,
        })
        save_state(self.project_root, updated)

        self._enter(UpgradeStage.RECONCILE_DEPS)
        changes, install_line = self._reconcile_dependencies(selection)

        self._enter(UpgradeStage.REPORT)
        report = self._report(plan, changes, install_line, git.is_repo)
        return UpgradeOutcome(
            stage=UpgradeStage.REPORT,
            plan=plan,
            dependency_changes=changes,
            report=report,
        )

    def _load_state(self) -> ProjectState:
        state = load_state(self.project_root)
        if state is None or not state.install_dir or not state.store_adapter:
            raise ValidationError(
                f"Missing {STATE_FILE} or required fields (installDir/storeAdapter). "
                "Run `vendrag init` first."
            )
        return state

    def _reconcile_dependencies(self, selection) -> tuple[list[DependencyChange], str]:
        manifest = read_manifest(self.project_root)
        manifest, changes = self.reconciler.reconcile(manifest, selection)
        no_install = self.options.no_install or self.settings.skip_install
        cmd_line = install_command(detect_package_manager(self.project_root))

        if not changes:
            return changes, "Dependencies already satisfied."

        write_manifest(self.project_root, manifest)
        if no_install:
            return changes, f"Next: run `{cmd_line}`"

        ran = self.install(self.project_root, timeout=self.settings.timeout("install"))
        return changes, f"Dependencies updated. (ran {ran})"

    def _report(
        self,
        plan: UpgradePlan,
        changes: list[DependencyChange],
        install_line: str,
        in_repo: bool,
    ) -> list[str]:
        lines = ["Upgrade complete.", "", *plan.summary_lines(), ""]
        if changes:
            lines.append(f"Deps: {', '.join(c.name for c in changes)}")
        else:
            lines.append("Deps: none")
        lines.append(install_line)

        if plan.conflicts:
            lines += ["", "Conflicts:"]
            lines += [f"- {path}" for path in plan.conflicts]
            if in_repo:
                lines.append("Find remaining markers with: git diff --check")
            lines.append("Next: resolve markers, then re-run `vendrag doctor`.")
        return lines

    def _cancelled(self, stage: UpgradeStage, plan: Optional[UpgradePlan] = None) -> UpgradeOutcome:
        logger.info("Upgrade cancelled at %s", stage.value)
        return UpgradeOutcome(stage=stage, plan=plan, report=["Cancelled."], cancelled=True)
