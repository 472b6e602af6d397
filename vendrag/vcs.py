"""
Version-control status queries.

Upgrades refuse to run on a dirty working tree so that every change they
make shows up cleanly in ``git diff``.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class GitStatus:
    """Working tree status of a project directory."""
    is_repo: bool
    is_dirty: bool = False
    changes: list[str] = field(default_factory=list)


def _run_git(args: list[str], cwd: Path, timeout: Optional[float]) -> Optional[subprocess.CompletedProcess]:
    """Run a git command; None if git is missing or timed out."""
    try:
        return subprocess.run(
            ["git"] + args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.debug("git not found")
        return None
    except subprocess.TimeoutExpired:
        logger.warning("git %s timed out after %ss", " ".join(args), timeout)
        return None


def get_git_status(project_root: Path, timeout: Optional[float] = 15) -> GitStatus:
    """
    Query whether project_root is inside a git work tree and has changes.

    A missing git binary, a timeout, or a directory outside any repository
    all report is_repo=False.
    """
    project_root = Path(project_root)

    inside = _run_git(["rev-parse", "--is-inside-work-tree"], project_root, timeout)
    if inside is None or inside.returncode != 0 or inside.stdout.strip() != "true":
        return GitStatus(is_repo=False)

    status = _run_git(["status", "--porcelain"], project_root, timeout)
    if status is None or status.returncode != 0:
        return GitStatus(is_repo=False)

    changes = [line for line in status.stdout.splitlines() if line.strip()]
    return GitStatus(is_repo=True, is_dirty=bool(changes), changes=changes)
