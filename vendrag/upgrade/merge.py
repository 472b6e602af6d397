"""
Three-way text merge.

Merges a locally edited file ("ours") with a new upstream version
("theirs") using the version both were derived from ("base").

Strategies (in order):
1. git merge-file - line-level merge, writes inline conflict markers
2. heuristic fallback - whole-file decision when git is unavailable

merge() never raises. A conflict is a result, not an error.
"""

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import MergeToolUnavailable

logger = logging.getLogger(__name__)


CONFLICT_START = "<<<<<<<"
CONFLICT_SEPARATOR = "======="
CONFLICT_END = ">>>>>>>"

# git merge-file exits with the number of conflicting hunks (capped at 127)
# and with a negative status or >= 128 on error.
_MAX_CONFLICT_COUNT = 127


@dataclass
class MergeResult:
    """Result of merging a single file."""
    merged_text: str
    had_conflict: bool
    used_external_tool: bool


class MergeEngine:
    """
    Three-way merge of text content.

    Usage:
        engine = MergeEngine()
        result = engine.merge(base, ours, theirs)
        if result.had_conflict:
            # result.merged_text contains <<<<<<< / ======= / >>>>>>> markers
            ...
    """

    def __init__(self, git_binary: str = "git", timeout: Optional[float] = 30):
        """
        Args:
            git_binary: Executable providing ``merge-file``
            timeout: Seconds before the merge utility is abandoned
        """
        self.git_binary = git_binary
        self.timeout = timeout

    def merge(self, base: str, ours: str, theirs: str) -> MergeResult:
        """
        Merge ours and theirs against base.

        Returns:
            MergeResult with merged text and conflict flag
        """
        if ours == theirs:
            return MergeResult(merged_text=ours, had_conflict=False, used_external_tool=False)

        try:
            return self._run_merge_file(base, ours, theirs)
        except MergeToolUnavailable as e:
            logger.debug("Falling back to heuristic merge: %s", e)
            return fallback_merge(base, ours, theirs)

    def _run_merge_file(self, base: str, ours: str, theirs: str) -> MergeResult:
        """Run git merge-file on temp copies of the three texts."""
        with tempfile.TemporaryDirectory(prefix="vendrag-merge-") as tmpdir:
            base_file = Path(tmpdir) / "base"
            ours_file = Path(tmpdir) / "ours"
            theirs_file = Path(tmpdir) / "theirs"

            # newline="" keeps CRLF files byte-identical through the merge
            base_file.write_text(base, encoding="utf-8", newline="")
            ours_file.write_text(ours, encoding="utf-8", newline="")
            theirs_file.write_text(theirs, encoding="utf-8", newline="")

            cmd = [
                self.git_binary, "merge-file", "-p",
                "-L", "ours", "-L", "base", "-L", "theirs",
                str(ours_file), str(base_file), str(theirs_file),
            ]
            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError as e:
                raise MergeToolUnavailable(f"{self.git_binary} not found") from e
            except subprocess.TimeoutExpired as e:
                raise MergeToolUnavailable(
                    f"{self.git_binary} merge-file timed out after {self.timeout}s"
                ) from e
            except OSError as e:
                raise MergeToolUnavailable(f"{self.git_binary} merge-file failed: {e}") from e

        merged = result.stdout.decode("utf-8", errors="surrogateescape")

        if result.returncode == 0:
            return MergeResult(merged_text=merged, had_conflict=False, used_external_tool=True)

        if 0 < result.returncode <= _MAX_CONFLICT_COUNT:
            logger.debug("git merge-file reported %d conflict(s)", result.returncode)
            return MergeResult(merged_text=merged, had_conflict=True, used_external_tool=True)

        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise MergeToolUnavailable(
            f"git merge-file exited with {result.returncode}: {stderr or 'no output'}"
        )


def fallback_merge(base: str, ours: str, theirs: str) -> MergeResult:
    """
    Whole-file merge used when the merge utility can't run.

    Takes whichever side changed; if both changed differently, wraps both
    versions in conflict markers.
    """
    if ours == theirs:
        return MergeResult(merged_text=ours, had_conflict=False, used_external_tool=False)
    if ours == base:
        return MergeResult(merged_text=theirs, had_conflict=False, used_external_tool=False)
    if theirs == base:
        return MergeResult(merged_text=ours, had_conflict=False, used_external_tool=False)

    merged = "\n".join([
        f"{CONFLICT_START} ours",
        ours,
        CONFLICT_SEPARATOR,
        theirs,
        f"{CONFLICT_END} theirs",
        "",
    ])
    return MergeResult(merged_text=merged, had_conflict=True, used_external_tool=False)

