"""
Error types

Fatal errors derive from VendragError and abort the current command with
a descriptive message. Per-file outcomes such as merge conflicts are not
errors; they are collected into the upgrade report.
"""


# ============================================================================
# EXCEPTIONS
# ============================================================================

class VendragError(Exception):
    """Base exception for vendrag errors"""
    pass


class ValidationError(VendragError):
    """Preconditions for a command are not met (state, version, git tree)"""
    pass


class SnapshotError(VendragError):
    """A snapshot of vendored sources could not be produced"""
    pass


class ApplyError(VendragError):
    """A planned file could not be written to the project"""
    pass


class DependencyWriteError(VendragError):
    """Project manifest could not be read, written or installed"""
    pass


class StateError(VendragError):
    """Project state file is unreadable or malformed"""
    pass


class TemplateError(VendragError):
    """Template rendering failed (missing or mistyped insertion point)"""
    pass


class MergeToolUnavailable(VendragError):
    """
    The external merge utility could not be used.

    Raised and handled inside the merge engine only; callers never see it.
    """
    pass
