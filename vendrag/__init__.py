"""
vendrag - Vendored RAG engine sources

Copies a retrieval-augmented-generation engine's source files into a
project and keeps them upgradeable without clobbering local edits.
"""

__version__ = "0.4.0"

from .errors import (
    VendragError,
    ValidationError,
    SnapshotError,
    ApplyError,
    DependencyWriteError,
    StateError,
    TemplateError,
)
from .modules import ModuleSelection
from .state import ProjectState, ManagedFileLedger

__all__ = [
    "__version__",
    "VendragError",
    "ValidationError",
    "SnapshotError",
    "ApplyError",
    "DependencyWriteError",
    "StateError",
    "TemplateError",
    "ModuleSelection",
    "ProjectState",
    "ManagedFileLedger",
]
