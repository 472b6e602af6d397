"""
Module selection

Describes which optional modules a project has vendored: the storage
adapter, the embedding provider, and any extractors, connectors and
batteries added later. A ModuleSelection plus a tool version fully
determines the vendored file set.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable


# ============================================================================
# Catalog
# ============================================================================

class StoreAdapter(str, Enum):
    """Storage adapter backing the vector store."""
    SQLALCHEMY = "sqlalchemy"
    PSYCOPG = "psycopg"
    DJANGO = "django"


EMBEDDING_PROVIDERS = (
    "litellm",
    "openai",
    "google",
    "openrouter",
    "azure",
    "vertex",
    "bedrock",
    "cohere",
    "mistral",
    "together",
    "ollama",
    "voyage",
)

EXTRACTORS = (
    "pdf-llm",
    "pdf-text-layer",
    "pdf-ocr",
    "image-ocr",
    "image-caption-llm",
    "audio-transcribe",
    "video-transcribe",
    "video-frames",
    "file-text",
    "file-docx",
    "file-pptx",
    "file-xlsx",
)

CONNECTORS = ("notion", "google-drive", "onedrive", "dropbox")

BATTERIES = ("reranker", "eval", "debug")

DEFAULT_INSTALL_DIR = "rag"
DEFAULT_ALIAS_BASE = "rag"
DEFAULT_EMBEDDING_PROVIDER = "litellm"


def is_store_adapter(value: Any) -> bool:
    return value in {a.value for a in StoreAdapter}


def is_embedding_provider(value: Any) -> bool:
    return value in EMBEDDING_PROVIDERS


def _clean_names(values: Any, known: Iterable[str]) -> tuple[str, ...]:
    """Strip, drop blanks and unknown names, de-duplicate and sort."""
    if not isinstance(values, (list, tuple, set, frozenset)):
        return ()
    allowed = set(known)
    cleaned = {str(v).strip() for v in values}
    return tuple(sorted(v for v in cleaned if v and v in allowed))


def to_extractor_names(values: Any) -> tuple[str, ...]:
    return _clean_names(values, EXTRACTORS)


def to_connector_names(values: Any) -> tuple[str, ...]:
    return _clean_names(values, CONNECTORS)


def to_battery_names(values: Any) -> tuple[str, ...]:
    return _clean_names(values, BATTERIES)


# ============================================================================
# ModuleSelection
# ============================================================================

@dataclass(frozen=True)
class ModuleSelection:
    """
    Resolved description of the installed modules.

    Collections are normalized to sorted, de-duplicated tuples so that two
    selections describing the same modules compare (and render) equal.
    """
    install_dir: str
    store_adapter: str
    alias_base: str = DEFAULT_ALIAS_BASE
    embedding_provider: str = DEFAULT_EMBEDDING_PROVIDER
    extractors: tuple[str, ...] = field(default_factory=tuple)
    connectors: tuple[str, ...] = field(default_factory=tuple)
    batteries: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "install_dir", self.install_dir.replace("\\", "/").strip("/"))
        object.__setattr__(self, "extractors", tuple(sorted(set(filter(None, self.extractors)))))
        object.__setattr__(self, "connectors", tuple(sorted(set(filter(None, self.connectors)))))
        object.__setattr__(self, "batteries", tuple(sorted(set(filter(None, self.batteries)))))

    @classmethod
    def from_state(cls, data: dict) -> "ModuleSelection":
        """
        Build a selection from persisted state fields.

        Unknown module names are dropped; an unknown embedding provider
        falls back to the default provider.
        """
        provider = data.get("embeddingProvider")
        if not is_embedding_provider(provider):
            provider = DEFAULT_EMBEDDING_PROVIDER
        return cls(
            install_dir=data["installDir"],
            store_adapter=data["storeAdapter"],
            alias_base=data.get("aliasBase") or DEFAULT_ALIAS_BASE,
            embedding_provider=provider,
            extractors=to_extractor_names(data.get("extractors")),
            connectors=to_connector_names(data.get("connectors")),
            batteries=to_battery_names(data.get("batteries")),
        )

    def with_module(self, kind: str, name: str) -> "ModuleSelection":
        """Return a copy with one more extractor, connector or battery."""
        if kind == "extractor":
            return replace(self, extractors=self.extractors + (name,))
        if kind == "connector":
            return replace(self, connectors=self.connectors + (name,))
        if kind == "battery":
            return replace(self, batteries=self.batteries + (name,))
        raise ValueError(f"Unknown module kind: {kind}")

    def init_args(self, quiet: bool = False) -> list[str]:
        """CLI arguments that reproduce this selection's ``init``."""
        args = [
            "init",
            "--yes",
            "--store", self.store_adapter,
            "--dir", self.install_dir,
            "--alias", self.alias_base,
        ]
        if self.embedding_provider:
            args += ["--provider", self.embedding_provider]
        args.append("--no-install")
        if quiet:
            args.append("--quiet")
        return args

    def add_args(self, quiet: bool = False) -> list[list[str]]:
        """CLI argument lists for every ``add`` after ``init``."""
        suffix = ["--yes", "--no-install"] + (["--quiet"] if quiet else [])
        commands = []
        for extractor in self.extractors:
            commands.append(["add", "extractor", extractor] + suffix)
        for connector in self.connectors:
            commands.append(["add", connector] + suffix)
        for battery in self.batteries:
            commands.append(["add", "battery", battery] + suffix)
        return commands
