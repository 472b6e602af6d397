"""
Template registry and in-process installer.

Renders the vendored RAG engine sources for a module selection and writes
them into a project. `vendrag init` and `vendrag add` run this code, and
so does the current-version snapshot producer during an upgrade.

Templates are plain text with ``${slot}`` insertion points. Each template
declares the slots it uses in templates/registry.yaml and each slot has a
type; rendering fails loudly on a missing, undeclared or mistyped slot
instead of silently emitting broken source.
"""

import keyword
import logging
import re
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from . import __version__
from .errors import TemplateError, ValidationError
from .modules import (
    BATTERIES,
    CONNECTORS,
    EMBEDDING_PROVIDERS,
    EXTRACTORS,
    ModuleSelection,
    StoreAdapter,
)
from .state import ManagedFileLedger, ProjectState, load_state, save_state

logger = logging.getLogger(__name__)


TEMPLATES_DIR = Path(__file__).parent / "templates"
REGISTRY_FILE = "registry.yaml"
CONFIG_TARGET = "vendrag_config.py"

STORE_CLASSES = {
    StoreAdapter.SQLALCHEMY.value: ("sqlalchemy_store", "SqlAlchemyStore"),
    StoreAdapter.PSYCOPG.value: ("psycopg_store", "PsycopgStore"),
    StoreAdapter.DJANGO.value: ("django_store", "DjangoStore"),
}

MODULE_KINDS = {
    "extractor": EXTRACTORS,
    "connector": CONNECTORS,
    "battery": BATTERIES,
}


# ============================================================================
# Slot types
# ============================================================================

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def _is_identifier(value: str) -> bool:
    """Dotted Python identifier (e.g. ``rag`` or ``app.rag``)."""
    parts = value.split(".")
    return all(p.isidentifier() and not keyword.iskeyword(p) for p in parts)


def _is_relative_path(value: str) -> bool:
    if not value or value.startswith("/") or "\\" in value:
        return False
    return ".." not in value.split("/")


SLOT_VALIDATORS = {
    "identifier": _is_identifier,
    "path": _is_relative_path,
    "name": lambda v: bool(_NAME_RE.match(v)),
}


# ============================================================================
# Templates
# ============================================================================

@dataclass(frozen=True)
class TemplateSpec:
    """One registry entry: template source, target path, declared slots."""
    template: str
    target: str
    slots: tuple[str, ...] = ()


class Template:
    """A template with named, typed insertion points."""

    def __init__(self, name: str, text: str, slot_types: dict[str, str]):
        self.name = name
        self._template = string.Template(text)
        self.slot_types = slot_types

        if not self._template.is_valid():
            raise TemplateError(f"{name}: malformed insertion point")
        undeclared = set(self._template.get_identifiers()) - set(slot_types)
        if undeclared:
            raise TemplateError(
                f"{name}: undeclared insertion point(s): {', '.join(sorted(undeclared))}"
            )

    def render(self, values: dict[str, str]) -> str:
        for slot, slot_type in self.slot_types.items():
            if slot not in values:
                raise TemplateError(f"{self.name}: missing value for '{slot}'")
            value = values[slot]
            if not isinstance(value, str):
                raise TemplateError(f"{self.name}: '{slot}' must be a string")
            validator = SLOT_VALIDATORS.get(slot_type)
            if validator is None:
                raise TemplateError(f"{self.name}: unknown slot type '{slot_type}'")
            if not validator(value):
                raise TemplateError(
                    f"{self.name}: '{slot}'={value!r} is not a valid {slot_type}"
                )
        return self._template.substitute({k: values[k] for k in self.slot_types})


class Registry:
    """
    Template registry loaded from templates/registry.yaml.

    Usage:
        registry = Registry.load()
        files = registry.render_init(selection)
    """

    def __init__(self, data: dict, templates_dir: Path = TEMPLATES_DIR):
        self._data = data
        self.templates_dir = Path(templates_dir)
        self.slot_types: dict[str, str] = data.get("slot_types", {})

    @classmethod
    def load(cls, templates_dir: Path = TEMPLATES_DIR) -> "Registry":
        path = Path(templates_dir) / REGISTRY_FILE
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise TemplateError(f"Could not load template registry {path}: {e}") from e
        return cls(data, templates_dir)

    def _specs(self, entries) -> list[TemplateSpec]:
        if isinstance(entries, dict):
            entries = [entries]
        return [
            TemplateSpec(
                template=e["template"],
                target=e["target"],
                slots=tuple(e.get("slots") or ()),
            )
            for e in entries or []
        ]

    def specs_for(self, section: str, key: Optional[str] = None) -> list[TemplateSpec]:
        entries = self._data.get(section)
        if key is not None:
            entries = (entries or {}).get(key)
        return self._specs(entries)

    def template(self, spec: TemplateSpec) -> Template:
        path = self.templates_dir / spec.template
        try:
            with open(path, encoding="utf-8", newline="") as f:
                text = f.read()
        except OSError as e:
            raise TemplateError(f"Could not read template {spec.template}: {e}") from e
        slot_types = {}
        for slot in spec.slots:
            if slot not in self.slot_types:
                raise TemplateError(f"{spec.template}: slot '{slot}' has no declared type")
            slot_types[slot] = self.slot_types[slot]
        return Template(spec.template, text, slot_types)

    def render(self, spec: TemplateSpec, values: dict[str, str]) -> tuple[str, str]:
        """Render one spec; returns (target, content)."""
        target = spec.target.format(**values)
        return target, self.template(spec).render(values)

    # ------------------------------------------------------------------
    # File sets
    # ------------------------------------------------------------------

    def render_init(self, selection: ModuleSelection) -> dict[str, str]:
        """
        Files written by ``init``: engine core, store, embedding provider,
        plus the top-level config file.

        Keys are project-relative POSIX paths.
        """
        values = base_slot_values(selection)
        files: dict[str, str] = {}
        install_specs = (
            self.specs_for("core")
            + self.specs_for("store", selection.store_adapter)
        )
        for spec in install_specs:
            target, content = self.render(spec, values)
            files[_join(selection.install_dir, target)] = content

        provider_values = {**values, **module_slot_values(selection.embedding_provider, "Embedder")}
        for spec in self.specs_for("embedding"):
            target, content = self.render(spec, provider_values)
            files[_join(selection.install_dir, target)] = content

        for spec in self.specs_for("config"):
            target, content = self.render(spec, values)
            files[target] = content

        return _with_package_inits(files, selection.install_dir)

    def render_module(self, selection: ModuleSelection, kind: str, name: str) -> dict[str, str]:
        """Files written by ``add`` for one extractor, connector or battery."""
        values = base_slot_values(selection)
        if kind == "battery":
            specs = self.specs_for("battery", name)
        else:
            specs = self.specs_for(kind)
            suffix = "Extractor" if kind == "extractor" else "Connector"
            values = {**values, **module_slot_values(name, suffix)}
        if not specs:
            raise TemplateError(f"No templates registered for {kind} '{name}'")

        files = {}
        for spec in specs:
            target, content = self.render(spec, values)
            files[_join(selection.install_dir, target)] = content
        return _with_package_inits(files, selection.install_dir)


def base_slot_values(selection: ModuleSelection) -> dict[str, str]:
    store_module, store_class = STORE_CLASSES[selection.store_adapter]
    provider = module_slot_values(selection.embedding_provider, "Embedder")
    return {
        "alias_base": selection.alias_base,
        "install_dir": selection.install_dir,
        "store_adapter": selection.store_adapter,
        "store_module": store_module,
        "store_class": store_class,
        "embedding_provider": selection.embedding_provider,
        "embedding_module": provider["module_id"],
        "embedding_class": provider["class_name"],
    }


def module_slot_values(name: str, suffix: str) -> dict[str, str]:
    module_id = name.replace("-", "_")
    class_name = "".join(part.capitalize() for part in re.split(r"[-_]", name)) + suffix
    return {"module_name": name, "module_id": module_id, "class_name": class_name}


def _join(install_dir: str, target: str) -> str:
    return f"{install_dir}/{target}" if install_dir else target


def _with_package_inits(files: dict[str, str], install_dir: str) -> dict[str, str]:
    """Add an ``__init__.py`` to every sub-package under the install dir."""
    result = dict(files)
    prefix = f"{install_dir}/" if install_dir else ""
    for path in files:
        if not path.startswith(prefix) or not path.endswith(".py"):
            continue
        parts = path[len(prefix):].split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            package = "/".join(parts[:depth])
            init_path = f"{prefix}{package}/__init__.py"
            result.setdefault(init_path, f'"""{package.replace("/", ".")} package."""\n')
    return result


# ============================================================================
# Installer
# ============================================================================

@dataclass
class InstallResult:
    """Outcome of an init/add run."""
    written: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    selection: Optional[ModuleSelection] = None


class Installer:
    """
    Writes rendered templates into a project and records them in state.

    Usage:
        installer = Installer()
        installer.init(project_root, selection)
        installer.add(project_root, "extractor", "pdf-text-layer")
    """

    def __init__(self, registry: Optional[Registry] = None, tool_version: str = __version__):
        self.registry = registry or Registry.load()
        self.tool_version = tool_version

    def init(
        self,
        project_root: Path,
        selection: ModuleSelection,
        overwrite: str = "skip",
    ) -> InstallResult:
        """
        Vendor the core engine for a selection.

        Existing extractors/connectors/batteries recorded in state are kept
        in the selection. Existing files are left alone unless
        overwrite="force".
        """
        project_root = Path(project_root)
        validate_selection(selection)

        existing = load_state(project_root)
        if existing is not None:
            previous = existing.selection() if existing.install_dir and existing.store_adapter else None
            if previous is not None:
                selection = ModuleSelection(
                    install_dir=selection.install_dir,
                    store_adapter=selection.store_adapter,
                    alias_base=selection.alias_base,
                    embedding_provider=selection.embedding_provider,
                    extractors=selection.extractors + previous.extractors,
                    connectors=selection.connectors + previous.connectors,
                    batteries=selection.batteries + previous.batteries,
                )

        files = self.registry.render_init(selection)
        result = self._write(project_root, files, overwrite)
        result.selection = selection

        ledger = ManagedFileLedger(existing.managed_files if existing else ())
        state = ProjectState.from_selection(
            selection,
            tool_version=self.tool_version,
            managed_files=ledger.extend(files).paths,
        )
        if existing is not None:
            # Keep unknown keys written by other tools.
            state = ProjectState.model_validate({**existing.to_dict(), **state.to_dict()})
        save_state(project_root, state)
        logger.info("Initialized %s with %d file(s)", selection.install_dir, len(files))
        return result

    def add(
        self,
        project_root: Path,
        kind: str,
        name: str,
        overwrite: str = "skip",
    ) -> InstallResult:
        """Vendor one extractor, connector or battery into an initialized project."""
        project_root = Path(project_root)
        if kind not in MODULE_KINDS:
            raise ValidationError(f"Unknown module kind '{kind}'")
        if name not in MODULE_KINDS[kind]:
            raise ValidationError(
                f"Unknown {kind} '{name}'. Available: {', '.join(MODULE_KINDS[kind])}"
            )

        state = load_state(project_root)
        if state is None or not state.install_dir or not state.store_adapter:
            raise ValidationError("Project is not initialized. Run `vendrag init` first.")

        selection = state.selection().with_module(kind, name)
        files = self.registry.render_module(selection, kind, name)
        result = self._write(project_root, files, overwrite)
        result.selection = selection

        updated = state.model_copy(update={
            "extractors": list(selection.extractors),
            "connectors": list(selection.connectors),
            "batteries": list(selection.batteries),
            "managed_files": ManagedFileLedger(state.managed_files).extend(files).paths,
        })
        save_state(project_root, updated)
        logger.info("Added %s '%s' (%d file(s))", kind, name, len(files))
        return result

    def _write(self, project_root: Path, files: dict[str, str], overwrite: str) -> InstallResult:
        result = InstallResult()
        for rel_path in sorted(files):
            target = project_root / rel_path
            if target.exists() and overwrite != "force":
                result.skipped.append(rel_path)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(files[rel_path], encoding="utf-8", newline="")
            result.written.append(rel_path)
        return result


def validate_selection(selection: ModuleSelection) -> None:
    """Raise ValidationError if a selection names unknown modules."""
    if selection.store_adapter not in STORE_CLASSES:
        raise ValidationError(
            f"Unknown store adapter '{selection.store_adapter}'. "
            f"Available: {', '.join(STORE_CLASSES)}"
        )
    if selection.embedding_provider not in EMBEDDING_PROVIDERS:
        raise ValidationError(f"Unknown embedding provider '{selection.embedding_provider}'")
    if not selection.install_dir or not _is_relative_path(selection.install_dir):
        raise ValidationError(f"Install dir must be a relative path: '{selection.install_dir}'")
    if not _is_identifier(selection.alias_base):
        raise ValidationError(f"Alias must be a Python module path: '{selection.alias_base}'")
