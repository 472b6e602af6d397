"""
vendrag CLI

    vendrag init      Vendor the RAG engine sources into this project
    vendrag add       Vendor an extractor, connector or battery
    vendrag upgrade   Pull upstream changes into the vendored sources
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .errors import VendragError
from .installer import Installer
from .modules import (
    BATTERIES,
    CONNECTORS,
    DEFAULT_ALIAS_BASE,
    DEFAULT_EMBEDDING_PROVIDER,
    DEFAULT_INSTALL_DIR,
    EMBEDDING_PROVIDERS,
    EXTRACTORS,
    ModuleSelection,
    StoreAdapter,
)
from .settings import Settings
from .upgrade.deps import (
    DependencyReconciler,
    detect_package_manager,
    install_command,
    install_dependencies,
    read_manifest,
    write_manifest,
)
from .upgrade.orchestrator import UpgradeOptions, UpgradeOrchestrator, find_project_root

logger = logging.getLogger(__name__)


def _project_root(args) -> Path:
    start = Path(args.dir_root or ".")
    return find_project_root(start) or start.resolve()


def _sync_dependencies(root: Path, selection: ModuleSelection, no_install: bool, quiet: bool) -> None:
    """Add missing dependencies to pyproject.toml and optionally install them."""
    settings = Settings.load()
    manifest, changes = DependencyReconciler().reconcile(read_manifest(root), selection)
    if not changes:
        return

    write_manifest(root, manifest)
    if not quiet:
        print(f"Deps: {', '.join(c.name for c in changes)}")

    if no_install or settings.skip_install:
        if not quiet:
            print(f"Next: run `{install_command(detect_package_manager(root))}`")
        return
    install_dependencies(root, timeout=settings.timeout("install"))


# ============================================================================
# Commands
# ============================================================================

def cmd_init(args) -> int:
    """Vendor the engine core, store adapter and embedding provider."""
    root = Path(args.dir_root or ".").resolve()
    selection = ModuleSelection(
        install_dir=args.dir,
        store_adapter=args.store,
        alias_base=args.alias,
        embedding_provider=args.provider,
    )
    result = Installer().init(root, selection, overwrite=args.overwrite)

    if not args.quiet:
        print(f"Vendored {len(result.written)} file(s) into {selection.install_dir}/")
        for path in result.skipped:
            print(f"  skipped (exists): {path}")
    _sync_dependencies(root, result.selection, args.no_install, args.quiet)
    return 0


def cmd_add(args) -> int:
    """Vendor one extractor, connector or battery."""
    root = _project_root(args)
    if args.target in ("extractor", "battery"):
        if not args.name:
            print(f"Error: `vendrag add {args.target}` needs a name", file=sys.stderr)
            return 1
        kind, name = args.target, args.name
    else:
        kind, name = "connector", args.target

    result = Installer().add(root, kind, name)
    if not args.quiet:
        print(f"Added {kind} '{name}' ({len(result.written)} file(s))")
    _sync_dependencies(root, result.selection, args.no_install, args.quiet)
    return 0


def cmd_upgrade(args) -> int:
    """Upgrade vendored sources to this version."""
    start = Path(args.dir_root or ".")
    root = find_project_root(start)
    if root is None:
        print("Error: Could not find a project root (no vendrag.json or pyproject.toml).", file=sys.stderr)
        return 1

    options = UpgradeOptions(
        from_version=args.from_version,
        overwrite=args.overwrite,
        dry_run=args.dry_run,
        no_install=args.no_install,
        allow_dirty=args.allow_dirty,
        yes=args.yes,
    )
    outcome = UpgradeOrchestrator(root, options).run()
    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2, default=str))
    else:
        print("\n".join(outcome.report))
    return 0


# ============================================================================
# Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vendrag",
        description="Vendor RAG engine sources into your project and keep them upgradeable",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vendrag init --store sqlalchemy --dir rag
  vendrag add extractor pdf-text-layer
  vendrag add notion
  vendrag upgrade --dry-run
        """
    )
    parser.add_argument("-C", "--dir-root", default=None, help="Run as if started in this directory")
    parser.add_argument("--verbose", action="store_true", help="Show debug logs")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init
    init_parser = subparsers.add_parser("init", help="Vendor the RAG engine sources")
    init_parser.add_argument("--store", default=StoreAdapter.SQLALCHEMY.value,
                             choices=[a.value for a in StoreAdapter], help="Vector store adapter")
    init_parser.add_argument("--dir", default=DEFAULT_INSTALL_DIR, help="Install directory (default: rag)")
    init_parser.add_argument("--alias", default=DEFAULT_ALIAS_BASE, help="Import path of the install directory")
    init_parser.add_argument("--provider", default=DEFAULT_EMBEDDING_PROVIDER,
                             choices=EMBEDDING_PROVIDERS, help="Embedding provider")
    init_parser.add_argument("-y", "--yes", action="store_true", help="Non-interactive; accept defaults")
    init_parser.add_argument("--no-install", action="store_true", help="Skip dependency installation")
    init_parser.add_argument("--overwrite", choices=["skip", "force"], default="skip",
                             help="What to do with files that already exist")
    init_parser.add_argument("--quiet", action="store_true", help="Only print errors")
    init_parser.set_defaults(func=cmd_init)

    # add
    add_parser = subparsers.add_parser(
        "add",
        help="Vendor an extractor, connector or battery",
        description=(
            f"Extractors: {', '.join(EXTRACTORS)}\n"
            f"Connectors: {', '.join(CONNECTORS)}\n"
            f"Batteries: {', '.join(BATTERIES)}"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_parser.add_argument("target", help="'extractor', 'battery', or a connector name")
    add_parser.add_argument("name", nargs="?", help="Extractor or battery name")
    add_parser.add_argument("-y", "--yes", action="store_true", help="Non-interactive")
    add_parser.add_argument("--no-install", action="store_true", help="Skip dependency installation")
    add_parser.add_argument("--quiet", action="store_true", help="Only print errors")
    add_parser.set_defaults(func=cmd_add)

    # upgrade
    upgrade_parser = subparsers.add_parser("upgrade", help="Safely update vendored sources")
    upgrade_parser.add_argument("--from-version", help="Base version to diff from (if missing in vendrag.json)")
    upgrade_parser.add_argument("--overwrite", choices=["skip", "force"], default="skip",
                                help="skip | force (only affects files never snapshotted)")
    upgrade_parser.add_argument("--dry-run", action="store_true", help="Plan only; do not write files")
    upgrade_parser.add_argument("--no-install", action="store_true", help="Skip dependency installation")
    upgrade_parser.add_argument("--allow-dirty", action="store_true",
                                help="Allow running with uncommitted git changes")
    upgrade_parser.add_argument("--verbose", action="store_true", default=argparse.SUPPRESS,
                                help="Show snapshot logs")
    upgrade_parser.add_argument("-y", "--yes", action="store_true", help="Non-interactive; skip prompts")
    upgrade_parser.add_argument("--json", action="store_true", help="Print the outcome as JSON (for CI)")
    upgrade_parser.set_defaults(func=cmd_upgrade)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except VendragError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
