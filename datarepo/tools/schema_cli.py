"""
Schema CLI tool for datarepo.

Inspects the entity registry an application builds:
- snapshot: Print the registry as JSON, with its fingerprint
- ddl: Print the CREATE TABLE statements the SQLite store runs
- validate: Check relationships for unknown targets and bad inverses
- create: Create the tables in a database file

Usage:
    datarepo-schema snapshot myapp.models:registry > schema.lock.json
    datarepo-schema ddl myapp.models:registry
    datarepo-schema create myapp.models --database ./data/app.db

Invariants:
    - Snapshot output is deterministic (sorted JSON)
    - Validation errors cause a non-zero exit code

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from typing import Optional, Sequence

from ..schema import EntityRegistry, get_registry
from ..store.compiler import SqlCompiler

logger = logging.getLogger(__name__)


class SchemaCLI:
    """CLI tool for registry inspection.

    Example:
        >>> cli = SchemaCLI()
        >>> print(cli.snapshot(registry))
        >>> print(cli.ddl(registry))
    """

    def snapshot(self, registry: EntityRegistry) -> str:
        """Export the registry to JSON.

        Args:
            registry: Entity registry to export

        Returns:
            JSON string representation
        """
        output = {
            "version": 1,
            "fingerprint": registry.fingerprint or "unfrozen",
            "schema": registry.to_dict(),
        }
        return json.dumps(output, indent=2, sort_keys=True)

    def ddl(self, registry: EntityRegistry) -> str:
        """CREATE statements for every registered entity."""
        compiler = SqlCompiler(registry)
        statements = []
        for entity_type in registry.entities():
            statements.extend(compiler.ddl(entity_type))
        return ";\n\n".join(statements) + ";" if statements else ""

    def validate(self, registry: EntityRegistry) -> list[str]:
        return registry.validate_all()


def load_registry(target: Optional[str] = None) -> EntityRegistry:
    """Load a registry from ``module[:attribute]``.

    Without an attribute the module's ``registry`` or ``get_registry()`` is
    used; without a target, the global registry.

    Raises:
        ValueError: If the module exposes no registry
    """
    if not target:
        return get_registry()

    module_path, _, attribute = target.partition(":")
    module = importlib.import_module(module_path)
    if attribute:
        value = getattr(module, attribute)
        return value() if callable(value) and not isinstance(value, EntityRegistry) else value
    if hasattr(module, "registry"):
        return module.registry
    if hasattr(module, "get_registry"):
        return module.get_registry()
    raise ValueError(f"Module {module_path} has no 'registry' or 'get_registry()'")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point for the schema tool."""
    parser = argparse.ArgumentParser(description="datarepo schema tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    snapshot_parser = subparsers.add_parser("snapshot", help="Export registry to JSON")
    snapshot_parser.add_argument("target", nargs="?", help="module[:attribute] holding the registry")
    snapshot_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    ddl_parser = subparsers.add_parser("ddl", help="Print CREATE TABLE statements")
    ddl_parser.add_argument("target", nargs="?", help="module[:attribute] holding the registry")

    validate_parser = subparsers.add_parser("validate", help="Validate relationships")
    validate_parser.add_argument("target", nargs="?", help="module[:attribute] holding the registry")

    create_parser = subparsers.add_parser("create", help="Create tables in a database")
    create_parser.add_argument("target", nargs="?", help="module[:attribute] holding the registry")
    create_parser.add_argument("--database", "-d", required=True, help="SQLite database file")

    args = parser.parse_args(argv)
    cli = SchemaCLI()
    registry = load_registry(args.target)

    if args.command == "snapshot":
        if registry.fingerprint is None:
            registry.freeze()
        output = cli.snapshot(registry)
        if args.output:
            with open(args.output, "w") as f:
                f.write(output)
            print(f"Schema exported to {args.output}", file=sys.stderr)
        else:
            print(output)
        return 0

    if args.command == "ddl":
        print(cli.ddl(registry))
        return 0

    if args.command == "validate":
        errors = cli.validate(registry)
        if not errors:
            print("Schema is valid")
            return 0
        print(f"Schema validation failed with {len(errors)} error(s):")
        for error in errors:
            print(f"  - {error}")
        return 1

    from ..store.sqlite import SqliteStore

    SqliteStore(args.database).create_schema(registry)
    print(f"Created {len(list(registry.entities()))} table(s) in {args.database}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
