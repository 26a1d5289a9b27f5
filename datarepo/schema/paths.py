"""
Attribute path resolution against the entity registry.

A path is a field name (``username``), a dotted walk through many-to-one
relationships ending at a field (``team.name``), or a path ending at a
many-to-one relationship (``team``), which resolves to its join column.

Invariants:
    - Only single-valued relationships can be traversed
    - Resolution is pure; results can be cached by (entity, path)
"""

from __future__ import annotations

from dataclasses import dataclass
from difflib import get_close_matches

from ..errors import UnknownFieldError
from .registry import EntityRegistry
from .types import EntityType, FieldDef, RelationshipDef


@dataclass(frozen=True)
class ResolvedPath:
    """A path resolved to a column.

    Attributes:
        path: The dotted path as written
        root: Entity the path starts from
        joins: Relationships traversed, in order
        owner: Entity whose table holds the column
        field: Field definition of the column
        reference: Set when the path ends at a many-to-one relationship;
            ``field`` then describes the join column
    """

    path: str
    root: EntityType
    joins: tuple[RelationshipDef, ...]
    owner: EntityType
    field: FieldDef
    reference: RelationshipDef | None = None

    @property
    def join_key(self) -> tuple[str, ...]:
        """Relationship names traversed; identifies the join alias."""
        return tuple(r.name for r in self.joins)


def resolve_path(registry: EntityRegistry, entity: EntityType, path: str) -> ResolvedPath:
    """Resolve a dotted attribute path to a column.

    Args:
        registry: Registry holding relationship targets
        entity: Entity the path starts from
        path: Dotted attribute path

    Returns:
        ResolvedPath describing joins and the final column

    Raises:
        UnknownFieldError: If a segment is unknown or not traversable
    """
    segments = path.split(".")
    current = entity
    joins: list[RelationshipDef] = []

    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        field_def = current.get_field(segment)
        if field_def is not None:
            if not last:
                raise UnknownFieldError(path, entity.name)
            return ResolvedPath(path, entity, tuple(joins), current, field_def)

        rel = current.get_relationship(segment)
        if rel is None or not rel.single_valued:
            known = current.get_field_names() + [
                r.name for r in current.relationships if r.single_valued
            ]
            prefix = ".".join(segments[:i])
            suggestions = [
                f"{prefix}.{s}" if prefix else s
                for s in get_close_matches(segment, known, n=3)
            ]
            raise UnknownFieldError(path, entity.name, suggestions)

        target = registry.resolve(rel.target)
        if last:
            fk = FieldDef(name=rel.name, kind=target.id.kind, column=rel.join_column)
            return ResolvedPath(path, entity, tuple(joins), current, fk, reference=rel)

        joins.append(rel)
        current = target

    raise UnknownFieldError(path, entity.name)
