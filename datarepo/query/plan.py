"""
Abstract query plans.

A QueryPlan is what the execution layer hands to the store: predicate,
projection, joins, sort, window and lock mode for one entity. The store's
compiler turns it into dialect statements; nothing above the store builds
SQL for derived queries.

Invariants:
    - Plans are immutable and can be logged or recorded verbatim
    - SELECT plans with an empty ``columns`` select every entity column
    - ``fetch`` names relationships resolved in the same statement
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..schema.types import EntityType
from .paging import Sort
from .predicates import Predicate


class PlanKind(Enum):
    SELECT = "select"
    COUNT = "count"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class LockMode(Enum):
    NONE = "none"
    PESSIMISTIC_READ = "pessimistic_read"
    PESSIMISTIC_WRITE = "pessimistic_write"


@dataclass(frozen=True)
class Increment:
    """Assignment expression ``column = column + amount``."""

    amount: int | float = 1


def increment(amount: int | float = 1) -> Increment:
    return Increment(amount)


@dataclass(frozen=True)
class QueryPlan:
    """One abstract statement against an entity's table.

    Attributes:
        kind: Statement kind
        entity: Target entity
        predicate: Filter (None matches every row)
        columns: Attribute paths to project (SELECT only; empty = whole entity)
        fetch: Relationships to join and materialize (SELECT only)
        sort: Ordering
        offset: Rows to skip
        limit: Maximum rows
        values: Column values (INSERT) or assignments (UPDATE), keyed by
            field name, many-to-one relationship name, or column
        lock: Lock requested for matched rows
    """

    kind: PlanKind
    entity: EntityType
    predicate: Predicate | None = None
    columns: tuple[str, ...] = ()
    fetch: tuple[str, ...] = ()
    sort: Sort = field(default_factory=Sort)
    offset: int | None = None
    limit: int | None = None
    values: tuple[tuple[str, Any], ...] = ()
    lock: LockMode = LockMode.NONE

    def describe(self) -> dict[str, Any]:
        """Small dict for structured logging."""
        info: dict[str, Any] = {"kind": self.kind.value, "entity": self.entity.name}
        if self.predicate is not None:
            info["paths"] = list(self.predicate.paths())
        if self.columns:
            info["columns"] = list(self.columns)
        if self.fetch:
            info["fetch"] = list(self.fetch)
        if self.limit is not None:
            info["limit"] = self.limit
        if self.offset:
            info["offset"] = self.offset
        if self.lock is not LockMode.NONE:
            info["lock"] = self.lock.value
        return info
