"""
Query derivation engine.

Turns a structured query specification (ordered clauses, each naming an
attribute path, a comparator and the connector to the next clause) into a
predicate factory. Specifications are resolved against the entity registry
once, cached, and then bound to call arguments on every execution.

Method names are accepted as a configuration-time shorthand and parsed into
the same structure:

    find_by_username_and_age_greater_than
    find_member_by_team__name_order_by_username_desc
    count_by_age_between
    find_top_3_by_age_less_than_order_by_age

Invariants:
    - Connectors apply left to right in declaration order; there is no
      precedence (``a or b and c`` is ``(a or b) and c``)
    - Each clause consumes exactly Comparator.arity arguments
    - ``__`` in a method name separates path segments (``team__name``)
    - Attribute names containing ``_and_`` / ``_or_`` cannot be derived from
      names; use clause lists for them

How to change safely:
    - New comparator suffixes must be added longest-first to _SUFFIXES
    - Keep parsing out of the execution path (only at definition time)
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..errors import ArityMismatchError, QueryDefinitionError, UnsupportedComparatorError
from ..schema.paths import ResolvedPath, resolve_path
from ..schema.registry import EntityRegistry
from ..schema.types import EntityType, FieldKind
from .paging import Direction, Order, Sort
from .predicates import Comparator, Connector, Predicate, Junction, condition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Clause:
    """One clause of a derived query.

    Attributes:
        path: Attribute path the clause filters on
        comparator: Comparison applied to the bound value(s)
        connector: How this clause joins the *next* one
        ignore_case: Case-insensitive comparison (string paths only)
    """

    path: str
    comparator: Comparator = Comparator.EQUALS
    connector: Connector = Connector.AND
    ignore_case: bool = False


@dataclass(frozen=True)
class QuerySpec:
    """Structured specification of a derived query."""

    clauses: tuple[Clause, ...] = ()
    sort: Sort = field(default_factory=Sort)
    limit: Optional[int] = None

    @property
    def arity(self) -> int:
        return sum(c.comparator.arity for c in self.clauses)


@dataclass(frozen=True)
class ParsedName:
    """Result of parsing a query method name.

    Attributes:
        verb: find / read / get / query / search / count / exists
        subject: Free text between the verb and ``_by_`` (ignored for filtering)
        spec: The derived query specification
    """

    verb: str
    subject: str
    spec: QuerySpec


_NAME_PATTERN = re.compile(r"^(find|read|get|query|search|count|exists)(?:_(?!by_)(.*?))?_by_(.+)$")
_LIMIT_PATTERN = re.compile(r"^(?:first|top)(?:_?(\d+))?(?:_|$)")

# Longest suffix first; the remainder of the clause is the attribute path.
_SUFFIXES: Tuple[Tuple[str, Comparator], ...] = (
    ("_greater_than_equal", Comparator.GREATER_THAN_EQUAL),
    ("_less_than_equal", Comparator.LESS_THAN_EQUAL),
    ("_greater_than", Comparator.GREATER_THAN),
    ("_less_than", Comparator.LESS_THAN),
    ("_starting_with", Comparator.STARTING_WITH),
    ("_ending_with", Comparator.ENDING_WITH),
    ("_containing", Comparator.CONTAINING),
    ("_is_not_null", Comparator.IS_NOT_NULL),
    ("_not_null", Comparator.IS_NOT_NULL),
    ("_is_null", Comparator.IS_NULL),
    ("_null", Comparator.IS_NULL),
    ("_between", Comparator.BETWEEN),
    ("_not_in", Comparator.NOT_IN),
    ("_in", Comparator.IN),
    ("_like", Comparator.LIKE),
    ("_not", Comparator.NOT_EQUALS),
    ("_equals", Comparator.EQUALS),
    ("_is", Comparator.EQUALS),
)


def parse_method_name(name: str) -> ParsedName:
    """Parse a snake_case query method name.

    Args:
        name: Method name such as ``find_by_username_and_age_greater_than``

    Returns:
        ParsedName with verb, subject and QuerySpec

    Raises:
        QueryDefinitionError: If the name does not follow the grammar
    """
    match = _NAME_PATTERN.match(name)
    if not match:
        raise QueryDefinitionError(
            f"Cannot derive a query from '{name}': expected <verb>[_subject]_by_<criteria>",
            definition=name,
        )
    verb, subject, rest = match.group(1), match.group(2) or "", match.group(3)

    limit = None
    limit_match = _LIMIT_PATTERN.match(subject)
    if limit_match:
        limit = int(limit_match.group(1) or 1)

    criteria, _, ordering = rest.partition("_order_by_")
    if rest.startswith("order_by_"):
        criteria, ordering = "", rest[len("order_by_"):]

    clauses = _parse_criteria(criteria, name) if criteria else ()
    sort = _parse_ordering(ordering, name) if ordering else Sort()
    return ParsedName(verb, subject, QuerySpec(clauses, sort, limit))


def _parse_criteria(criteria: str, name: str) -> tuple[Clause, ...]:
    parts = re.split(r"_(and|or)_", criteria)
    terms, connectors = parts[0::2], parts[1::2]
    clauses = []
    for i, term in enumerate(terms):
        connector = Connector(connectors[i]) if i < len(connectors) else Connector.AND
        clauses.append(_parse_term(term, connector, name))
    return tuple(clauses)


def _parse_term(term: str, connector: Connector, name: str) -> Clause:
    ignore_case = False
    if term.endswith("_ignore_case"):
        ignore_case = True
        term = term[: -len("_ignore_case")]

    comparator = Comparator.EQUALS
    for suffix, candidate in _SUFFIXES:
        if term.endswith(suffix) and len(term) > len(suffix):
            comparator = candidate
            term = term[: -len(suffix)]
            break

    if not term or term.startswith("_") or term.endswith("_"):
        raise QueryDefinitionError(f"Missing attribute in query '{name}'", definition=name)
    return Clause(term.replace("__", "."), comparator, connector, ignore_case)


def _parse_ordering(ordering: str, name: str) -> Sort:
    orders = []
    for term in ordering.split("_and_"):
        direction = Direction.ASC
        for suffix, candidate in (("_desc", Direction.DESC), ("_asc", Direction.ASC)):
            if term.endswith(suffix):
                direction = candidate
                term = term[: -len(suffix)]
                break
        if not term:
            raise QueryDefinitionError(f"Missing sort attribute in query '{name}'", definition=name)
        orders.append(Order(term.replace("__", "."), direction))
    return Sort(tuple(orders))


_REFERENCE_COMPARATORS = frozenset(
    {
        Comparator.EQUALS,
        Comparator.NOT_EQUALS,
        Comparator.IN,
        Comparator.NOT_IN,
        Comparator.IS_NULL,
        Comparator.IS_NOT_NULL,
    }
)


def check_comparator(resolved: ResolvedPath, comparator: Comparator, ignore_case: bool = False) -> None:
    """Reject comparators that make no sense for the resolved column.

    Raises:
        UnsupportedComparatorError: For ordering on non-orderable kinds,
            string matching on non-string kinds, or value comparisons on
            relationship references
    """
    kind = resolved.field.kind
    if resolved.reference is not None and comparator not in _REFERENCE_COMPARATORS:
        raise UnsupportedComparatorError(comparator.name, resolved.path, "reference")
    if comparator.requires_ordering and not kind.orderable:
        raise UnsupportedComparatorError(comparator.name, resolved.path, kind.value)
    if (comparator.string_only or ignore_case) and kind is not FieldKind.STRING:
        raise UnsupportedComparatorError(comparator.name, resolved.path, kind.value)


class DerivedQuery:
    """A query specification resolved against one entity.

    Call bind() with the runtime arguments to get a predicate.
    """

    def __init__(self, entity: EntityType, spec: QuerySpec, paths: tuple[ResolvedPath, ...]) -> None:
        self.entity = entity
        self.spec = spec
        self.paths = paths

    @property
    def arity(self) -> int:
        return self.spec.arity

    @property
    def sort(self) -> Sort:
        return self.spec.sort

    def bind(self, *args: Any) -> Optional[Predicate]:
        """Bind arguments to the clauses, left to right.

        Returns:
            Left-associative predicate tree, or None for an empty spec

        Raises:
            ArityMismatchError: If len(args) differs from the spec's arity
        """
        if len(args) != self.arity:
            raise ArityMismatchError(
                f"Query on '{self.entity.name}' expects {self.arity} argument(s), got {len(args)}",
                expected=self.arity,
                actual=len(args),
            )

        result: Optional[Predicate] = None
        previous: Optional[Clause] = None
        position = 0
        for clause in self.spec.clauses:
            arity = clause.comparator.arity
            leaf = condition(
                clause.path,
                clause.comparator,
                *args[position:position + arity],
                ignore_case=clause.ignore_case,
            )
            position += arity
            if result is None or previous is None:
                result = leaf
            else:
                result = Junction(previous.connector, result, leaf)
            previous = clause
        return result

    def __repr__(self) -> str:
        clauses = ", ".join(f"{c.path} {c.comparator.name}" for c in self.spec.clauses)
        return f"DerivedQuery({self.entity.name}: {clauses})"


class QueryDerivationEngine:
    """Resolves and caches query specifications per entity.

    Thread safety:
        The cache is guarded by a lock; DerivedQuery objects are immutable
        after construction and can be shared.
    """

    def __init__(self, registry: EntityRegistry) -> None:
        self.registry = registry
        self._cache: Dict[Tuple[str, QuerySpec], DerivedQuery] = {}
        self._lock = threading.Lock()

    def derive(self, entity: EntityType | str | type, spec: QuerySpec) -> DerivedQuery:
        """Resolve a specification against an entity, using the cache.

        Raises:
            UnknownEntityError: If the entity is not registered
            UnknownFieldError: If a clause or sort path is unknown
            UnsupportedComparatorError: If a comparator does not fit its path
        """
        entity_type = self.registry.resolve(entity)
        key = (entity_type.name, spec)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        paths = []
        for clause in spec.clauses:
            resolved = resolve_path(self.registry, entity_type, clause.path)
            check_comparator(resolved, clause.comparator, clause.ignore_case)
            paths.append(resolved)
        for order in spec.sort:
            resolve_path(self.registry, entity_type, order.path)

        derived = DerivedQuery(entity_type, spec, tuple(paths))
        with self._lock:
            self._cache.setdefault(key, derived)
        logger.debug(f"Derived query {derived!r}")
        return derived

    def derive_name(self, entity: EntityType | str | type, name: str) -> tuple[ParsedName, DerivedQuery]:
        """Parse a method name and derive it."""
        parsed = parse_method_name(name)
        return parsed, self.derive(entity, parsed.spec)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
