"""
Composable predicates over entity attribute paths.

Predicates are immutable trees:
- Condition: a leaf binding a path, a comparator and a value
- Junction: two predicates joined by AND / OR
- Negation: NOT of a predicate

Invariants:
    - Trees are frozen; combinators always return new trees
    - Junctions keep declaration order (no precedence reordering)
    - Values for IN / NOT_IN are stored as tuples, BETWEEN as a 2-tuple

Example:
    >>> from datarepo.query.predicates import path
    >>> p = path("username").equals("AAAA") & path("age").greater_than(15)
    >>> p.paths()
    ('username', 'age')
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator


class Comparator(Enum):
    """Leaf comparison operators."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_EQUAL = "greater_than_equal"
    LESS_THAN = "less_than"
    LESS_THAN_EQUAL = "less_than_equal"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    LIKE = "like"
    CONTAINING = "containing"
    STARTING_WITH = "starting_with"
    ENDING_WITH = "ending_with"

    @property
    def arity(self) -> int:
        """Number of bound arguments the comparator consumes."""
        if self in (Comparator.IS_NULL, Comparator.IS_NOT_NULL):
            return 0
        if self is Comparator.BETWEEN:
            return 2
        return 1

    @property
    def requires_ordering(self) -> bool:
        return self in _ORDERING

    @property
    def string_only(self) -> bool:
        return self in _STRING_ONLY


_ORDERING = frozenset(
    {
        Comparator.GREATER_THAN,
        Comparator.GREATER_THAN_EQUAL,
        Comparator.LESS_THAN,
        Comparator.LESS_THAN_EQUAL,
        Comparator.BETWEEN,
    }
)

_STRING_ONLY = frozenset(
    {
        Comparator.LIKE,
        Comparator.CONTAINING,
        Comparator.STARTING_WITH,
        Comparator.ENDING_WITH,
    }
)


class Connector(Enum):
    """Boolean connector between predicates."""

    AND = "and"
    OR = "or"


class Predicate:
    """Base class for predicate trees."""

    def __and__(self, other: Predicate) -> Predicate:
        return and_(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return or_(self, other)

    def __invert__(self) -> Predicate:
        return not_(self)

    def conditions(self) -> Iterator[Condition]:
        """Iterate leaf conditions depth-first, left to right."""
        raise NotImplementedError

    def paths(self) -> tuple[str, ...]:
        """Distinct attribute paths referenced by the tree, in first-use order."""
        return tuple(dict.fromkeys(c.path for c in self.conditions()))


@dataclass(frozen=True)
class Condition(Predicate):
    """Leaf predicate: ``path <comparator> value``."""

    path: str
    comparator: Comparator
    value: Any = None
    ignore_case: bool = False

    def conditions(self) -> Iterator[Condition]:
        yield self


@dataclass(frozen=True)
class Junction(Predicate):
    """``left AND right`` or ``left OR right``."""

    connector: Connector
    left: Predicate
    right: Predicate

    def conditions(self) -> Iterator[Condition]:
        yield from self.left.conditions()
        yield from self.right.conditions()


@dataclass(frozen=True)
class Negation(Predicate):
    """``NOT inner``."""

    inner: Predicate

    def conditions(self) -> Iterator[Condition]:
        yield from self.inner.conditions()


def and_(*predicates: Predicate | None) -> Predicate | None:
    """Left-associative conjunction; ``None`` operands are skipped."""
    return _combine(Connector.AND, predicates)


def or_(*predicates: Predicate | None) -> Predicate | None:
    """Left-associative disjunction; ``None`` operands are skipped."""
    return _combine(Connector.OR, predicates)


def not_(predicate: Predicate) -> Predicate:
    if isinstance(predicate, Negation):
        return predicate.inner
    return Negation(predicate)


def _combine(connector: Connector, predicates: Iterable[Predicate | None]) -> Predicate | None:
    result: Predicate | None = None
    for p in predicates:
        if p is None:
            continue
        result = p if result is None else Junction(connector, result, p)
    return result


def condition(path: str, comparator: Comparator, *args: Any, ignore_case: bool = False) -> Condition:
    """Build a leaf from a comparator and its positional arguments.

    Raises:
        ValueError: If the argument count does not match the comparator's arity
    """
    if len(args) != comparator.arity:
        raise ValueError(
            f"{comparator.name} on '{path}' takes {comparator.arity} argument(s), got {len(args)}"
        )
    if comparator.arity == 0:
        value = None
    elif comparator is Comparator.BETWEEN:
        value = (args[0], args[1])
    elif comparator in (Comparator.IN, Comparator.NOT_IN):
        value = tuple(args[0])
    else:
        value = args[0]
    return Condition(path, comparator, value, ignore_case)


class PathBuilder:
    """Fluent leaf constructors for one attribute path."""

    def __init__(self, path: str) -> None:
        self.path = path

    def equals(self, value: Any) -> Condition:
        return Condition(self.path, Comparator.EQUALS, value)

    def equals_ignore_case(self, value: str) -> Condition:
        return Condition(self.path, Comparator.EQUALS, value, ignore_case=True)

    def not_equals(self, value: Any) -> Condition:
        return Condition(self.path, Comparator.NOT_EQUALS, value)

    def greater_than(self, value: Any) -> Condition:
        return Condition(self.path, Comparator.GREATER_THAN, value)

    def greater_than_or_equal(self, value: Any) -> Condition:
        return Condition(self.path, Comparator.GREATER_THAN_EQUAL, value)

    def less_than(self, value: Any) -> Condition:
        return Condition(self.path, Comparator.LESS_THAN, value)

    def less_than_or_equal(self, value: Any) -> Condition:
        return Condition(self.path, Comparator.LESS_THAN_EQUAL, value)

    def between(self, low: Any, high: Any) -> Condition:
        return Condition(self.path, Comparator.BETWEEN, (low, high))

    def in_(self, values: Iterable[Any]) -> Condition:
        return Condition(self.path, Comparator.IN, tuple(values))

    def not_in(self, values: Iterable[Any]) -> Condition:
        return Condition(self.path, Comparator.NOT_IN, tuple(values))

    def is_null(self) -> Condition:
        return Condition(self.path, Comparator.IS_NULL)

    def is_not_null(self) -> Condition:
        return Condition(self.path, Comparator.IS_NOT_NULL)

    def like(self, pattern: str) -> Condition:
        return Condition(self.path, Comparator.LIKE, pattern)

    def containing(self, value: str, ignore_case: bool = False) -> Condition:
        return Condition(self.path, Comparator.CONTAINING, value, ignore_case)

    def starting_with(self, value: str, ignore_case: bool = False) -> Condition:
        return Condition(self.path, Comparator.STARTING_WITH, value, ignore_case)

    def ending_with(self, value: str, ignore_case: bool = False) -> Condition:
        return Condition(self.path, Comparator.ENDING_WITH, value, ignore_case)


def path(name: str) -> PathBuilder:
    """Start a leaf predicate on an attribute path."""
    return PathBuilder(name)
