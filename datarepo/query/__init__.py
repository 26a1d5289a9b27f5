"""
Query module for datarepo.

This module provides everything above the store:
- Predicates and query by example
- Derived queries (clause lists and method names)
- Native queries, paging types, projections and abstract plans

Invariants:
    - Nothing here executes SQL
    - All value objects are immutable
"""

from .derivation import (
    Clause,
    DerivedQuery,
    ParsedName,
    QueryDerivationEngine,
    QuerySpec,
    parse_method_name,
)
from .example import ExampleMatcher, StringMatcher, from_example
from .native import NativeQuery, ParamStyle
from .paging import Direction, Order, Page, PageRequest, Slice, Sort
from .plan import Increment, LockMode, PlanKind, QueryPlan, increment
from .predicates import (
    Comparator,
    Condition,
    Connector,
    Junction,
    Negation,
    Predicate,
    and_,
    condition,
    not_,
    or_,
    path,
)
from .projection import Projection, resolve_projection

__all__ = [
    # Predicates
    "Comparator",
    "Connector",
    "Predicate",
    "Condition",
    "Junction",
    "Negation",
    "and_",
    "or_",
    "not_",
    "condition",
    "path",
    "ExampleMatcher",
    "StringMatcher",
    "from_example",
    # Derivation
    "Clause",
    "QuerySpec",
    "ParsedName",
    "DerivedQuery",
    "QueryDerivationEngine",
    "parse_method_name",
    "NativeQuery",
    "ParamStyle",
    # Paging
    "Direction",
    "Order",
    "Sort",
    "PageRequest",
    "Page",
    "Slice",
    # Plans
    "PlanKind",
    "LockMode",
    "QueryPlan",
    "Increment",
    "increment",
    "Projection",
    "resolve_projection",
]
