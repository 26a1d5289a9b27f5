"""
datarepo - repository-style data access over SQLite.

This package implements an in-process query layer built on:
- An entity registry mapping Python classes onto tables
- Composable predicates, query by example and derived queries
- Repositories executing queries inside explicit transaction contexts
- Paging and slicing, projections, bulk updates, locks and auditing

Architecture:
    Repository ──▶ QueryPlan ──▶ SqlCompiler ──▶ SqliteStore
        │                                           │
        ▼                                           ▼
    TransactionContext (identity map, refs) ◀── rows

Invariants:
    - Every operation runs inside a TransactionContext passed explicitly
    - Predicates, specs and plans are immutable
    - Within one transaction an entity id maps to one instance

How to change safely:
    - Keep the compiler's column labels and session materialization in sync
    - Register every entity before building repositories
"""

from ._version import __version__
from .auditing import ActorResolver, AuditingInterceptor, ContextActorResolver
from .config import RepositorySettings, setup_logging
from .errors import (
    ArityMismatchError,
    DataRepoError,
    DetachedReferenceError,
    DuplicateRegistrationError,
    InvalidPageRequestError,
    InvalidPageSizeError,
    LockTimeoutError,
    NonUniqueResultError,
    QueryDefinitionError,
    RegistryFrozenError,
    TransactionError,
    TransientReferenceError,
    UnknownEntityError,
    UnknownFieldError,
    UnsupportedComparatorError,
)
from .query import (
    Clause,
    Comparator,
    Connector,
    Direction,
    ExampleMatcher,
    NativeQuery,
    Order,
    Page,
    PageRequest,
    QuerySpec,
    Slice,
    Sort,
    StringMatcher,
    and_,
    increment,
    not_,
    or_,
    path,
)
from .refs import Ref
from .repository import Repository, ResultKind, derived_query
from .schema import (
    EntityRegistry,
    EntityType,
    FetchMode,
    audit_fields,
    field,
    get_registry,
    many_to_one,
    one_to_many,
)
from .session import TransactionContext
from .store import QueryStats, SqliteStore

__all__ = [
    "__version__",
    # Schema
    "EntityRegistry",
    "EntityType",
    "FetchMode",
    "field",
    "many_to_one",
    "one_to_many",
    "audit_fields",
    "get_registry",
    # Queries
    "Clause",
    "Comparator",
    "Connector",
    "QuerySpec",
    "path",
    "and_",
    "or_",
    "not_",
    "ExampleMatcher",
    "StringMatcher",
    "NativeQuery",
    "increment",
    # Paging
    "Direction",
    "Order",
    "Sort",
    "PageRequest",
    "Page",
    "Slice",
    # Execution
    "Repository",
    "ResultKind",
    "derived_query",
    "TransactionContext",
    "Ref",
    "SqliteStore",
    "QueryStats",
    # Auditing
    "AuditingInterceptor",
    "ActorResolver",
    "ContextActorResolver",
    # Config
    "RepositorySettings",
    "setup_logging",
    # Errors
    "DataRepoError",
    "UnknownEntityError",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    "UnknownFieldError",
    "UnsupportedComparatorError",
    "ArityMismatchError",
    "QueryDefinitionError",
    "NonUniqueResultError",
    "InvalidPageRequestError",
    "InvalidPageSizeError",
    "TransactionError",
    "LockTimeoutError",
    "DetachedReferenceError",
    "TransientReferenceError",
]
