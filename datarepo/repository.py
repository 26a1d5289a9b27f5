"""
Repositories: the public query surface of datarepo.

A Repository serves one entity type. Every operation takes the open
TransactionContext as its first argument and runs inside it:

- CRUD: save, save_all, find_by_id, exists_by_id, delete, delete_by_id, delete_all
- Queries: find_all, find_one, count, exists, find_by_example
- Shaping: project, fetch_eager, read_only, lock_for_update
- Windows: page (bounded query + count), slice (bounded query + lookahead)
- Writes: bulk_update (one UPDATE statement)
- Native SQL: native, native_page
- Derived queries declared on subclasses with derived_query()

Invariants:
    - Pending changes of managed entities are flushed before every query
    - A DataRepoError raised by an operation marks the transaction rollback-only
    - page() issues exactly one bounded SELECT and one COUNT
    - slice() issues exactly one SELECT of size + 1 rows
    - Windows count root entities: with a one-to-many fetch the window is
      taken over root ids first, then the page is loaded by id

How to change safely:
    - New operations should go through _select / _count so flushing,
      logging and stats stay uniform
    - Derived query names are parsed at class creation; keep parsing cheap
      and free of registry access

Example:
    >>> class MemberRepository(Repository):
    ...     entity = Member
    ...     find_by_username_and_age_greater_than = derived_query()
    ...     count_by_age = derived_query()
    >>> members = MemberRepository(registry)
    >>> with store.transaction(registry) as tx:
    ...     members.find_by_username_and_age_greater_than(tx, "AAA", 15)
"""

from __future__ import annotations

import functools
import logging
from enum import Enum
from typing import Any, ClassVar, Generic, Iterable, Mapping, Optional, Sequence, TypeVar, Union

from .config import RepositorySettings
from .errors import InvalidPageSizeError, NonUniqueResultError, QueryDefinitionError
from .query.derivation import DerivedQuery, QueryDerivationEngine, QuerySpec, parse_method_name
from .query.example import ExampleMatcher, from_example
from .query.native import NativeQuery
from .query.paging import Page, PageRequest, Slice, Sort
from .query.plan import Increment, LockMode, PlanKind, QueryPlan
from .query.predicates import Comparator, Condition, Predicate
from .query.projection import Projection, Shape, resolve_projection, shape_native_row
from .schema.registry import EntityRegistry
from .schema.types import EntityType, FetchMode, FieldKind
from .session import TransactionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INCREMENTABLE = frozenset({FieldKind.INTEGER, FieldKind.FLOAT, FieldKind.TIMESTAMP})


class ResultKind(Enum):
    """What a derived query returns."""

    LIST = "list"
    ONE = "one"
    PAGE = "page"
    SLICE = "slice"
    COUNT = "count"
    EXISTS = "exists"


class derived_query:
    """Declare a derived query on a Repository subclass.

    The attribute name is parsed into a QuerySpec when the class is created
    (unless ``spec`` is given); the spec is resolved against the registry
    when the repository is instantiated.

    Args:
        result: Result kind (defaults from the verb: ``count`` -> COUNT,
            ``exists`` -> EXISTS, ``find_first`` -> ONE, else LIST)
        spec: Explicit clause list instead of parsing the name
        fetch: Relationships resolved in the same statement
        lock: Lock taken on matched rows
        read_only: Load without dirty checking
        projection: Default projection shape

    Example:
        >>> find_by_names = derived_query(spec=QuerySpec((Clause("username", Comparator.IN),)))
    """

    def __init__(
        self,
        result: Optional[ResultKind] = None,
        *,
        spec: Optional[QuerySpec] = None,
        fetch: Sequence[str] = (),
        lock: LockMode = LockMode.NONE,
        read_only: bool = False,
        projection: Optional[Shape] = None,
    ) -> None:
        self.result = result
        self.spec = spec
        self.fetch = tuple(fetch)
        self.lock = lock
        self.read_only = read_only
        self.projection = projection
        self.name = ""

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name
        if self.spec is None:
            parsed = parse_method_name(name)
            self.spec = parsed.spec
            if self.result is None:
                if parsed.verb == "count":
                    self.result = ResultKind.COUNT
                elif parsed.verb == "exists":
                    self.result = ResultKind.EXISTS
                elif parsed.spec.limit == 1:
                    self.result = ResultKind.ONE
        if self.result is None:
            self.result = ResultKind.LIST

    def __get__(self, instance: Optional[Repository], owner: type) -> Any:
        if instance is None:
            return self
        return functools.partial(instance._run_derived, self)

    def __repr__(self) -> str:
        return f"derived_query({self.name!r}, result={self.result})"


class Repository(Generic[T]):
    """Query and persistence operations for one entity type.

    Subclasses set ``entity`` to the mapped class (or entity name) and may
    declare derived queries.

    Attributes:
        registry: Registry the entity is resolved from
        entity_type: The resolved entity type
        settings: Paging and query-by-example defaults
    """

    entity: ClassVar[Union[type, str]]

    def __init__(
        self,
        registry: EntityRegistry,
        settings: Optional[RepositorySettings] = None,
        engine: Optional[QueryDerivationEngine] = None,
    ) -> None:
        """Resolve the entity and every derived query declared on the class.

        Raises:
            UnknownEntityError: If the entity is not registered
            UnknownFieldError: If a derived query names an unknown path
            UnsupportedComparatorError: If a derived comparator does not fit
        """
        self.registry = registry
        self.settings = settings or RepositorySettings()
        self.engine = engine or QueryDerivationEngine(registry)
        self.entity_type: EntityType = registry.resolve(self.entity)
        self._derived: dict[str, DerivedQuery] = {}
        for name, descriptor in self._declared_queries().items():
            self._derived[name] = self.engine.derive(self.entity_type, descriptor.spec)  # type: ignore[arg-type]
        logger.debug(
            f"Initialized {type(self).__name__} with {len(self._derived)} derived queries",
            extra={"entity": self.entity_type.name},
        )

    @classmethod
    def _declared_queries(cls) -> dict[str, derived_query]:
        found: dict[str, derived_query] = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if isinstance(value, derived_query):
                    found[name] = value
        return found

    # -- CRUD ----------------------------------------------------------------

    def save(self, tx: TransactionContext, entity: T) -> T:
        """Insert a new entity or merge a detached one.

        Returns:
            The managed instance
        """
        with tx.operation():
            self._check_type(entity)
            return tx.persist(entity)

    def save_all(self, tx: TransactionContext, entities: Iterable[T]) -> list[T]:
        with tx.operation():
            saved = []
            for entity in entities:
                self._check_type(entity)
                saved.append(tx.persist(entity))
            return saved

    def find_by_id(self, tx: TransactionContext, entity_id: Any) -> Optional[T]:
        with tx.operation():
            tx.flush()
            return tx.find(self.entity_type, entity_id)

    def exists_by_id(self, tx: TransactionContext, entity_id: Any) -> bool:
        return self.exists(tx, self._id_equals(entity_id))

    def delete(self, tx: TransactionContext, entity: T) -> None:
        with tx.operation():
            self._check_type(entity)
            tx.flush()
            tx.remove(entity)

    def delete_by_id(self, tx: TransactionContext, entity_id: Any) -> bool:
        """Delete by identifier.

        Returns:
            False when no entity has that identifier
        """
        with tx.operation():
            tx.flush()
            entity = tx.find(self.entity_type, entity_id)
            if entity is None:
                return False
            tx.remove(entity)
            return True

    def delete_all(self, tx: TransactionContext, entities: Optional[Iterable[T]] = None) -> int:
        """Delete the given entities, or every row of the entity's table.

        Returns:
            Number of rows deleted
        """
        with tx.operation():
            tx.flush()
            if entities is not None:
                count = 0
                for entity in entities:
                    self._check_type(entity)
                    tx.remove(entity)
                    count += 1
                return count
            result = tx.store.execute(tx.connection, QueryPlan(PlanKind.DELETE, self.entity_type))
            for entity in tx.managed(self.entity_type):
                tx.detach(entity)
            return result.rowcount

    # -- queries -------------------------------------------------------------

    def find_all(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate] = None,
        sort: Optional[Sort] = None,
    ) -> list[T]:
        with tx.operation():
            return self._select(tx, predicate, sort=sort)

    def find_one(self, tx: TransactionContext, predicate: Optional[Predicate]) -> Optional[T]:
        """Return the single matching entity, or None.

        Raises:
            NonUniqueResultError: If more than one row matches
        """
        with tx.operation():
            return self._single(self._select(tx, predicate, limit=2))

    def count(self, tx: TransactionContext, predicate: Optional[Predicate] = None) -> int:
        with tx.operation():
            return self._count(tx, predicate)

    def exists(self, tx: TransactionContext, predicate: Optional[Predicate] = None) -> bool:
        with tx.operation():
            tx.flush()
            plan = QueryPlan(
                PlanKind.SELECT,
                self.entity_type,
                predicate=predicate,
                columns=(self.entity_type.id_field,),
                limit=1,
            )
            return bool(tx.store.execute(tx.connection, plan).rows)

    def find_by_example(
        self,
        tx: TransactionContext,
        probe: T,
        matcher: Optional[ExampleMatcher] = None,
        sort: Optional[Sort] = None,
    ) -> list[T]:
        """Find entities matching the populated attributes of a probe.

        Args:
            probe: Unsaved instance whose non-None attributes are matched
            matcher: Ignored paths and string matching (settings defaults)
        """
        with tx.operation():
            predicate = from_example(
                self.registry, self.entity_type, probe, matcher or self.settings.example_matcher()
            )
            return self._select(tx, predicate, sort=sort)

    def project(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        shape: Shape,
        sort: Optional[Sort] = None,
    ) -> list[Any]:
        """Return projections instead of entities, from one joined query."""
        with tx.operation():
            projection = resolve_projection(self.registry, self.entity_type, shape)
            return self._select_projection(tx, predicate, projection, sort=sort)

    def fetch_eager(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        relationships: Sequence[str],
        sort: Optional[Sort] = None,
    ) -> list[T]:
        """Load entities with the named relationships resolved in one query."""
        with tx.operation():
            return self._select(tx, predicate, sort=sort, fetch=tuple(relationships))

    def read_only(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate] = None,
        sort: Optional[Sort] = None,
    ) -> list[T]:
        """Load entities that are excluded from dirty checking."""
        with tx.operation():
            return self._select(tx, predicate, sort=sort, read_only=True)

    def lock_for_update(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate] = None,
        sort: Optional[Sort] = None,
    ) -> list[T]:
        """Load entities under a pessimistic write lock held until the
        transaction ends.

        Raises:
            LockTimeoutError: If the lock is not granted within tx.lock_timeout_ms
        """
        with tx.operation():
            return self._select(tx, predicate, sort=sort, lock=LockMode.PESSIMISTIC_WRITE)

    def bulk_update(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        assignments: Mapping[str, Any],
        clear: bool = False,
    ) -> int:
        """Update matching rows with one statement, bypassing change tracking.

        Args:
            predicate: Rows to update
            assignments: Field name to literal value or increment(n)
            clear: Detach every managed entity afterwards

        Returns:
            Number of rows updated

        Raises:
            ValueError: If a value does not match its field kind, or an
                increment targets a non-numeric field
        """
        self._check_assignments(assignments)
        with tx.operation():
            tx.flush()
            plan = QueryPlan(
                PlanKind.UPDATE,
                self.entity_type,
                predicate=predicate,
                values=tuple(assignments.items()),
            )
            result = tx.store.execute(tx.connection, plan)
            if clear:
                tx.clear()
            logger.debug(
                f"Bulk updated {result.rowcount} {self.entity_type.name} rows",
                extra={"entity": self.entity_type.name, "fields": list(assignments)},
            )
            return result.rowcount

    # -- windows -------------------------------------------------------------

    def page(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate] = None,
        page_request: Optional[PageRequest] = None,
        *,
        projection: Optional[Shape] = None,
        fetch: Sequence[str] = (),
        sort: Optional[Sort] = None,
    ) -> Page[Any]:
        """One page of results plus the total count.

        Raises:
            InvalidPageSizeError: If the size exceeds max_page_size
            UnknownFieldError: If a sort path is unknown
        """
        with tx.operation():
            return self._page(tx, predicate, page_request, projection, tuple(fetch), sort)

    def slice(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate] = None,
        page_request: Optional[PageRequest] = None,
        *,
        projection: Optional[Shape] = None,
        fetch: Sequence[str] = (),
        sort: Optional[Sort] = None,
    ) -> Slice[Any]:
        """One window of results; fetches one extra row to detect a next window."""
        with tx.operation():
            return self._slice(tx, predicate, page_request, projection, tuple(fetch), sort)

    # -- native --------------------------------------------------------------

    def native(
        self,
        tx: TransactionContext,
        query: Union[NativeQuery, str],
        *args: Any,
        projection: Optional[Shape] = None,
        **kwargs: Any,
    ) -> list[Any]:
        """Run caller-written SQL.

        Rows become entities when no projection is given and the result
        columns cover the entity's columns; otherwise dicts.

        Raises:
            ArityMismatchError: If arguments do not match the placeholders
        """
        with tx.operation():
            query = query if isinstance(query, NativeQuery) else NativeQuery(query)
            params = query.bind(*args, **kwargs)
            tx.flush()
            result = tx.store.execute_native(tx.connection, query.sql, params)
            return self._shape_native(tx, result.columns, result.rows, projection)

    def native_page(
        self,
        tx: TransactionContext,
        query: Union[NativeQuery, str],
        page_request: PageRequest,
        *args: Any,
        projection: Optional[Shape] = None,
        **kwargs: Any,
    ) -> Page[Any]:
        """Page over caller-written SQL using its count query."""
        with tx.operation():
            query = query if isinstance(query, NativeQuery) else NativeQuery(query)
            self._check_page_size(page_request)
            params = query.bind(*args, **kwargs)
            tx.flush()
            result = tx.store.execute_native(
                tx.connection, query.windowed(page_request.offset, page_request.size), params
            )
            content = self._shape_native(tx, result.columns, result.rows, projection)
            total = tx.store.execute_native(
                tx.connection, query.counting(), query.count_params(params)
            ).scalar()
            return Page(content, page_request.page, page_request.size, page_request.sort, total_elements=total or 0)

    # -- derived queries -----------------------------------------------------

    def _run_derived(
        self,
        descriptor: derived_query,
        tx: TransactionContext,
        *args: Any,
        page_request: Optional[PageRequest] = None,
        sort: Optional[Sort] = None,
        projection: Optional[Shape] = None,
    ) -> Any:
        with tx.operation():
            derived = self._derived[descriptor.name]
            predicate = derived.bind(*args)
            effective_sort = derived.sort.and_(sort) if sort else derived.sort
            shape = projection if projection is not None else descriptor.projection
            kind = descriptor.result
            fetch = descriptor.fetch

            if kind is ResultKind.COUNT:
                return self._count(tx, predicate)
            if kind is ResultKind.EXISTS:
                return bool(self._select(tx, predicate, limit=1))
            if kind in (ResultKind.PAGE, ResultKind.SLICE):
                if page_request is None:
                    raise QueryDefinitionError(
                        f"{descriptor.name} returns a {kind.value} and needs a page_request",
                        definition=descriptor.name,
                    )
                if kind is ResultKind.PAGE:
                    return self._page(tx, predicate, page_request, shape, fetch, effective_sort)
                return self._slice(tx, predicate, page_request, shape, fetch, effective_sort)

            offset = None
            limit = derived.spec.limit
            if page_request is not None:
                self._check_page_size(page_request)
                effective_sort = effective_sort.and_(page_request.sort)
                offset, limit = page_request.offset, page_request.size
            if kind is ResultKind.ONE:
                limit = 1 if derived.spec.limit == 1 else 2

            if shape is not None:
                projected = resolve_projection(self.registry, self.entity_type, shape)
                rows = self._select_projection(tx, predicate, projected, effective_sort, offset, limit)
            else:
                rows = self._select(
                    tx,
                    predicate,
                    sort=effective_sort,
                    offset=offset,
                    limit=limit,
                    fetch=fetch,
                    read_only=descriptor.read_only,
                    lock=descriptor.lock,
                )
            if kind is ResultKind.ONE:
                return self._single(rows)
            return rows

    # -- internals -----------------------------------------------------------

    def _check_type(self, entity: Any) -> None:
        if not isinstance(entity, self.entity_type.cls):
            raise TypeError(
                f"{type(self).__name__} stores {self.entity_type.cls.__name__}, "
                f"got {type(entity).__name__}"
            )

    def _check_assignments(self, assignments: Mapping[str, Any]) -> None:
        for name, value in assignments.items():
            field_def = self.entity_type.get_field(name)
            if field_def is None:
                # relationships and unknown names are resolved by the compiler
                continue
            if isinstance(value, Increment):
                amount = value.amount
                whole = field_def.kind is not FieldKind.FLOAT
                if (
                    field_def.kind not in _INCREMENTABLE
                    or isinstance(amount, bool)
                    or (whole and not isinstance(amount, int))
                ):
                    raise ValueError(
                        f"Cannot increment {field_def.kind.value} field '{name}' "
                        f"of {self.entity_type.name} by {amount!r}"
                    )
                continue
            is_valid, error = field_def.validate_value(value)
            if not is_valid:
                raise ValueError(f"Invalid bulk update of {self.entity_type.name}: {error}")

    def _id_equals(self, entity_id: Any) -> Predicate:
        return Condition(self.entity_type.id_field, Comparator.EQUALS, entity_id)

    def _single(self, rows: list[Any]) -> Optional[Any]:
        if len(rows) > 1:
            raise NonUniqueResultError(self.entity_type.name, len(rows))
        return rows[0] if rows else None

    def _check_page_size(self, page_request: PageRequest) -> None:
        if page_request.size > self.settings.max_page_size:
            raise InvalidPageSizeError(page_request.size, self.settings.max_page_size)

    def _default_request(self, page_request: Optional[PageRequest]) -> PageRequest:
        request = page_request or PageRequest.of(0, self.settings.default_page_size)
        self._check_page_size(request)
        return request

    def _eager_fetch(self, fetch: tuple[str, ...]) -> tuple[str, ...]:
        eager = tuple(
            r.name
            for r in self.entity_type.many_to_one()
            if r.fetch is FetchMode.EAGER and r.name not in fetch
        )
        return fetch + eager

    def _count(self, tx: TransactionContext, predicate: Optional[Predicate]) -> int:
        tx.flush()
        plan = QueryPlan(PlanKind.COUNT, self.entity_type, predicate=predicate)
        return tx.store.execute(tx.connection, plan).scalar() or 0

    def _select(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        sort: Optional[Sort] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
        fetch: tuple[str, ...] = (),
        read_only: bool = False,
        lock: LockMode = LockMode.NONE,
    ) -> list[Any]:
        tx.flush()
        if lock is not LockMode.NONE:
            tx.store.acquire_lock(tx.connection, self.entity_type, (), lock, tx.lock_timeout_ms)

        fetch = self._eager_fetch(fetch)
        single = tuple(n for n in fetch if self.entity_type.get_relationship(n).single_valued)  # type: ignore[union-attr]
        collections = [self.entity_type.get_relationship(n) for n in fetch if n not in single]

        # A window over joined collection rows would cut collections short,
        # so the window is applied to root ids first.
        window_ids: Optional[list[Any]] = None
        if collections and (limit is not None or offset):
            id_plan = QueryPlan(
                PlanKind.SELECT,
                self.entity_type,
                predicate=predicate,
                columns=(self.entity_type.id_field,),
                sort=sort or Sort(),
                offset=offset,
                limit=limit,
            )
            window_ids = [row[0] for row in tx.store.execute(tx.connection, id_plan).rows]
            if not window_ids:
                return []
            predicate = Condition(self.entity_type.id_field, Comparator.IN, tuple(window_ids))
            offset = limit = None

        plan = QueryPlan(
            PlanKind.SELECT,
            self.entity_type,
            predicate=predicate,
            fetch=fetch,
            sort=sort or Sort(),
            offset=offset,
            limit=limit,
            lock=lock,
        )
        rows = tx.store.execute(tx.connection, plan).mappings()

        results: list[Any] = []
        seen: dict[int, list[list[Any]]] = {}
        for row in rows:
            entity = tx.materialize(self.entity_type, row, fetched=single, read_only=read_only)
            if id(entity) not in seen:
                seen[id(entity)] = [[] for _ in collections]
                results.append(entity)
            for bucket, rel in zip(seen[id(entity)], collections):
                target = self.registry.resolve(rel.target)  # type: ignore[union-attr]
                child = tx.materialize(target, row, prefix=rel.name + ".", read_only=read_only)  # type: ignore[union-attr]
                if child is not None and all(c is not child for c in bucket):
                    bucket.append(child)
        for entity in results:
            for bucket, rel in zip(seen[id(entity)], collections):
                tx.attach_collection(entity, rel.name, bucket)  # type: ignore[union-attr]
        if window_ids is not None:
            position = {entity_id: i for i, entity_id in enumerate(window_ids)}
            results.sort(key=lambda e: position[self.entity_type.get_id(e)])
        return results

    def _select_projection(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        projection: Projection,
        sort: Optional[Sort] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[Any]:
        tx.flush()
        plan = QueryPlan(
            PlanKind.SELECT,
            self.entity_type,
            predicate=predicate,
            columns=projection.columns,
            sort=sort or Sort(),
            offset=offset,
            limit=limit,
        )
        return [projection.build(row) for row in tx.store.execute(tx.connection, plan).rows]

    def _window(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        request: PageRequest,
        projection: Optional[Shape],
        fetch: tuple[str, ...],
        sort: Optional[Sort],
        limit: int,
    ) -> list[Any]:
        effective_sort = sort.and_(request.sort) if sort else request.sort
        if projection is not None:
            projected = resolve_projection(self.registry, self.entity_type, projection)
            return self._select_projection(tx, predicate, projected, effective_sort, request.offset, limit)
        return self._select(
            tx, predicate, sort=effective_sort, offset=request.offset, limit=limit, fetch=fetch
        )

    def _page(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        page_request: Optional[PageRequest],
        projection: Optional[Shape],
        fetch: tuple[str, ...],
        sort: Optional[Sort],
    ) -> Page[Any]:
        request = self._default_request(page_request)
        content = self._window(tx, predicate, request, projection, fetch, sort, request.size)
        total = self._count(tx, predicate)
        return Page(content, request.page, request.size, request.sort, total_elements=total)

    def _slice(
        self,
        tx: TransactionContext,
        predicate: Optional[Predicate],
        page_request: Optional[PageRequest],
        projection: Optional[Shape],
        fetch: tuple[str, ...],
        sort: Optional[Sort],
    ) -> Slice[Any]:
        request = self._default_request(page_request)
        content = self._window(tx, predicate, request, projection, fetch, sort, request.size + 1)
        has_next = len(content) > request.size
        return Slice(content[: request.size], request.page, request.size, request.sort, next_available=has_next)

    def _shape_native(
        self,
        tx: TransactionContext,
        columns: Sequence[str],
        rows: list[tuple[Any, ...]],
        projection: Optional[Shape],
    ) -> list[Any]:
        mappings = [dict(zip(columns, row)) for row in rows]
        if projection is not None:
            return [shape_native_row(projection, m) for m in mappings]

        labels = self._native_entity_labels(columns)
        if labels is None:
            return mappings
        return [
            tx.materialize(self.entity_type, {label: m[column] for label, column in labels.items()})
            for m in mappings
        ]

    def _native_entity_labels(self, columns: Sequence[str]) -> Optional[dict[str, str]]:
        """Map entity labels to result columns when the row covers the entity."""
        by_name = {c.lower(): c for c in columns}
        labels: dict[str, str] = {}
        for f in self.entity_type.fields:
            column = by_name.get(f.column_name.lower())
            if column is None:
                return None
            labels[f.name] = column
        for rel in self.entity_type.many_to_one():
            column = by_name.get((rel.join_column or "").lower())
            if column is None:
                return None
            labels[rel.name] = column
        return labels
