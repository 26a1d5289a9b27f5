"""
Transaction context: one connection, one persistence context.

A TransactionContext owns the store connection of one transaction and the
entities loaded or saved through it:

- identity map: at most one instance per (entity, id) inside a context
- snapshots: column values as last synchronized, used for dirty checking
- read-only set: entities loaded with the read-only hint, never dirty-checked

Pending changes to managed entities are written by flush(), which the
repository runs before every query and the store runs before commit.

Invariants:
    - The identifier of a persistent entity never changes (flush raises)
    - Relationship attributes of managed entities hold Refs
    - Lazy Refs load through this context and fail once it is closed
    - A DataRepoError inside operation() marks the context rollback-only

How to change safely:
    - Materialization reads the labels produced by the compiler; keep both
      in sync (EntityType.column_labels)
    - Do not flush from inside materialization
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from .errors import (
    DataRepoError,
    DetachedReferenceError,
    TransactionError,
    TransientReferenceError,
)
from .query.plan import PlanKind, QueryPlan
from .query.predicates import Comparator, Condition
from .refs import Ref
from .schema.registry import EntityRegistry
from .schema.types import EntityType, RelationKind, RelationshipDef

if TYPE_CHECKING:
    import sqlite3

    from .auditing import AuditingInterceptor
    from .store.sqlite import SqliteStore

logger = logging.getLogger(__name__)

Key = tuple[str, Any]


class TransactionContext:
    """Persistence context bound to one open store transaction.

    Created by SqliteStore.transaction(); not meant to be shared between
    threads.

    Attributes:
        store: Store executing plans for this context
        connection: Open connection holding the transaction
        registry: Entity registry
        auditing: Interceptor stamping audit fields (optional)
        actor: Actor recorded by the default actor resolver
        lock_timeout_ms: Wait limit for pessimistic locks
        active: False once committed or rolled back
        rollback_only: Set when an operation failed
    """

    def __init__(
        self,
        store: SqliteStore,
        connection: sqlite3.Connection,
        registry: EntityRegistry,
        auditing: Optional[AuditingInterceptor] = None,
        actor: Optional[str] = None,
        lock_timeout_ms: int = 3000,
    ) -> None:
        self.store = store
        self.connection = connection
        self.registry = registry
        self.auditing = auditing
        self.actor = actor
        self.lock_timeout_ms = lock_timeout_ms
        self.active = True
        self.rollback_only = False
        self._identity: dict[Key, Any] = {}
        self._snapshots: dict[Key, dict[str, Any]] = {}
        self._read_only: set[Key] = set()

    # -- lifecycle -----------------------------------------------------------

    def check_active(self) -> None:
        if not self.active:
            raise TransactionError("Transaction context is closed")

    @contextmanager
    def operation(self) -> Iterator[TransactionContext]:
        """Scope of one repository operation.

        Raises:
            TransactionError: If the context is closed
        """
        self.check_active()
        try:
            yield self
        except DataRepoError:
            self.rollback_only = True
            raise

    def set_rollback_only(self) -> None:
        self.rollback_only = True

    def close(self) -> None:
        """Detach everything; lazy refs fail from now on."""
        self.active = False
        self._identity.clear()
        self._snapshots.clear()
        self._read_only.clear()

    # -- identity map --------------------------------------------------------

    def _key(self, entity_type: EntityType, entity_id: Any) -> Key:
        return (entity_type.name, entity_id)

    def entity_type_of(self, entity: Any) -> EntityType:
        return self.registry.resolve(type(entity))

    def contains(self, entity: Any) -> bool:
        entity_type = self.entity_type_of(entity)
        key = self._key(entity_type, entity_type.get_id(entity))
        return self._identity.get(key) is entity

    def managed(self, entity_type: Optional[EntityType] = None) -> list[Any]:
        """Managed entities, optionally of one type, in load order."""
        if entity_type is None:
            return list(self._identity.values())
        return [e for (name, _), e in self._identity.items() if name == entity_type.name]

    def __len__(self) -> int:
        return len(self._identity)

    def detach(self, entity: Any) -> None:
        """Stop tracking one entity (pending changes are discarded)."""
        entity_type = self.entity_type_of(entity)
        key = self._key(entity_type, entity_type.get_id(entity))
        if self._identity.get(key) is entity:
            self._forget(key)

    def clear(self) -> None:
        """Detach every managed entity without flushing."""
        count = len(self._identity)
        self._identity.clear()
        self._snapshots.clear()
        self._read_only.clear()
        logger.debug(f"Cleared persistence context ({count} entities)")

    def _forget(self, key: Key) -> None:
        self._identity.pop(key, None)
        self._snapshots.pop(key, None)
        self._read_only.discard(key)

    def _manage(self, entity_type: EntityType, entity: Any, read_only: bool = False) -> None:
        key = self._key(entity_type, entity_type.get_id(entity))
        self._identity[key] = entity
        if read_only:
            self._read_only.add(key)
            self._snapshots.pop(key, None)
        else:
            self._read_only.discard(key)
            self._snapshots[key] = self._snapshot(entity_type, entity)

    # -- persistence ---------------------------------------------------------

    def persist(self, entity: Any) -> Any:
        """Insert a transient entity or merge a detached one.

        Returns:
            The managed instance (the argument itself unless another instance
            with the same id is already managed)

        Raises:
            TransientReferenceError: If a relationship points at an unsaved entity
            ValueError: If a field value does not match its declared kind
        """
        self.check_active()
        entity_type = self.entity_type_of(entity)
        entity_id = entity_type.get_id(entity)

        if entity_id is not None:
            key = self._key(entity_type, entity_id)
            managed = self._identity.get(key)
            if managed is entity:
                return entity
            if managed is not None:
                self._copy_state(entity_type, entity, managed)
                return managed
            if self._row_exists(entity_type, entity_id):
                return self._merge(entity_type, entity)

        return self._insert(entity_type, entity)

    def _insert(self, entity_type: EntityType, entity: Any) -> Any:
        if self.auditing is not None:
            self.auditing.on_before_create(self, entity_type, entity)
        self._validate(entity_type, entity)

        values = self._column_values(entity_type, entity)
        if values.get(entity_type.id_field) is None:
            values.pop(entity_type.id_field, None)
        plan = QueryPlan(PlanKind.INSERT, entity_type, values=tuple(values.items()))
        result = self.store.execute(self.connection, plan)
        if entity_type.get_id(entity) is None:
            setattr(entity, entity_type.id_field, result.lastrowid)

        self._wrap_references(entity_type, entity)
        self._manage(entity_type, entity)
        logger.debug(
            f"Inserted {entity_type.name}",
            extra={"entity": entity_type.name, "id": entity_type.get_id(entity)},
        )
        return entity

    def _merge(self, entity_type: EntityType, entity: Any) -> Any:
        # Creation metadata always comes from the stored row.
        if entity_type.audited:
            stored = self._select_by(entity_type, entity_type.id_field, entity_type.get_id(entity))[0]
            for name in self._created_names(entity_type):
                setattr(entity, name, stored[name])
        if self.auditing is not None:
            self.auditing.on_before_update(self, entity_type, entity)
        self._validate(entity_type, entity)
        self._write_update(entity_type, entity, self._column_values(entity_type, entity))
        self._wrap_references(entity_type, entity)
        self._manage(entity_type, entity)
        return entity

    def _copy_state(self, entity_type: EntityType, source: Any, target: Any) -> None:
        kept = self._created_names(entity_type)
        for f in entity_type.fields:
            if f.name in kept:
                continue
            setattr(target, f.name, getattr(source, f.name, None))
        for rel in entity_type.many_to_one():
            setattr(target, rel.name, getattr(source, rel.name, None))
        self._wrap_references(entity_type, target)

    @staticmethod
    def _created_names(entity_type: EntityType) -> tuple[str, ...]:
        if not entity_type.audited:
            return ()
        return (entity_type.audit_names.created_at, entity_type.audit_names.created_by)

    def remove(self, entity: Any) -> None:
        """Delete an entity's row and stop tracking it."""
        self.check_active()
        entity_type = self.entity_type_of(entity)
        entity_id = entity_type.get_id(entity)
        if entity_id is None:
            return
        plan = QueryPlan(
            PlanKind.DELETE,
            entity_type,
            predicate=Condition(entity_type.id_field, Comparator.EQUALS, entity_id),
        )
        self.store.execute(self.connection, plan)
        self._forget(self._key(entity_type, entity_id))

    def find(self, entity_type: EntityType, entity_id: Any) -> Optional[Any]:
        """Return the managed instance for an id, loading it when absent."""
        self.check_active()
        managed = self._identity.get(self._key(entity_type, entity_id))
        if managed is not None:
            return managed
        rows = self._select_by(entity_type, entity_type.id_field, entity_id)
        if not rows:
            return None
        return self.materialize(entity_type, rows[0])

    def refresh(self, entity: Any) -> Any:
        """Overwrite an entity's state with its current row.

        Raises:
            TransactionError: If the row no longer exists
        """
        self.check_active()
        entity_type = self.entity_type_of(entity)
        entity_id = entity_type.get_id(entity)
        rows = self._select_by(entity_type, entity_type.id_field, entity_id)
        if not rows:
            raise TransactionError(f"{entity_type.name} {entity_id} no longer exists")
        key = self._key(entity_type, entity_id)
        read_only = key in self._read_only
        self._apply_row(entity_type, entity, rows[0], "", ())
        self._manage(entity_type, entity, read_only=read_only)
        return entity

    def flush(self) -> int:
        """Write changes of managed, non-read-only entities.

        Returns:
            Number of entities updated

        Raises:
            TransactionError: If a managed entity's identifier was changed
        """
        self.check_active()
        updated = 0
        for key, entity in list(self._identity.items()):
            if key in self._read_only:
                continue
            entity_type = self.registry.resolve(key[0])
            if entity_type.get_id(entity) != key[1]:
                raise TransactionError(
                    f"Identifier of {entity_type.name} {key[1]!r} cannot change "
                    f"(now {entity_type.get_id(entity)!r})"
                )
            current = self._snapshot(entity_type, entity)
            if current == self._snapshots.get(key):
                continue
            if self.auditing is not None:
                self.auditing.on_before_update(self, entity_type, entity)
            self._validate(entity_type, entity)
            current = self._snapshot(entity_type, entity)
            previous = self._snapshots.get(key, {})
            changed = {k: v for k, v in current.items() if previous.get(k, object()) != v}
            self._write_update(entity_type, entity, changed)
            self._wrap_references(entity_type, entity)
            self._snapshots[key] = current
            updated += 1
        if updated:
            logger.debug(f"Flushed {updated} dirty entities")
        return updated

    def _write_update(self, entity_type: EntityType, entity: Any, values: Mapping[str, Any]) -> None:
        values = {k: v for k, v in values.items() if k != entity_type.id_field}
        if not values:
            return
        plan = QueryPlan(
            PlanKind.UPDATE,
            entity_type,
            predicate=Condition(entity_type.id_field, Comparator.EQUALS, entity_type.get_id(entity)),
            values=tuple(values.items()),
        )
        self.store.execute(self.connection, plan)

    def _row_exists(self, entity_type: EntityType, entity_id: Any) -> bool:
        plan = QueryPlan(
            PlanKind.COUNT,
            entity_type,
            predicate=Condition(entity_type.id_field, Comparator.EQUALS, entity_id),
        )
        return self.store.execute(self.connection, plan).rows[0][0] > 0

    def _select_by(self, entity_type: EntityType, path: str, value: Any) -> list[Mapping[str, Any]]:
        plan = QueryPlan(
            PlanKind.SELECT,
            entity_type,
            predicate=Condition(path, Comparator.EQUALS, value),
        )
        return self.store.execute(self.connection, plan).mappings()

    def _validate(self, entity_type: EntityType, entity: Any) -> None:
        is_valid, errors = entity_type.validate_entity(entity)
        if not is_valid:
            raise ValueError(f"Invalid {entity_type.name}: {'; '.join(errors)}")

    # -- column values -------------------------------------------------------

    def _column_values(self, entity_type: EntityType, entity: Any) -> dict[str, Any]:
        """Field values plus foreign keys, keyed by field / relationship name."""
        values = {f.name: getattr(entity, f.name, None) for f in entity_type.fields}
        for rel in entity_type.many_to_one():
            values[rel.name] = self._foreign_key(entity_type, rel, getattr(entity, rel.name, None))
        return values

    def _snapshot(self, entity_type: EntityType, entity: Any) -> dict[str, Any]:
        return self._column_values(entity_type, entity)

    def _foreign_key(self, entity_type: EntityType, rel: RelationshipDef, value: Any) -> Any:
        if value is None:
            return None
        target = self.registry.resolve(rel.target)
        if isinstance(value, Ref):
            if value.key is not None:
                return value.key
            if not value.resolved:
                return None
            value = value.value
            if value is None:
                return None
        if not isinstance(value, target.cls):
            raise TransactionError(
                f"'{rel.name}' of {entity_type.name} must reference a {target.name}, "
                f"got {type(value).__name__}"
            )
        key = target.get_id(value)
        if key is None:
            raise TransientReferenceError(entity_type.name, rel.name)
        return key

    def _wrap_references(self, entity_type: EntityType, entity: Any) -> None:
        """Normalize relationship attributes of a managed entity to Refs."""
        for rel in entity_type.relationships:
            value = getattr(entity, rel.name, None)
            if isinstance(value, Ref):
                if rel.single_valued and value.resolved and value.value is not None:
                    target = self.registry.resolve(rel.target)
                    current = target.get_id(value.value)
                    if current != value.key:
                        setattr(entity, rel.name, Ref.to(target.name, value.value, key=current))
                continue
            if rel.single_valued:
                if value is not None:
                    target = self.registry.resolve(rel.target)
                    setattr(entity, rel.name, Ref.to(target.name, value, key=target.get_id(value)))
            elif value is None:
                setattr(entity, rel.name, self._collection_ref(entity_type, rel, entity_type.get_id(entity)))
            else:
                setattr(entity, rel.name, Ref.to(rel.target, list(value), key=entity_type.get_id(entity)))

    # -- materialization -----------------------------------------------------

    def materialize(
        self,
        entity_type: EntityType,
        row: Mapping[str, Any],
        prefix: str = "",
        fetched: Iterable[str] = (),
        read_only: bool = False,
    ) -> Optional[Any]:
        """Turn one labelled row into a managed entity.

        Args:
            entity_type: Entity the row belongs to
            row: Column values keyed by label
            prefix: Label prefix of this entity's columns (fetched joins)
            fetched: Many-to-one relationships whose target columns are in
                the row under ``<name>.``
            read_only: Exclude the entity from dirty checking

        Returns:
            The managed instance, or None for an all-NULL outer join
        """
        entity_id = row.get(prefix + entity_type.id_field)
        if entity_id is None:
            return None
        fetched = tuple(fetched)
        key = self._key(entity_type, entity_id)
        existing = self._identity.get(key)
        if existing is not None:
            self._resolve_fetched(entity_type, existing, row, fetched, read_only)
            return existing

        entity = entity_type.cls.__new__(entity_type.cls)
        self._apply_row(entity_type, entity, row, prefix, fetched, read_only)
        self._manage(entity_type, entity, read_only=read_only)
        return entity

    def _apply_row(
        self,
        entity_type: EntityType,
        entity: Any,
        row: Mapping[str, Any],
        prefix: str,
        fetched: tuple[str, ...],
        read_only: bool = False,
    ) -> None:
        for f in entity_type.fields:
            setattr(entity, f.name, row.get(prefix + f.name))
        entity_id = entity_type.get_id(entity)

        for rel in entity_type.relationships:
            if rel.kind == RelationKind.ONE_TO_MANY:
                setattr(entity, rel.name, self._collection_ref(entity_type, rel, entity_id))
                continue
            fk = row.get(prefix + rel.name)
            if fk is None:
                setattr(entity, rel.name, None)
                continue
            target = self.registry.resolve(rel.target)
            if rel.name in fetched:
                related = self.materialize(target, row, rel.name + ".", read_only=read_only)
                setattr(entity, rel.name, Ref.to(target.name, related, key=fk))
            else:
                setattr(entity, rel.name, self._reference(target, fk))

    def _resolve_fetched(
        self,
        entity_type: EntityType,
        entity: Any,
        row: Mapping[str, Any],
        fetched: tuple[str, ...],
        read_only: bool,
    ) -> None:
        for name in fetched:
            rel = entity_type.get_relationship(name)
            if rel is None or not rel.single_valued:
                continue
            current = getattr(entity, name, None)
            if isinstance(current, Ref) and current.resolved:
                continue
            fk = row.get(name)
            if fk is None:
                continue
            target = self.registry.resolve(rel.target)
            related = self.materialize(target, row, name + ".", read_only=read_only)
            setattr(entity, name, Ref.to(target.name, related, key=fk))
        key = self._key(entity_type, entity_type.get_id(entity))
        if key in self._snapshots:
            self._snapshots[key] = self._snapshot(entity_type, entity)

    def _reference(self, target: EntityType, key: Any) -> Ref:
        def load() -> Any:
            if not self.active:
                raise DetachedReferenceError(target.name, key)
            return self.find(target, key)

        return Ref(target.name, key, loader=load)

    def _collection_ref(self, owner: EntityType, rel: RelationshipDef, owner_id: Any) -> Ref:
        target = self.registry.resolve(rel.target)

        def load() -> list[Any]:
            if not self.active:
                raise DetachedReferenceError(target.name, owner_id)
            if owner_id is None:
                return []
            rows = self._select_by(target, rel.mapped_by or "", owner_id)
            return [self.materialize(target, r) for r in rows]

        return Ref(target.name, owner_id, loader=load)

    def attach_collection(self, entity: Any, relationship: str, items: list[Any]) -> None:
        """Set a one-to-many attribute to an already loaded list."""
        entity_type = self.entity_type_of(entity)
        current = getattr(entity, relationship, None)
        if isinstance(current, Ref) and current.resolved:
            return
        setattr(
            entity,
            relationship,
            Ref.to(entity_type.get_relationship(relationship).target, items, key=entity_type.get_id(entity)),  # type: ignore[union-attr]
        )
