"""
Entity Registry for datarepo.

The EntityRegistry is the central authority for entity metadata.
It provides:
- Registration of entity types
- Lookup by entity name or mapped class
- Schema fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during configuration, frozen before serving
    - Once frozen, no new entities can be registered
    - Entity names, classes and tables are globally unique
    - Lookups never mutate the registry

How to change safely:
    - Register all entities before building repositories
    - Never modify registered types after freeze

Example:
    >>> from datarepo.schema import EntityRegistry, EntityType, field
    >>> registry = EntityRegistry()
    >>> registry.register(Team)
    >>> registry.resolve("Team")
    EntityType(name='Team', table='team')
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterator, Optional, Union

from ..errors import DuplicateRegistrationError, RegistryFrozenError, UnknownEntityError
from .types import EntityType

logger = logging.getLogger(__name__)

# Global registry instance
_global_registry: Optional[EntityRegistry] = None
_registry_lock = threading.Lock()


class EntityRegistry:
    """Central registry for all entity type definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._entities: Dict[str, EntityType] = {}
        self._entities_by_class: Dict[type, EntityType] = {}
        self._tables: Dict[str, str] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, entity_type: EntityType) -> EntityType:
        """Register an entity type.

        Args:
            entity_type: The entity definition to register

        Returns:
            The registered entity type

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name, class or table is taken
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register entity '{entity_type.name}': registry is frozen"
                )

            if entity_type.name in self._entities:
                raise DuplicateRegistrationError(
                    f"Entity '{entity_type.name}' already registered",
                    entity=entity_type.name,
                )

            if entity_type.cls in self._entities_by_class:
                existing = self._entities_by_class[entity_type.cls]
                raise DuplicateRegistrationError(
                    f"Class {entity_type.cls.__name__} already registered as '{existing.name}'",
                    entity=entity_type.name,
                )

            if entity_type.table_name in self._tables:
                raise DuplicateRegistrationError(
                    f"Table '{entity_type.table_name}' already mapped by "
                    f"'{self._tables[entity_type.table_name]}'",
                    entity=entity_type.name,
                )

            for rel in entity_type.relationships:
                if rel.target != entity_type.name and rel.target not in self._entities:
                    logger.debug(
                        f"Entity '{entity_type.name}' references not yet registered "
                        f"entity '{rel.target}' via '{rel.name}'"
                    )

            self._entities[entity_type.name] = entity_type
            self._entities_by_class[entity_type.cls] = entity_type
            self._tables[entity_type.table_name] = entity_type.name
            logger.debug(
                f"Registered entity: {entity_type.name} (table={entity_type.table_name})"
            )
            return entity_type

    def resolve(self, entity: Union[str, type, EntityType]) -> EntityType:
        """Get an entity type by name or mapped class.

        Args:
            entity: Entity name, mapped class, or an EntityType

        Returns:
            The registered EntityType

        Raises:
            UnknownEntityError: If nothing is registered under that key
        """
        if isinstance(entity, EntityType):
            found = self._entities.get(entity.name)
            label = entity.name
        elif isinstance(entity, str):
            found = self._entities.get(entity)
            label = entity
        else:
            found = self._entities_by_class.get(entity)
            label = getattr(entity, "__name__", repr(entity))
        if found is None:
            raise UnknownEntityError(label)
        return found

    def get(self, name: str) -> Optional[EntityType]:
        """Get an entity type by name, or None."""
        return self._entities.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    def entities(self) -> Iterator[EntityType]:
        """Iterate over all registered entity types in registration order."""
        yield from list(self._entities.values())

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Entity registry frozen with {len(self._entities)} entities, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the canonical JSON schema."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation sorted by name."""
        return {
            "entities": [self._entities[name].to_dict() for name in sorted(self._entities)],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Convert registry to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    def validate_all(self) -> list[str]:
        """Validate all registered entities for consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for entity in self._entities.values():
            for rel in entity.relationships:
                target = self._entities.get(rel.target)
                if target is None:
                    errors.append(
                        f"Relationship '{rel.name}' of '{entity.name}' references "
                        f"unknown entity '{rel.target}'"
                    )
                    continue
                if rel.mapped_by:
                    inverse = target.get_relationship(rel.mapped_by)
                    if inverse is None or not inverse.single_valued:
                        errors.append(
                            f"Relationship '{rel.name}' of '{entity.name}' is mapped by "
                            f"'{rel.mapped_by}', which is not a many-to-one of '{target.name}'"
                        )
                    elif inverse.target != entity.name:
                        errors.append(
                            f"Relationship '{rel.name}' of '{entity.name}' is mapped by "
                            f"'{target.name}.{rel.mapped_by}', which targets '{inverse.target}'"
                        )

        return errors


def get_registry() -> EntityRegistry:
    """Get the global entity registry, creating it on first use."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = EntityRegistry()
        return _global_registry


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
