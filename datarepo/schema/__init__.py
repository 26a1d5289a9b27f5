"""
Schema module for datarepo.

This module provides the entity metadata model:
- Type definitions (EntityType, FieldDef, RelationshipDef)
- Entity registry for lookup and fingerprinting

Invariants:
    - Entity names, classes and tables are unique
    - All entities must be registered before repositories are built
"""

from .registry import EntityRegistry, get_registry, reset_registry
from .types import (
    AuditFields,
    EntityType,
    FetchMode,
    FieldDef,
    FieldKind,
    RelationKind,
    RelationshipDef,
    audit_fields,
    field,
    many_to_one,
    one_to_many,
)

__all__ = [
    # Types
    "EntityType",
    "FieldDef",
    "FieldKind",
    "RelationshipDef",
    "RelationKind",
    "FetchMode",
    "AuditFields",
    "field",
    "many_to_one",
    "one_to_many",
    "audit_fields",
    # Registry
    "EntityRegistry",
    "get_registry",
    "reset_registry",
]
