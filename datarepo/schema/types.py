"""
Core type definitions for the datarepo entity model.

This module defines the metadata the registry holds for each entity:
- FieldDef: A scalar column of an entity
- RelationshipDef: A many-to-one or one-to-many link to another entity
- EntityType: The mapping of a Python class onto a table

Invariants:
    - Field names are unique within an entity
    - Relationship names are unique and never shadow a field name
    - id_field must name one of the declared fields
    - Timestamps are Unix milliseconds (int)

How to change safely:
    - Add new FieldKinds at the end and teach the compiler their column type
    - Keep column names stable once tables exist (no migrations here)

Example:
    >>> from datarepo.schema.types import EntityType, field, many_to_one
    >>> Member = EntityType(
    ...     name="Member",
    ...     cls=MemberRecord,
    ...     fields=(
    ...         field("id", "int", column="member_id"),
    ...         field("username", "str", required=True),
    ...         field("age", "int"),
    ...     ),
    ...     relationships=(many_to_one("team", "Team", join_column="team_id"),),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any


class FieldKind(Enum):
    """Supported scalar field types.

    These map to column affinities and comparator rules.
    """

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # Unix milliseconds

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Args:
            value: String name of the field kind

        Returns:
            Corresponding FieldKind enum value

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")

    @property
    def orderable(self) -> bool:
        """Whether range comparators and sorting make sense for this kind."""
        return self is not FieldKind.BOOLEAN


class RelationKind(Enum):
    """Cardinality of a relationship, seen from the owning entity."""

    MANY_TO_ONE = "many_to_one"
    ONE_TO_MANY = "one_to_many"


class FetchMode(Enum):
    """When a relationship is loaded."""

    LAZY = "lazy"
    EAGER = "eager"


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single scalar field of an entity.

    Attributes:
        name: Attribute name on the entity class
        kind: The data type of the field
        column: Column name in the table (defaults to name)
        required: Whether the column is NOT NULL
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    column: str | None = None
    required: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if "." in self.name:
            raise ValueError(f"Field name '{self.name}' cannot contain '.'")

    @property
    def column_name(self) -> str:
        return self.column or self.name

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Args:
            value: The value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        validators = {
            FieldKind.STRING: lambda v: isinstance(v, str),
            FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
            FieldKind.FLOAT: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
            FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
            FieldKind.TIMESTAMP: lambda v: isinstance(v, int) and v >= 0,
        }

        validator = validators.get(self.kind)
        if validator and not validator(value):
            return False, f"Field '{self.name}' has invalid type for kind {self.kind.value}"

        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "column": self.column_name,
        }
        if self.required:
            result["required"] = True
        if self.description:
            result["description"] = self.description
        return result


def field(
    name: str,
    kind: str | FieldKind,
    *,
    column: str | None = None,
    required: bool = False,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Args:
        name: Attribute name
        kind: Field type (string or FieldKind enum)
        column: Column name override
        required: Whether the column is NOT NULL
        description: Human-readable description

    Returns:
        FieldDef instance

    Example:
        >>> username = field("username", "str", required=True)
        >>> member_id = field("id", "int", column="member_id")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        column=column,
        required=required,
        description=description,
    )


@dataclass(frozen=True)
class AuditFields:
    """Names of the audit metadata fields stamped by the auditing interceptor."""

    created_at: str = "created_at"
    created_by: str = "created_by"
    last_modified_at: str = "last_modified_at"
    last_modified_by: str = "last_modified_by"


DEFAULT_AUDIT_FIELDS = AuditFields()


def audit_fields(names: AuditFields = DEFAULT_AUDIT_FIELDS) -> tuple[FieldDef, ...]:
    """Field definitions for the four audit metadata columns.

    Splice the result into an entity's fields and set ``audited=True``.
    """
    return (
        field(names.created_at, "timestamp"),
        field(names.created_by, "str"),
        field(names.last_modified_at, "timestamp"),
        field(names.last_modified_by, "str"),
    )


@dataclass(frozen=True)
class RelationshipDef:
    """Definition of a relationship to another entity.

    Attributes:
        name: Attribute name on the entity class
        kind: MANY_TO_ONE or ONE_TO_MANY
        target: Name of the target entity
        join_column: Foreign key column on this table (MANY_TO_ONE)
        mapped_by: Name of the MANY_TO_ONE relationship on the target (ONE_TO_MANY)
        fetch: LAZY (default) or EAGER

    Invariants:
        - MANY_TO_ONE requires join_column
        - ONE_TO_MANY requires mapped_by
    """

    name: str
    kind: RelationKind
    target: str
    join_column: str | None = None
    mapped_by: str | None = None
    fetch: FetchMode = FetchMode.LAZY

    def __post_init__(self) -> None:
        """Validate relationship definition."""
        if not self.name:
            raise ValueError("Relationship name cannot be empty")
        if self.kind == RelationKind.MANY_TO_ONE and not self.join_column:
            raise ValueError(f"join_column required for many-to-one '{self.name}'")
        if self.kind == RelationKind.ONE_TO_MANY and not self.mapped_by:
            raise ValueError(f"mapped_by required for one-to-many '{self.name}'")

    @property
    def single_valued(self) -> bool:
        return self.kind == RelationKind.MANY_TO_ONE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "target": self.target,
            "fetch": self.fetch.value,
        }
        if self.join_column:
            result["join_column"] = self.join_column
        if self.mapped_by:
            result["mapped_by"] = self.mapped_by
        return result


def many_to_one(
    name: str,
    target: str,
    *,
    join_column: str | None = None,
    fetch: FetchMode = FetchMode.LAZY,
) -> RelationshipDef:
    """Create a MANY_TO_ONE relationship; join_column defaults to ``<name>_id``."""
    return RelationshipDef(
        name=name,
        kind=RelationKind.MANY_TO_ONE,
        target=target,
        join_column=join_column or f"{name}_id",
        fetch=fetch,
    )


def one_to_many(
    name: str,
    target: str,
    *,
    mapped_by: str,
    fetch: FetchMode = FetchMode.LAZY,
) -> RelationshipDef:
    """Create a ONE_TO_MANY relationship, the inverse side of ``mapped_by``."""
    return RelationshipDef(
        name=name,
        kind=RelationKind.ONE_TO_MANY,
        target=target,
        mapped_by=mapped_by,
        fetch=fetch,
    )


@dataclass(frozen=True, eq=False)
class EntityType:
    """Mapping of an entity class onto a table.

    Attributes:
        name: Entity name used in queries and the registry
        cls: Python class instantiated when rows are materialized
        fields: Scalar fields, including the identifier
        id_field: Name of the surrogate key field
        relationships: Relationships to other entities
        table: Table name (defaults to the lower-cased name)
        audited: Whether the auditing interceptor stamps this entity
        audit_names: Field names used for audit metadata

    Invariants:
        - Field and relationship names are unique and disjoint
        - id_field is one of the fields
        - Identity is the entity name

    Example:
        >>> Team = EntityType(
        ...     name="Team",
        ...     cls=TeamRecord,
        ...     fields=(field("id", "int", column="team_id"), field("name", "str")),
        ... )
    """

    name: str
    cls: type
    fields: tuple[FieldDef, ...] = dataclass_field(default_factory=tuple)
    id_field: str = "id"
    relationships: tuple[RelationshipDef, ...] = dataclass_field(default_factory=tuple)
    table: str | None = None
    audited: bool = False
    audit_names: AuditFields = DEFAULT_AUDIT_FIELDS
    description: str = ""

    def __post_init__(self) -> None:
        """Validate entity definition."""
        if not self.name:
            raise ValueError("Entity name cannot be empty")

        field_names = [f.name for f in self.fields]
        if len(field_names) != len(set(field_names)):
            raise ValueError(f"Duplicate field name in entity '{self.name}'")

        columns = [f.column_name for f in self.fields] + [
            r.join_column for r in self.relationships if r.join_column
        ]
        if len(columns) != len(set(columns)):
            raise ValueError(f"Duplicate column name in entity '{self.name}'")

        if self.id_field not in field_names:
            raise ValueError(
                f"id_field '{self.id_field}' is not a field of entity '{self.name}'"
            )

        relation_names = [r.name for r in self.relationships]
        if len(relation_names) != len(set(relation_names)):
            raise ValueError(f"Duplicate relationship name in entity '{self.name}'")
        clash = set(relation_names) & set(field_names)
        if clash:
            raise ValueError(
                f"Relationship names {sorted(clash)} clash with fields of entity '{self.name}'"
            )

    @property
    def table_name(self) -> str:
        return self.table or self.name.lower()

    @property
    def id(self) -> FieldDef:
        """The identifier field definition."""
        return self.get_field(self.id_field)  # type: ignore[return-value]

    def get_field(self, name: str) -> FieldDef | None:
        """Get a scalar field by name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_relationship(self, name: str) -> RelationshipDef | None:
        """Get a relationship by name."""
        for r in self.relationships:
            if r.name == name:
                return r
        return None

    def get_field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def many_to_one(self) -> list[RelationshipDef]:
        return [r for r in self.relationships if r.single_valued]

    def column_labels(self, prefix: str = "") -> list[str]:
        """Labels of the columns a whole-entity SELECT returns.

        Scalar fields first, then one foreign key per many-to-one
        relationship, labelled with the relationship name.
        """
        labels = [prefix + f.name for f in self.fields]
        labels.extend(prefix + r.name for r in self.many_to_one())
        return labels

    def get_id(self, entity: Any) -> Any:
        return getattr(entity, self.id_field, None)

    def validate_entity(self, entity: Any) -> tuple[bool, list[str]]:
        """Validate the scalar values held by an entity instance.

        The identifier is skipped; it is assigned by the store.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors: list[str] = []
        for f in self.fields:
            if f.name == self.id_field:
                continue
            is_valid, error = f.validate_value(getattr(entity, f.name, None))
            if not is_valid and error:
                errors.append(error)
        return len(errors) == 0, errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "name": self.name,
            "table": self.table_name,
            "id_field": self.id_field,
            "fields": [f.to_dict() for f in self.fields],
            "relationships": [r.to_dict() for r in self.relationships],
        }
        if self.audited:
            result["audited"] = True
        if self.description:
            result["description"] = self.description
        return result

    def __hash__(self) -> int:
        """Hash based on the entity name."""
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        """Equality based on the entity name."""
        if not isinstance(other, EntityType):
            return NotImplemented
        return self.name == other.name

    def __repr__(self) -> str:
        return f"EntityType(name={self.name!r}, table={self.table_name!r})"
