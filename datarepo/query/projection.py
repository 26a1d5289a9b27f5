"""
Projection shapes.

A projection selects a subset of attribute paths and shapes each row:

- a single path string: rows become scalar values
- a tuple of path strings: rows become dicts keyed by path
- a pydantic BaseModel subclass: rows become model instances
    - a field named after an entity field reads that field
    - a field with a dotted alias (``Field(alias="team.name")``) reads
      through many-to-one relationships
    - a field typed as another BaseModel and named after a many-to-one
      relationship is a nested projection of the related entity

Projections always compile to one SELECT of the needed columns; nested
projections join their relationship in the same statement.

Example:
    >>> class UsernameOnly(BaseModel):
    ...     username: str
    >>> shape = resolve_projection(registry, member_type, UsernameOnly)
    >>> shape.columns
    ('username',)
"""

from __future__ import annotations

import types
import typing
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from ..schema.paths import resolve_path
from ..schema.registry import EntityRegistry
from ..schema.types import EntityType

Shape = Union[str, tuple, type]


def _model_type(annotation: Any) -> Optional[type[BaseModel]]:
    """The BaseModel class behind an annotation such as ``Optional[TeamInfo]``."""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    origin = typing.get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        models = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(models) == 1:
            return _model_type(models[0])
    return None


@dataclass
class _ModelShape:
    model: type[BaseModel]
    # (input key, column path) for scalar fields
    scalars: list[tuple[str, str]] = field(default_factory=list)
    # (input key, nested shape) for nested projections
    nested: list[tuple[str, _ModelShape]] = field(default_factory=list)

    def columns(self) -> list[str]:
        paths = [p for _, p in self.scalars]
        for _, shape in self.nested:
            paths.extend(shape.columns())
        return paths

    def build(self, values: Mapping[str, Any]) -> Optional[BaseModel]:
        data: dict[str, Any] = {key: values.get(p) for key, p in self.scalars}
        for key, shape in self.nested:
            data[key] = shape.build(values) if shape.present(values) else None
        return self.model.model_validate(data)

    def present(self, values: Mapping[str, Any]) -> bool:
        """False when every column is NULL (an unmatched outer join)."""
        return any(values.get(p) is not None for p in self.columns())


def _model_shape(
    registry: EntityRegistry,
    entity: EntityType,
    model: type[BaseModel],
    prefix: str,
) -> _ModelShape:
    shape = _ModelShape(model)
    for name, info in model.model_fields.items():
        key = info.alias or name
        source = info.alias if info.alias and "." in info.alias else name
        nested_model = _model_type(info.annotation)
        if nested_model is not None:
            rel = entity.get_relationship(source)
            if rel is None or not rel.single_valued:
                # raises UnknownFieldError with suggestions
                resolve_path(registry, entity, source + ".id")
                raise TypeError(f"'{source}' of '{entity.name}' is not a many-to-one relationship")
            target = registry.resolve(rel.target)
            shape.nested.append(
                (key, _model_shape(registry, target, nested_model, prefix + source + "."))
            )
            continue
        resolve_path(registry, entity, source)
        shape.scalars.append((key, prefix + source))
    return shape


@dataclass(frozen=True)
class Projection:
    """A resolved projection shape.

    Attributes:
        shape: The shape as given by the caller
        columns: Attribute paths to select, in order
    """

    shape: Shape
    columns: tuple[str, ...]
    _model: Optional[_ModelShape] = field(default=None, compare=False, repr=False)

    def build(self, row: Sequence[Any]) -> Any:
        """Shape one row whose values follow ``columns``."""
        return self.build_mapping(dict(zip(self.columns, row)))

    def build_mapping(self, values: Mapping[str, Any]) -> Any:
        """Shape one row given as a mapping of path to value."""
        if isinstance(self.shape, str):
            return values.get(self.shape)
        if self._model is not None:
            return self._model.build(values)
        return {p: values.get(p) for p in self.columns}


def resolve_projection(registry: EntityRegistry, entity: EntityType, shape: Shape) -> Projection:
    """Resolve a projection shape against an entity.

    Raises:
        UnknownFieldError: If a projected path is unknown
        TypeError: If the shape is not a path, a tuple of paths or a BaseModel
    """
    if isinstance(shape, str):
        resolve_path(registry, entity, shape)
        return Projection(shape, (shape,))
    if isinstance(shape, (tuple, list)):
        paths = tuple(shape)
        for p in paths:
            resolve_path(registry, entity, p)
        return Projection(paths, paths)
    if isinstance(shape, type) and issubclass(shape, BaseModel):
        model_shape = _model_shape(registry, entity, shape, "")
        return Projection(shape, tuple(model_shape.columns()), model_shape)
    raise TypeError(f"Unsupported projection shape: {shape!r}")


def shape_native_row(shape: Shape, values: Mapping[str, Any]) -> Any:
    """Shape a native-query row (keys are the result column names).

    BaseModel shapes validate the row directly, so result columns must be
    named (or aliased) like the model's fields.
    """
    if isinstance(shape, str):
        return values.get(shape)
    if isinstance(shape, (tuple, list)):
        return {p: values.get(p) for p in shape}
    if isinstance(shape, type) and issubclass(shape, BaseModel):
        return shape.model_validate(dict(values))
    raise TypeError(f"Unsupported projection shape: {shape!r}")
