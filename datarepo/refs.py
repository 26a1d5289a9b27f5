"""
Explicit relationship references.

Loaded entities hold a Ref in each relationship attribute. A Ref is either
resolved (it holds the related entity, or the list of related entities for a
one-to-many) or lazy (it holds a loader bound to the transaction that loaded
the owner). Lazy refs never touch the store until get() is called.

Invariants:
    - A lazy ref loads at most once; the result is kept
    - Loading after the owning transaction closed raises DetachedReferenceError
    - key is the foreign key value for many-to-one refs, the owner id otherwise
"""

from __future__ import annotations

from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

_UNSET: Any = object()


class Ref(Generic[T]):
    """Reference to a related entity (or list of entities)."""

    __slots__ = ("entity", "key", "_loader", "_value")

    def __init__(
        self,
        entity: str,
        key: Any,
        loader: Optional[Callable[[], T]] = None,
        value: Any = _UNSET,
    ) -> None:
        self.entity = entity
        self.key = key
        self._loader = loader
        self._value = value

    @classmethod
    def to(cls, entity: str, value: T, key: Any = None) -> Ref[T]:
        """A ref already resolved to ``value``."""
        return cls(entity, key, value=value)

    @property
    def resolved(self) -> bool:
        return self._value is not _UNSET

    @property
    def value(self) -> Optional[T]:
        """The resolved value, or None when still lazy."""
        return None if self._value is _UNSET else self._value

    def get(self) -> T:
        """Return the related value, loading it on first use.

        Raises:
            DetachedReferenceError: If the loading transaction is closed
        """
        if self._value is _UNSET:
            if self._loader is None:
                return None  # type: ignore[return-value]
            self._value = self._loader()
            self._loader = None
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ref):
            return NotImplemented
        if self.key is not None or other.key is not None:
            return self.entity == other.entity and self.key == other.key
        return self.resolved and other.resolved and self._value is other._value

    def __hash__(self) -> int:
        return hash((self.entity, self.key))

    def __repr__(self) -> str:
        state = "resolved" if self.resolved else "lazy"
        return f"Ref({self.entity}, key={self.key!r}, {state})"


def unwrap(value: Any) -> Any:
    """Return the entity behind a resolved Ref, or the value itself."""
    if isinstance(value, Ref):
        return value.value
    return value
