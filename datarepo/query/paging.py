"""
Sorting, page requests and result windows.

- Sort: ordered (path, direction) pairs
- PageRequest: zero-based page index, page size, sort
- Slice: a window of results that only knows whether more rows follow
- Page: a Slice that also knows the total row count

Invariants:
    - page index >= 0 and size > 0 (validated on construction)
    - Page.total_pages == ceil(total_elements / size)
    - Page.has_next iff (number + 1) * size < total_elements
    - map() keeps every piece of paging metadata

Example:
    >>> request = PageRequest.of(0, 3, Sort.by(Direction.DESC, "username"))
    >>> request.offset, request.size
    (0, 3)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Generic, Iterator, TypeVar

from ..errors import InvalidPageRequestError, InvalidPageSizeError

T = TypeVar("T")
R = TypeVar("R")


class Direction(Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class Order:
    """Sort order for one attribute path."""

    path: str
    direction: Direction = Direction.ASC

    @property
    def is_descending(self) -> bool:
        return self.direction is Direction.DESC


@dataclass(frozen=True)
class Sort:
    """Ordered list of sort orders; ``Sort()`` means unsorted."""

    orders: tuple[Order, ...] = ()

    @classmethod
    def by(cls, *args: Any) -> Sort:
        """Build a sort from paths, optionally preceded by a Direction.

        Example:
            >>> Sort.by("username")
            >>> Sort.by(Direction.DESC, "username", "age")
        """
        direction = Direction.ASC
        if args and isinstance(args[0], Direction):
            direction, args = args[0], args[1:]
        orders = []
        for arg in args:
            if isinstance(arg, Order):
                orders.append(arg)
            else:
                orders.append(Order(arg, direction))
        return cls(tuple(orders))

    @classmethod
    def unsorted(cls) -> Sort:
        return cls()

    def ascending(self) -> Sort:
        return Sort(tuple(replace(o, direction=Direction.ASC) for o in self.orders))

    def descending(self) -> Sort:
        return Sort(tuple(replace(o, direction=Direction.DESC) for o in self.orders))

    def and_(self, other: Sort) -> Sort:
        return Sort(self.orders + other.orders)

    def __bool__(self) -> bool:
        return bool(self.orders)

    def __iter__(self) -> Iterator[Order]:
        return iter(self.orders)


@dataclass(frozen=True)
class PageRequest:
    """Request for one page of results.

    Attributes:
        page: Zero-based page index
        size: Number of rows per page
        sort: Sort applied before windowing

    Raises:
        InvalidPageRequestError: If page is negative
        InvalidPageSizeError: If size is not positive
    """

    page: int
    size: int
    sort: Sort = field(default_factory=Sort)

    def __post_init__(self) -> None:
        if self.page < 0:
            raise InvalidPageRequestError(f"Page index must not be negative, got {self.page}")
        if self.size <= 0:
            raise InvalidPageSizeError(self.size)

    @classmethod
    def of(cls, page: int, size: int, sort: Sort | None = None) -> PageRequest:
        return cls(page, size, sort or Sort())

    @property
    def offset(self) -> int:
        return self.page * self.size

    def next(self) -> PageRequest:
        return replace(self, page=self.page + 1)

    def previous_or_first(self) -> PageRequest:
        return replace(self, page=max(self.page - 1, 0))

    def first(self) -> PageRequest:
        return replace(self, page=0)


@dataclass(frozen=True)
class Slice(Generic[T]):
    """A window of results without total-count knowledge.

    Attributes:
        content: Items of this window
        number: Zero-based index of this window
        size: Requested window size
        sort: Sort the window was produced with
    """

    content: list[T]
    number: int
    size: int
    sort: Sort = field(default_factory=Sort)
    next_available: bool = False

    @property
    def number_of_elements(self) -> int:
        return len(self.content)

    @property
    def is_first(self) -> bool:
        return self.number == 0

    @property
    def is_last(self) -> bool:
        return not self.has_next

    @property
    def has_next(self) -> bool:
        return self.next_available

    @property
    def has_previous(self) -> bool:
        return self.number > 0

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    def next_request(self) -> PageRequest:
        return PageRequest(self.number + 1, self.size, self.sort)

    def map(self, transform: Callable[[T], R]) -> Slice[R]:
        """Transform each item, keeping paging metadata."""
        return replace(self, content=[transform(item) for item in self.content])  # type: ignore[return-value]

    def __iter__(self) -> Iterator[T]:
        return iter(self.content)

    def __len__(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class Page(Slice[T]):
    """A window of results plus the total number of matching rows."""

    total_elements: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_elements / self.size) if self.size else 1

    @property
    def has_next(self) -> bool:
        return (self.number + 1) * self.size < self.total_elements

    def map(self, transform: Callable[[T], R]) -> Page[R]:
        """Transform each item, keeping paging metadata."""
        return replace(self, content=[transform(item) for item in self.content])  # type: ignore[return-value]
