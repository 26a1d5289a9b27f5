"""
Native (store-dialect) queries.

A NativeQuery carries SQL written by the caller plus an optional count query
used for paging. Placeholders are scanned once at construction:

- ``?``       positional, bound in order
- ``?N``      numbered, bound by position N (1-based)
- ``:name``   named, bound by keyword

Invariants:
    - A query uses one placeholder style; mixing raises QueryDefinitionError
    - Text inside quotes and comments is not scanned
    - bind() accepts exactly the declared placeholders

Example:
    >>> q = NativeQuery("select * from member where username = ?")
    >>> q.bind("m1")
    ('m1',)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..errors import ArityMismatchError, QueryDefinitionError

Params = Union[Tuple[Any, ...], Dict[str, Any]]


class ParamStyle(Enum):
    NONE = "none"
    POSITIONAL = "positional"
    NUMBERED = "numbered"
    NAMED = "named"


def scan_placeholders(sql: str) -> tuple[ParamStyle, int, tuple[str, ...]]:
    """Find the placeholders of a statement.

    Returns:
        (style, positional count, names). For NUMBERED the count is the
        highest index used.

    Raises:
        QueryDefinitionError: If styles are mixed
    """
    styles: set[ParamStyle] = set()
    positional = 0
    highest = 0
    names: list[str] = []
    i, n = 0, len(sql)

    while i < n:
        ch = sql[i]
        if ch in ("'", '"'):
            # '' and "" escape the quote inside a literal
            end = i + 1
            while end < n:
                if sql[end] == ch:
                    if end + 1 < n and sql[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            i = end + 1
        elif sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline < 0 else newline + 1
        elif sql.startswith("/*", i):
            close = sql.find("*/", i + 2)
            i = n if close < 0 else close + 2
        elif ch == "?":
            j = i + 1
            while j < n and sql[j].isdigit():
                j += 1
            if j > i + 1:
                styles.add(ParamStyle.NUMBERED)
                highest = max(highest, int(sql[i + 1:j]))
            else:
                styles.add(ParamStyle.POSITIONAL)
                positional += 1
            i = j
        elif ch == ":" and i + 1 < n and (sql[i + 1].isalpha() or sql[i + 1] == "_"):
            if i > 0 and sql[i - 1] == ":":
                i += 1
                continue
            j = i + 1
            while j < n and (sql[j].isalnum() or sql[j] == "_"):
                j += 1
            styles.add(ParamStyle.NAMED)
            name = sql[i + 1:j]
            if name not in names:
                names.append(name)
            i = j
        else:
            i += 1

    if len(styles) > 1:
        found = sorted(s.value for s in styles)
        raise QueryDefinitionError(
            f"Native query mixes placeholder styles {found}", definition=sql
        )
    if not styles:
        return ParamStyle.NONE, 0, ()
    style = styles.pop()
    if style is ParamStyle.NUMBERED:
        return style, highest, ()
    return style, positional, tuple(names)


@dataclass(frozen=True)
class NativeQuery:
    """Caller-written SQL with an optional count query for paging.

    Attributes:
        sql: Statement text
        count_sql: Statement returning the total row count; when omitted,
            paging wraps ``sql`` in ``SELECT COUNT(*)``
    """

    sql: str
    count_sql: Optional[str] = None
    style: ParamStyle = field(init=False)
    arity: int = field(init=False)
    names: tuple[str, ...] = field(init=False)

    def __post_init__(self) -> None:
        if not self.sql or not self.sql.strip():
            raise QueryDefinitionError("Native query text cannot be empty")
        style, arity, names = scan_placeholders(self.sql)
        object.__setattr__(self, "style", style)
        object.__setattr__(self, "arity", arity)
        object.__setattr__(self, "names", names)
        if self.count_sql is not None:
            count_style, count_arity, count_names = scan_placeholders(self.count_sql)
            if count_style is not ParamStyle.NONE and (
                count_style is not style or count_arity != arity or set(count_names) != set(names)
            ):
                raise QueryDefinitionError(
                    "Count query placeholders must match the main query", definition=self.count_sql
                )

    def bind(self, *args: Any, **kwargs: Any) -> Params:
        """Validate arguments against the placeholders.

        Returns:
            A tuple for positional / numbered styles, a dict for named style

        Raises:
            ArityMismatchError: If arguments do not match exactly
        """
        if self.style is ParamStyle.NAMED:
            if args or set(kwargs) != set(self.names):
                raise ArityMismatchError(
                    f"Native query expects named parameters {sorted(self.names)}, "
                    f"got {sorted(kwargs)} and {len(args)} positional",
                    expected=sorted(self.names),
                    actual=sorted(kwargs),
                )
            return dict(kwargs)

        if kwargs or len(args) != self.arity:
            raise ArityMismatchError(
                f"Native query expects {self.arity} positional parameter(s), "
                f"got {len(args)} positional and {len(kwargs)} named",
                expected=self.arity,
                actual=len(args) + len(kwargs),
            )
        return tuple(args)

    def count_params(self, params: Params) -> Params:
        """Parameters for the count statement."""
        if self.count_sql is not None and scan_placeholders(self.count_sql)[0] is ParamStyle.NONE:
            return ()
        return params

    def windowed(self, offset: int, limit: int) -> str:
        """The statement bounded to one window of rows."""
        return f"SELECT * FROM ({self._body()}) LIMIT {int(limit)} OFFSET {int(offset)}"

    def counting(self) -> str:
        """The statement counting every matching row."""
        if self.count_sql is not None:
            return self.count_sql
        return f"SELECT COUNT(*) FROM ({self._body()})"

    def _body(self) -> str:
        return self.sql.strip().rstrip(";")
