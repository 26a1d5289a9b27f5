"""
Query by example.

Builds a conjunction of conditions from the populated attributes of a probe
entity. Scalar attributes that are None, or whose path is ignored, do not
contribute. Many-to-one attributes holding a probe of the target entity are
walked recursively (``team.name``); collections are never probed.

String matching is an explicit option of the matcher (exact by default,
case-sensitive by default) rather than an implicit rule.

Example:
    >>> probe = Member(username="member1", team=Team(name="teamA"))
    >>> matcher = ExampleMatcher(ignored_paths=("age",))
    >>> from_example(registry, member_type, probe, matcher).paths()
    ('username', 'team.name')
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable

from ..refs import Ref, unwrap
from ..schema.registry import EntityRegistry
from ..schema.types import EntityType, FieldKind
from .predicates import Comparator, Condition, Predicate, and_


class StringMatcher(Enum):
    """How string attributes of a probe are compared."""

    EXACT = "exact"
    CONTAINING = "containing"
    STARTING = "starting"
    ENDING = "ending"


_STRING_COMPARATORS = {
    StringMatcher.EXACT: Comparator.EQUALS,
    StringMatcher.CONTAINING: Comparator.CONTAINING,
    StringMatcher.STARTING: Comparator.STARTING_WITH,
    StringMatcher.ENDING: Comparator.ENDING_WITH,
}


@dataclass(frozen=True)
class ExampleMatcher:
    """Options for turning a probe into a predicate.

    Attributes:
        ignored_paths: Dotted paths that never contribute a condition
        string_matcher: Comparison used for string attributes
        ignore_case: Case-insensitive comparison of string attributes
    """

    ignored_paths: tuple[str, ...] = ()
    string_matcher: StringMatcher = StringMatcher.EXACT
    ignore_case: bool = False

    def with_ignore_paths(self, *paths: str) -> ExampleMatcher:
        return replace(self, ignored_paths=self.ignored_paths + paths)

    def with_string_matcher(self, matcher: StringMatcher) -> ExampleMatcher:
        return replace(self, string_matcher=matcher)

    def with_ignore_case(self, ignore_case: bool = True) -> ExampleMatcher:
        return replace(self, ignore_case=ignore_case)


def from_example(
    registry: EntityRegistry,
    entity: EntityType,
    probe: Any,
    matcher: ExampleMatcher | None = None,
) -> Predicate | None:
    """Build an AND of conditions over the populated attributes of ``probe``.

    Args:
        registry: Registry used to resolve relationship targets
        entity: Entity type of the probe
        probe: Probe instance
        matcher: Matching options (exact, case-sensitive when omitted)

    Returns:
        The predicate, or None when the probe has no populated attributes
    """
    matcher = matcher or ExampleMatcher()
    conditions = list(_probe_conditions(registry, entity, probe, matcher, "", set()))
    return and_(*conditions)


def _probe_conditions(
    registry: EntityRegistry,
    entity: EntityType,
    probe: Any,
    matcher: ExampleMatcher,
    prefix: str,
    seen: set[int],
) -> Iterable[Condition]:
    if id(probe) in seen:
        return
    seen.add(id(probe))

    for f in entity.fields:
        path = prefix + f.name
        if path in matcher.ignored_paths:
            continue
        value = getattr(probe, f.name, None)
        if value is None:
            continue
        if f.kind == FieldKind.STRING:
            comparator = _STRING_COMPARATORS[matcher.string_matcher]
            yield Condition(path, comparator, value, ignore_case=matcher.ignore_case)
        else:
            yield Condition(path, Comparator.EQUALS, value)

    for rel in entity.many_to_one():
        path = prefix + rel.name
        if path in matcher.ignored_paths:
            continue
        value = getattr(probe, rel.name, None)
        if isinstance(value, Ref) and not value.resolved:
            if value.key is not None:
                yield Condition(path, Comparator.EQUALS, value.key)
            continue
        value = unwrap(value)
        if value is None:
            continue
        target = registry.resolve(rel.target)
        yield from _probe_conditions(registry, target, value, matcher, path + ".", seen)
