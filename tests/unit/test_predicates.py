"""
Unit tests for predicates, paths and refs.

Tests cover:
- Leaf constructors and comparator arity
- AND / OR / NOT combinators and None skipping
- Path resolution and suggestions
- Ref loading behavior
"""

import pytest

from datarepo.errors import UnknownFieldError
from datarepo.query.predicates import (
    Comparator,
    Condition,
    Connector,
    Junction,
    Negation,
    and_,
    condition,
    not_,
    or_,
    path,
)
from datarepo.refs import Ref, unwrap
from datarepo.schema.paths import resolve_path
from tests.domain import MEMBER, TEAM, build_registry


class TestComparator:
    """Tests for Comparator metadata."""

    def test_arity(self):
        """Null checks take no argument and BETWEEN takes two."""
        assert Comparator.IS_NULL.arity == 0
        assert Comparator.BETWEEN.arity == 2
        assert Comparator.IN.arity == 1

    def test_categories(self):
        """Ordering and string-only comparators are flagged."""
        assert Comparator.GREATER_THAN.requires_ordering
        assert not Comparator.EQUALS.requires_ordering
        assert Comparator.CONTAINING.string_only
        assert not Comparator.IN.string_only


class TestLeafConstructors:
    """Tests for path() builders and condition()."""

    def test_equals(self):
        """equals builds an EQUALS leaf."""
        assert path("username").equals("m1") == Condition("username", Comparator.EQUALS, "m1")

    def test_in_stores_tuple(self):
        """IN values are frozen into a tuple."""
        leaf = path("username").in_(["a", "b"])
        assert leaf.value == ("a", "b")

    def test_between_pair(self):
        """BETWEEN keeps both bounds."""
        assert path("age").between(10, 20).value == (10, 20)

    def test_ignore_case_flag(self):
        """String helpers carry the ignore-case flag."""
        assert path("username").containing("mem", ignore_case=True).ignore_case
        assert path("username").equals_ignore_case("M1").ignore_case

    def test_condition_arity_checked(self):
        """condition() rejects the wrong number of arguments."""
        with pytest.raises(ValueError, match="takes 2 argument"):
            condition("age", Comparator.BETWEEN, 10)

    def test_condition_shapes_values(self):
        """condition() shapes values per comparator."""
        assert condition("age", Comparator.IS_NULL).value is None
        assert condition("age", Comparator.BETWEEN, 1, 2).value == (1, 2)
        assert condition("age", Comparator.NOT_IN, [1, 2]).value == (1, 2)


class TestCombinators:
    """Tests for and_ / or_ / not_."""

    def test_and_is_left_associative(self):
        """Three operands nest to the left."""
        a, b, c = path("a").equals(1), path("b").equals(2), path("c").equals(3)

        result = and_(a, b, c)

        assert result == Junction(Connector.AND, Junction(Connector.AND, a, b), c)

    def test_none_operands_skipped(self):
        """None operands contribute nothing."""
        a = path("a").equals(1)
        assert and_(None, a, None) is a
        assert or_(None, None) is None

    def test_operators(self):
        """& | ~ delegate to the combinators."""
        a, b = path("a").equals(1), path("b").equals(2)
        assert (a & b).connector is Connector.AND
        assert (a | b).connector is Connector.OR
        assert ~a == Negation(a)

    def test_double_negation(self):
        """not_ of a negation unwraps it."""
        a = path("a").equals(1)
        assert not_(not_(a)) is a

    def test_paths_in_first_use_order(self):
        """paths() lists distinct paths left to right."""
        p = (path("username").equals("x") | path("age").equals(1)) & path("username").is_null()
        assert p.paths() == ("username", "age")


class TestResolvePath:
    """Tests for resolve_path."""

    def test_field(self):
        """A plain field resolves on the root."""
        resolved = resolve_path(build_registry(), MEMBER, "username")
        assert resolved.owner is MEMBER
        assert resolved.joins == ()
        assert resolved.field.column_name == "username"

    def test_nested_field(self):
        """A dotted path walks a many-to-one."""
        resolved = resolve_path(build_registry(), MEMBER, "team.name")
        assert resolved.owner == TEAM
        assert resolved.join_key == ("team",)
        assert resolved.reference is None

    def test_reference(self):
        """A path ending at a relationship resolves to its join column."""
        resolved = resolve_path(build_registry(), MEMBER, "team")
        assert resolved.reference is not None
        assert resolved.field.column_name == "team_id"
        assert resolved.owner is MEMBER

    def test_unknown_with_suggestion(self):
        """Typos come with close-match suggestions."""
        with pytest.raises(UnknownFieldError) as exc_info:
            resolve_path(build_registry(), MEMBER, "usernme")

        assert exc_info.value.suggestions == ["username"]
        assert "Did you mean" in str(exc_info.value)

    def test_nested_suggestion_is_prefixed(self):
        """Suggestions inside a relationship keep the prefix."""
        with pytest.raises(UnknownFieldError) as exc_info:
            resolve_path(build_registry(), MEMBER, "team.nam")

        assert exc_info.value.suggestions == ["team.name"]

    def test_collection_not_traversable(self):
        """One-to-many relationships cannot be traversed."""
        with pytest.raises(UnknownFieldError):
            resolve_path(build_registry(), TEAM, "members.username")

    def test_path_past_field(self):
        """A field cannot be traversed further."""
        with pytest.raises(UnknownFieldError):
            resolve_path(build_registry(), MEMBER, "username.length")


class TestRef:
    """Tests for Ref."""

    def test_lazy_loads_once(self):
        """The loader runs on first get() only."""
        calls = []

        def loader():
            calls.append(1)
            return "team"

        ref = Ref("Team", 1, loader)
        assert not ref.resolved
        assert ref.value is None

        assert ref.get() == "team"
        assert ref.get() == "team"
        assert calls == [1]
        assert ref.resolved

    def test_resolved_ref(self):
        """Ref.to is resolved immediately."""
        ref = Ref.to("Team", "team", key=1)
        assert ref.resolved
        assert unwrap(ref) == "team"

    def test_equality_by_key(self):
        """Refs with keys compare by entity and key."""
        assert Ref("Team", 1) == Ref.to("Team", object(), key=1)
        assert Ref("Team", 1) != Ref("Team", 2)

    def test_unwrap_plain_value(self):
        """Non-ref values pass through unwrap."""
        assert unwrap(5) == 5
