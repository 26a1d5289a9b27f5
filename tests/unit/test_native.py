"""
Unit tests for native queries.

Tests cover:
- Placeholder scanning (positional, numbered, named)
- Quotes and comments are skipped
- Mixed styles are rejected
- Binding, windowing and counting
"""

import pytest

from datarepo.errors import ArityMismatchError, QueryDefinitionError
from datarepo.query.native import NativeQuery, ParamStyle, scan_placeholders


class TestScanPlaceholders:
    """Tests for scan_placeholders."""

    def test_positional(self):
        """? placeholders are counted."""
        assert scan_placeholders("select * from member where age > ? and age < ?") == (
            ParamStyle.POSITIONAL,
            2,
            (),
        )

    def test_numbered(self):
        """?N placeholders report the highest index."""
        style, arity, _ = scan_placeholders("select * from member where age > ?2 or age = ?1")
        assert style is ParamStyle.NUMBERED
        assert arity == 2

    def test_named(self):
        """:name placeholders are deduplicated in order."""
        style, _, names = scan_placeholders(
            "select * from member where username = :name or team_id = :team or username = :name"
        )
        assert style is ParamStyle.NAMED
        assert names == ("name", "team")

    def test_quotes_and_comments_skipped(self):
        """Placeholders in literals and comments are ignored."""
        sql = "select '?', \"a:b\" from member -- where x = ?\n/* :name */ where age = ?"
        assert scan_placeholders(sql) == (ParamStyle.POSITIONAL, 1, ())

    def test_escaped_quote(self):
        """Doubled quotes stay inside the literal."""
        assert scan_placeholders("select 'it''s ?' from member") == (ParamStyle.NONE, 0, ())

    def test_mixed_styles(self):
        """Mixing styles raises."""
        with pytest.raises(QueryDefinitionError, match="mixes placeholder styles"):
            scan_placeholders("select * from member where age = ? and username = :name")


class TestNativeQuery:
    """Tests for NativeQuery."""

    def test_empty_rejected(self):
        """Blank SQL is rejected."""
        with pytest.raises(QueryDefinitionError):
            NativeQuery("  ")

    def test_bind_positional(self):
        """Positional arguments bind to a tuple."""
        query = NativeQuery("select * from member where username = ?")
        assert query.bind("m1") == ("m1",)

    def test_bind_named(self):
        """Named arguments bind to a dict."""
        query = NativeQuery("select * from member where username = :username")
        assert query.bind(username="m1") == {"username": "m1"}

    def test_bind_arity_mismatch(self):
        """Too few or too many arguments raise."""
        query = NativeQuery("select * from member where username = ?")

        with pytest.raises(ArityMismatchError):
            query.bind()
        with pytest.raises(ArityMismatchError):
            query.bind("m1", "m2")
        with pytest.raises(ArityMismatchError):
            query.bind(username="m1")

    def test_bind_named_mismatch(self):
        """Named queries reject positional and missing arguments."""
        query = NativeQuery("select * from member where username = :username")

        with pytest.raises(ArityMismatchError):
            query.bind("m1")
        with pytest.raises(ArityMismatchError):
            query.bind(name="m1")

    def test_windowed(self):
        """windowed wraps the statement with LIMIT / OFFSET."""
        query = NativeQuery("select * from member;")
        assert query.windowed(6, 3) == "SELECT * FROM (select * from member) LIMIT 3 OFFSET 6"

    def test_counting_default(self):
        """Without count_sql the statement is wrapped in COUNT(*)."""
        query = NativeQuery("select * from member where age > ?")

        assert query.counting() == "SELECT COUNT(*) FROM (select * from member where age > ?)"
        assert query.count_params((10,)) == (10,)

    def test_counting_explicit(self):
        """An explicit count query without placeholders takes no parameters."""
        query = NativeQuery("select * from member where age > ?", count_sql="select count(*) from member")

        assert query.counting() == "select count(*) from member"
        assert query.count_params((10,)) == ()

    def test_count_placeholders_must_match(self):
        """A count query with different placeholders is rejected."""
        with pytest.raises(QueryDefinitionError, match="Count query"):
            NativeQuery(
                "select * from member where age > ?",
                count_sql="select count(*) from member where age > ? and age < ?",
            )
