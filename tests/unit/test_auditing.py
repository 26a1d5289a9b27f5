"""
Unit tests for the auditing interceptor.

Tests cover:
- Create stamps all four fields
- Update stamps only the last-modified pair
- Actor fallback when the resolver returns None or raises
- Entities that are not audited are untouched
"""

from types import SimpleNamespace

from datarepo.auditing import AuditingInterceptor, ContextActorResolver
from datarepo.config import RepositorySettings
from tests.conftest import FakeClock
from tests.domain import MEMBER, TEAM, Member, Team


class FailingResolver:
    def current_actor(self, tx):
        raise RuntimeError("no session")


class NoneResolver:
    def current_actor(self, tx):
        return None


class TestAuditingInterceptor:
    """Tests for AuditingInterceptor."""

    def test_create_stamps_all(self):
        """Create sets created and last-modified to the same values."""
        clock = FakeClock(1000)
        auditing = AuditingInterceptor(clock=clock)
        member = Member(username="m1")

        auditing.on_before_create(SimpleNamespace(actor="alice"), MEMBER, member)

        assert member.created_at == 1000
        assert member.created_by == "alice"
        assert member.last_modified_at == 1000
        assert member.last_modified_by == "alice"

    def test_update_keeps_created(self):
        """Update touches only the last-modified pair."""
        clock = FakeClock(1000)
        auditing = AuditingInterceptor(clock=clock)
        member = Member(username="m1")
        auditing.on_before_create(SimpleNamespace(actor="alice"), MEMBER, member)

        clock.advance(500)
        auditing.on_before_update(SimpleNamespace(actor="bob"), MEMBER, member)

        assert member.created_at == 1000
        assert member.created_by == "alice"
        assert member.last_modified_at == 1500
        assert member.last_modified_by == "bob"

    def test_missing_actor_uses_default(self):
        """A None actor falls back to the default."""
        auditing = AuditingInterceptor(NoneResolver(), clock=FakeClock(), default_actor="system")
        member = Member()

        auditing.on_before_create(SimpleNamespace(), MEMBER, member)

        assert member.created_by == "system"

    def test_failing_resolver_uses_default(self, caplog):
        """A raising resolver falls back to the default and logs."""
        auditing = AuditingInterceptor(FailingResolver(), clock=FakeClock())
        member = Member()

        auditing.on_before_create(SimpleNamespace(), MEMBER, member)

        assert member.created_by == "unknown"
        assert "Actor resolution failed" in caplog.text

    def test_unaudited_untouched(self):
        """Entities not flagged audited are skipped."""
        auditing = AuditingInterceptor(clock=FakeClock())
        team = Team(name="teamA")

        auditing.on_before_create(SimpleNamespace(actor="alice"), TEAM, team)

        assert not hasattr(team, "created_at")

    def test_from_settings(self):
        """from_settings takes the configured default actor."""
        settings = RepositorySettings(audit_default_actor="batch")
        auditing = AuditingInterceptor.from_settings(settings)

        assert auditing.default_actor == "batch"
        assert isinstance(auditing.actor_resolver, ContextActorResolver)

    def test_default_clock_in_ms(self):
        """The default clock returns Unix milliseconds."""
        assert AuditingInterceptor().clock() > 1_600_000_000_000
