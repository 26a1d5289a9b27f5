"""
Shared fixtures for the datarepo test suite.
"""

import os
import tempfile

import pytest

from datarepo import AuditingInterceptor, RepositorySettings, SqliteStore
from datarepo.query.derivation import QueryDerivationEngine

from .domain import MemberRepository, TeamRepository, build_registry


class FakeClock:
    """Deterministic millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def settings(data_dir):
    return RepositorySettings(database=os.path.join(data_dir, "test.db"))


@pytest.fixture
def store(settings, registry):
    """Store with the Member / Team schema created."""
    store = SqliteStore(settings.database, wal_mode=False, lock_timeout_ms=200)
    store.create_schema(registry)
    return store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auditing(clock):
    return AuditingInterceptor(clock=clock)


@pytest.fixture
def engine(registry):
    return QueryDerivationEngine(registry)


@pytest.fixture
def member_repository(registry, settings, engine):
    return MemberRepository(registry, settings, engine)


@pytest.fixture
def team_repository(registry, settings, engine):
    return TeamRepository(registry, settings, engine)


@pytest.fixture
def tx(store, registry, auditing):
    """Open transaction, committed after the test."""
    with store.transaction(registry, auditing=auditing, actor="tester") as tx:
        yield tx
