"""
SQLite store collaborator for datarepo.

Executes compiled query plans and native statements on SQLite connections
and owns transaction boundaries:

- connect(): configured connection (WAL, busy timeout, cache size)
- transaction(): context manager yielding a TransactionContext
- execute() / execute_native(): run one statement, recorded in QueryStats
- acquire_lock(): take the write lock ahead of a locking read

Invariants:
    - One connection per transaction; explicit BEGIN / COMMIT / ROLLBACK
    - Pending changes are flushed before COMMIT
    - A context marked rollback-only is rolled back on exit
    - ``database is locked`` surfaces as LockTimeoutError

How to change safely:
    - Keep connection pragmas in connect(); the compiler relies on
      ``case_sensitive_like``
    - Do not swallow driver errors other than lock timeouts; they propagate
      after rollback
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Sequence

from ..errors import LockTimeoutError
from ..query.plan import LockMode, QueryPlan
from ..schema.registry import EntityRegistry
from ..schema.types import EntityType
from ..session import TransactionContext
from .compiler import CompiledStatement, SqlCompiler

if TYPE_CHECKING:
    from ..auditing import AuditingInterceptor
    from ..config import RepositorySettings

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Rows and counters of one executed statement.

    Attributes:
        rows: Fetched rows (empty for writes)
        columns: Labels of the row values
        rowcount: Rows affected by a write
        lastrowid: Id assigned by the last INSERT
    """

    rows: list[tuple[Any, ...]] = field(default_factory=list)
    columns: tuple[str, ...] = ()
    rowcount: int = 0
    lastrowid: Optional[int] = None

    def mappings(self) -> list[dict[str, Any]]:
        """Rows as dicts keyed by column label."""
        return [dict(zip(self.columns, row)) for row in self.rows]

    def scalar(self) -> Any:
        return self.rows[0][0] if self.rows else None


@dataclass
class QueryStats:
    """Record of statements executed through a store.

    Attributes:
        plans: Executed query plans, in order
        statements: Executed SQL text, in order (plans and native queries)
    """

    plans: list[QueryPlan] = field(default_factory=list)
    statements: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, sql: str, plan: Optional[QueryPlan] = None) -> None:
        with self._lock:
            self.statements.append(sql)
            if plan is not None:
                self.plans.append(plan)

    @property
    def statement_count(self) -> int:
        return len(self.statements)

    @property
    def select_count(self) -> int:
        """Number of executed statements that read rows."""
        return sum(1 for s in self.statements if s.lstrip().upper().startswith("SELECT"))

    def reset(self) -> None:
        with self._lock:
            self.plans.clear()
            self.statements.clear()


def _is_locked(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class SqliteStore:
    """SQLite-backed store executing datarepo plans.

    Thread safety:
        Each transaction opens its own connection. SQLite serializes
        writers; readers proceed concurrently under WAL mode.

    Example:
        >>> store = SqliteStore("/tmp/app.db")
        >>> store.create_schema(registry)
        >>> with store.transaction(registry, actor="admin") as tx:
        ...     members.save(tx, Member(username="member1"))
    """

    def __init__(
        self,
        database: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        lock_timeout_ms: int = 3000,
        compiler: Optional[SqlCompiler] = None,
    ) -> None:
        """Initialize the store.

        Args:
            database: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout for ordinary statements
            cache_size_pages: SQLite cache size (negative = KB)
            lock_timeout_ms: Default wait limit for pessimistic locks
            compiler: Compiler to use (one per registry is created lazily)
        """
        self.database = Path(database)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.lock_timeout_ms = lock_timeout_ms
        self.stats = QueryStats()
        self._compiler = compiler
        self._compilers: dict[int, SqlCompiler] = {}

    @classmethod
    def from_settings(cls, settings: RepositorySettings) -> SqliteStore:
        return cls(
            settings.database,
            wal_mode=settings.wal_mode,
            busy_timeout_ms=settings.busy_timeout_ms,
            cache_size_pages=settings.cache_size_pages,
            lock_timeout_ms=settings.lock_timeout_ms,
        )

    def compiler_for(self, registry: EntityRegistry) -> SqlCompiler:
        if self._compiler is not None and self._compiler.registry is registry:
            return self._compiler
        compiler = self._compilers.get(id(registry))
        if compiler is None or compiler.registry is not registry:
            compiler = SqlCompiler(registry)
            self._compilers[id(registry)] = compiler
        return compiler

    # -- connections ---------------------------------------------------------

    def open_connection(self) -> sqlite3.Connection:
        """Open and configure a connection; the caller closes it."""
        self.database.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.database),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA case_sensitive_like = ON")
        except Exception:
            conn.close()
            raise
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Configured connection closed on exit."""
        conn = self.open_connection()
        try:
            yield conn
        finally:
            conn.close()

    def create_schema(self, registry: EntityRegistry) -> None:
        """Create tables for every registered entity (idempotent)."""
        compiler = self.compiler_for(registry)
        entity_types = list(registry.entities())
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for entity_type in entity_types:
                    for statement in compiler.ddl(entity_type):
                        conn.execute(statement)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.info(
            f"Created schema for {len(entity_types)} entities",
            extra={"database": str(self.database)},
        )

    # -- transactions --------------------------------------------------------

    def begin(self, conn: sqlite3.Connection) -> None:
        conn.execute("BEGIN")

    def commit(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if _is_locked(e):
                raise LockTimeoutError("database", self.busy_timeout_ms) from e
            raise

    def rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @contextmanager
    def transaction(
        self,
        registry: EntityRegistry,
        *,
        auditing: Optional[AuditingInterceptor] = None,
        actor: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
    ) -> Iterator[TransactionContext]:
        """Run a unit of work in one transaction.

        Commits (after a final flush) on normal exit; rolls back on an
        exception or when the context was marked rollback-only.

        Args:
            registry: Entity registry for the unit of work
            auditing: Interceptor stamping audit fields
            actor: Actor available to actor resolvers as ``tx.actor``
            lock_timeout_ms: Wait limit for pessimistic locks

        Yields:
            The open TransactionContext
        """
        self.compiler_for(registry)
        conn = self.open_connection()
        tx = TransactionContext(
            self,
            conn,
            registry,
            auditing=auditing,
            actor=actor,
            lock_timeout_ms=self.lock_timeout_ms if lock_timeout_ms is None else lock_timeout_ms,
        )
        try:
            self.begin(conn)
            try:
                yield tx
                if tx.rollback_only:
                    logger.debug("Rolling back transaction marked rollback-only")
                    self.rollback(conn)
                else:
                    tx.flush()
                    self.commit(conn)
            except BaseException:
                self.rollback(conn)
                raise
        finally:
            tx.close()
            conn.close()

    # -- execution -----------------------------------------------------------

    def execute(self, conn: sqlite3.Connection, plan: QueryPlan) -> ExecutionResult:
        """Compile and run one plan.

        Raises:
            LockTimeoutError: If the database stayed locked past the busy timeout
        """
        statement = self.compiler_for_entity(plan.entity).compile(plan)
        logger.debug(
            f"Executing {plan.kind.value} on {plan.entity.name}",
            extra={"sql": statement.sql, "plan": plan.describe()},
        )
        self.stats.record(statement.sql, plan)
        return self._run(conn, statement, plan.entity.name)

    def compiler_for_entity(self, entity: EntityType) -> SqlCompiler:
        if self._compiler is not None:
            return self._compiler
        for compiler in self._compilers.values():
            if compiler.registry.get(entity.name) is entity:
                return compiler
        raise LookupError(f"No registry known to the store holds '{entity.name}'")

    def execute_native(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] = (),
    ) -> ExecutionResult:
        """Run caller-written SQL; columns come from the cursor."""
        logger.debug("Executing native query", extra={"sql": sql})
        self.stats.record(sql)
        return self._run(conn, CompiledStatement(sql, params), "native")  # type: ignore[arg-type]

    def _run(self, conn: sqlite3.Connection, statement: CompiledStatement, entity: str) -> ExecutionResult:
        try:
            cursor = conn.execute(statement.sql, statement.params)
        except sqlite3.OperationalError as e:
            if _is_locked(e):
                raise LockTimeoutError(entity, self.busy_timeout_ms) from e
            raise
        if cursor.description is None:
            return ExecutionResult(rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
        columns = statement.columns or tuple(d[0] for d in cursor.description)
        return ExecutionResult(rows=cursor.fetchall(), columns=columns, rowcount=cursor.rowcount)

    def acquire_lock(
        self,
        conn: sqlite3.Connection,
        entity: EntityType,
        ids: Iterable[Any] = (),
        mode: LockMode = LockMode.PESSIMISTIC_WRITE,
        timeout_ms: Optional[int] = None,
    ) -> None:
        """Take the lock a locking read needs, waiting at most ``timeout_ms``.

        SQLite locks the database, not rows: PESSIMISTIC_WRITE takes the
        write lock (covering the matched rows) until the transaction ends.
        PESSIMISTIC_READ is satisfied by the transaction's read snapshot.

        Raises:
            LockTimeoutError: If the lock was not granted in time
        """
        if mode is LockMode.NONE:
            return
        timeout_ms = self.lock_timeout_ms if timeout_ms is None else timeout_ms
        ids = list(ids)
        id_column = entity.id.column_name
        if mode is LockMode.PESSIMISTIC_READ:
            sql = f"SELECT 1 FROM {entity.table_name} LIMIT 1"
        elif ids:
            placeholders = ", ".join("?" for _ in ids)
            sql = f"UPDATE {entity.table_name} SET {id_column} = {id_column} WHERE {id_column} IN ({placeholders})"
        else:
            sql = f"UPDATE {entity.table_name} SET {id_column} = {id_column} WHERE 0"

        conn.execute(f"PRAGMA busy_timeout = {int(timeout_ms)}")
        try:
            self.stats.record(sql)
            conn.execute(sql, ids if ids and mode is LockMode.PESSIMISTIC_WRITE else ())
        except sqlite3.OperationalError as e:
            if _is_locked(e):
                logger.warning(
                    f"Lock wait on {entity.name} timed out",
                    extra={"entity": entity.name, "timeout_ms": timeout_ms},
                )
                raise LockTimeoutError(entity.name, timeout_ms) from e
            raise
        finally:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        logger.debug(f"Acquired {mode.value} lock on {entity.name}", extra={"ids": ids})
