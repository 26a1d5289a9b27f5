"""
Store module for datarepo.

This module provides the SQLite collaborator:
- SqlCompiler: QueryPlan to parameterized SQL, plus DDL
- SqliteStore: connections, transactions, execution and locks

Invariants:
    - Only this module talks to the database driver
"""

from .compiler import CompiledStatement, SqlCompiler
from .sqlite import ExecutionResult, QueryStats, SqliteStore

__all__ = [
    "CompiledStatement",
    "SqlCompiler",
    "ExecutionResult",
    "QueryStats",
    "SqliteStore",
]
