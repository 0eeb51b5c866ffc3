"""
Row store module for the collab engine.

This module provides:
- The TableStore protocol: single-table CRUD with eq/in filters
- SqliteTableStore: durable backend
- InMemoryTableStore: test/development backend with failure injection
- Table definitions shared by both backends

Invariants:
    - No server-side joins and no multi-table transactions
    - Every write publishes one ChangeEvent per affected row

How to change safely:
    - Backends must agree on filter, ordering and default semantics
"""

from .base import (
    Filter,
    OrderBy,
    StoreError,
    TableStore,
    UniqueViolation,
    UnknownTableError,
    eq,
    in_,
    now_iso,
)
from .memory import InMemoryTableStore
from .schema import TABLES, TableDef, get_table
from .sqlite_store import SqliteTableStore

__all__ = [
    "Filter",
    "InMemoryTableStore",
    "OrderBy",
    "SqliteTableStore",
    "StoreError",
    "TABLES",
    "TableDef",
    "TableStore",
    "UniqueViolation",
    "UnknownTableError",
    "eq",
    "in_",
    "get_table",
    "now_iso",
]
