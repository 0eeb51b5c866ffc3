"""
SQLite row store for the collab engine.

This module keeps every table in one SQLite database file and exposes
them through the single-table TableStore protocol. Each call is its own
transaction; the engine composes multi-table writes as a saga on top.

Invariants:
    - One SQLite file per server
    - Each call is atomic (single transaction on a single table)
    - Column names are checked against the table definition before any
      SQL is built, so only values are ever parameterized
    - Change events are published after COMMIT, never before

How to change safely:
    - Schema changes must be backward compatible (see store/schema.py)
    - Use BEGIN IMMEDIATE for every write so the read-before-write that
      produces old_row cannot interleave with another writer
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..feed.base import ChangeEvent, ChangePublisher, Operation
from .base import Filter, OrderBy, StoreError, UniqueViolation, now_iso
from .schema import TABLES, TableDef, get_table, seed_role_rows

logger = logging.getLogger(__name__)


def _compile_filters(
    table: TableDef,
    where: Sequence[Filter],
    any_of: Sequence[Filter] = (),
) -> tuple[str, list[Any]]:
    """Build a WHERE clause for the given filters."""
    clauses: list[str] = []
    params: list[Any] = []

    def compile_one(f: Filter) -> str:
        _check_column(table, f.column)
        if f.op == "eq":
            if f.value is None:
                return f"{f.column} IS NULL"
            params.append(table.encode({f.column: f.value})[f.column])
            return f"{f.column} = ?"
        if f.op == "in":
            if not f.value:
                return "0"
            params.extend(table.encode({f.column: v})[f.column] for v in f.value)
            return f"{f.column} IN ({', '.join('?' for _ in f.value)})"
        raise StoreError(f"Unsupported filter operator: {f.op}")

    for f in where:
        clauses.append(compile_one(f))
    if any_of:
        clauses.append("(" + " OR ".join(compile_one(f) for f in any_of) + ")")

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _check_column(table: TableDef, column: str) -> None:
    if not table.has_column(column):
        raise StoreError(f"Unknown column {column!r} on table {table.name!r}")


class SqliteTableStore:
    """SQLite implementation of the TableStore protocol.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteTableStore("/var/lib/collab")
        >>> await store.initialize()
        >>> [project] = await store.insert("projects", [{"name": "Well", ...}])
        >>> await store.update("projects", {"status": "Completed"}, [eq("id", project["id"])])
    """

    def __init__(
        self,
        data_dir: str,
        db_name: str = "collab.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        publisher: ChangePublisher | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            publisher: Where to publish row change events (optional)
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.publisher = publisher
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            StoreError: If the database cannot be opened
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a write transaction, mapping sqlite errors to StoreError."""
        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise UniqueViolation(str(e)) from e
                raise StoreError(str(e)) from e
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    async def initialize(self) -> None:
        """Create all tables and seed the built-in roles."""
        async with self._lock:
            with self._transaction() as conn:
                for table in TABLES.values():
                    for statement in table.ddl():
                        conn.execute(statement)
                now = now_iso()
                for row in seed_role_rows():
                    conn.execute(
                        "INSERT OR IGNORE INTO roles (role_name, description, created_at) "
                        "VALUES (?, ?, ?)",
                        (row["role_name"], row["description"], now),
                    )
        logger.info("Initialized collab database", extra={"path": str(self.db_path)})

    def _fetch(
        self,
        conn: sqlite3.Connection,
        table: TableDef,
        where: Sequence[Filter],
        any_of: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        clause, params = _compile_filters(table, where, any_of)
        sql = f"SELECT * FROM {table.name}{clause}"

        direction = "DESC" if order_by and order_by.descending else "ASC"
        if order_by and order_by.column != table.key:
            _check_column(table, order_by.column)
            sql += f" ORDER BY {order_by.column} {direction}, {table.key} {direction}"
        else:
            sql += f" ORDER BY {table.key} {direction}"

        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        return [table.decode(dict(row)) for row in conn.execute(sql, params).fetchall()]

    async def select(
        self,
        table: str,
        where: Sequence[Filter] = (),
        any_of: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table_def = get_table(table)
        with self._get_connection() as conn:
            try:
                return self._fetch(conn, table_def, where, any_of, order_by, limit)
            except sqlite3.Error as e:
                raise StoreError(f"Select on {table} failed: {e}") from e

    async def count(self, table: str, where: Sequence[Filter] = ()) -> int:
        table_def = get_table(table)
        clause, params = _compile_filters(table_def, where)
        with self._get_connection() as conn:
            try:
                row = conn.execute(f"SELECT COUNT(*) FROM {table}{clause}", params).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Count on {table} failed: {e}") from e
        return int(row[0])

    async def insert(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        table_def = get_table(table)
        if not rows:
            return []

        now = now_iso()
        prepared: list[dict[str, Any]] = []
        for row in rows:
            for column in row:
                _check_column(table_def, column)
            full = table_def.with_defaults(row)
            for stamp in (table_def.created_column, table_def.updated_column):
                if stamp:
                    full[stamp] = now
            prepared.append(full)

        inserted: list[dict[str, Any]] = []
        with self._transaction() as conn:
            for full in prepared:
                values = table_def.encode(full)
                if table_def.autoincrement:
                    values.pop(table_def.key, None)
                columns = list(values)
                cursor = conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [values[c] for c in columns],
                )
                if table_def.autoincrement:
                    full[table_def.key] = cursor.lastrowid
                inserted.append(full)

        logger.debug("Inserted rows", extra={"table": table, "count": len(inserted)})
        await self._publish(
            ChangeEvent(table=table, operation=Operation.INSERT, new_row=row) for row in inserted
        )
        return inserted

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        where: Sequence[Filter],
    ) -> list[dict[str, Any]]:
        table_def = get_table(table)
        if not where:
            raise StoreError(f"Refusing unfiltered update on {table}")
        for column in values:
            _check_column(table_def, column)
            if column == table_def.key:
                raise StoreError(f"Cannot update key column {column!r}")

        changes = dict(values)
        if table_def.updated_column:
            changes[table_def.updated_column] = now_iso()
        encoded = table_def.encode(changes)

        with self._transaction() as conn:
            old_rows = self._fetch(conn, table_def, where)
            if not old_rows:
                return []
            keys = [row[table_def.key] for row in old_rows]
            assignments = ", ".join(f"{column} = ?" for column in encoded)
            conn.execute(
                f"UPDATE {table} SET {assignments} "
                f"WHERE {table_def.key} IN ({', '.join('?' for _ in keys)})",
                list(encoded.values()) + keys,
            )
            new_rows = [{**row, **changes} for row in old_rows]

        logger.debug("Updated rows", extra={"table": table, "count": len(new_rows)})
        await self._publish(
            ChangeEvent(table=table, operation=Operation.UPDATE, new_row=new, old_row=old)
            for old, new in zip(old_rows, new_rows)
        )
        return new_rows

    async def delete(self, table: str, where: Sequence[Filter]) -> list[dict[str, Any]]:
        table_def = get_table(table)
        if not where:
            raise StoreError(f"Refusing unfiltered delete on {table}")

        with self._transaction() as conn:
            old_rows = self._fetch(conn, table_def, where)
            if not old_rows:
                return []
            keys = [row[table_def.key] for row in old_rows]
            conn.execute(
                f"DELETE FROM {table} WHERE {table_def.key} IN ({', '.join('?' for _ in keys)})",
                keys,
            )

        logger.debug("Deleted rows", extra={"table": table, "count": len(old_rows)})
        await self._publish(
            ChangeEvent(table=table, operation=Operation.DELETE, old_row=row) for row in old_rows
        )
        return old_rows

    async def _publish(self, events: Any) -> None:
        if self.publisher is None:
            return
        for event in events:
            await self.publisher.publish(event)
