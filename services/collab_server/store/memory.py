"""
In-memory row store.

This module provides a process-local TableStore for:
- Unit and integration tests
- Local development without a database file

It supports failure injection (fail_next) so tests can make a specific
saga step fail after earlier steps have committed.

Invariants:
    - All data is lost on process exit
    - Same filter, ordering, default and unique-constraint semantics as
      the SQLite backend, except that partial indexes are not enforced
    - Rows handed out are copies; callers cannot mutate stored state

How to change safely:
    - Keep behavior aligned with SqliteTableStore
    - Testing helpers must not be used by production code paths
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..feed.base import ChangeEvent, ChangePublisher, Operation
from .base import (
    Filter,
    OrderBy,
    StoreError,
    UniqueViolation,
    matches_all,
    matches_any,
    now_iso,
)
from .schema import TABLES, TableDef, get_table, seed_role_rows

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    table: str
    operation: str
    error: Exception
    remaining: int


def _sort_value(value: Any) -> tuple[int, Any]:
    # NULLs sort first, as in SQLite
    return (0, "") if value is None else (1, value)


class InMemoryTableStore:
    """In-memory implementation of the TableStore protocol.

    Example:
        >>> store = InMemoryTableStore()
        >>> await store.initialize()
        >>> store.fail_next("project_collaborators", "insert")
        >>> await store.insert("project_collaborators", [...])  # raises StoreError
    """

    def __init__(self, publisher: ChangePublisher | None = None) -> None:
        self.publisher = publisher
        self._tables: dict[str, dict[Any, dict[str, Any]]] = {name: {} for name in TABLES}
        self._next_ids: dict[str, int] = {name: 1 for name in TABLES}
        self._failures: list[_InjectedFailure] = []
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        existing = {row["role_name"] for row in self._tables["roles"].values()}
        missing = [row for row in seed_role_rows() if row["role_name"] not in existing]
        if missing:
            await self.insert("roles", missing)

    # Failure injection

    def fail_next(
        self,
        table: str,
        operation: str,
        error: Exception | None = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` on ``table`` raise.

        Args:
            table: Table name
            operation: "select", "insert", "update", "delete" or "count"
            error: Exception to raise (StoreError by default)
            times: Number of calls to fail
        """
        self._failures.append(
            _InjectedFailure(
                table=table,
                operation=operation,
                error=error or StoreError(f"Injected {operation} failure on {table}"),
                remaining=times,
            )
        )

    def _maybe_fail(self, table: str, operation: str) -> None:
        for failure in self._failures:
            if failure.table == table and failure.operation == operation and failure.remaining:
                failure.remaining -= 1
                if not failure.remaining:
                    self._failures.remove(failure)
                raise failure.error

    # Helpers

    def _rows(self, table: TableDef, where: Sequence[Filter], any_of: Sequence[Filter] = ()):
        for f in list(where) + list(any_of):
            if not table.has_column(f.column):
                raise StoreError(f"Unknown column {f.column!r} on table {table.name!r}")
        return [
            row
            for row in self._tables[table.name].values()
            if matches_all(row, where) and matches_any(row, any_of)
        ]

    def _check_unique(self, table: TableDef, row: dict[str, Any], ignore_key: Any = None) -> None:
        for columns in table.unique:
            values = tuple(row.get(c) for c in columns)
            if any(v is None for v in values):
                continue
            for key, existing in self._tables[table.name].items():
                if key == ignore_key:
                    continue
                if tuple(existing.get(c) for c in columns) == values:
                    raise UniqueViolation(
                        f"UNIQUE constraint failed: {table.name}.{', '.join(columns)}"
                    )

    # TableStore protocol

    async def select(
        self,
        table: str,
        where: Sequence[Filter] = (),
        any_of: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table_def = get_table(table)
        self._maybe_fail(table, "select")
        rows = self._rows(table_def, where, any_of)

        descending = bool(order_by and order_by.descending)
        rows.sort(key=lambda r: _sort_value(r.get(table_def.key)), reverse=descending)
        if order_by and order_by.column != table_def.key:
            if not table_def.has_column(order_by.column):
                raise StoreError(f"Unknown column {order_by.column!r} on table {table}")
            rows.sort(key=lambda r: _sort_value(r.get(order_by.column)), reverse=descending)

        if limit is not None:
            rows = rows[: int(limit)]
        return copy.deepcopy(rows)

    async def count(self, table: str, where: Sequence[Filter] = ()) -> int:
        table_def = get_table(table)
        self._maybe_fail(table, "count")
        return len(self._rows(table_def, where))

    async def insert(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        table_def = get_table(table)
        self._maybe_fail(table, "insert")
        if not rows:
            return []

        now = now_iso()
        async with self._lock:
            staged: list[dict[str, Any]] = []
            next_id = self._next_ids[table]
            for row in rows:
                for column in row:
                    if not table_def.has_column(column):
                        raise StoreError(f"Unknown column {column!r} on table {table!r}")
                full = table_def.with_defaults(copy.deepcopy(dict(row)))
                for stamp in (table_def.created_column, table_def.updated_column):
                    if stamp:
                        full[stamp] = now
                if table_def.autoincrement:
                    full[table_def.key] = next_id
                    next_id += 1
                elif full.get(table_def.key) is None:
                    raise StoreError(f"Missing key {table_def.key!r} for table {table!r}")
                elif full[table_def.key] in self._tables[table]:
                    raise UniqueViolation(f"UNIQUE constraint failed: {table}.{table_def.key}")
                self._check_unique(table_def, full)
                for pending in staged:
                    for columns in table_def.unique:
                        values = tuple(full.get(c) for c in columns)
                        if None not in values and values == tuple(pending.get(c) for c in columns):
                            raise UniqueViolation(
                                f"UNIQUE constraint failed: {table}.{', '.join(columns)}"
                            )
                staged.append(full)

            for full in staged:
                self._tables[table][full[table_def.key]] = full
            self._next_ids[table] = next_id
            inserted = copy.deepcopy(staged)

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
        self._maybe_fail(table, "update")
        if not where:
            raise StoreError(f"Refusing unfiltered update on {table}")
        for column in values:
            if not table_def.has_column(column):
                raise StoreError(f"Unknown column {column!r} on table {table!r}")
            if column == table_def.key:
                raise StoreError(f"Cannot update key column {column!r}")

        changes = copy.deepcopy(dict(values))
        if table_def.updated_column:
            changes[table_def.updated_column] = now_iso()

        async with self._lock:
            matched = self._rows(table_def, where)
            old_rows = copy.deepcopy(matched)
            new_rows = [{**row, **changes} for row in old_rows]
            for new in new_rows:
                self._check_unique(table_def, new, ignore_key=new[table_def.key])
            for new in new_rows:
                self._tables[table][new[table_def.key]] = new
            result = copy.deepcopy(new_rows)

        await self._publish(
            ChangeEvent(table=table, operation=Operation.UPDATE, new_row=new, old_row=old)
            for old, new in zip(old_rows, result)
        )
        return result

    async def delete(self, table: str, where: Sequence[Filter]) -> list[dict[str, Any]]:
        table_def = get_table(table)
        self._maybe_fail(table, "delete")
        if not where:
            raise StoreError(f"Refusing unfiltered delete on {table}")

        async with self._lock:
            old_rows = self._rows(table_def, where)
            for row in old_rows:
                del self._tables[table][row[table_def.key]]
            old_rows = copy.deepcopy(old_rows)

        await self._publish(
            ChangeEvent(table=table, operation=Operation.DELETE, old_row=row) for row in old_rows
        )
        return old_rows

    async def _publish(self, events: Any) -> None:
        if self.publisher is None:
            return
        for event in events:
            await self.publisher.publish(event)

    # Testing helpers

    def get_rows(self, table: str) -> list[dict[str, Any]]:
        """Snapshot of every row in a table, in key order."""
        return copy.deepcopy(list(self._tables[get_table(table).name].values()))

    def put_row(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Write a row directly, bypassing constraints and change events."""
        table_def = get_table(table)
        full = table_def.with_defaults(copy.deepcopy(row))
        if table_def.autoincrement and full.get(table_def.key) is None:
            full[table_def.key] = self._next_ids[table]
        if table_def.autoincrement:
            self._next_ids[table] = max(self._next_ids[table], full[table_def.key] + 1)
        self._tables[table][full[table_def.key]] = full
        return copy.deepcopy(full)
