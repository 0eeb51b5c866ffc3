"""
Base protocol and types for the single-table row store.

The engine only ever talks to the store one table at a time: row-level
CRUD with equality and membership filters plus ordering. There are no
server-side joins and no multi-table transactions; anything spanning two
tables is the caller's saga.

Invariants:
    - Every call touches exactly one table
    - update() and delete() require at least one filter
    - Each successful write emits one ChangeEvent per affected row
    - Backend failures surface as StoreError

How to change safely:
    - New filter operators must be implemented by every backend
    - Keep the protocol free of backend-specific arguments
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable


class StoreError(Exception):
    """Base exception for store operations."""

    pass


class UniqueViolation(StoreError):
    """A write would break a unique constraint."""

    pass


class UnknownTableError(StoreError):
    """Table is not defined in the store schema."""

    pass


@dataclass(frozen=True)
class Filter:
    """A single-column row predicate.

    Attributes:
        column: Column to test
        op: "eq" or "in"
        value: Value (eq) or tuple of values (in)
    """

    column: str
    op: str
    value: Any

    def matches(self, row: dict[str, Any]) -> bool:
        current = row.get(self.column)
        if self.op == "eq":
            return current == self.value
        if self.op == "in":
            return current in self.value
        raise StoreError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class OrderBy:
    """Sort specification for select()."""

    column: str
    descending: bool = False


def eq(column: str, value: Any) -> Filter:
    """Equality filter (``.eq(column, value)``)."""
    return Filter(column, "eq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    """Membership filter (``.in(column, values)``)."""
    return Filter(column, "in", tuple(values))


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (sortable)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def matches_all(row: dict[str, Any], where: Sequence[Filter]) -> bool:
    return all(f.matches(row) for f in where)


def matches_any(row: dict[str, Any], any_of: Sequence[Filter]) -> bool:
    return not any_of or any(f.matches(row) for f in any_of)


@runtime_checkable
class TableStore(Protocol):
    """Protocol for row store backends.

    Example:
        >>> store = SqliteTableStore("/var/lib/collab")
        >>> await store.initialize()
        >>> rows = await store.insert("projects", [{"name": "Well", ...}])
        >>> await store.select("project_images", where=[eq("project_id", rows[0]["id"])])
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and seed reference rows (idempotent)."""
        ...

    @abstractmethod
    async def select(
        self,
        table: str,
        where: Sequence[Filter] = (),
        any_of: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows matching all of ``where`` and at least one of ``any_of``."""
        ...

    @abstractmethod
    async def insert(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert rows and return them with generated keys and defaults."""
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        values: dict[str, Any],
        where: Sequence[Filter],
    ) -> list[dict[str, Any]]:
        """Update matching rows and return their new state."""
        ...

    @abstractmethod
    async def delete(self, table: str, where: Sequence[Filter]) -> list[dict[str, Any]]:
        """Delete matching rows and return their last state."""
        ...

    @abstractmethod
    async def count(self, table: str, where: Sequence[Filter] = ()) -> int:
        """Count matching rows."""
        ...
