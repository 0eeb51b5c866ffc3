"""
Table definitions for the collab row store.

Both store backends share these definitions: column lists, generated
keys, unique constraints, defaults, timestamp columns and the value
codec (JSON and boolean columns). The SQLite backend also renders its
DDL from here.

Table schema:
    projects / events:
        - id INTEGER (autoincrement)
        - aggregate fields (see models.PROJECT_SPEC / EVENT_SPEC)
        - owner_id TEXT
        - request_key TEXT UNIQUE (idempotent create)
        - created_at, updated_at TEXT (ISO-8601 UTC)

    project_images / event_images:
        - id INTEGER, {project|event}_id INTEGER, image_url TEXT
        - is_primary INTEGER
        - UNIQUE partial index on (fk) WHERE is_primary = 1

    project_collaborators / event_collaborators:
        - id INTEGER, {project|event}_id INTEGER, user_id TEXT, role_id INTEGER
        - UNIQUE (fk, user_id)

    roles, user_roles, profiles:
        - reference data for authorization and read-model joins

Invariants:
    - Unique constraints ignore NULL values (SQLite semantics)
    - Timestamp columns are stamped by the store, never by callers

How to change safely:
    - Only add nullable columns or columns with defaults
    - Add the column to the matching AggregateSpec.writable_fields if
      callers should be able to set it
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ..models import DEFAULT_ROLES
from .base import UnknownTableError


@dataclass(frozen=True)
class TableDef:
    """Definition of one table.

    Attributes:
        name: Table name
        columns: (column, SQL type) pairs, excluding the key
        key: Primary key column
        autoincrement: Whether the store generates integer keys
        unique: Column tuples that must be unique together
        indexes: Column tuples to index
        json_columns: Columns stored as JSON text
        bool_columns: Columns stored as 0/1 integers
        defaults: Values applied on insert when a column is missing
        created_column: Column stamped on insert
        updated_column: Column stamped on insert and update
        extra_sql: Additional DDL statements
    """

    name: str
    columns: tuple[tuple[str, str], ...]
    key: str = "id"
    autoincrement: bool = True
    unique: tuple[tuple[str, ...], ...] = ()
    indexes: tuple[tuple[str, ...], ...] = ()
    json_columns: frozenset[str] = frozenset()
    bool_columns: frozenset[str] = frozenset()
    defaults: dict[str, Any] = field(default_factory=dict)
    created_column: str | None = "created_at"
    updated_column: str | None = "updated_at"
    extra_sql: tuple[str, ...] = ()

    @property
    def column_names(self) -> tuple[str, ...]:
        return (self.key,) + tuple(name for name, _ in self.columns)

    def has_column(self, column: str) -> bool:
        return column in self.column_names

    def encode(self, row: dict[str, Any]) -> dict[str, Any]:
        """Convert a row to storage values."""
        encoded = {}
        for column, value in row.items():
            if value is not None and column in self.json_columns:
                value = json.dumps(value)
            elif value is not None and column in self.bool_columns:
                value = 1 if value else 0
            encoded[column] = value
        return encoded

    def decode(self, row: dict[str, Any]) -> dict[str, Any]:
        """Convert storage values back to Python values."""
        decoded = dict(row)
        for column in self.json_columns:
            if isinstance(decoded.get(column), str):
                decoded[column] = json.loads(decoded[column])
        for column in self.bool_columns:
            if decoded.get(column) is not None:
                decoded[column] = bool(decoded[column])
        return decoded

    def with_defaults(self, row: dict[str, Any]) -> dict[str, Any]:
        """Full row for insert: every column present, defaults applied."""
        full: dict[str, Any] = {name: None for name in self.column_names}
        for column, value in self.defaults.items():
            # Copy mutable defaults so rows never share a list
            full[column] = list(value) if isinstance(value, list) else value
        full.update({k: v for k, v in row.items() if v is not None or k not in self.defaults})
        return full

    def ddl(self) -> list[str]:
        """CREATE statements for this table and its indexes."""
        if self.autoincrement:
            key_sql = f"{self.key} INTEGER PRIMARY KEY AUTOINCREMENT"
        else:
            key_sql = f"{self.key} TEXT PRIMARY KEY"
        parts = [key_sql] + [f"{name} {sql_type}" for name, sql_type in self.columns]
        parts += [f"UNIQUE ({', '.join(cols)})" for cols in self.unique]
        statements = [
            f"CREATE TABLE IF NOT EXISTS {self.name} (\n    " + ",\n    ".join(parts) + "\n)"
        ]
        for cols in self.indexes:
            index_name = f"idx_{self.name}_{'_'.join(cols)}"
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {index_name} ON {self.name}({', '.join(cols)})"
            )
        statements.extend(self.extra_sql)
        return statements


def _image_table(name: str, foreign_key: str) -> TableDef:
    return TableDef(
        name=name,
        columns=(
            (foreign_key, "INTEGER NOT NULL"),
            ("image_url", "TEXT NOT NULL"),
            ("is_primary", "INTEGER NOT NULL"),
            ("uploaded_at", "TEXT NOT NULL"),
        ),
        indexes=((foreign_key,),),
        bool_columns=frozenset({"is_primary"}),
        defaults={"is_primary": False},
        created_column="uploaded_at",
        updated_column=None,
        extra_sql=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{name}_primary "
            f"ON {name}({foreign_key}) WHERE is_primary = 1",
        ),
    )


def _collaborator_table(name: str, foreign_key: str) -> TableDef:
    return TableDef(
        name=name,
        columns=(
            (foreign_key, "INTEGER NOT NULL"),
            ("user_id", "TEXT NOT NULL"),
            ("role_id", "INTEGER"),
            ("assigned_at", "TEXT NOT NULL"),
        ),
        unique=((foreign_key, "user_id"),),
        indexes=((foreign_key,), ("user_id",)),
        created_column="assigned_at",
        updated_column=None,
    )


PROJECTS = TableDef(
    name="projects",
    columns=(
        ("name", "TEXT NOT NULL"),
        ("description", "TEXT"),
        ("status", "TEXT NOT NULL"),
        ("start_date", "TEXT NOT NULL"),
        ("end_date", "TEXT"),
        ("budget", "REAL"),
        ("progress_percentage", "INTEGER NOT NULL"),
        ("tags", "TEXT NOT NULL"),
        ("team_members_count", "INTEGER NOT NULL"),
        ("max_team_members", "INTEGER"),
        ("is_archived", "INTEGER NOT NULL"),
        ("project_type", "TEXT"),
        ("project_target", "REAL"),
        ("project_target_type", "TEXT"),
        ("project_manager_id", "TEXT"),
        ("owner_id", "TEXT"),
        ("request_key", "TEXT"),
        ("created_at", "TEXT NOT NULL"),
        ("updated_at", "TEXT NOT NULL"),
    ),
    unique=(("request_key",),),
    indexes=(("owner_id",), ("project_manager_id",), ("created_at",)),
    json_columns=frozenset({"tags"}),
    bool_columns=frozenset({"is_archived"}),
    defaults={
        "status": "Active",
        "progress_percentage": 0,
        "tags": [],
        "team_members_count": 0,
        "is_archived": False,
    },
)

EVENTS = TableDef(
    name="events",
    columns=(
        ("title", "TEXT NOT NULL"),
        ("description", "TEXT"),
        ("status", "TEXT NOT NULL"),
        ("start_time", "TEXT NOT NULL"),
        ("end_time", "TEXT"),
        ("location", "TEXT"),
        ("event_type", "TEXT"),
        ("is_recurring", "INTEGER NOT NULL"),
        ("recurrence_rule", "TEXT"),
        ("max_attendees", "INTEGER"),
        ("attendees_count", "INTEGER NOT NULL"),
        ("tags", "TEXT NOT NULL"),
        ("owner_id", "TEXT"),
        ("request_key", "TEXT"),
        ("created_at", "TEXT NOT NULL"),
        ("updated_at", "TEXT NOT NULL"),
    ),
    unique=(("request_key",),),
    indexes=(("owner_id",), ("created_at",)),
    json_columns=frozenset({"tags"}),
    bool_columns=frozenset({"is_recurring"}),
    defaults={
        "status": "Scheduled",
        "is_recurring": False,
        "attendees_count": 0,
        "tags": [],
    },
)

ROLES = TableDef(
    name="roles",
    columns=(
        ("role_name", "TEXT NOT NULL"),
        ("description", "TEXT"),
        ("created_at", "TEXT NOT NULL"),
    ),
    unique=(("role_name",),),
    updated_column=None,
)

USER_ROLES = TableDef(
    name="user_roles",
    columns=(
        ("user_id", "TEXT NOT NULL"),
        ("role_id", "INTEGER NOT NULL"),
        ("assigned_at", "TEXT NOT NULL"),
    ),
    unique=(("user_id", "role_id"),),
    indexes=(("user_id",),),
    created_column="assigned_at",
    updated_column=None,
)

PROFILES = TableDef(
    name="profiles",
    key="user_id",
    autoincrement=False,
    columns=(
        ("full_name", "TEXT NOT NULL"),
        ("email", "TEXT"),
        ("designation", "TEXT"),
        ("profile_image", "TEXT"),
        ("bio", "TEXT"),
        ("is_active", "INTEGER NOT NULL"),
        ("created_at", "TEXT NOT NULL"),
        ("updated_at", "TEXT NOT NULL"),
    ),
    bool_columns=frozenset({"is_active"}),
    defaults={"full_name": "", "is_active": True},
)

TABLES: dict[str, TableDef] = {
    table.name: table
    for table in (
        PROJECTS,
        _image_table("project_images", "project_id"),
        _collaborator_table("project_collaborators", "project_id"),
        EVENTS,
        _image_table("event_images", "event_id"),
        _collaborator_table("event_collaborators", "event_id"),
        ROLES,
        USER_ROLES,
        PROFILES,
    )
}


def get_table(name: str) -> TableDef:
    """Look up a table definition.

    Raises:
        UnknownTableError: If the table is not defined
    """
    try:
        return TABLES[name]
    except KeyError:
        raise UnknownTableError(f"Unknown table: {name}") from None


def seed_role_rows() -> list[dict[str, Any]]:
    """Rows for the built-in roles."""
    return [{"role_name": name, "description": description} for name, description in DEFAULT_ROLES]
