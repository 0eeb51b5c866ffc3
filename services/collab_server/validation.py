"""
Scalar field validation for aggregate writes.

This module checks caller-supplied root fields before any write:
- Unknown or non-writable fields (with close-match suggestions)
- Required fields on create, and on update after merging
- Value kinds and enum membership
- Date ranges that end before they start

Invariants:
    - Validation is pure; it never touches the store
    - All problems are reported together, not just the first
    - Timestamps are ISO-8601 strings; naive values are treated as UTC
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from difflib import get_close_matches
from enum import Enum
from typing import Any

from .errors import ValidationFailed
from .models import AggregateSpec, CollaboratorInput


class FieldKind(Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    ENUM = "enum"
    LIST_STRING = "list_string"


FIELD_KINDS: dict[str, FieldKind] = {
    "name": FieldKind.STRING,
    "title": FieldKind.STRING,
    "description": FieldKind.STRING,
    "location": FieldKind.STRING,
    "recurrence_rule": FieldKind.STRING,
    "project_manager_id": FieldKind.STRING,
    "status": FieldKind.ENUM,
    "project_type": FieldKind.ENUM,
    "project_target_type": FieldKind.ENUM,
    "event_type": FieldKind.ENUM,
    "start_date": FieldKind.TIMESTAMP,
    "end_date": FieldKind.TIMESTAMP,
    "start_time": FieldKind.TIMESTAMP,
    "end_time": FieldKind.TIMESTAMP,
    "budget": FieldKind.NUMBER,
    "project_target": FieldKind.NUMBER,
    "progress_percentage": FieldKind.INTEGER,
    "max_team_members": FieldKind.INTEGER,
    "max_attendees": FieldKind.INTEGER,
    "is_archived": FieldKind.BOOLEAN,
    "is_recurring": FieldKind.BOOLEAN,
    "tags": FieldKind.LIST_STRING,
}

# (minimum, maximum) for bounded integer fields
INTEGER_BOUNDS: dict[str, tuple[int, int | None]] = {
    "progress_percentage": (0, 100),
    "max_team_members": (1, None),
    "max_attendees": (1, None),
}


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO-8601 date or datetime; None if unparseable."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _validate_field_value(spec: AggregateSpec, name: str, value: Any) -> str | None:
    """Validate a single field value.

    Returns error message if invalid, None if valid.
    """
    kind = FIELD_KINDS.get(name, FieldKind.STRING)

    if kind == FieldKind.STRING:
        if not isinstance(value, str):
            return f"Field '{name}' must be a string, got {type(value).__name__}"

    elif kind == FieldKind.ENUM:
        allowed = spec.allowed_values(name) or ()
        if not isinstance(value, str):
            return f"Field '{name}' must be a string, got {type(value).__name__}"
        if allowed and value not in allowed:
            return f"Field '{name}' must be one of {list(allowed)}, got '{value}'"

    elif kind == FieldKind.TIMESTAMP:
        if not isinstance(value, str) or parse_timestamp(value) is None:
            return f"Field '{name}' must be an ISO-8601 date or datetime"

    elif kind == FieldKind.NUMBER:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return f"Field '{name}' must be a number, got {type(value).__name__}"

    elif kind == FieldKind.INTEGER:
        if not isinstance(value, int) or isinstance(value, bool):
            return f"Field '{name}' must be an integer, got {type(value).__name__}"
        low, high = INTEGER_BOUNDS.get(name, (None, None))
        if low is not None and value < low:
            return f"Field '{name}' must be at least {low}"
        if high is not None and value > high:
            return f"Field '{name}' must be at most {high}"

    elif kind == FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            return f"Field '{name}' must be a boolean, got {type(value).__name__}"

    elif kind == FieldKind.LIST_STRING:
        if not isinstance(value, list):
            return f"Field '{name}' must be a list, got {type(value).__name__}"
        for i, item in enumerate(value):
            if not isinstance(item, str):
                return f"Field '{name}[{i}]' must be a string"

    return None


def validate_fields(
    spec: AggregateSpec,
    fields: dict[str, Any],
    existing: dict[str, Any] | None = None,
) -> list[str]:
    """Validate root fields for a create (existing=None) or an update.

    Args:
        spec: Aggregate spec
        fields: Caller-supplied fields
        existing: Current root row, for updates

    Returns:
        List of error messages (empty when valid)
    """
    errors: list[str] = []

    writable = sorted(spec.writable_fields)
    for field_name in fields:
        if field_name in spec.writable_fields:
            continue
        suggestions = get_close_matches(field_name, writable, n=3)
        if suggestions:
            errors.append(f"Unknown field '{field_name}'. Did you mean: {suggestions}?")
        else:
            errors.append(f"Unknown field '{field_name}'")

    merged = {**(existing or {}), **fields}

    for field_name in spec.required_fields:
        value = merged.get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"Field '{field_name}' is required")

    for field_name, value in fields.items():
        if field_name not in spec.writable_fields or value is None:
            continue
        error = _validate_field_value(spec, field_name, value)
        if error:
            errors.append(error)

    start, end = merged.get(spec.start_field), merged.get(spec.end_field)
    if isinstance(start, str) and isinstance(end, str):
        start_at, end_at = parse_timestamp(start), parse_timestamp(end)
        if start_at and end_at and end_at < start_at:
            errors.append(f"Field '{spec.end_field}' must not be before '{spec.start_field}'")

    return errors


def validate_or_raise(
    spec: AggregateSpec,
    fields: dict[str, Any],
    existing: dict[str, Any] | None = None,
) -> None:
    """Validate root fields and raise if invalid.

    Raises:
        ValidationFailed: Listing every problem found
    """
    errors = validate_fields(spec, fields, existing)
    if errors:
        field_name = next(
            (
                name
                for name in list(fields) + list(spec.required_fields) + [spec.end_field]
                if any(f"'{name}'" in error for error in errors)
            ),
            None,
        )
        raise ValidationFailed(
            f"Validation failed for {spec.kind.value}: {'; '.join(errors)}",
            field_name=field_name,
            errors=errors,
        )


def check_collaborator_inputs(collaborators: Sequence[CollaboratorInput]) -> None:
    """Reject blank or repeated user ids in a collaborator list.

    Raises:
        ValidationFailed: If any id is blank or listed twice
    """
    seen: set[str] = set()
    duplicates: list[str] = []
    for collaborator in collaborators:
        if not collaborator.user_id or not collaborator.user_id.strip():
            raise ValidationFailed(
                "Collaborator user_id must not be empty", field_name="collaborators"
            )
        if collaborator.user_id in seen and collaborator.user_id not in duplicates:
            duplicates.append(collaborator.user_id)
        seen.add(collaborator.user_id)
    if duplicates:
        raise ValidationFailed(
            f"Duplicate collaborators: {', '.join(duplicates)}",
            field_name="collaborators",
            invalid_ids=duplicates,
        )
