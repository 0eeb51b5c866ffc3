"""
Error types for the collab engine.

This module defines every error the engine surfaces to callers:
- CollabError: Base exception
- AuthorizationDenied: Actor lacks the required role or ownership
- ValidationFailed: Bad scalar field, date range, collaborator or role
- PartialWriteFailure: A saga step failed after earlier steps may have committed
- NotFoundError: Aggregate or collaborator link absent
- DependencyFailure: Role or profile lookup failed

Invariants:
    - All errors inherit from CollabError
    - Every error carries a stable code for programmatic handling
    - Errors raised before the first write never have side effects
"""

from __future__ import annotations

from typing import Any


class CollabError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "COLLAB_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "error_code": self.code, "details": self.details}


class AuthorizationDenied(CollabError):
    """Actor lacks the role or ownership the action requires.

    Non-retryable; surfaced verbatim to the caller.
    """

    def __init__(
        self,
        actor: str,
        action: str,
        reason: str,
        aggregate_id: int | None = None,
    ) -> None:
        target = f" on {aggregate_id}" if aggregate_id is not None else ""
        super().__init__(
            f"Access denied: {actor} may not {action}{target} ({reason})",
            code="AUTHORIZATION_DENIED",
            details={
                "actor": actor,
                "action": action,
                "reason": reason,
                "aggregate_id": aggregate_id,
            },
        )
        self.actor = actor
        self.action = action
        self.reason = reason
        self.aggregate_id = aggregate_id


class ValidationFailed(CollabError):
    """Input validation failed.

    Raised when:
    - Required scalar field is missing
    - Enum value is invalid
    - Date range ends before it starts
    - Collaborator id or role name is unknown
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
        invalid_ids: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            details={
                "field": field_name,
                "errors": errors or [],
                "invalid_ids": invalid_ids or [],
            },
        )
        self.field_name = field_name
        self.errors = errors or []
        self.invalid_ids = invalid_ids or []


class PartialWriteFailure(CollabError):
    """A step of a multi-step write failed.

    Nothing is rolled back. committed_steps lists the steps known to have
    reached the store, so the caller can retry or clean up.

    Attributes:
        failed_step: Name of the step that raised
        committed_steps: Steps that completed before the failure
        aggregate_id: Root id if the root row exists
    """

    def __init__(
        self,
        failed_step: str,
        committed_steps: list[str],
        aggregate_id: int | None = None,
        cause: str | None = None,
    ) -> None:
        committed = ", ".join(committed_steps) if committed_steps else "none"
        message = f"Write failed at step '{failed_step}' (committed: {committed})"
        if cause:
            message += f": {cause}"
        super().__init__(
            message,
            code="PARTIAL_WRITE_FAILURE",
            details={
                "failed_step": failed_step,
                "committed_steps": list(committed_steps),
                "aggregate_id": aggregate_id,
            },
        )
        self.failed_step = failed_step
        self.committed_steps = list(committed_steps)
        self.aggregate_id = aggregate_id

    @property
    def has_committed(self) -> bool:
        return bool(self.committed_steps)


class NotFoundError(CollabError):
    """Resource not found.

    Raised when:
    - Root id is absent on read, update or delete
    - A collaborator link to remove does not exist
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: Any,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class DependencyFailure(CollabError):
    """A lookup the engine depends on failed.

    Distinct from a business Deny: the answer is unknown, not negative.
    """

    def __init__(self, message: str, dependency: str) -> None:
        super().__init__(
            message,
            code="DEPENDENCY_FAILURE",
            details={"dependency": dependency},
        )
        self.dependency = dependency
