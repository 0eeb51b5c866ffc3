"""
Authorization for the collab engine.

This module provides:
- RoleResolver: actor roles and collaborator links
- AuthorizationGate: one decision table per action
- RoleAdministrator: grant/revoke named roles (Admin only)

Invariants:
    - Deny is a value, not an exception, until a caller asks for require()
    - Unavailable role data is a DependencyFailure, never a Deny
"""

from .admin import RoleAdministrator
from .gate import DECISION_TABLE, AuthorizationGate, Decision, Rule, decide, read_filters
from .roles import ActorContext, RoleResolver

__all__ = [
    "ActorContext",
    "AuthorizationGate",
    "DECISION_TABLE",
    "Decision",
    "RoleAdministrator",
    "RoleResolver",
    "Rule",
    "decide",
    "read_filters",
]
