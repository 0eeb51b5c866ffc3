"""
Authorization gate for aggregate actions.

Every allow/deny decision in the engine is made here, from one decision
table per action. Each table lists the rules that grant the action; the
first satisfied rule wins.

    create        Admin | manager role
    read          Admin | manager role | owner | manager | collaborator
    update        Admin | manager role | owner | manager
    delete        Admin | manager role | owner
    manage_roles  Admin

The manager role is per kind: "Project Manager" for projects, "Organizer"
for events. "manager" is the aggregate's own manager field (projects only).

Invariants:
    - decide() is pure and never raises for well-formed input
    - authorize() raises only DependencyFailure (role data unavailable)
    - List filtering uses read_filters(), built from the same read table,
      so list() and get() agree on visibility

How to change safely:
    - Edit DECISION_TABLE, not call sites
    - Every new Rule needs both an evaluation in _satisfies() and a row
      filter in read_filters() if it can grant read
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import AuthorizationDenied
from ..models import ADMIN_ROLE, Action, AggregateKind, AggregateSpec, get_spec
from ..store import Filter, eq, in_
from .roles import ActorContext, RoleResolver

logger = logging.getLogger(__name__)


class Rule(Enum):
    """Facts that can grant an action."""

    ADMIN = "admin"
    MANAGER_ROLE = "manager_role"
    OWNER = "owner"
    MANAGER = "manager"
    COLLABORATOR = "collaborator"


DECISION_TABLE: dict[Action, tuple[Rule, ...]] = {
    Action.CREATE: (Rule.ADMIN, Rule.MANAGER_ROLE),
    Action.READ: (Rule.ADMIN, Rule.MANAGER_ROLE, Rule.OWNER, Rule.MANAGER, Rule.COLLABORATOR),
    Action.UPDATE: (Rule.ADMIN, Rule.MANAGER_ROLE, Rule.OWNER, Rule.MANAGER),
    Action.DELETE: (Rule.ADMIN, Rule.MANAGER_ROLE, Rule.OWNER),
    Action.MANAGE_ROLES: (Rule.ADMIN,),
}

# Reason codes reported on Deny
DENY_REASONS: dict[Action, str] = {
    Action.CREATE: "missing_role",
    Action.READ: "not_visible",
    Action.UPDATE: "not_owner_or_manager",
    Action.DELETE: "not_owner",
    Action.MANAGE_ROLES: "not_admin",
}

_AGGREGATE_RULES = frozenset({Rule.OWNER, Rule.MANAGER, Rule.COLLABORATOR})


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check.

    Attributes:
        allowed: True for Allow, False for Deny
        reason: Rule that granted the action, or a deny reason code
    """

    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


def _satisfies(
    rule: Rule,
    ctx: ActorContext,
    spec: AggregateSpec | None,
    root: dict[str, Any] | None,
    collaborator_ids: Iterable[str] | None,
) -> bool:
    if rule is Rule.ADMIN:
        return ctx.has_role(ADMIN_ROLE)
    if spec is None:
        return False
    if rule is Rule.MANAGER_ROLE:
        return ctx.has_role(spec.manager_role)
    if root is None:
        return False
    if rule is Rule.OWNER:
        return root.get("owner_id") == ctx.actor
    if rule is Rule.MANAGER:
        return spec.manager_field is not None and root.get(spec.manager_field) == ctx.actor
    if rule is Rule.COLLABORATOR:
        if collaborator_ids is not None and ctx.actor in set(collaborator_ids):
            return True
        return ctx.collaborates_on(spec.kind, root.get("id"))
    return False


def decide(
    ctx: ActorContext,
    action: Action,
    spec: AggregateSpec | None = None,
    root: dict[str, Any] | None = None,
    collaborator_ids: Iterable[str] | None = None,
) -> Decision:
    """Decide an action from resolved facts.

    Args:
        ctx: Actor's resolved roles and relationships
        action: Action being attempted
        spec: Aggregate kind (None only for manage_roles)
        root: Root row of the target aggregate (None for create/list)
        collaborator_ids: Known collaborator ids of the target, if loaded

    Returns:
        Decision with the granting rule or a deny reason
    """
    rules = DECISION_TABLE[action]
    for rule in rules:
        if _satisfies(rule, ctx, spec, root, collaborator_ids):
            return Decision(True, rule.value)
    if root is None and any(rule in _AGGREGATE_RULES for rule in rules) and action != Action.READ:
        return Decision(False, "aggregate_required")
    return Decision(False, DENY_REASONS[action])


def read_filters(ctx: ActorContext, spec: AggregateSpec) -> list[Filter] | None:
    """Row filters matching exactly the aggregates ``ctx`` may read.

    Returns:
        None if the actor may read every row, else filters to OR together
        (an empty list means nothing is visible)
    """
    filters: list[Filter] = []
    for rule in DECISION_TABLE[Action.READ]:
        if rule in (Rule.ADMIN, Rule.MANAGER_ROLE):
            if _satisfies(rule, ctx, spec, None, None):
                return None
        elif rule is Rule.OWNER:
            filters.append(eq("owner_id", ctx.actor))
        elif rule is Rule.MANAGER and spec.manager_field:
            filters.append(eq(spec.manager_field, ctx.actor))
        elif rule is Rule.COLLABORATOR:
            ids = ctx.collaborating.get(spec.kind, frozenset())
            if ids:
                filters.append(in_("id", sorted(ids)))
    return filters


class AuthorizationGate:
    """Resolves actors and applies the decision tables.

    Example:
        >>> gate = AuthorizationGate(RoleResolver(store))
        >>> decision = await gate.authorize("user-42", Action.UPDATE, "project", root_row)
        >>> decision.allowed
        True
    """

    def __init__(self, resolver: RoleResolver) -> None:
        self.resolver = resolver

    async def context(self, actor: str) -> ActorContext:
        """Resolve the actor.

        Raises:
            DependencyFailure: If role data cannot be fetched
        """
        return await self.resolver.resolve(actor)

    async def authorize(
        self,
        actor: str,
        action: Action,
        kind: AggregateKind | str | None = None,
        root: dict[str, Any] | None = None,
        collaborator_ids: Iterable[str] | None = None,
    ) -> Decision:
        """Allow or Deny an action.

        Raises:
            DependencyFailure: If role data cannot be fetched
        """
        ctx = await self.resolver.resolve(actor, include_relationships=action == Action.READ)
        spec = get_spec(kind) if kind is not None else None
        decision = decide(ctx, action, spec, root, collaborator_ids)
        if not decision.allowed:
            logger.warning(
                "Authorization denied",
                extra={
                    "actor": actor,
                    "action": action.value,
                    "kind": spec.kind.value if spec else None,
                    "aggregate_id": root.get("id") if root else None,
                    "reason": decision.reason,
                },
            )
        return decision

    async def require(
        self,
        actor: str,
        action: Action,
        kind: AggregateKind | str | None = None,
        root: dict[str, Any] | None = None,
        collaborator_ids: Iterable[str] | None = None,
    ) -> Decision:
        """Like authorize(), but raise on Deny.

        Raises:
            AuthorizationDenied: If the decision is Deny
            DependencyFailure: If role data cannot be fetched
        """
        decision = await self.authorize(actor, action, kind, root, collaborator_ids)
        if not decision.allowed:
            raise AuthorizationDenied(
                actor,
                action.value,
                decision.reason,
                aggregate_id=root.get("id") if root else None,
            )
        return decision
