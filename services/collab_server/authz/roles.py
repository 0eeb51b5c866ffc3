"""
Role and relationship facts for an actor.

RoleResolver answers one question: what does this actor hold? Named
roles from user_roles/roles, plus the aggregates the actor collaborates
on. Ownership and management are read from the root row itself.
It makes no decisions; AuthorizationGate does.

Invariants:
    - Store failures surface as DependencyFailure, never as an empty
      role set (an unknown answer must not look like a Deny)
    - ActorContext is an immutable snapshot; refresh by resolving again

How to change safely:
    - New relationship kinds need a matching rule in authz/gate.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from ..errors import DependencyFailure
from ..models import SPECS, AggregateKind
from ..store import StoreError, TableStore, eq, in_

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActorContext:
    """Resolved roles and relationships of one actor.

    Attributes:
        actor: Actor (user) id
        roles: Named roles held
        collaborating: Aggregate ids per kind with a collaborator link
    """

    actor: str
    roles: frozenset[str] = frozenset()
    collaborating: dict[AggregateKind, frozenset[int]] = field(default_factory=dict)

    def has_role(self, role_name: str) -> bool:
        return role_name in self.roles

    def collaborates_on(self, kind: AggregateKind, aggregate_id: int) -> bool:
        return aggregate_id in self.collaborating.get(kind, frozenset())

    def with_collaboration(
        self,
        kind: AggregateKind,
        aggregate_id: int,
        present: bool = True,
    ) -> ActorContext:
        """Copy with one collaborator link added or removed."""
        ids = set(self.collaborating.get(kind, frozenset()))
        if present:
            ids.add(aggregate_id)
        else:
            ids.discard(aggregate_id)
        return replace(self, collaborating={**self.collaborating, kind: frozenset(ids)})


class RoleResolver:
    """Loads ActorContext snapshots and role reference data from the store.

    Example:
        >>> resolver = RoleResolver(store)
        >>> ctx = await resolver.resolve("user-42")
        >>> ctx.has_role("Admin")
        False
    """

    def __init__(self, store: TableStore) -> None:
        self.store = store

    async def resolve(self, actor: str, include_relationships: bool = True) -> ActorContext:
        """Resolve the actor's roles and, optionally, relationships.

        Raises:
            DependencyFailure: If role or relationship data cannot be fetched
        """
        try:
            grants = await self.store.select("user_roles", where=[eq("user_id", actor)])
            role_names: frozenset[str] = frozenset()
            if grants:
                rows = await self.store.select(
                    "roles", where=[in_("id", {g["role_id"] for g in grants})]
                )
                role_names = frozenset(row["role_name"] for row in rows)

            collaborating: dict[AggregateKind, frozenset[int]] = {}
            if include_relationships:
                for kind, spec in SPECS.items():
                    collaborating[kind] = frozenset(
                        row[spec.foreign_key]
                        for row in await self.store.select(
                            spec.collaborators_table, where=[eq("user_id", actor)]
                        )
                    )
        except StoreError as e:
            logger.error(f"Role lookup failed for {actor}: {e}", extra={"actor": actor})
            raise DependencyFailure(f"Role lookup failed: {e}", dependency="roles") from e

        return ActorContext(
            actor=actor,
            roles=role_names,
            collaborating=collaborating,
        )

    async def role_ids(self) -> dict[str, int]:
        """Map of role name to role id.

        Raises:
            DependencyFailure: If the roles table cannot be read
        """
        try:
            rows = await self.store.select("roles")
        except StoreError as e:
            raise DependencyFailure(f"Role lookup failed: {e}", dependency="roles") from e
        return {row["role_name"]: row["id"] for row in rows}

    async def role_names(self, role_ids: set[int] | None = None) -> dict[int, str]:
        """Map of role id to role name, optionally restricted to some ids.

        Raises:
            DependencyFailure: If the roles table cannot be read
        """
        where = [in_("id", role_ids)] if role_ids is not None else []
        try:
            rows = await self.store.select("roles", where=where)
        except StoreError as e:
            raise DependencyFailure(f"Role lookup failed: {e}", dependency="roles") from e
        return {row["id"]: row["role_name"] for row in rows}

