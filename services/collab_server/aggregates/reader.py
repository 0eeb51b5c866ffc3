"""
Aggregate read-model assembly.

The store has no joins, so a read is one root query plus filtered
queries for images, collaborator links, profiles and role names, joined
here in memory:

    roots ──┬── images (grouped by fk, normalized)
            └── links ── profiles (by user_id)
                    └── roles (by role_id)

Invariants:
    - list() filters rows with the gate's read rule in the query itself,
      so invisible rows are never fetched
    - Images are normalized on read, tolerating rows written by any path
    - A link whose profile is missing is kept, with empty name and email
    - Store failures surface as DependencyFailure

How to change safely:
    - join() is pure; keep I/O in assemble()
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..authz import AuthorizationGate, decide, read_filters
from ..consistency import normalize
from ..errors import AuthorizationDenied, DependencyFailure, NotFoundError
from ..models import Action, Aggregate, AggregateKind, AggregateSpec, Collaborator, Image, get_spec
from ..store import Filter, OrderBy, StoreError, TableStore, eq, in_

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListFilter:
    """Caller filters for list().

    Attributes:
        status: Only aggregates with this status
        owner_id: Only aggregates owned by this user
        ids: Only these aggregate ids
        order_by: Root column to sort by
        descending: Sort direction
        limit: Maximum number of aggregates
    """

    status: str | None = None
    owner_id: str | None = None
    ids: Sequence[int] | None = None
    order_by: str = "created_at"
    descending: bool = True
    limit: int | None = None

    def to_filters(self) -> list[Filter]:
        where: list[Filter] = []
        if self.status is not None:
            where.append(eq("status", self.status))
        if self.owner_id is not None:
            where.append(eq("owner_id", self.owner_id))
        if self.ids is not None:
            where.append(in_("id", self.ids))
        return where


@dataclass
class RelationRows:
    """Relation rows fetched for a set of roots."""

    images: list[dict[str, Any]] = field(default_factory=list)
    links: list[dict[str, Any]] = field(default_factory=list)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)
    role_names: dict[int, str] = field(default_factory=dict)


def join(
    spec: AggregateSpec,
    roots: Iterable[dict[str, Any]],
    images: Iterable[dict[str, Any]],
    links: Iterable[dict[str, Any]],
    profiles: dict[str, dict[str, Any]],
    role_names: dict[int, str],
) -> list[Aggregate]:
    """Assemble aggregates from already-fetched rows.

    Relation rows whose root is not in ``roots`` are ignored. Root order
    is preserved; images and links keep their row order.
    """
    images_by_root: dict[int, list[Image]] = defaultdict(list)
    for row in images:
        images_by_root[row[spec.foreign_key]].append(
            Image(url=row["image_url"], is_primary=bool(row.get("is_primary")))
        )

    links_by_root: dict[int, list[Collaborator]] = defaultdict(list)
    for row in links:
        profile = profiles.get(row["user_id"]) or {}
        links_by_root[row[spec.foreign_key]].append(
            Collaborator(
                user_id=row["user_id"],
                role_id=row.get("role_id"),
                role_name=role_names.get(row.get("role_id")),
                full_name=profile.get("full_name") or "",
                email=profile.get("email") or "",
            )
        )

    return [
        Aggregate(
            kind=spec.kind,
            id=root["id"],
            fields=dict(root),
            images=normalize(images_by_root.get(root["id"], [])),
            collaborators=links_by_root.get(root["id"], []),
        )
        for root in roots
    ]


class AggregateReader:
    """Reads Projects and Events as joined aggregates.

    Example:
        >>> reader = AggregateReader(store, gate)
        >>> projects = await reader.list("user-42", "project")
        >>> project = await reader.get("user-42", "project", projects[0].id)
    """

    def __init__(self, store: TableStore, gate: AuthorizationGate) -> None:
        self.store = store
        self.gate = gate

    async def _select(self, table: str, **kwargs: Any) -> list[dict[str, Any]]:
        try:
            return await self.store.select(table, **kwargs)
        except StoreError as e:
            logger.error(f"Read from {table} failed: {e}", extra={"table": table})
            raise DependencyFailure(f"Read from {table} failed: {e}", dependency=table) from e

    async def list(
        self,
        actor: str,
        kind: AggregateKind | str,
        filter: ListFilter | None = None,
    ) -> list[Aggregate]:
        """List the aggregates the actor may read.

        Raises:
            DependencyFailure: If role or row data cannot be fetched
        """
        spec = get_spec(kind)
        roots = await self.visible_roots(actor, spec.kind, filter)
        return await self.assemble(spec, roots)

    async def get(self, actor: str, kind: AggregateKind | str, aggregate_id: int) -> Aggregate:
        """Get one aggregate.

        Raises:
            NotFoundError: If the root row does not exist
            AuthorizationDenied: If the actor may not read it
            DependencyFailure: If role or row data cannot be fetched
        """
        spec = get_spec(kind)
        root = await self.fetch_root(spec, aggregate_id)
        ctx = await self.gate.context(actor)
        decision = decide(ctx, Action.READ, spec, root)
        if not decision.allowed:
            raise AuthorizationDenied(actor, Action.READ.value, decision.reason, aggregate_id)
        [aggregate] = await self.assemble(spec, [root])
        return aggregate

    async def fetch_root(self, spec: AggregateSpec, aggregate_id: int) -> dict[str, Any]:
        """Load a root row without authorization.

        Raises:
            NotFoundError: If absent
        """
        rows = await self._select(spec.table, where=[eq("id", aggregate_id)])
        if not rows:
            raise NotFoundError(
                f"{spec.kind.value} {aggregate_id} not found",
                resource_type=spec.kind.value,
                resource_id=aggregate_id,
            )
        return rows[0]

    async def fetch(self, spec: AggregateSpec, aggregate_id: int) -> Aggregate:
        """Load one aggregate without authorization (for already-authorized writes)."""
        [aggregate] = await self.assemble(spec, [await self.fetch_root(spec, aggregate_id)])
        return aggregate

    async def assemble(
        self,
        spec: AggregateSpec,
        roots: Sequence[dict[str, Any]],
    ) -> list[Aggregate]:
        """Fetch relations for ``roots`` and join them."""
        if not roots:
            return []
        relations = await self.load_relations(spec, roots)
        return join(
            spec,
            roots,
            relations.images,
            relations.links,
            relations.profiles,
            relations.role_names,
        )

    async def visible_roots(
        self,
        actor: str,
        kind: AggregateKind | str,
        filter: ListFilter | None = None,
    ) -> list[dict[str, Any]]:
        """Root rows the actor may read, filtered in the query."""
        spec = get_spec(kind)
        filter = filter or ListFilter()
        ctx = await self.gate.context(actor)

        visible = read_filters(ctx, spec)
        if visible == []:
            return []

        return await self._select(
            spec.table,
            where=filter.to_filters(),
            any_of=visible or (),
            order_by=OrderBy(filter.order_by, filter.descending),
            limit=filter.limit,
        )

    async def load_relations(
        self,
        spec: AggregateSpec,
        roots: Sequence[dict[str, Any]],
    ) -> RelationRows:
        """Images, links, profiles and role names for ``roots``."""
        ids = [root["id"] for root in roots]
        if not ids:
            return RelationRows()

        images = await self._select(spec.images_table, where=[in_(spec.foreign_key, ids)])
        links = await self._select(spec.collaborators_table, where=[in_(spec.foreign_key, ids)])
        profiles = await self.load_profiles({link["user_id"] for link in links})
        role_names = await self.gate.resolver.role_names(
            {link["role_id"] for link in links if link.get("role_id") is not None}
        )
        return RelationRows(images, links, profiles, role_names)

    async def load_profiles(self, user_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Profiles keyed by user id; unknown ids are simply absent.

        Raises:
            DependencyFailure: If the profile lookup fails
        """
        user_ids = sorted(set(user_ids))
        if not user_ids:
            return {}
        rows = await self._select("profiles", where=[in_("user_id", user_ids)])
        return {row["user_id"]: row for row in rows}
