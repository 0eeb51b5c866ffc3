"""
Membership counter reconciliation.

The root row carries a denormalized counter (team_members_count for
projects, attendees_count for events) that must equal the number of
collaborator links once a collaborator-touching write completes.

Invariants:
    - Reconciliation is always the last step of a collaborator write
    - The written value is a count of distinct user ids, never a
      +1/-1 adjustment of an earlier snapshot

How to change safely:
    - The read-model derives member_count from links on read, so a stale
      stored counter is visible only to consumers reading the raw column
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..models import AggregateSpec
from ..store import TableStore, eq

logger = logging.getLogger(__name__)


class CounterReconciler:
    """Persists the membership counter for an aggregate.

    Example:
        >>> reconciler = CounterReconciler(store)
        >>> await reconciler.reconcile(PROJECT_SPEC, 7, ["u1", "u2"])
        2
    """

    def __init__(self, store: TableStore) -> None:
        self.store = store

    async def reconcile(
        self,
        spec: AggregateSpec,
        aggregate_id: int,
        collaborator_ids: Iterable[str],
    ) -> int:
        """Write the counter as the number of distinct collaborator ids.

        Raises:
            StoreError: If the counter write fails
        """
        value = len(set(collaborator_ids))
        await self.store.update(
            spec.table,
            {spec.counter_field: value},
            [eq("id", aggregate_id)],
        )
        logger.debug(
            "Reconciled membership counter",
            extra={"table": spec.table, "aggregate_id": aggregate_id, "count": value},
        )
        return value

    async def recount(self, spec: AggregateSpec, aggregate_id: int) -> int:
        """Count the stored links, then persist that count.

        Raises:
            StoreError: If the count or the write fails
        """
        links = await self.store.select(
            spec.collaborators_table, where=[eq(spec.foreign_key, aggregate_id)]
        )
        return await self.reconcile(spec, aggregate_id, (link["user_id"] for link in links))
