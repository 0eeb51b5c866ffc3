"""
Change-feed bridge: keeps an AggregateCache current for one actor.

The bridge consumes {table, operation, new_row, old_row} events from the
feed in a single dispatcher task, applies each to an explicit
AggregateCache, and publishes SnapshotUpdates to listener queues.

Only the touched aggregate is re-joined per event. Tables arrive with
no ordering between them, so a relation event (image or collaborator
link) may name a root that has not been observed yet; such events are
buffered per root and replayed when the root arrives.

Invariants:
    - One dispatcher task per bridge; the cache is only mutated there
      (or in prime(), before the task starts)
    - Applying the same event twice leaves the cache unchanged
    - Roots are admitted only if the gate's read rule allows the actor;
      link events naming the actor and user_roles events for the actor
      update that visibility
    - Orphan buffering is bounded; the oldest buffered events are dropped

How to change safely:
    - Test with relation events before roots, duplicates and deletes of
      rows never seen
    - Listeners get snapshots, never cache internals
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from ..aggregates.reader import AggregateReader, RelationRows, join
from ..authz import AuthorizationGate, decide
from ..authz.roles import ActorContext
from ..errors import CollabError
from ..models import SPECS, Action, Aggregate, AggregateKind, AggregateSpec, spec_for_table
from .base import (
    ChangeEvent,
    FeedError,
    FeedSerializationError,
    FeedStream,
    Operation,
    StreamRecord,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotUpdate:
    """A changed aggregate, as published to listeners.

    Attributes:
        kind: Aggregate kind
        aggregate_id: Root id
        aggregate: New snapshot, or None if removed or no longer visible
        operation: Operation of the event that caused the change
    """

    kind: AggregateKind
    aggregate_id: int
    aggregate: Aggregate | None
    operation: Operation

    @property
    def removed(self) -> bool:
        return self.aggregate is None


class AggregateCache:
    """Client-side repository of aggregates, stored as raw rows.

    Keeping rows (rather than joined aggregates) lets each event update
    one row and re-run join() for just the affected aggregate.
    """

    def __init__(self) -> None:
        self._roots: dict[AggregateKind, dict[int, dict[str, Any]]] = {k: {} for k in SPECS}
        self._images: dict[AggregateKind, dict[int, dict[int, dict[str, Any]]]] = {
            k: {} for k in SPECS
        }
        self._links: dict[AggregateKind, dict[int, dict[int, dict[str, Any]]]] = {
            k: {} for k in SPECS
        }
        self.profiles: dict[str, dict[str, Any]] = {}
        self.role_names: dict[int, str] = {}

    def has_root(self, kind: AggregateKind, aggregate_id: int) -> bool:
        return aggregate_id in self._roots[kind]

    def ids(self, kind: AggregateKind) -> set[int]:
        return set(self._roots[kind])

    def get(self, kind: AggregateKind, aggregate_id: int) -> Aggregate | None:
        root = self._roots[kind].get(aggregate_id)
        if root is None:
            return None
        images = self._images[kind].get(aggregate_id, {})
        links = self._links[kind].get(aggregate_id, {})
        [aggregate] = join(
            SPECS[kind],
            [root],
            [images[k] for k in sorted(images)],
            [links[k] for k in sorted(links)],
            self.profiles,
            self.role_names,
        )
        return aggregate

    def load(
        self,
        spec: AggregateSpec,
        roots: list[dict[str, Any]],
        relations: RelationRows,
    ) -> None:
        """Add roots and their relation rows."""
        for root in roots:
            self.put_root(spec.kind, root)
        for row in relations.images:
            self.put_relation(spec, spec.images_table, row)
        for row in relations.links:
            self.put_relation(spec, spec.collaborators_table, row)
        self.profiles.update(relations.profiles)
        self.role_names.update(relations.role_names)

    def put_root(self, kind: AggregateKind, row: dict[str, Any]) -> None:
        self._roots[kind][row["id"]] = dict(row)

    def remove_root(self, kind: AggregateKind, aggregate_id: int) -> bool:
        self._images[kind].pop(aggregate_id, None)
        self._links[kind].pop(aggregate_id, None)
        return self._roots[kind].pop(aggregate_id, None) is not None

    def _relation(self, spec: AggregateSpec, table: str) -> dict[int, dict[int, dict[str, Any]]]:
        return self._images[spec.kind] if table == spec.images_table else self._links[spec.kind]

    def put_relation(self, spec: AggregateSpec, table: str, row: dict[str, Any]) -> None:
        rows = self._relation(spec, table).setdefault(row[spec.foreign_key], {})
        rows[row["id"]] = dict(row)

    def remove_relation(self, spec: AggregateSpec, table: str, row: dict[str, Any]) -> bool:
        rows = self._relation(spec, table).get(row[spec.foreign_key], {})
        return rows.pop(row["id"], None) is not None

    def ids_with_collaborator(self, user_id: str) -> list[tuple[AggregateKind, int]]:
        found = []
        for kind, by_root in self._links.items():
            for aggregate_id, rows in by_root.items():
                if any(row["user_id"] == user_id for row in rows.values()):
                    found.append((kind, aggregate_id))
        return found

    def clear(self) -> None:
        for kind in SPECS:
            self._roots[kind].clear()
            self._images[kind].clear()
            self._links[kind].clear()


class ChangeFeedBridge:
    """Applies feed events to an AggregateCache for one actor.

    Attributes:
        cache: The repository kept current by this bridge

    Example:
        >>> async with ChangeFeedBridge(feed, "collab-changes", reader, gate, "user-42") as bridge:
        ...     updates = bridge.listen()
        ...     update = await updates.get()
        ...     print(update.aggregate_id, update.removed)
    """

    def __init__(
        self,
        feed: FeedStream,
        topic: str,
        reader: AggregateReader,
        gate: AuthorizationGate,
        actor: str,
        cache: AggregateCache | None = None,
        group_id: str | None = None,
        max_pending: int = 1000,
    ) -> None:
        self.feed = feed
        self.topic = topic
        self.reader = reader
        self.gate = gate
        self.actor = actor
        self.cache = cache or AggregateCache()
        self.group_id = group_id or f"collab-bridge-{actor}"
        self.max_pending = max_pending
        self._ctx: ActorContext | None = None
        self._pending: OrderedDict[tuple[AggregateKind, int], list[ChangeEvent]] = OrderedDict()
        self._pending_count = 0
        self._listeners: list[asyncio.Queue[SnapshotUpdate]] = []
        self._task: asyncio.Task[None] | None = None
        self._running = False

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        return self._pending_count

    async def start(self) -> None:
        """Prime the cache and start the dispatcher task."""
        if self._running:
            return
        await self.prime()
        self._running = True
        self._task = asyncio.create_task(self._dispatch())
        logger.info(
            "Change-feed bridge started",
            extra={"actor": self.actor, "topic": self.topic, "group_id": self.group_id},
        )

    async def stop(self) -> None:
        """Stop the dispatcher task."""
        self._running = False
        try:
            await self.feed.unsubscribe(self.topic, self.group_id)
        except FeedError as e:
            logger.warning(f"Failed to unsubscribe from change feed: {e}")
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Change-feed bridge stopped", extra={"actor": self.actor})

    async def __aenter__(self) -> ChangeFeedBridge:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    def listen(self, maxsize: int = 0) -> asyncio.Queue[SnapshotUpdate]:
        """Register a listener queue for snapshot updates."""
        queue: asyncio.Queue[SnapshotUpdate] = asyncio.Queue(maxsize=maxsize)
        self._listeners.append(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue[SnapshotUpdate]) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    async def prime(self) -> None:
        """Load every aggregate visible to the actor through the reader."""
        self._ctx = await self.gate.context(self.actor)
        self.cache.clear()
        self.cache.role_names.update(await self.gate.resolver.role_names())
        for spec in SPECS.values():
            roots = await self.reader.visible_roots(self.actor, spec.kind)
            self.cache.load(spec, roots, await self.reader.load_relations(spec, roots))

    # Dispatch

    async def _dispatch(self) -> None:
        try:
            async for record in self.feed.subscribe(self.topic, self.group_id):
                await self._apply_record(record)

                # Malformed records are committed too, so they are not replayed
                try:
                    await self.feed.commit(record, self.group_id)
                except FeedError as e:
                    logger.warning(f"Failed to commit feed position: {e}")
        except asyncio.CancelledError:
            raise
        except FeedError as e:
            logger.error(f"Change-feed subscription ended: {e}", extra={"actor": self.actor})
        except Exception as e:
            logger.error(f"Change-feed bridge error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def _apply_record(self, record: StreamRecord) -> None:
        try:
            event = ChangeEvent.from_record(record)
        except FeedSerializationError as e:
            logger.warning(
                f"Skipping malformed change event: {e}",
                extra={"position": str(record.position)},
            )
            return

        try:
            await self.handle(event)
        except CollabError as e:
            logger.error(
                f"Failed to apply change event: {e}",
                extra={"table": event.table, "operation": event.operation.value},
            )
        except Exception as e:
            logger.error(
                f"Error applying change event: {e}",
                exc_info=True,
                extra={"table": event.table, "operation": event.operation.value},
            )

    def _publish(self, updates: list[SnapshotUpdate]) -> None:
        for update in updates:
            for queue in list(self._listeners):
                try:
                    queue.put_nowait(update)
                except asyncio.QueueFull:
                    logger.warning(
                        "Listener queue full, dropping snapshot update",
                        extra={"kind": update.kind.value, "aggregate_id": update.aggregate_id},
                    )

    async def handle(self, event: ChangeEvent) -> list[SnapshotUpdate]:
        """Apply one event to the cache and publish the resulting updates.

        Raises:
            DependencyFailure: If a role or profile lookup fails
        """
        missing = self._missing_columns(event)
        if missing is None:
            return []
        if missing:
            logger.warning(
                "Skipping change event without key columns",
                extra={
                    "table": event.table,
                    "operation": event.operation.value,
                    "missing": missing,
                },
            )
            return []

        if self._ctx is None:
            self._ctx = await self.gate.context(self.actor)

        if event.table == "user_roles":
            updates = await self._on_user_role(event)
        elif event.table == "roles":
            updates = self._on_role(event)
        elif event.table == "profiles":
            updates = self._on_profile(event)
        else:
            spec = spec_for_table(event.table)
            if spec is None:
                return []
            if event.table == spec.table:
                updates = await self._on_root(spec, event)
            else:
                updates = await self._on_relation(spec, event)

        self._publish(updates)
        return updates

    def _missing_columns(self, event: ChangeEvent) -> list[str] | None:
        """Key columns the event lacks; None if the table is not tracked."""
        if event.table == "user_roles":
            required: tuple[str, ...] = ("user_id",)
        elif event.table == "roles":
            required = ("id",) if event.operation is Operation.DELETE else ("id", "role_name")
        elif event.table == "profiles":
            required = ("user_id",)
        else:
            spec = spec_for_table(event.table)
            if spec is None:
                return None
            if event.table == spec.table:
                required = ("id",)
            elif event.table == spec.collaborators_table:
                required = ("id", spec.foreign_key, "user_id")
            else:
                required = ("id", spec.foreign_key)

        row = event.row if event.operation is Operation.DELETE else event.new_row
        return [column for column in required if not row or row.get(column) is None]

    # Handlers

    def _snapshot(self, spec: AggregateSpec, aggregate_id: int, op: Operation) -> SnapshotUpdate:
        return SnapshotUpdate(spec.kind, aggregate_id, self.cache.get(spec.kind, aggregate_id), op)

    async def _on_root(self, spec: AggregateSpec, event: ChangeEvent) -> list[SnapshotUpdate]:
        aggregate_id = event.row["id"]

        if event.operation is Operation.DELETE:
            self._drop_pending(spec.kind, aggregate_id)
            if self.cache.remove_root(spec.kind, aggregate_id):
                return [SnapshotUpdate(spec.kind, aggregate_id, None, event.operation)]
            return []

        row = event.new_row or {}
        if not decide(self._ctx, Action.READ, spec, row).allowed:
            self._drop_pending(spec.kind, aggregate_id)
            if self.cache.remove_root(spec.kind, aggregate_id):
                return [SnapshotUpdate(spec.kind, aggregate_id, None, event.operation)]
            return []

        was_known = self.cache.has_root(spec.kind, aggregate_id)
        self.cache.put_root(spec.kind, row)
        if not was_known and event.operation is Operation.UPDATE:
            # Became visible after creation; its relations may already exist
            self.cache.load(spec, [row], await self.reader.load_relations(spec, [row]))
        for buffered in self._pending.pop((spec.kind, aggregate_id), []):
            self._pending_count -= 1
            if buffered.table == spec.collaborators_table and buffered.new_row:
                await self._ensure_profile(buffered.new_row["user_id"])
            self._apply_relation(spec, buffered)
        return [self._snapshot(spec, aggregate_id, event.operation)]

    async def _on_relation(self, spec: AggregateSpec, event: ChangeEvent) -> list[SnapshotUpdate]:
        row = event.row
        aggregate_id = row[spec.foreign_key]
        is_link = event.table == spec.collaborators_table

        if is_link and row.get("user_id") == self.actor:
            present = event.operation is not Operation.DELETE
            self._ctx = self._ctx.with_collaboration(spec.kind, aggregate_id, present)
            if present and not self.cache.has_root(spec.kind, aggregate_id):
                return await self._admit(spec, aggregate_id, event.operation)
            if not present and self.cache.has_root(spec.kind, aggregate_id):
                root = self.cache.get(spec.kind, aggregate_id).fields
                if not decide(self._ctx, Action.READ, spec, root).allowed:
                    self.cache.remove_root(spec.kind, aggregate_id)
                    return [SnapshotUpdate(spec.kind, aggregate_id, None, event.operation)]

        if not self.cache.has_root(spec.kind, aggregate_id):
            self._buffer(spec.kind, aggregate_id, event)
            return []

        if is_link and event.operation is not Operation.DELETE:
            await self._ensure_profile(row["user_id"])
            if row.get("role_id") is not None and row["role_id"] not in self.cache.role_names:
                self.cache.role_names.update(await self.gate.resolver.role_names({row["role_id"]}))

        if not self._apply_relation(spec, event):
            return []
        return [self._snapshot(spec, aggregate_id, event.operation)]

    def _apply_relation(self, spec: AggregateSpec, event: ChangeEvent) -> bool:
        """Apply a relation event; False if it changed nothing."""
        if event.operation is Operation.DELETE:
            return self.cache.remove_relation(spec, event.table, event.row)
        before = self.cache.get(spec.kind, event.row[spec.foreign_key])
        self.cache.put_relation(spec, event.table, event.new_row or {})
        return before != self.cache.get(spec.kind, event.row[spec.foreign_key])

    async def _admit(
        self,
        spec: AggregateSpec,
        aggregate_id: int,
        op: Operation,
    ) -> list[SnapshotUpdate]:
        """Load a root that just became visible, with its relations."""
        roots = await self.reader.visible_roots(self.actor, spec.kind)
        roots = [root for root in roots if root["id"] == aggregate_id]
        if not roots:
            # Root not written yet; its insert event will admit it
            return []
        self.cache.load(spec, roots, await self.reader.load_relations(spec, roots))
        self._drop_pending(spec.kind, aggregate_id)
        return [self._snapshot(spec, aggregate_id, op)]

    async def _ensure_profile(self, user_id: str) -> None:
        if user_id not in self.cache.profiles:
            self.cache.profiles.update(await self.reader.load_profiles([user_id]))

    def _on_profile(self, event: ChangeEvent) -> list[SnapshotUpdate]:
        user_id = event.row.get("user_id")
        if event.operation is Operation.DELETE:
            self.cache.profiles.pop(user_id, None)
        else:
            self.cache.profiles[user_id] = dict(event.new_row or {})
        return [
            self._snapshot(SPECS[kind], aggregate_id, event.operation)
            for kind, aggregate_id in self.cache.ids_with_collaborator(user_id)
        ]

    def _on_role(self, event: ChangeEvent) -> list[SnapshotUpdate]:
        row = event.row
        if event.operation is Operation.DELETE:
            self.cache.role_names.pop(row.get("id"), None)
        else:
            self.cache.role_names[row["id"]] = row["role_name"]
        return []

    async def _on_user_role(self, event: ChangeEvent) -> list[SnapshotUpdate]:
        if event.row.get("user_id") != self.actor:
            return []

        before = {kind: self.cache.ids(kind) for kind in SPECS}
        await self.prime()
        updates = []
        for kind, spec in SPECS.items():
            after = self.cache.ids(kind)
            for aggregate_id in sorted(before[kind] - after):
                updates.append(SnapshotUpdate(kind, aggregate_id, None, event.operation))
            for aggregate_id in sorted(after - before[kind]):
                updates.append(self._snapshot(spec, aggregate_id, event.operation))
        logger.info(
            "Actor roles changed, visibility refreshed",
            extra={"actor": self.actor, "roles": sorted(self._ctx.roles)},
        )
        return updates

    # Orphan buffer

    def _buffer(self, kind: AggregateKind, aggregate_id: int, event: ChangeEvent) -> None:
        self._pending.setdefault((kind, aggregate_id), []).append(event)
        self._pending_count += 1
        while self._pending_count > self.max_pending and self._pending:
            key, events = next(iter(self._pending.items()))
            events.pop(0)
            self._pending_count -= 1
            if not events:
                del self._pending[key]
            logger.warning(
                "Orphan buffer full, dropping oldest relation event",
                extra={"kind": key[0].value, "aggregate_id": key[1]},
            )

    def _drop_pending(self, kind: AggregateKind, aggregate_id: int) -> None:
        events = self._pending.pop((kind, aggregate_id), [])
        self._pending_count -= len(events)
