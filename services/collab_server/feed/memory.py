"""
In-memory change-feed transport.

This module provides a process-local feed for:
- Unit and integration tests
- Local development without a broker

Invariants:
    - All data is lost on process exit
    - Same per-key ordering guarantees as the Kafka transport
    - Records are yielded outside the internal lock, so a consumer may
      append while iterating

How to change safely:
    - Keep the interface compatible with the FeedStream protocol
    - Testing helpers must not be used by production code paths
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import FeedConnectionError, StreamPos, StreamRecord

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)
    next_offset: int = 0


class InMemoryFeedStream:
    """In-memory implementation of FeedStream.

    Attributes:
        num_partitions: Number of partitions to simulate

    Thread safety:
        Uses an asyncio lock; safe to use from multiple coroutines.

    Example:
        >>> feed = InMemoryFeedStream()
        >>> await feed.connect()
        >>> await feed.append("changes", "projects", b"{}")
        >>> async for record in feed.subscribe("changes", "bridge"):
        ...     print(record.value)
    """

    def __init__(self, num_partitions: int = 4, poll_interval: float = 0.05) -> None:
        self.num_partitions = num_partitions
        self.poll_interval = poll_interval
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        self._committed: dict[str, dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_record_events: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._subscribers: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryFeedStream connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._topics.clear()
        self._committed.clear()
        self._subscribers.clear()
        logger.debug("InMemoryFeedStream closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record.

        Raises:
            FeedConnectionError: If not connected
        """
        if not self._connected:
            raise FeedConnectionError("Not connected")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=part.next_offset,
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                StreamRecord(key=key, value=value, position=pos, headers=headers or {})
            )
            part.next_offset += 1
            self._new_record_events[topic].set()

        logger.debug(
            "Change appended to in-memory feed",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Subscribe to a topic.

        Starts from the group's committed offsets (or the beginning) and
        waits for new records until unsubscribed or cancelled.

        Raises:
            FeedConnectionError: If not connected
        """
        if not self._connected:
            raise FeedConnectionError("Not connected")

        consumer_key = f"{topic}:{group_id}"
        self._subscribers.add(consumer_key)

        positions = {}
        for partition in range(self.num_partitions):
            if start_position and start_position.partition == partition:
                positions[partition] = start_position.offset + 1
            else:
                positions[partition] = self._committed[group_id][partition]

        try:
            while consumer_key in self._subscribers:
                batch: list[StreamRecord] = []
                async with self._lock:
                    partitions = self._topics.get(topic, {})
                    for partition, part in partitions.items():
                        current = positions[partition]
                        if current < len(part.records):
                            batch.extend(part.records[current:])
                            positions[partition] = len(part.records)
                    if not batch:
                        self._new_record_events[topic].clear()

                for record in batch:
                    yield record

                if not batch:
                    try:
                        await asyncio.wait_for(
                            self._new_record_events[topic].wait(),
                            timeout=self.poll_interval,
                        )
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._subscribers.discard(consumer_key)

    async def unsubscribe(self, topic: str, group_id: str) -> None:
        """End a subscription after its current batch."""
        self._subscribers.discard(f"{topic}:{group_id}")

    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Commit a consumed record offset for a consumer group."""
        self._committed[group_id][record.position.partition] = record.position.offset + 1

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def get_all_records(self, topic: str) -> list[StreamRecord]:
        """Get all records for a topic across partitions."""
        records: list[StreamRecord] = []
        if topic in self._topics:
            for partition in sorted(self._topics[topic]):
                records.extend(self._topics[topic][partition].records)
        return records

    def get_committed(self, group_id: str) -> dict[int, int]:
        """Committed next offset per partition for a group."""
        committed = self._committed.get(group_id, {})
        return {p: committed.get(p, 0) for p in range(self.num_partitions)}

    def get_record_count(self, topic: str) -> int:
        """Get total record count for a topic."""
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())

    async def wait_for_records(self, topic: str, count: int, timeout: float = 5.0) -> bool:
        """Wait until a topic holds at least count records."""
        start = time.time()
        while time.time() - start < timeout:
            if self.get_record_count(topic) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
