"""
Base protocol and types for the change-feed transport.

This module defines the FeedStream protocol that all transports implement,
the stream position/record types, and ChangeEvent, the message carried by
the feed: one {table, operation, new_row, old_row} per written row.

Invariants:
    - StreamPos uniquely identifies a position in the feed
    - Records with the same key (table name) are ordered
    - No ordering is guaranteed across tables
    - Delivery is at-least-once; consumers must tolerate duplicates

How to change safely:
    - Protocol changes require updating all transports
    - ChangeEvent fields are part of the wire format; only add optional ones
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for change-feed operations."""

    pass


class FeedConnectionError(FeedError):
    """Connection to the feed transport failed."""

    pass


class FeedTimeoutError(FeedError):
    """Feed operation timed out."""

    pass


class FeedSerializationError(FeedError):
    """Failed to serialize/deserialize a feed record."""

    pass


class Operation(Enum):
    """Row operations reported by the change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class StreamPos:
    """Position in the feed.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within partition
        timestamp_ms: Timestamp when the record was written (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record from the feed plus its position.

    Attributes:
        key: Partition key (table name)
        value: JSON-encoded ChangeEvent
        position: Position in the feed
        headers: Optional headers/metadata
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            FeedSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FeedSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@dataclass(frozen=True)
class ChangeEvent:
    """One row change published by the store.

    Attributes:
        table: Table the row belongs to
        operation: insert, update or delete
        new_row: Row after the change (insert/update)
        old_row: Row before the change (update/delete)
    """

    table: str
    operation: Operation
    new_row: dict[str, Any] | None = None
    old_row: dict[str, Any] | None = None

    @property
    def row(self) -> dict[str, Any]:
        """The most recent known state of the row."""
        return self.new_row if self.new_row is not None else (self.old_row or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "operation": self.operation.value,
            "new_row": self.new_row,
            "old_row": self.old_row,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), default=str).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> ChangeEvent:
        """Create from dictionary.

        Raises:
            FeedSerializationError: If the payload is not an object, or
                required keys are missing or invalid
        """
        if not isinstance(data, dict):
            raise FeedSerializationError(
                f"Invalid change event: expected an object, got {type(data).__name__}"
            )
        for name in ("new_row", "old_row"):
            if data.get(name) is not None and not isinstance(data[name], dict):
                raise FeedSerializationError(f"Invalid change event: {name} must be an object")
        if not isinstance(data.get("table"), str):
            raise FeedSerializationError("Invalid change event: table must be a string")
        try:
            return cls(
                table=data["table"],
                operation=Operation(data["operation"]),
                new_row=data.get("new_row"),
                old_row=data.get("old_row"),
            )
        except (KeyError, ValueError) as e:
            raise FeedSerializationError(f"Invalid change event: {e}") from e

    @classmethod
    def from_record(cls, record: StreamRecord) -> ChangeEvent:
        return cls.from_dict(record.value_json())


@runtime_checkable
class FeedStream(Protocol):
    """Protocol for change-feed transports.

    Ordering contract:
        - Records with the same key are delivered in append order
        - Nothing is promised across keys

    Example:
        >>> feed = InMemoryFeedStream()
        >>> await feed.connect()
        >>> pos = await feed.append("collab-changes", "projects", event.to_bytes())
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the transport.

        Raises:
            FeedConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the transport and release resources."""
        ...

    @abstractmethod
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
            FeedError: For other write failures
        """
        ...

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Subscribe to records on a topic.

        Yields:
            StreamRecord objects in order within partitions
        """
        ...

    @abstractmethod
    async def unsubscribe(self, topic: str, group_id: str) -> None:
        """End a subscription and release its consumer."""
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Acknowledge a consumed record for the subscription of group_id."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the transport."""
        ...


class ChangePublisher:
    """Publishes ChangeEvents for a store onto a feed topic.

    Publishing is fire-after-commit: the row write has already succeeded,
    so a publish failure is logged and never turned into a write failure.
    """

    def __init__(self, feed: FeedStream, topic: str) -> None:
        self.feed = feed
        self.topic = topic

    async def publish(self, event: ChangeEvent) -> StreamPos | None:
        try:
            return await self.feed.append(self.topic, event.table, event.to_bytes())
        except FeedError as e:
            logger.warning(
                f"Failed to publish change event: {e}",
                extra={"table": event.table, "operation": event.operation.value},
            )
            return None


def create_feed_stream(config: ServerConfig) -> FeedStream:
    """Factory function to create a feed transport from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import FeedBackend
    from .kafka import KafkaFeedStream
    from .memory import InMemoryFeedStream

    if config.feed.backend == FeedBackend.KAFKA:
        return KafkaFeedStream(config.kafka)
    elif config.feed.backend == FeedBackend.MEMORY:
        return InMemoryFeedStream()
    else:
        raise ValueError(f"Unsupported feed backend: {config.feed.backend}")
