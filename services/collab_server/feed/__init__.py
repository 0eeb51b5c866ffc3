"""
Change-feed module for the collab engine.

This module provides:
- The FeedStream transport protocol (Kafka, in-memory)
- ChangeEvent, the {table, operation, new_row, old_row} message
- ChangeFeedBridge, which keeps an AggregateCache current from the feed

Invariants:
    - Delivery is at-least-once with no cross-table ordering
    - The bridge is the only consumer that mutates an AggregateCache

How to change safely:
    - New transports must implement the FeedStream protocol
    - Test bridge changes with out-of-order and duplicated events
"""

from .base import (
    ChangeEvent,
    ChangePublisher,
    FeedConnectionError,
    FeedError,
    FeedStream,
    Operation,
    StreamPos,
    StreamRecord,
    create_feed_stream,
)
from .memory import InMemoryFeedStream

__all__ = [
    "ChangeEvent",
    "ChangePublisher",
    "FeedConnectionError",
    "FeedError",
    "FeedStream",
    "InMemoryFeedStream",
    "Operation",
    "StreamPos",
    "StreamRecord",
    "create_feed_stream",
]
