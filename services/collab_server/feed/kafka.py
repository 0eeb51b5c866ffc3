"""
Kafka/Redpanda change-feed transport.

Works with Apache Kafka, Amazon MSK, Redpanda, or any Kafka
API-compatible broker.

Invariants:
    - Records are keyed by table name, so per-table order is preserved
    - Each (topic, group_id) subscription owns its consumer; commits go to
      the consumer of the group named in the call
    - Consumers use manual commit (at-least-once delivery)
    - Reconnection and backoff are left to aiokafka

How to change safely:
    - Test against a real broker before deploying
    - Keep the key scheme stable; changing it reshuffles per-table ordering
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import (
    FeedConnectionError,
    FeedError,
    FeedTimeoutError,
    StreamPos,
    StreamRecord,
)

logger = logging.getLogger(__name__)


class KafkaFeedStream:
    """Kafka implementation of the FeedStream protocol.

    Attributes:
        config: KafkaConfig with connection settings

    Example:
        >>> feed = KafkaFeedStream(KafkaConfig(brokers="localhost:9092"))
        >>> await feed.connect()
        >>> pos = await feed.append("collab-changes", "projects", payload)
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumers: dict[tuple[str, str], AIOKafkaConsumer] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _security_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            kwargs["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            kwargs["sasl_mechanism"] = self.config.sasl_mechanism
            kwargs["sasl_plain_username"] = self.config.sasl_username
            kwargs["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            kwargs["ssl_cafile"] = self.config.ssl_cafile
        return kwargs

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            FeedConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_kwargs(),
            )
            await self._producer.start()
            self._connected = True
            logger.info("Connected to Kafka", extra={"brokers": self.config.brokers})
        except Exception as e:
            self._connected = False
            raise FeedConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop all consumers and the producer."""
        for topic, group_id in list(self._consumers):
            await self.unsubscribe(topic, group_id)

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record and wait for acknowledgment.

        Raises:
            FeedConnectionError: If not connected
            FeedTimeoutError: If send times out
            FeedError: For other Kafka errors
        """
        if not self._producer:
            raise FeedConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise FeedTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise FeedConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise FeedError(f"Kafka send failed: {e}") from e

        return StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )

    async def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Subscribe to a topic and yield records.

        Each (topic, group_id) pair gets its own consumer, so several
        subscribers can share one transport. The iteration ends when the
        subscription is unsubscribed.

        Raises:
            FeedConnectionError: If subscription fails
            FeedError: If the group is already subscribed, or for consumer errors
        """
        key = (topic, group_id)
        if key in self._consumers:
            raise FeedError(f"Group {group_id!r} is already subscribed to {topic!r}")

        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.config.brokers,
            group_id=group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=False,
            **self._security_kwargs(),
        )
        self._consumers[key] = consumer

        try:
            await consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            if start_position and start_position.topic == topic:
                consumer.seek(
                    TopicPartition(topic, start_position.partition), start_position.offset
                )

            async for msg in consumer:
                yield StreamRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=StreamPos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise FeedConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise FeedError(f"Consumer error: {e}") from e
        finally:
            if self._consumers.get(key) is consumer:
                await self.unsubscribe(topic, group_id)

    async def unsubscribe(self, topic: str, group_id: str) -> None:
        """Stop the consumer of a subscription, ending its iteration."""
        consumer = self._consumers.pop((topic, group_id), None)
        if consumer is None:
            return
        try:
            await consumer.stop()
        except KafkaError as e:
            logger.warning(f"Error closing consumer: {e}", extra={"group_id": group_id})

    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Commit a consumed record offset on the group's consumer.

        Raises:
            FeedError: If the group has no active consumer or the commit fails
        """
        consumer = self._consumers.get((record.position.topic, group_id))
        if consumer is None:
            raise FeedError(f"No active consumer for group {group_id!r}")

        try:
            await consumer.commit(
                {
                    TopicPartition(
                        record.position.topic, record.position.partition
                    ): OffsetAndMetadata(record.position.offset + 1, "")
                }
            )
        except KafkaError as e:
            raise FeedError(f"Failed to commit: {e}") from e
