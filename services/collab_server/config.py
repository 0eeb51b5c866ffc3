"""
Configuration management for Collab Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .models import MEMBER_ROLE

logger = logging.getLogger(__name__)


class FeedBackend(Enum):
    """Supported change-feed transports."""

    MEMORY = "memory"
    KAFKA = "kafka"


class ImageBackend(Enum):
    """Supported image object stores."""

    MEMORY = "memory"
    S3 = "s3"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Row store configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/collab"
    db_name: str = "collab.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/collab"),
            db_name=os.getenv("DB_NAME", "collab.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Change-feed configuration.

    Attributes:
        backend: Which transport carries row change events
        topic: Topic the store publishes to and bridges consume
    """

    backend: FeedBackend = FeedBackend.MEMORY
    topic: str = "collab-changes"

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If FEED_BACKEND is not a known backend
        """
        backend_str = os.getenv("FEED_BACKEND", "memory").lower()
        try:
            backend = FeedBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid FEED_BACKEND '{backend_str}'. Must be one of: memory, kafka"
            ) from None
        return cls(backend=backend, topic=os.getenv("FEED_TOPIC", "collab-changes"))


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda change-feed configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        consumer_group: Default consumer group prefix
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        auto_offset_reset: Where new consumer groups start
    """

    brokers: str = "localhost:9092"
    consumer_group: str = "collab-bridge"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "collab-bridge"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class S3Config:
    """Image object store configuration.

    Attributes:
        backend: memory (local/tests) or s3
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        image_prefix: Key prefix for uploaded images
        public_base_url: Base of public image URLs (CDN), if not the bucket URL
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    backend: ImageBackend = ImageBackend.MEMORY
    bucket: str = "collab-images"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    image_prefix: str = "images/"
    public_base_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables.

        Raises:
            ValueError: If IMAGE_BACKEND is not a known backend
        """
        backend_str = os.getenv("IMAGE_BACKEND", "memory").lower()
        try:
            backend = ImageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid IMAGE_BACKEND '{backend_str}'. Must be one of: memory, s3"
            ) from None

        prefix = os.getenv("S3_IMAGE_PREFIX", "images/")
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return cls(
            backend=backend,
            bucket=os.getenv("S3_BUCKET", "collab-images"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            image_prefix=prefix,
            public_base_url=os.getenv("S3_PUBLIC_BASE_URL"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind host
        port: Bind port
        cors_origins: Allowed CORS origins ("*" for any)
        max_upload_bytes: Largest accepted request body
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)
    max_upload_bytes: int = 10 * 1024 * 1024  # 10MB

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("HTTP_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            max_upload_bytes=int(os.getenv("HTTP_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Aggregate engine configuration.

    Attributes:
        default_collaborator_role: Role given to collaborators added without one
        bridge_max_pending: Orphan relation events a bridge may buffer
    """

    default_collaborator_role: str = MEMBER_ROLE
    bridge_max_pending: int = 1000

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        return cls(
            default_collaborator_role=os.getenv("DEFAULT_COLLABORATOR_ROLE", MEMBER_ROLE),
            bridge_max_pending=int(os.getenv("BRIDGE_MAX_PENDING", "1000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Row store configuration
        feed: Change-feed configuration
        kafka: Kafka configuration (if feed.backend is KAFKA)
        s3: Image store configuration
        http: HTTP API configuration
        engine: Aggregate engine configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    s3: S3Config = field(default_factory=S3Config)
    http: HttpConfig = field(default_factory=HttpConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            feed=FeedConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            s3=S3Config.from_env(),
            http=HttpConfig.from_env(),
            engine=EngineConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.feed.backend == FeedBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when FEED_BACKEND=kafka")
        if not self.feed.topic:
            raise ValueError("FEED_TOPIC must not be empty")

        if self.s3.backend == ImageBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when IMAGE_BACKEND=s3")

        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")
        if self.engine.bridge_max_pending < 1:
            raise ValueError("BRIDGE_MAX_PENDING must be at least 1")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_name": self.storage.db_name,
                "feed_backend": self.feed.backend.value,
                "feed_topic": self.feed.topic,
                "kafka_brokers": self.kafka.brokers
                if self.feed.backend == FeedBackend.KAFKA
                else None,
                "image_backend": self.s3.backend.value,
                "s3_bucket": self.s3.bucket if self.s3.backend == ImageBackend.S3 else None,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "default_collaborator_role": self.engine.default_collaborator_role,
                "log_level": self.observability.log_level,
            },
        )
