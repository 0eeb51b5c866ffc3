"""
Collab Server - Main entry point.

This module starts Collab Server with all components:
- Change feed (row events published after every store write)
- Row store (SQLite tables for projects, events and their relations)
- Image object store (S3 or in-memory)
- Aggregate engine (authorization gate, reader, writer, role admin)
- HTTP API

Usage:
    python -m services.collab_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The feed is connected before the store publishes its first event
    - The store is initialized (tables, seeded roles) before HTTP accepts requests
    - Graceful shutdown stops HTTP first, then closes the object store and feed

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter
from aiohttp import web

from .aggregates import AggregateReader, AggregateWriter
from .api import ApiServices, create_http_app
from .authz import AuthorizationGate, RoleAdministrator, RoleResolver
from .config import ImageBackend, ServerConfig
from .feed import ChangePublisher, FeedStream, create_feed_stream
from .feed.bridge import AggregateCache, ChangeFeedBridge
from .objects import InMemoryObjectStore, ObjectStore, S3ObjectStore
from .store import SqliteTableStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def create_object_store(config: ServerConfig) -> ObjectStore:
    """Factory for the configured image object store."""
    if config.s3.backend == ImageBackend.S3:
        return S3ObjectStore(config.s3)
    return InMemoryObjectStore()


class Server:
    """Collab Server orchestrator.

    Manages the lifecycle of all server components:
    - Feed connection
    - Row store and object store
    - HTTP server

    Attributes:
        config: Server configuration
        feed: Change-feed transport
        store: SQLite row store
        objects: Image object store
        services: Engine components shared by the HTTP handlers

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.feed: FeedStream | None = None
        self.store: SqliteTableStore | None = None
        self.objects: ObjectStore | None = None
        self.services: ApiServices | None = None
        self._runner: web.AppRunner | None = None

    async def health(self) -> dict[str, Any]:
        """Dependency health for GET /v1/health."""
        feed_connected = bool(self.feed and self.feed.is_connected)
        return {
            "healthy": self._running and feed_connected,
            "feed_connected": feed_connected,
            "feed_backend": self.config.feed.backend.value,
            "image_backend": self.config.s3.backend.value,
        }

    async def start(self) -> None:
        """Start the server and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Collab server")
        self.config.log_config()

        try:
            data_dir = Path(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)

            self.feed = create_feed_stream(self.config)
            await self.feed.connect()
            logger.info("Change feed connected")

            self.store = SqliteTableStore(
                data_dir=str(data_dir),
                db_name=self.config.storage.db_name,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
                publisher=ChangePublisher(self.feed, self.config.feed.topic),
            )
            await self.store.initialize()

            self.objects = create_object_store(self.config)

            resolver = RoleResolver(self.store)
            gate = AuthorizationGate(resolver)
            reader = AggregateReader(self.store, gate)
            self.services = ApiServices(
                reader=reader,
                writer=AggregateWriter(
                    self.store,
                    gate,
                    reader,
                    objects=self.objects,
                    default_role=self.config.engine.default_collaborator_role,
                ),
                admin=RoleAdministrator(self.store, gate),
                objects=self.objects,
                health=self.health,
            )

            app = create_http_app(self.services, self.config.http)
            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()
            logger.info(
                f"HTTP server running on http://{self.config.http.host}:{self.config.http.port}"
            )

            self._running = True
            logger.info("Collab server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping Collab server")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self.objects:
            await self.objects.close()

        if self.feed:
            await self.feed.close()

        self._running = False
        logger.info("Collab server stopped")

    def create_bridge(self, actor: str, cache: AggregateCache | None = None) -> ChangeFeedBridge:
        """Bridge keeping a cache current for one actor; the caller starts it.

        Raises:
            RuntimeError: If the server has not been started
        """
        if self.feed is None or self.services is None:
            raise RuntimeError("Server is not started")
        reader = self.services.reader
        return ChangeFeedBridge(
            self.feed,
            self.config.feed.topic,
            reader,
            reader.gate,
            actor,
            cache=cache,
            max_pending=self.config.engine.bridge_max_pending,
        )

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
