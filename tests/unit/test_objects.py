"""
Unit tests for the image object stores.

Tests cover:
- Object name generation
- In-memory upload, URL mapping and removal
- S3 URL layout (no network)
- S3 client created once under concurrent first use
"""

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.collab_server.config import S3Config
from services.collab_server.objects import s3 as s3_module
from services.collab_server.objects import (
    InMemoryObjectStore,
    ObjectStore,
    ObjectStoreError,
    S3ObjectStore,
    generate_object_name,
)


class TestGenerateObjectName:
    """Tests for generate_object_name()."""

    def test_keeps_extension(self):
        """Extension is kept, lower-cased."""
        assert re.fullmatch(r"\d+-[0-9a-f]{10}\.png", generate_object_name("Site.PNG"))

    def test_missing_extension(self):
        """Files without an extension become .bin."""
        assert generate_object_name("README").endswith(".bin")

    def test_unique(self):
        """Names do not repeat."""
        assert len({generate_object_name("a.jpg") for _ in range(50)}) == 50


class TestInMemoryObjectStore:
    """Tests for InMemoryObjectStore."""

    @pytest.mark.asyncio
    async def test_upload_and_url(self):
        """Uploads are addressable by public URL."""
        store = InMemoryObjectStore(base_url="memory://bucket/")
        path = await store.upload("project-images", "a.png", b"data")

        url = store.public_url(path)

        assert path.startswith("project-images/")
        assert url == f"memory://bucket/{path}"
        assert store.path_for_url(url) == path
        assert store.objects[path] == b"data"

    @pytest.mark.asyncio
    async def test_foreign_urls_are_not_ours(self):
        """URLs from elsewhere map to no path."""
        store = InMemoryObjectStore()

        assert store.path_for_url("https://cdn.example.com/a.png") is None
        assert store.path_for_url("memory://images/") is None

    @pytest.mark.asyncio
    async def test_remove(self):
        """remove() deletes objects and ignores unknown paths."""
        store = InMemoryObjectStore()
        path = await store.upload("event-images", "a.png", b"data")

        await store.remove([path, "event-images/missing.png"])

        assert store.objects == {}

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        """Failure flags raise ObjectStoreError."""
        store = InMemoryObjectStore()
        store.fail_uploads = True
        store.fail_removals = True

        with pytest.raises(ObjectStoreError):
            await store.upload("f", "a.png", b"")
        with pytest.raises(ObjectStoreError):
            await store.remove(["f/a.png"])

    def test_protocol(self):
        """Both backends satisfy the ObjectStore protocol."""
        assert isinstance(InMemoryObjectStore(), ObjectStore)
        assert isinstance(S3ObjectStore(S3Config()), ObjectStore)


class TestS3ObjectStoreUrls:
    """Tests for S3ObjectStore URL layout."""

    def test_default_bucket_url(self):
        """AWS virtual-hosted URL by default."""
        store = S3ObjectStore(S3Config(bucket="imgs", region="eu-west-1"))

        url = store.public_url("project-images/1-a.png")

        assert url == "https://imgs.s3.eu-west-1.amazonaws.com/images/project-images/1-a.png"
        assert store.path_for_url(url) == "project-images/1-a.png"

    def test_custom_endpoint(self):
        """MinIO-style endpoints use path-style URLs."""
        store = S3ObjectStore(S3Config(bucket="imgs", endpoint_url="http://minio:9000/"))

        assert store.base_url == "http://minio:9000/imgs"

    def test_public_base_url(self):
        """A CDN base overrides the bucket URL."""
        store = S3ObjectStore(S3Config(public_base_url="https://cdn.example.com/"))

        assert store.public_url("a/b.png") == "https://cdn.example.com/images/a/b.png"
        assert store.path_for_url("https://other.example.com/images/a/b.png") is None


class TestS3ObjectStoreClient:
    """Tests for the lazily created S3 client."""

    @pytest.fixture
    def session(self, monkeypatch):
        """Fake aiobotocore session whose client takes a moment to open."""
        client = MagicMock()
        client.put_object = AsyncMock()

        async def enter():
            await asyncio.sleep(0.01)
            return client

        context = MagicMock()
        context.__aenter__ = AsyncMock(side_effect=enter)
        context.__aexit__ = AsyncMock(return_value=None)

        session = MagicMock()
        session.create_client = MagicMock(return_value=context)
        session.client = client
        session.context = context
        monkeypatch.setattr(s3_module, "get_session", MagicMock(return_value=session))
        return session

    @pytest.mark.asyncio
    async def test_concurrent_first_uploads_share_one_client(self, session):
        """Two uploads racing on a cold store open a single client."""
        store = S3ObjectStore(S3Config(bucket="imgs", endpoint_url="http://minio:9000"))

        paths = await asyncio.gather(
            store.upload("project-images", "a.png", b"1"),
            store.upload("project-images", "b.png", b"2"),
        )

        assert len(set(paths)) == 2
        session.create_client.assert_called_once()
        assert session.create_client.call_args.kwargs["endpoint_url"] == "http://minio:9000"
        assert session.client.put_object.await_count == 2

        await store.close()
        session.context.__aexit__.assert_awaited_once()
