"""
S3 image store.

Works with Amazon S3 and S3-compatible services (MinIO, LocalStack)
through aiobotocore.

Object layout:
    s3://<bucket>/<image_prefix><folder>/<millis>-<random>.<ext>

Invariants:
    - The client is created lazily, once, and reused until close()
    - public_url() never performs I/O

How to change safely:
    - Test against a real bucket (or MinIO) before changing key layout
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import Sequence
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .base import ObjectStoreError, generate_object_name

logger = logging.getLogger(__name__)


class S3ObjectStore:
    """S3 implementation of the ObjectStore protocol.

    Attributes:
        s3_config: S3Config with bucket, region and credentials

    Example:
        >>> store = S3ObjectStore(S3Config(bucket="collab-images"))
        >>> path = await store.upload("project-images", "site.png", data)
        >>> store.public_url(path)
        'https://collab-images.s3.us-east-1.amazonaws.com/images/project-images/...png'
    """

    def __init__(self, s3_config: Any) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._client_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        cfg = self.s3_config
        if cfg.public_base_url:
            return cfg.public_base_url.rstrip("/")
        if cfg.endpoint_url:
            return f"{cfg.endpoint_url.rstrip('/')}/{cfg.bucket}"
        return f"https://{cfg.bucket}.s3.{cfg.region}.amazonaws.com"

    async def _client(self) -> Any:
        async with self._client_lock:
            if self._s3_client is None:
                self._session = get_session()

                client_kwargs: dict[str, Any] = {
                    "region_name": self.s3_config.region,
                }
                if self.s3_config.endpoint_url:
                    client_kwargs["endpoint_url"] = self.s3_config.endpoint_url
                if self.s3_config.access_key_id:
                    client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
                    client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

                self._s3_ctx = self._session.create_client("s3", **client_kwargs)
                self._s3_client = await self._s3_ctx.__aenter__()
                logger.info("S3 client initialized", extra={"bucket": self.s3_config.bucket})
        return self._s3_client

    async def close(self) -> None:
        async with self._client_lock:
            if self._s3_client is not None:
                await self._s3_ctx.__aexit__(None, None, None)
                self._s3_client = None
                self._s3_ctx = None

    async def upload(
        self,
        folder: str,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> str:
        path = f"{folder.strip('/')}/{generate_object_name(filename)}"
        if content_type is None:
            content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        client = await self._client()
        try:
            await client.put_object(
                Bucket=self.s3_config.bucket,
                Key=self.s3_config.image_prefix + path,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Failed to upload {filename}: {e}") from e

        logger.debug(
            "Uploaded image",
            extra={"path": path, "size_bytes": len(content), "content_type": content_type},
        )
        return path

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{self.s3_config.image_prefix}{path}"

    def path_for_url(self, url: str) -> str | None:
        prefix = f"{self.base_url}/{self.s3_config.image_prefix}"
        if not url.startswith(prefix) or len(url) == len(prefix):
            return None
        return url[len(prefix) :]

    async def remove(self, paths: Sequence[str]) -> None:
        if not paths:
            return

        client = await self._client()
        try:
            response = await client.delete_objects(
                Bucket=self.s3_config.bucket,
                Delete={
                    "Objects": [{"Key": self.s3_config.image_prefix + p} for p in paths],
                    "Quiet": True,
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Failed to remove {len(paths)} objects: {e}") from e

        errors = response.get("Errors") or []
        if errors:
            raise ObjectStoreError(
                f"Failed to remove {len(errors)} of {len(paths)} objects: "
                + ", ".join(err.get("Key", "?") for err in errors)
            )
        logger.debug("Removed images", extra={"count": len(paths)})
