"""
In-memory image store for tests and local development.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .base import ObjectStoreError, generate_object_name

logger = logging.getLogger(__name__)


class InMemoryObjectStore:
    """In-memory implementation of the ObjectStore protocol.

    Example:
        >>> store = InMemoryObjectStore()
        >>> path = await store.upload("project-images", "a.png", b"...")
        >>> store.public_url(path)
        'memory://images/project-images/...png'
    """

    def __init__(self, base_url: str = "memory://images") -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: dict[str, bytes] = {}
        self.fail_uploads = False
        self.fail_removals = False

    async def upload(
        self,
        folder: str,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> str:
        if self.fail_uploads:
            raise ObjectStoreError(f"Injected upload failure for {filename}")
        path = f"{folder.strip('/')}/{generate_object_name(filename)}"
        while path in self.objects:
            path = f"{folder.strip('/')}/{generate_object_name(filename)}"
        self.objects[path] = content
        return path

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def path_for_url(self, url: str) -> str | None:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix) or len(url) == len(prefix):
            return None
        return url[len(prefix) :]

    async def remove(self, paths: Sequence[str]) -> None:
        if self.fail_removals:
            raise ObjectStoreError(f"Injected removal failure for {len(paths)} objects")
        for path in paths:
            self.objects.pop(path, None)

    async def close(self) -> None:
        pass
