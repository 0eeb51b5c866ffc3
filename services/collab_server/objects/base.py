"""
Base protocol for the image object store.

Images are uploaded before any row referencing them is written, and are
addressed in the read-model by public URL. The store maps between public
URLs and object paths so that replaced images can be removed later.

Invariants:
    - upload() returns the object path; public_url(path) is deterministic
    - path_for_url() returns None for URLs this store did not issue, so
      foreign URLs are never deleted
    - remove() is used best-effort by callers; it may raise ObjectStoreError

How to change safely:
    - Changing the URL layout orphans existing objects for cleanup purposes
"""

from __future__ import annotations

import secrets
import time
from abc import abstractmethod
from collections.abc import Sequence
from typing import Protocol, runtime_checkable


class ObjectStoreError(Exception):
    """Object store operation failed."""

    pass


def generate_object_name(filename: str) -> str:
    """Collision-resistant object name keeping the file extension.

    Example:
        >>> generate_object_name("site.png")
        '1718000000000-3f9a1c7b2e.png'
    """
    _, dot, ext = filename.rpartition(".")
    ext = ext.lower() if dot and ext else "bin"
    return f"{int(time.time() * 1000)}-{secrets.token_hex(5)}.{ext}"


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for image storage backends."""

    @abstractmethod
    async def upload(
        self,
        folder: str,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> str:
        """Store content under a generated name in folder; return its path.

        Raises:
            ObjectStoreError: If the upload fails
        """
        ...

    @abstractmethod
    def public_url(self, path: str) -> str:
        """Public URL for an object path."""
        ...

    @abstractmethod
    def path_for_url(self, url: str) -> str | None:
        """Object path for a public URL issued by this store, else None."""
        ...

    @abstractmethod
    async def remove(self, paths: Sequence[str]) -> None:
        """Delete objects.

        Raises:
            ObjectStoreError: If the delete fails
        """
        ...

    async def close(self) -> None:
        """Release client resources."""
        ...
