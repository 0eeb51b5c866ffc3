"""
Image object storage for the collab engine.

This module provides:
- The ObjectStore protocol
- S3ObjectStore (aiobotocore)
- InMemoryObjectStore for tests
"""

from .base import ObjectStore, ObjectStoreError, generate_object_name
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    "InMemoryObjectStore",
    "ObjectStore",
    "ObjectStoreError",
    "S3ObjectStore",
    "generate_object_name",
]
