"""
Storage abstractions.

Integration points:
- ContentStorage -> S3 (attachments, logos)
- MetadataStorage -> PostgreSQL or DynamoDB (identity store records)
- CacheStorage -> Redis (user and slug caches)
"""

from opsportal.storage.base import (
    ContentStorage,
    MetadataStorage,
    CacheStorage,
    StorageProvider,
    Collections,
)
from opsportal.storage.local import create_local_storage

__all__ = [
    "ContentStorage",
    "MetadataStorage",
    "CacheStorage",
    "StorageProvider",
    "Collections",
    "create_local_storage",
]
