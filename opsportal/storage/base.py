"""
Storage abstraction layer.

All persistence goes through these interfaces. This allows swapping
implementations (in-memory -> PostgreSQL/DynamoDB, local disk -> S3,
dict cache -> Redis) without changing application code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel


# =============================================================================
# Storage Interfaces
# =============================================================================


class ContentStorage(ABC):
    """
    Storage for uploaded binary content (attachments, logos).

    AWS Implementation: S3
    Local Implementation: Filesystem
    """

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store content, return URL/path."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete content."""
        pass


class MetadataStorage(ABC):
    """
    Durable document storage for canonical records (users, clients, projects).

    Documents handed out are copies: mutating a returned dict never changes
    the stored record.
    """

    @abstractmethod
    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        """Save a document to a collection."""
        pass

    @abstractmethod
    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        """Get a document by ID."""
        pass

    @abstractmethod
    async def delete(self, collection: str, id: str) -> bool:
        """Delete a document."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query documents with optional equality filters."""
        pass


class CacheStorage(ABC):
    """
    Fast key-value cache with per-key TTL.

    Never authoritative. AWS Implementation: ElastiCache (Redis).
    """

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value with optional TTL in seconds."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key."""
        pass

    @abstractmethod
    async def clear(self, prefix: str = "") -> int:
        """Delete every key starting with prefix. Returns the count removed."""
        pass


# =============================================================================
# Storage Provider (dependency injection container)
# =============================================================================


class StorageProvider(BaseModel):
    """
    Container for all storage backends.

    Initialize once at app startup with appropriate implementations.
    """

    model_config = {"arbitrary_types_allowed": True}

    content: ContentStorage
    metadata: MetadataStorage
    cache: CacheStorage


# =============================================================================
# Collection Names (for MetadataStorage)
# =============================================================================


class Collections:
    """Standard collection/table names."""

    USERS = "users"
    CLIENTS = "clients"
    PROJECTS = "projects"
    SERVICE_REPORTS = "service_reports"
    PASSWORD_RESETS = "password_reset_requests"
