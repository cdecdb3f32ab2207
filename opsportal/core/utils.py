"""
Shared utility functions for the portal platform.

This module contains common utilities used across the codebase.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.

    Args:
        prefix: Optional prefix (e.g., "proj", "client", "user")

    Returns:
        A unique ID like "proj_a1b2c3d4e5f6"
    """
    uid = uuid.uuid4().hex[:12]
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


_INVALID_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")


def slugify(name: str, fallback: str = "client") -> str:
    """
    Turn a display name into a URL-friendly slug.

    "Acme Labs, Inc." -> "acme-labs-inc"
    """
    slug = _INVALID_SLUG_CHARS.sub("", name.lower())
    slug = _WHITESPACE.sub("-", slug.strip())
    slug = _DASHES.sub("-", slug).strip("-")
    return slug or fallback


def unique_slug(base: str, taken: Iterable[str]) -> str:
    """Append -1, -2, ... to `base` until it no longer collides with `taken`."""
    taken = set(taken)
    candidate = base
    counter = 1
    while candidate in taken:
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate
