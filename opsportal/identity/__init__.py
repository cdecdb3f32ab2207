"""
Identity resolution - canonical records, caches and slug resolution.
"""

from opsportal.identity.store import IdentityStore
from opsportal.identity.cache import EntityCache, SlugCache, UserCache
from opsportal.identity.slugs import ResolvedEntity, SlugResolver

__all__ = [
    "IdentityStore",
    "EntityCache",
    "SlugCache",
    "UserCache",
    "ResolvedEntity",
    "SlugResolver",
]
