"""
Cache helpers for RBAC definitions and the location hierarchy.

Both caches hold derived data that can always be rebuilt from the
database, so every cache failure degrades to a miss.
"""
import logging
from typing import Any, Iterable

from django.core.cache import cache

logger = logging.getLogger(__name__)


class CacheKeys:
    """Cache key definitions."""

    RBAC_PERMISSIONS = "rbac:registry:permissions"
    RBAC_ROLES = "rbac:registry:roles"

    @staticmethod
    def location_descendants(location_id) -> str:
        return f"locations:descendants:{location_id}"

    @staticmethod
    def location_ancestors(location_id) -> str:
        return f"locations:ancestors:{location_id}"


class CacheTTL:
    """Cache TTLs in seconds."""

    RBAC_REGISTRY = 300  # overridden by RBAC_REGISTRY_CACHE_TTL
    LOCATION_HIERARCHY = 3600


class CacheService:
    """
    Fail-soft wrapper around the default cache.

    A cache outage makes reads slower but never changes their result:
    ``get`` returns the default and writes report False.
    """

    @staticmethod
    def _guarded(operation: str, key_description: str, func, fallback):
        try:
            return func()
        except Exception as e:
            logger.error(
                f"Cache {operation} failed for {key_description}: {e.__class__.__name__}",
                extra={'operation': operation, 'error': str(e)}
            )
            return fallback

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        value = cls._guarded('get', key, lambda: cache.get(key, default), default)
        logger.debug(f"Cache {'HIT' if value is not default else 'MISS'}: {key}")
        return value

    @classmethod
    def set(cls, key: str, value: Any, ttl: int = None) -> bool:
        """
        Store ``value`` under ``key``.

        Returns:
            True if the value was stored, False when the cache is unavailable
        """
        def _set():
            cache.set(key, value, timeout=ttl)
            return True
        return cls._guarded('set', key, _set, False)

    @classmethod
    def delete(cls, key: str) -> bool:
        def _delete():
            cache.delete(key)
            return True
        return cls._guarded('delete', key, _delete, False)

    @classmethod
    def delete_many(cls, keys: Iterable[str]) -> bool:
        """Delete several keys in one round trip."""
        keys = list(keys)
        if not keys:
            return True

        def _delete_many():
            cache.delete_many(keys)
            return True
        return cls._guarded('delete_many', f"{len(keys)} keys", _delete_many, False)
