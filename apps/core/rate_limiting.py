"""
Rate limiting utilities for permission checks.

Implements a fixed-window counter on the Django cache (Redis in
production). Each (user, permission, window) triple has its own counter;
the counter is created with ``cache.add`` and bumped with ``cache.incr``,
both of which are atomic in Redis, so concurrent requests can never
collectively exceed the configured maximum.
"""
import logging
import math
import time
from typing import Optional, Tuple
from django.core.cache import cache

logger = logging.getLogger(__name__)


class PermissionRateLimiter:
    """
    Cache-backed rate limiter keyed by user, permission and time window.

    Unlike request throttling at the edge, errors from the cache are not
    swallowed here: callers making access decisions must treat a failing
    counter as a denial.
    """

    KEY_PREFIX = 'rbac:ratelimit'

    @staticmethod
    def window_index(window_seconds: int, now: Optional[float] = None) -> int:
        """Return the index of the fixed window containing ``now``."""
        now = time.time() if now is None else now
        return int(now // window_seconds)

    @staticmethod
    def get_key(user_id, permission_name: str, window_index: int) -> str:
        """Get cache key for a user's counter on one permission."""
        return f"{PermissionRateLimiter.KEY_PREFIX}:{user_id}:{permission_name}:{window_index}"

    @staticmethod
    def hit(
        user_id,
        permission_name: str,
        max_requests: int,
        window_seconds: int,
        now: Optional[float] = None
    ) -> Tuple[bool, int]:
        """
        Count one use of a permission and report whether it is within limit.

        Args:
            user_id: Id of the user exercising the permission
            permission_name: Permission name (e.g. 'applications.approve')
            max_requests: Maximum uses allowed per window
            window_seconds: Window length in seconds
            now: Unix timestamp to evaluate at (defaults to current time)

        Returns:
            Tuple of (is_allowed, retry_after_seconds)
            - is_allowed: True if this use is within the limit
            - retry_after_seconds: Seconds until the window resets (0 if allowed)
        """
        now = time.time() if now is None else now
        index = PermissionRateLimiter.window_index(window_seconds, now)
        key = PermissionRateLimiter.get_key(user_id, permission_name, index)

        # Keep the key slightly longer than the window so a late incr never
        # recreates an expired counter.
        cache.add(key, 0, timeout=window_seconds + 60)
        try:
            count = cache.incr(key)
        except ValueError:
            # Key expired between add and incr
            cache.add(key, 0, timeout=window_seconds + 60)
            count = cache.incr(key)

        if count > max_requests:
            window_end = (index + 1) * window_seconds
            retry_after = max(1, math.ceil(window_end - now))
            logger.info(
                f"Permission rate limit exceeded: {permission_name}",
                extra={
                    'user_id': str(user_id),
                    'permission': permission_name,
                    'count': count,
                    'max_requests': max_requests,
                    'retry_after': retry_after,
                }
            )
            return False, retry_after

        return True, 0

    @staticmethod
    def get_count(user_id, permission_name: str, window_seconds: int, now: Optional[float] = None) -> int:
        """Return the number of uses recorded in the current window."""
        index = PermissionRateLimiter.window_index(window_seconds, now)
        return cache.get(PermissionRateLimiter.get_key(user_id, permission_name, index), 0)

    @staticmethod
    def reset(user_id, permission_name: str, window_seconds: int, now: Optional[float] = None) -> None:
        """Clear the counter for the current window."""
        index = PermissionRateLimiter.window_index(window_seconds, now)
        cache.delete(PermissionRateLimiter.get_key(user_id, permission_name, index))
