"""
Entitlement cache - process-local TTL cache with user-scoped invalidation.

Provides:
- TTLCache: thread-safe key/value store with per-entry expiry
- CacheKeys: deterministic namespaced keys per (user, concern)
- CacheTTL: SHORT / MEDIUM / LONG / VERY_LONG expiry tiers

CRITICAL: Every write to a user's subscription MUST be followed by
invalidate_user() for that user. Entries are never returned past expiry.
"""

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

KEY_PREFIX = "paywall"
DEFAULT_MAX_SIZE = 10000


class CacheTTL:
    """Expiry tiers in seconds."""
    SHORT = 60.0       # resource counts
    MEDIUM = 300.0     # limit checks, premium status, tier
    LONG = 900.0
    VERY_LONG = 3600.0  # tier catalogue


class CacheKeys:
    """
    Key builders.

    All per-user keys share the ``paywall:user:{user_id}:`` prefix so a
    user's whole entitlement state can be dropped as a group.
    """

    TIER = "tier"
    IS_PREMIUM = "is_premium"
    LIMIT_STATUS = "limit_status"
    LIMIT_CHECK = "limit_check"
    RESOURCE_COUNT = "resource_count"
    SUBSCRIPTION_STATUS = "subscription_status"

    @staticmethod
    def user_prefix(user_id: str) -> str:
        return f"{KEY_PREFIX}:user:{user_id}:"

    @classmethod
    def _user_key(cls, user_id: str, concern: str, resource: Optional[str] = None) -> str:
        key = f"{cls.user_prefix(user_id)}{concern}"
        if resource:
            key = f"{key}:{resource}"
        return key

    @classmethod
    def tier(cls, user_id: str) -> str:
        return cls._user_key(user_id, cls.TIER)

    @classmethod
    def is_premium(cls, user_id: str) -> str:
        return cls._user_key(user_id, cls.IS_PREMIUM)

    @classmethod
    def limit_status(cls, user_id: str, resource: str) -> str:
        return cls._user_key(user_id, cls.LIMIT_STATUS, resource)

    @classmethod
    def limit_check(cls, user_id: str, resource: str) -> str:
        return cls._user_key(user_id, cls.LIMIT_CHECK, resource)

    @classmethod
    def resource_count(cls, user_id: str, resource: str) -> str:
        return cls._user_key(user_id, cls.RESOURCE_COUNT, resource)

    @classmethod
    def subscription_status(cls, user_id: str) -> str:
        return cls._user_key(user_id, cls.SUBSCRIPTION_STATUS)

    @staticmethod
    def available_tiers() -> str:
        return f"{KEY_PREFIX}:available_tiers"


class TTLCache:
    """
    In-memory cache with per-entry TTL.

    Thread-safe. Expired entries are evicted when read and by cleanup().
    When max_size is reached the oldest entry is evicted.

    Usage:
        cache = TTLCache()
        cache.set(CacheKeys.tier(user_id), tier, CacheTTL.MEDIUM)
        tier = cache.get(CacheKeys.tier(user_id))
        cache.invalidate_user(user_id)
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        # key -> (value, expires_at, stored_at)
        self._entries: Dict[str, Tuple[Any, float, float]] = {}
        self._lock = Lock()
        self._max_size = max_size
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, expires_at, _ = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """
        Store value for ttl seconds.

        Args:
            key: Cache key (see CacheKeys)
            value: Any value; stored by reference
            ttl: Time to live in seconds; non-positive values store nothing
        """
        if ttl <= 0:
            self.invalidate(key)
            return
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self._max_size:
                oldest_key = min(self._entries, key=lambda k: self._entries[k][2])
                del self._entries[oldest_key]
            self._entries[key] = (value, now + ttl, now)

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._clock() < entry[1]

    def invalidate(self, key: str) -> bool:
        """Remove a single key. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def invalidate_user(self, user_id: str, reason: Optional[str] = None) -> int:
        """
        Drop every cached entry for one user; other users are untouched.

        Args:
            user_id: User whose entitlement state changed
            reason: Optional reason for logging

        Returns:
            Number of entries removed
        """
        count = self.invalidate_prefix(CacheKeys.user_prefix(user_id))
        logger.info(
            f"Invalidated entitlement cache for user {user_id}",
            extra={"user_id": user_id, "reason": reason, "entries": count}
        )
        return count

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Cleared entitlement cache", extra={"entries": count})

    def cleanup(self) -> int:
        """Evict all expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
            }


_cache_instance: Optional[TTLCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> TTLCache:
    """Get the process-wide TTLCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = TTLCache()
    return _cache_instance


def reset_entitlement_cache() -> None:
    """Reset singleton (for tests only)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
