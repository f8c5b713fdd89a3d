"""
Tests for the entitlement TTL cache.
"""

import pytest

from paywall.entitlements.cache import (
    CacheKeys,
    CacheTTL,
    TTLCache,
    get_entitlement_cache,
    reset_entitlement_cache,
)


class TestCacheKeys:
    def test_user_keys_share_prefix(self):
        prefix = CacheKeys.user_prefix("u1")
        assert prefix == "paywall:user:u1:"
        for key in (
            CacheKeys.tier("u1"),
            CacheKeys.is_premium("u1"),
            CacheKeys.limit_status("u1", "subscription"),
            CacheKeys.limit_check("u1", "subscription"),
            CacheKeys.resource_count("u1", "recurring_item"),
            CacheKeys.subscription_status("u1"),
        ):
            assert key.startswith(prefix)

    def test_resource_keys_are_distinct(self):
        assert CacheKeys.limit_check("u1", "subscription") != CacheKeys.limit_check(
            "u1", "recurring_item"
        )

    def test_available_tiers_is_global(self):
        assert not CacheKeys.available_tiers().startswith(CacheKeys.user_prefix("u1"))


class TestTTLCache:
    def test_get_missing_returns_none(self, cache):
        assert cache.get("missing") is None

    def test_value_visible_before_expiry(self, cache, clock):
        cache.set("k", "v", 0.1)
        clock.advance(0.05)
        assert cache.get("k") == "v"

    def test_value_gone_after_expiry(self, cache, clock):
        cache.set("k", "v", 0.1)
        clock.advance(0.15)
        assert cache.get("k") is None
        assert cache.size() == 0

    def test_expires_exactly_at_ttl(self, cache, clock):
        cache.set("k", "v", 1.0)
        clock.advance(1.0)
        assert cache.get("k") is None

    def test_falsy_values_are_cached(self, cache):
        cache.set("flag", False, CacheTTL.MEDIUM)
        cache.set("count", 0, CacheTTL.SHORT)
        assert cache.get("flag") is False
        assert cache.get("count") == 0

    def test_overwrite_resets_ttl(self, cache, clock):
        cache.set("k", 1, 1.0)
        clock.advance(0.8)
        cache.set("k", 2, 1.0)
        clock.advance(0.8)
        assert cache.get("k") == 2

    def test_non_positive_ttl_stores_nothing(self, cache):
        cache.set("k", "v", 10)
        cache.set("k", "other", 0)
        assert cache.get("k") is None

    def test_invalidate_is_immediate(self, cache):
        cache.set("k", "v", CacheTTL.LONG)
        assert cache.invalidate("k") is True
        assert cache.get("k") is None
        assert cache.invalidate("k") is False

    def test_has(self, cache, clock):
        cache.set("k", "v", 1.0)
        assert cache.has("k")
        clock.advance(2.0)
        assert not cache.has("k")

    def test_invalidate_user_only_touches_that_user(self, cache):
        cache.set(CacheKeys.tier("u1"), "premium", CacheTTL.MEDIUM)
        cache.set(CacheKeys.limit_check("u1", "subscription"), "check", CacheTTL.MEDIUM)
        cache.set(CacheKeys.tier("u2"), "free", CacheTTL.MEDIUM)
        cache.set(CacheKeys.available_tiers(), ["free"], CacheTTL.VERY_LONG)

        removed = cache.invalidate_user("u1", reason="test")

        assert removed == 2
        assert cache.get(CacheKeys.tier("u1")) is None
        assert cache.get(CacheKeys.limit_check("u1", "subscription")) is None
        assert cache.get(CacheKeys.tier("u2")) == "free"
        assert cache.get(CacheKeys.available_tiers()) == ["free"]

    def test_invalidate_user_does_not_match_id_prefix(self, cache):
        cache.set(CacheKeys.tier("u1"), "a", CacheTTL.MEDIUM)
        cache.set(CacheKeys.tier("u10"), "b", CacheTTL.MEDIUM)

        cache.invalidate_user("u1")

        assert cache.get(CacheKeys.tier("u10")) == "b"

    def test_clear(self, cache):
        cache.set("a", 1, 10)
        cache.set("b", 2, 10)
        cache.clear()
        assert cache.size() == 0

    def test_cleanup_removes_only_expired(self, cache, clock):
        cache.set("short", 1, 1.0)
        cache.set("long", 2, 100.0)
        clock.advance(5.0)

        assert cache.cleanup() == 1
        assert cache.size() == 1
        assert cache.get("long") == 2

    def test_max_size_evicts_oldest(self, clock):
        cache = TTLCache(max_size=2, clock=clock)
        cache.set("first", 1, 100)
        clock.advance(1)
        cache.set("second", 2, 100)
        clock.advance(1)
        cache.set("third", 3, 100)

        assert cache.size() == 2
        assert cache.get("first") is None
        assert cache.get("second") == 2
        assert cache.get("third") == 3

    def test_stats_counts_hits_and_misses(self, cache):
        cache.set("k", "v", 10)
        cache.get("k")
        cache.get("missing")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1


class TestSingleton:
    def test_get_returns_same_instance(self):
        assert get_entitlement_cache() is get_entitlement_cache()

    def test_reset_creates_new_instance(self):
        first = get_entitlement_cache()
        reset_entitlement_cache()
        assert get_entitlement_cache() is not first
