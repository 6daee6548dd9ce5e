"""
Unit tests for the response cache.
"""

import pytest

from creditgate.entitlements.cache import CacheNamespace, ResponseCache


class TestTTL:

    def test_hit_within_ttl(self, response_cache, fake_clock):
        payload = {"used": 1}
        response_cache.set(CacheNamespace.USAGE, "site-a", payload)

        fake_clock.advance(0.5)

        assert response_cache.get(CacheNamespace.USAGE, "site-a") is payload

    def test_expires_at_ttl(self, response_cache, fake_clock):
        response_cache.set(CacheNamespace.USAGE, "site-a", {"used": 1})

        fake_clock.advance(1.0)

        assert response_cache.get(CacheNamespace.USAGE, "site-a") is None
        assert len(response_cache) == 0

    def test_namespace_ttls_differ(self, response_cache, fake_clock):
        response_cache.set(CacheNamespace.USAGE, "owner", {"kind": "usage"})
        response_cache.set(CacheNamespace.DASHBOARD, "owner", {"kind": "dashboard"})

        fake_clock.advance(5)

        assert response_cache.get(CacheNamespace.USAGE, "owner") is None
        assert response_cache.get(CacheNamespace.DASHBOARD, "owner") == {"kind": "dashboard"}

        fake_clock.advance(25)
        assert response_cache.get(CacheNamespace.DASHBOARD, "owner") is None

    def test_ttl_overrides(self, fake_clock):
        cache = ResponseCache(clock=fake_clock, ttls={CacheNamespace.SUBSCRIPTION: 2})

        assert cache.ttl(CacheNamespace.SUBSCRIPTION) == 2
        assert cache.ttl(CacheNamespace.DASHBOARD) == 30

    def test_variants_are_separate(self, response_cache):
        response_cache.set(CacheNamespace.USAGE, "site-a", {"v": 1}, variant="key-1")

        assert response_cache.get(CacheNamespace.USAGE, "site-a") is None
        assert response_cache.get(CacheNamespace.USAGE, "site-a", "key-1") == {"v": 1}


class TestEviction:

    def test_evict_removes_every_namespace_for_owner(self, response_cache):
        response_cache.set(CacheNamespace.USAGE, "owner-1", {"a": 1})
        response_cache.set(CacheNamespace.USAGE, "owner-1", {"a": 2}, variant="x")
        response_cache.set(CacheNamespace.DASHBOARD, "owner-1", {"b": 1})
        response_cache.set(CacheNamespace.USAGE, "owner-2", {"c": 1})

        removed = response_cache.evict("owner-1")

        assert removed == 3
        assert response_cache.get(CacheNamespace.USAGE, "owner-2") == {"c": 1}
        assert len(response_cache) == 1

    def test_evict_related_owner_drops_site_entries(self, response_cache):
        response_cache.set(CacheNamespace.USAGE, "site-a", {"a": 1}, variant="-|id-1", related=["id-1"])
        response_cache.set(CacheNamespace.USAGE, "site-a", {"a": 2}, variant="-|-")
        response_cache.set(CacheNamespace.USAGE, "site-b", {"b": 1}, variant="-|id-2", related=["id-2", None])

        removed = response_cache.evict("id-1")

        assert removed == 1
        assert response_cache.get(CacheNamespace.USAGE, "site-a", "-|id-1") is None
        assert response_cache.get(CacheNamespace.USAGE, "site-a", "-|-") == {"a": 2}
        assert response_cache.get(CacheNamespace.USAGE, "site-b", "-|id-2") == {"b": 1}

    def test_evict_many_skips_empty_keys(self, response_cache):
        response_cache.set(CacheNamespace.USAGE, "owner-1", {"a": 1})
        response_cache.set(CacheNamespace.USAGE, "owner-2", {"a": 2})

        assert response_cache.evict_many(["owner-1", None, "", "owner-2"]) == 2
        assert len(response_cache) == 0

    @pytest.mark.parametrize("owner_key", [None, ""])
    def test_evict_empty_owner_is_noop(self, response_cache, owner_key):
        response_cache.set(CacheNamespace.USAGE, "owner-1", {"a": 1})
        assert response_cache.evict(owner_key) == 0
        assert len(response_cache) == 1

    def test_clear(self, response_cache):
        response_cache.set(CacheNamespace.USAGE, "owner-1", {"a": 1})
        response_cache.clear()
        assert len(response_cache) == 0
