import pytest

from edu.canvasmcp.bridge.auth.cache import VerificationCache, cache_key


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return VerificationCache(ttl_seconds=900, clock=clock)


class TestVerificationCache:
    def test_hit_within_ttl(self, cache, clock):
        cache.put("cmcp_key", "user-1")
        clock.now += 899.999

        assert cache.get("cmcp_key") == "user-1"

    def test_hit_exactly_at_ttl(self, cache, clock):
        cache.put("cmcp_key", "user-1")
        clock.now += 900

        assert cache.get("cmcp_key") == "user-1"

    def test_miss_after_ttl(self, cache, clock):
        cache.put("cmcp_key", "user-1")
        clock.now += 900.001

        assert cache.get("cmcp_key") is None
        assert len(cache) == 0

    def test_unknown_key_misses(self, cache):
        assert cache.get("cmcp_unknown") is None

    def test_entries_are_keyed_by_digest(self, cache):
        cache.put("cmcp_plaintext_key", "user-1")

        assert "cmcp_plaintext_key" not in cache._entries
        assert cache_key("cmcp_plaintext_key") in cache._entries
        assert len(cache_key("cmcp_plaintext_key")) == 64

    def test_invalidate_drops_every_entry_for_a_user(self, cache):
        cache.put("cmcp_a", "user-1")
        cache.put("cmcp_b", "user-1")
        cache.put("cmcp_c", "user-2")

        assert cache.invalidate("user-1") == 2
        assert cache.get("cmcp_a") is None
        assert cache.get("cmcp_b") is None
        assert cache.get("cmcp_c") == "user-2"

    def test_sweep_removes_only_stale_entries(self, cache, clock):
        cache.put("cmcp_old", "user-1")
        clock.now += 600
        cache.put("cmcp_new", "user-2")
        clock.now += 400

        assert cache.sweep() == 1
        assert len(cache) == 1
        assert cache.get("cmcp_new") == "user-2"

    def test_clear(self, cache):
        cache.put("cmcp_a", "user-1")
        cache.clear()

        assert len(cache) == 0
