"""Tests for pnm.cache — TTL cache and layered lookups."""

from unittest.mock import MagicMock

from pnm.cache import LayeredLookup, TTLCache
from pnm.models import BalanceData


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    def test_hit_within_ttl(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(60, clock=clock)
        cache.put("k", "v")
        clock.now += 59
        assert cache.get("k") == "v"
        assert cache.hits == 1

    def test_expires_at_ttl(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(60, clock=clock)
        cache.put("k", "v")
        clock.now += 60
        assert cache.get("k") is None
        assert len(cache) == 0
        assert cache.misses == 1

    def test_explicit_fetched_at(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(60, clock=clock)
        cache.put("k", "v", fetched_at=clock.now - 61)
        assert cache.get("k") is None

    def test_clear(self) -> None:
        cache: TTLCache[str] = TTLCache(60, clock=FakeClock())
        cache.put("a", "1")
        cache.put("b", "2")
        cache.clear()
        assert len(cache) == 0

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(60, clock=clock)
        cache.put("old", "1", fetched_at=clock.now - 100)
        cache.put("new", "2")
        assert cache.purge_expired() == 1
        assert cache.get("new") == "2"

    def test_stats(self) -> None:
        cache: TTLCache[str] = TTLCache(30, clock=FakeClock())
        cache.put("a", "1")
        cache.get("a")
        cache.get("b")
        assert cache.stats() == {"size": 1, "ttl": 30, "hits": 1, "misses": 1}


class TestLayeredLookup:
    def test_cache_hit_skips_layers(self) -> None:
        cache: TTLCache[str] = TTLCache(60, clock=FakeClock())
        cache.put("k", "cached")
        layer = MagicMock(return_value="fresh")
        assert LayeredLookup(cache, [("only", layer)]).get("k") == "cached"
        layer.assert_not_called()

    def test_layers_tried_in_order(self) -> None:
        cache: TTLCache[str] = TTLCache(60, clock=FakeClock())
        first = MagicMock(return_value=None)
        second = MagicMock(return_value="found")
        third = MagicMock(return_value="never")
        lookup = LayeredLookup(cache, [("a", first), ("b", second), ("c", third)])

        assert lookup.get("k") == "found"
        first.assert_called_once_with("k")
        second.assert_called_once_with("k")
        third.assert_not_called()

    def test_hit_written_back(self) -> None:
        cache: TTLCache[str] = TTLCache(60, clock=FakeClock())
        layer = MagicMock(return_value="found")
        lookup = LayeredLookup(cache, [("a", layer)])
        lookup.get("k")
        lookup.get("k")
        layer.assert_called_once()

    def test_write_back_keeps_payload_age(self) -> None:
        clock = FakeClock()
        cache: TTLCache[BalanceData] = TTLCache(60, clock=clock)
        aged = BalanceData(balance=1.5, fetched_at=clock.now - 50)
        layer = MagicMock(return_value=aged)
        lookup = LayeredLookup(cache, [("persisted", layer)])

        assert lookup.get("k") is aged
        clock.now += 10
        assert cache.get("k") is None

    def test_all_layers_miss(self) -> None:
        cache: TTLCache[str] = TTLCache(60, clock=FakeClock())
        lookup = LayeredLookup(cache, [("a", lambda _: None)])
        assert lookup.get("k") is None
        assert len(cache) == 0
