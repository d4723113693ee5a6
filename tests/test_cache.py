"""Tests for the result cache."""

from __future__ import annotations

from typing import TYPE_CHECKING

from conftest import make_probs

from avatartagger.cache import ResultCache
from avatartagger.ml.orchestrator import aggregate
from avatartagger.service import TagMeta, TagResult

if TYPE_CHECKING:
    from conftest import FakeClock


def _result(crops_used: int = 1) -> TagResult:
    agg = aggregate([make_probs()])
    assert agg is not None
    return TagResult(
        tags=(),
        mean_probs=agg.mean_probs,
        max_probs=agg.max_probs,
        meta=TagMeta(crops_used=crops_used, early_exit=False, timed_out=False, layout=None),
    )


class TestResultCache:
    def test_miss(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=300, capacity=100, clock=clock)
        assert cache.get("https://cdn.example/a.png") is None

    def test_hit_returns_same_result(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=300, capacity=100, clock=clock)
        result = _result()
        cache.put("a", result)

        clock.advance(299)
        entry = cache.get("a")

        assert entry is not None
        assert entry.result is result
        assert entry.inserted_at == 1000.0

    def test_expired_entry_is_dropped_on_read(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=300, capacity=100, clock=clock)
        cache.put("a", _result())

        clock.advance(300)

        assert cache.get("a") is None
        assert len(cache) == 0

    def test_expiry_is_lazy(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=300, capacity=100, clock=clock)
        cache.put("a", _result())
        clock.advance(1000)
        assert len(cache) == 1

    def test_overflow_evicts_oldest_fifth(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=10_000, capacity=100, clock=clock)
        for i in range(101):
            cache.put(f"key-{i}", _result())
            clock.advance(1)

        assert len(cache) == 81
        for i in range(20):
            assert f"key-{i}" not in cache
        for i in range(20, 101):
            assert f"key-{i}" in cache

        survivors = [cache.get(f"key-{i}") for i in range(20, 101)]
        oldest_survivor = min(entry.inserted_at for entry in survivors if entry is not None)
        assert oldest_survivor == 1020.0

    def test_reinsert_refreshes_age(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=10_000, capacity=5, clock=clock)
        for i in range(5):
            cache.put(f"key-{i}", _result())
            clock.advance(1)
        cache.put("key-0", _result())
        clock.advance(1)

        cache.put("key-5", _result())

        assert "key-0" in cache
        assert "key-1" not in cache
        assert len(cache) == 5

    def test_clear(self, clock: FakeClock) -> None:
        cache = ResultCache(ttl_seconds=300, capacity=100, clock=clock)
        cache.put("a", _result())
        cache.clear()
        assert len(cache) == 0
