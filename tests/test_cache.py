"""Tests for the cache layer, circuit breaker and backing stores."""

from __future__ import annotations

import json

import pytest

from meme_agent.errors import CacheBackendError
from meme_agent.storage.backing import MemoryBackingStore, SQLiteBackingStore
from meme_agent.storage.cache import (
    BreakerState,
    BreakerTransition,
    CacheLayer,
    CircuitBreaker,
)


class FlakyStore(MemoryBackingStore):
    """Memory store that can be told to fail, and counts calls."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False
        self.calls = 0

    def _touch(self) -> None:
        self.calls += 1
        if self.fail:
            raise CacheBackendError("connection refused")

    async def connect(self) -> None:
        self._touch()

    async def get(self, key: str) -> str | None:
        self._touch()
        return await super().get(key)

    async def set(self, key: str, value: str, ttl_secs: float) -> None:
        self._touch()
        await super().set(key, value, ttl_secs)

    async def delete(self, key: str) -> None:
        self._touch()
        await super().delete(key)

    async def flush_all(self) -> None:
        self._touch()
        await super().flush_all()


def _layer(store, clock, metrics, **kw) -> CacheLayer:
    breaker = CircuitBreaker(
        failure_threshold=kw.pop("failure_threshold", 1),
        cooldown_secs=kw.pop("cooldown_secs", 30.0),
        clock=clock,
    )
    return CacheLayer(store, breaker=breaker, clock=clock, metrics=metrics, **kw)


# ─── TTL ─────────────────────────────────────────────────────────────

class TestCacheTTL:
    @pytest.mark.asyncio
    async def test_hit_before_expiry(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        await cache.set("marketData:ELONA", "payload", 300)
        clock.advance(299.9)
        assert await cache.get("marketData:ELONA") == "payload"

    @pytest.mark.asyncio
    async def test_miss_at_and_after_expiry(self, clock, fresh_metrics) -> None:
        # The memory store still holds the value (it uses wall-clock TTL);
        # the layer's own expiry check must reject it.
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        await cache.set("k", "v", 300)
        clock.advance(300)
        assert await cache.get("k") is None
        clock.advance(1)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_unknown_key_is_miss(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        assert await cache.get("nope") is None
        assert cache.stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_prefix_applied_to_store_keys(self, clock, fresh_metrics) -> None:
        store = MemoryBackingStore()
        cache = _layer(store, clock, fresh_metrics, key_prefix="agent:")
        await cache.set("k", "v", 60)
        raw = await store.get("agent:k")
        assert raw is not None
        assert json.loads(raw)["v"] == "v"
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_miss(self, clock, fresh_metrics) -> None:
        store = MemoryBackingStore()
        cache = _layer(store, clock, fresh_metrics)
        await store.set("k", "not-json", 60)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_and_flush(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        await cache.set("a", "1", 60)
        await cache.set("b", "2", 60)
        await cache.delete("a")
        assert await cache.get("a") is None
        assert cache.get_stale("a", 1000) is None
        await cache.flush_all()
        assert await cache.get("b") is None
        assert cache.get_stale("b", 1000) is None

    @pytest.mark.asyncio
    async def test_hit_rate_stats(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        await cache.set("k", "v", 60)
        await cache.get("k")
        await cache.get("missing")
        stats = cache.stats
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert fresh_metrics.counter("cache.hits") == 1


# ─── Stale shadow ────────────────────────────────────────────────────

class TestGetStale:
    @pytest.mark.asyncio
    async def test_returns_expired_entry_within_max_age(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        await cache.set("k", "v", 300)
        clock.advance(400)
        assert await cache.get("k") is None
        entry = cache.get_stale("k", 600)
        assert entry is not None
        assert entry.value == "v"
        assert entry.is_expired(clock())

    @pytest.mark.asyncio
    async def test_none_beyond_max_age(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics)
        await cache.set("k", "v", 300)
        clock.advance(601)
        assert cache.get_stale("k", 600) is None

    @pytest.mark.asyncio
    async def test_shadow_is_bounded(self, clock, fresh_metrics) -> None:
        cache = _layer(MemoryBackingStore(), clock, fresh_metrics, max_shadow_entries=2)
        for key in ("a", "b", "c"):
            await cache.set(key, key, 60)
        assert cache.get_stale("a", 1000) is None
        assert cache.get_stale("c", 1000) is not None


# ─── Circuit breaker ─────────────────────────────────────────────────

class TestCircuitBreaker:
    def test_opens_after_threshold(self, clock) -> None:
        breaker = CircuitBreaker(failure_threshold=3, cooldown_secs=30, clock=clock)
        breaker.record_failure("x")
        breaker.record_failure("x")
        assert breaker.state is BreakerState.CLOSED
        breaker.record_failure("x")
        assert breaker.state is BreakerState.OPEN
        assert breaker.allow() is False

    def test_success_resets_failure_count(self, clock) -> None:
        breaker = CircuitBreaker(failure_threshold=2, clock=clock)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state is BreakerState.CLOSED

    def test_single_probe_in_half_open(self, clock) -> None:
        breaker = CircuitBreaker(cooldown_secs=30, clock=clock)
        breaker.record_failure("down")
        clock.advance(29.9)
        assert breaker.allow() is False
        clock.advance(0.1)
        assert breaker.allow() is True
        assert breaker.state is BreakerState.HALF_OPEN
        # Probe still in flight: everyone else is bypassed
        assert breaker.allow() is False

    def test_probe_success_closes(self, clock) -> None:
        breaker = CircuitBreaker(cooldown_secs=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)
        assert breaker.allow()
        breaker.record_success()
        assert breaker.state is BreakerState.CLOSED
        assert breaker.allow() is True

    def test_probe_failure_reopens_and_restarts_cooldown(self, clock) -> None:
        breaker = CircuitBreaker(cooldown_secs=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)
        assert breaker.allow()
        breaker.record_failure("still down")
        assert breaker.state is BreakerState.OPEN
        clock.advance(29)
        assert breaker.allow() is False
        clock.advance(1)
        assert breaker.allow() is True

    def test_transitions_are_published(self, clock) -> None:
        breaker = CircuitBreaker(cooldown_secs=10, clock=clock)
        events: list[BreakerTransition] = []
        unsubscribe = breaker.subscribe(events.append)

        breaker.record_failure("boom")
        clock.advance(10)
        breaker.allow()
        breaker.record_success()

        assert [(e.previous, e.current) for e in events] == [
            (BreakerState.CLOSED, BreakerState.OPEN),
            (BreakerState.OPEN, BreakerState.HALF_OPEN),
            (BreakerState.HALF_OPEN, BreakerState.CLOSED),
        ]
        assert events[0].reason == "boom"

        unsubscribe()
        breaker.record_failure()
        assert len(events) == 3

    def test_listener_error_does_not_propagate(self, clock) -> None:
        breaker = CircuitBreaker(clock=clock)

        def _bad(event: BreakerTransition) -> None:
            raise RuntimeError("listener broke")

        breaker.subscribe(_bad)
        breaker.record_failure()
        assert breaker.state is BreakerState.OPEN


# ─── Cache + breaker ─────────────────────────────────────────────────

class TestCacheBreakerIntegration:
    @pytest.mark.asyncio
    async def test_backend_failure_is_a_miss_not_an_error(self, clock, fresh_metrics) -> None:
        store = FlakyStore()
        cache = _layer(store, clock, fresh_metrics)
        store.fail = True
        assert await cache.get("k") is None
        assert cache.breaker.state is BreakerState.OPEN
        assert fresh_metrics.counter("cache.breaker_open") == 1

    @pytest.mark.asyncio
    async def test_open_breaker_bypasses_store_until_cooldown(self, clock, fresh_metrics) -> None:
        store = FlakyStore()
        cache = _layer(store, clock, fresh_metrics, cooldown_secs=30)
        store.fail = True
        await cache.get("k")
        calls_when_opened = store.calls

        store.fail = False
        await cache.set("k", "v", 60)
        assert await cache.get("k") is None
        await cache.delete("k")
        assert store.calls == calls_when_opened
        assert cache.stats["bypassed"] == 3

        clock.advance(30)
        await cache.set("k", "v", 60)  # probe
        assert store.calls == calls_when_opened + 1
        assert cache.breaker.state is BreakerState.CLOSED
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_failed_probe_keeps_store_bypassed(self, clock, fresh_metrics) -> None:
        store = FlakyStore()
        cache = _layer(store, clock, fresh_metrics, cooldown_secs=30)
        store.fail = True
        await cache.get("k")
        clock.advance(30)
        await cache.get("k")  # probe fails
        assert cache.breaker.state is BreakerState.OPEN
        calls = store.calls
        clock.advance(10)
        await cache.get("k")
        assert store.calls == calls

    @pytest.mark.asyncio
    async def test_writes_while_open_still_feed_stale_shadow(self, clock, fresh_metrics) -> None:
        store = FlakyStore()
        cache = _layer(store, clock, fresh_metrics)
        store.fail = True
        await cache.set("k", "v", 60)
        assert cache.breaker.state is BreakerState.OPEN
        entry = cache.get_stale("k", 120)
        assert entry is not None and entry.value == "v"

    @pytest.mark.asyncio
    async def test_connect_reports_unreachable_store(self, clock, fresh_metrics) -> None:
        store = FlakyStore()
        store.fail = True
        cache = _layer(store, clock, fresh_metrics)
        assert await cache.connect() is False
        assert cache.breaker.state is BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_threshold_above_one(self, clock, fresh_metrics) -> None:
        store = FlakyStore()
        cache = _layer(store, clock, fresh_metrics, failure_threshold=2)
        store.fail = True
        await cache.get("k")
        assert cache.breaker.state is BreakerState.CLOSED
        await cache.get("k")
        assert cache.breaker.state is BreakerState.OPEN


# ─── Backing stores ──────────────────────────────────────────────────

class TestMemoryBackingStore:
    @pytest.mark.asyncio
    async def test_set_get_delete(self) -> None:
        store = MemoryBackingStore()
        await store.set("k", "v", 60)
        assert await store.get("k") == "v"
        await store.delete("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_expired_entries_are_dropped(self) -> None:
        store = MemoryBackingStore()
        await store.set("k", "v", 0)
        assert await store.get("k") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_lru_eviction_under_size_cap(self) -> None:
        store = MemoryBackingStore(max_size_mb=1)
        big = "x" * (600 * 1024)
        await store.set("a", big, 60)
        await store.set("b", big, 60)
        assert await store.get("a") is None
        assert await store.get("b") == big


class TestSQLiteBackingStore:
    @pytest.mark.asyncio
    async def test_round_trip_and_flush(self, tmp_path) -> None:
        store = SQLiteBackingStore(tmp_path / "cache.db")
        await store.connect()
        try:
            await store.set("k", "v", 60)
            assert await store.get("k") == "v"
            await store.flush_all()
            assert await store.get("k") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_survives_reconnect(self, tmp_path) -> None:
        path = tmp_path / "cache.db"
        store = SQLiteBackingStore(path)
        await store.connect()
        await store.set("k", "v", 60)
        await store.close()

        reopened = SQLiteBackingStore(path)
        await reopened.connect()
        try:
            assert await reopened.get("k") == "v"
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_unconnected_store_raises_backend_error(self, tmp_path) -> None:
        store = SQLiteBackingStore(tmp_path / "cache.db")
        with pytest.raises(CacheBackendError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_unconnected_store_opens_breaker(self, tmp_path, clock, fresh_metrics) -> None:
        cache = _layer(SQLiteBackingStore(tmp_path / "cache.db"), clock, fresh_metrics)
        assert await cache.get("k") is None
        assert cache.breaker.state is BreakerState.OPEN
