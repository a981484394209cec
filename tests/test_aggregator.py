"""Tests for MarketDataAggregator: cache-first fetch, sanitizing, degraded fallback."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from meme_agent.config import ThresholdsConfig
from meme_agent.engine.aggregator import MarketDataAggregator, cache_key, classify_confidence
from meme_agent.engine.models import ConfidenceLevel
from meme_agent.errors import DataUnavailable, TransientFetchError
from meme_agent.storage.backing import MemoryBackingStore
from meme_agent.storage.cache import CacheLayer


class FakeSource:
    def __init__(self, **values: Any) -> None:
        self.values = {
            "price": 0.0012,
            "volume_24h": 150_000.0,
            "price_change_24h": 5.0,
            "liquidity_usd": 60_000.0,
            "market_cap": 1_200_000.0,
        }
        self.values.update(values)
        self.fail = False
        self.trade_calls = 0
        self.liquidity_calls = 0
        self.delay = 0.0

    async def fetch_trade(self, symbol: str) -> SimpleNamespace:
        self.trade_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TransientFetchError("upstream 503")
        return SimpleNamespace(
            price=self.values["price"],
            volume_24h=self.values["volume_24h"],
            price_change_24h=self.values["price_change_24h"],
            last_trade_time=None,
        )

    async def fetch_liquidity(self, symbol: str) -> SimpleNamespace:
        self.liquidity_calls += 1
        if self.fail:
            raise TransientFetchError("upstream 503")
        return SimpleNamespace(
            liquidity_usd=self.values["liquidity_usd"],
            market_cap=self.values["market_cap"],
        )


def _aggregator(source, clock, metrics, ttl: float = 300, **kw) -> tuple[MarketDataAggregator, CacheLayer]:
    cache = CacheLayer(MemoryBackingStore(), clock=clock, metrics=metrics)
    agg = MarketDataAggregator(source, cache, ttl_secs=ttl, clock=clock, metrics=metrics, **kw)
    return agg, cache


# ─── Confidence bucketing ────────────────────────────────────────────

class TestClassifyConfidence:
    def test_high(self) -> None:
        assert classify_confidence(150_000, 60_000) is ConfidenceLevel.HIGH

    def test_medium(self) -> None:
        assert classify_confidence(50_000, 20_000) is ConfidenceLevel.MEDIUM

    def test_low(self) -> None:
        assert classify_confidence(5_000, 60_000) is ConfidenceLevel.LOW

    def test_thresholds_are_strict(self) -> None:
        # Exactly on the high cutoffs is not high
        assert classify_confidence(100_000, 50_000) is ConfidenceLevel.MEDIUM
        assert classify_confidence(10_000, 10_000) is ConfidenceLevel.LOW

    def test_needs_both_volume_and_liquidity(self) -> None:
        assert classify_confidence(1_000_000, 20_000) is ConfidenceLevel.MEDIUM

    def test_custom_thresholds(self) -> None:
        t = ThresholdsConfig(high_volume=10, high_liquidity=10, medium_volume=1, medium_liquidity=1)
        assert classify_confidence(11, 11, t) is ConfidenceLevel.HIGH


# ─── Snapshot assembly ───────────────────────────────────────────────

class TestGetSnapshot:
    @pytest.mark.asyncio
    async def test_builds_snapshot_from_both_sources(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, _ = _aggregator(source, clock, fresh_metrics)
        snap = await agg.get_snapshot("ELONA")
        assert snap.symbol == "ELONA"
        assert snap.price == pytest.approx(0.0012)
        assert snap.volume_24h == 150_000
        assert snap.liquidity_usd == 60_000
        assert snap.market_cap == 1_200_000
        assert snap.confidence_level is ConfidenceLevel.HIGH
        assert snap.degraded is False
        assert snap.captured_at == clock()
        assert source.trade_calls == 1 and source.liquidity_calls == 1

    @pytest.mark.asyncio
    async def test_second_call_within_ttl_served_from_cache(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, cache = _aggregator(source, clock, fresh_metrics)
        first = await agg.get_snapshot("ELONA")
        clock.advance(100)
        second = await agg.get_snapshot("ELONA")
        assert source.trade_calls == 1
        assert second == first
        assert await cache.get(cache_key("ELONA")) is not None

    @pytest.mark.asyncio
    async def test_refetches_after_ttl(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, _ = _aggregator(source, clock, fresh_metrics)
        await agg.get_snapshot("ELONA")
        clock.advance(300)
        await agg.get_snapshot("ELONA")
        assert source.trade_calls == 2

    @pytest.mark.asyncio
    async def test_bad_numbers_are_zeroed(self, clock, fresh_metrics) -> None:
        source = FakeSource(
            price=None,
            volume_24h=-10.0,
            price_change_24h="n/a",
            liquidity_usd=float("nan"),
            market_cap="12.5",
        )
        agg, _ = _aggregator(source, clock, fresh_metrics)
        snap = await agg.get_snapshot("ELONA")
        assert snap.price == 0.0
        assert snap.volume_24h == 0.0
        assert snap.price_change_24h == 0.0
        assert snap.liquidity_usd == 0.0
        assert snap.market_cap == 12.5
        assert snap.confidence_level is ConfidenceLevel.LOW

    @pytest.mark.asyncio
    async def test_negative_price_change_is_kept(self, clock, fresh_metrics) -> None:
        agg, _ = _aggregator(FakeSource(price_change_24h=-7.5), clock, fresh_metrics)
        snap = await agg.get_snapshot("ELONA")
        assert snap.price_change_24h == -7.5

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_fetch(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        source.delay = 0.01
        agg, _ = _aggregator(source, clock, fresh_metrics)
        a, b = await asyncio.gather(agg.get_snapshot("ELONA"), agg.get_snapshot("ELONA"))
        assert a == b
        assert source.trade_calls == 1


# ─── Volatility ──────────────────────────────────────────────────────

class TestVolatility:
    @pytest.mark.asyncio
    async def test_first_snapshot_seeds_average(self, clock, fresh_metrics) -> None:
        agg, _ = _aggregator(FakeSource(price_change_24h=10.0), clock, fresh_metrics)
        snap = await agg.get_snapshot("ELONA")
        assert snap.volatility.current == pytest.approx(0.1)
        assert snap.volatility.average == pytest.approx(0.1)
        assert snap.volatility.adjustment_factor == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_moving_average_across_snapshots(self, clock, fresh_metrics) -> None:
        source = FakeSource(price_change_24h=10.0)
        agg, _ = _aggregator(source, clock, fresh_metrics)
        await agg.get_snapshot("ELONA")
        clock.advance(301)
        source.values["price_change_24h"] = -20.0
        snap = await agg.get_snapshot("ELONA")
        # 0.2 * 0.2 + 0.8 * 0.1
        assert snap.volatility.current == pytest.approx(0.2)
        assert snap.volatility.average == pytest.approx(0.12)
        assert snap.volatility.adjustment_factor == pytest.approx(0.2 / 0.12, rel=1e-3)

    @pytest.mark.asyncio
    async def test_flat_market_has_neutral_adjustment(self, clock, fresh_metrics) -> None:
        agg, _ = _aggregator(FakeSource(price_change_24h=0.0), clock, fresh_metrics)
        snap = await agg.get_snapshot("ELONA")
        assert snap.volatility.adjustment_factor == 1.0


# ─── Degraded fallback ───────────────────────────────────────────────

class TestDegradedFallback:
    @pytest.mark.asyncio
    async def test_stale_snapshot_served_when_upstream_down(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, _ = _aggregator(source, clock, fresh_metrics)
        fresh = await agg.get_snapshot("ELONA")

        clock.advance(400)
        source.fail = True
        snap = await agg.get_snapshot("ELONA")
        assert snap.degraded is True
        assert snap.price == fresh.price
        assert snap.captured_at == fresh.captured_at
        assert fresh_metrics.counter("aggregator.degraded") == 1

    @pytest.mark.asyncio
    async def test_too_old_raises_data_unavailable(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, _ = _aggregator(source, clock, fresh_metrics)  # ceiling defaults to 2x TTL
        await agg.get_snapshot("ELONA")
        clock.advance(601)
        source.fail = True
        with pytest.raises(DataUnavailable) as exc:
            await agg.get_snapshot("ELONA")
        assert exc.value.symbol == "ELONA"
        assert "upstream 503" in str(exc.value)

    @pytest.mark.asyncio
    async def test_custom_staleness_ceiling(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, _ = _aggregator(source, clock, fresh_metrics, max_staleness_secs=350)
        await agg.get_snapshot("ELONA")
        clock.advance(360)
        source.fail = True
        with pytest.raises(DataUnavailable):
            await agg.get_snapshot("ELONA")

    @pytest.mark.asyncio
    async def test_no_history_raises_data_unavailable(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        source.fail = True
        agg, _ = _aggregator(source, clock, fresh_metrics)
        with pytest.raises(DataUnavailable):
            await agg.get_snapshot("ELONA")

    @pytest.mark.asyncio
    async def test_failed_fetch_cancels_the_other(self, clock, fresh_metrics) -> None:
        class HangingLiquiditySource(FakeSource):
            def __init__(self) -> None:
                super().__init__()
                self.liquidity_cancelled = False

            async def fetch_trade(self, symbol: str) -> SimpleNamespace:
                raise TransientFetchError("upstream 503")

            async def fetch_liquidity(self, symbol: str) -> SimpleNamespace:
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    self.liquidity_cancelled = True
                    raise
                raise AssertionError("liquidity fetch was never cancelled")

        source = HangingLiquiditySource()
        agg, _ = _aggregator(source, clock, fresh_metrics)
        with pytest.raises(DataUnavailable):
            await asyncio.wait_for(agg.get_snapshot("ELONA"), timeout=5)
        assert source.liquidity_cancelled

    @pytest.mark.asyncio
    async def test_degraded_snapshot_is_not_written_back(self, clock, fresh_metrics) -> None:
        source = FakeSource()
        agg, cache = _aggregator(source, clock, fresh_metrics)
        await agg.get_snapshot("ELONA")
        clock.advance(400)
        source.fail = True
        await agg.get_snapshot("ELONA")
        assert await cache.get(cache_key("ELONA")) is None
