"""Market data aggregator: cache-first snapshot assembly.

Flow for one symbol:
  1. Cache lookup under ``marketData:<symbol>``; a hit is returned as-is.
  2. On miss, trade and liquidity data are fetched concurrently.
  3. Numbers are sanitized, confidence level and volatility derived.
  4. The snapshot is cached for the TTL and returned.
  5. If the upstream fetch fails, the last stored snapshot (bounded by
     the staleness ceiling) is returned flagged ``degraded``; with no
     such snapshot the call raises DataUnavailable.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from typing import Any, Callable

from meme_agent.config import ThresholdsConfig
from meme_agent.connectors.base import MarketDataSource
from meme_agent.engine.models import ConfidenceLevel, MarketSnapshot, Volatility
from meme_agent.errors import DataUnavailable
from meme_agent.observability.logger import get_logger
from meme_agent.observability.metrics import MetricsCollector, metrics as default_metrics
from meme_agent.storage.cache import CacheLayer

log = get_logger(__name__)

EMA_SMOOTHING = 0.2


def cache_key(symbol: str) -> str:
    return f"marketData:{symbol}"


def _finite(value: Any) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0.0
    return f if math.isfinite(f) else 0.0


def _non_negative(value: Any) -> float:
    return max(0.0, _finite(value))


def classify_confidence(
    volume_24h: float,
    liquidity_usd: float,
    thresholds: ThresholdsConfig | None = None,
) -> ConfidenceLevel:
    t = thresholds or ThresholdsConfig()
    if volume_24h > t.high_volume and liquidity_usd > t.high_liquidity:
        return ConfidenceLevel.HIGH
    if volume_24h > t.medium_volume and liquidity_usd > t.medium_liquidity:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class MarketDataAggregator:
    """Builds MarketSnapshots from a MarketDataSource through the cache."""

    def __init__(
        self,
        source: MarketDataSource,
        cache: CacheLayer,
        *,
        thresholds: ThresholdsConfig | None = None,
        ttl_secs: float = 300,
        max_staleness_secs: float | None = None,
        clock: Callable[[], float] = time.time,
        metrics: MetricsCollector | None = None,
    ):
        self._source = source
        self._cache = cache
        self._thresholds = thresholds or ThresholdsConfig()
        self._ttl = ttl_secs
        self._max_staleness = ttl_secs * 2 if max_staleness_secs is None else max_staleness_secs
        self._clock = clock
        self._metrics = metrics or default_metrics
        self._ema: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get_snapshot(self, symbol: str) -> MarketSnapshot:
        async with self._lock:
            return await self._get_snapshot(symbol)

    async def _get_snapshot(self, symbol: str) -> MarketSnapshot:
        key = cache_key(symbol)

        cached = await self._cache.get(key)
        if cached is not None:
            snapshot = self._decode(cached)
            if snapshot is not None:
                log.debug("aggregator.cache_hit", symbol=symbol)
                return snapshot

        try:
            trade, liquidity = await self._fetch_both(symbol)
        except Exception as e:
            return self._fallback(symbol, key, e)

        snapshot = self._build(
            symbol,
            price=trade.price,
            volume_24h=trade.volume_24h,
            price_change_24h=trade.price_change_24h,
            liquidity_usd=liquidity.liquidity_usd,
            market_cap=liquidity.market_cap,
        )
        await self._cache.set(key, json.dumps(snapshot.to_dict()), self._ttl)
        self._metrics.incr("aggregator.fetched")
        log.info(
            "aggregator.snapshot",
            symbol=symbol,
            price=snapshot.price,
            volume_24h=snapshot.volume_24h,
            liquidity_usd=snapshot.liquidity_usd,
            confidence_level=snapshot.confidence_level.value,
        )
        return snapshot

    async def _fetch_both(self, symbol: str) -> tuple[Any, Any]:
        """Fetch trade and liquidity concurrently; the first failure cancels the other."""
        tasks = (
            asyncio.create_task(self._source.fetch_trade(symbol)),
            asyncio.create_task(self._source.fetch_liquidity(symbol)),
        )
        try:
            trade, liquidity = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            # Wait for the cancellations and retrieve every outcome
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return trade, liquidity

    def _build(
        self,
        symbol: str,
        *,
        price: Any,
        volume_24h: Any,
        price_change_24h: Any,
        liquidity_usd: Any,
        market_cap: Any,
    ) -> MarketSnapshot:
        volume = _non_negative(volume_24h)
        liquidity = _non_negative(liquidity_usd)
        change = _finite(price_change_24h)
        return MarketSnapshot(
            symbol=symbol,
            price=_non_negative(price),
            volume_24h=volume,
            market_cap=_non_negative(market_cap),
            price_change_24h=change,
            liquidity_usd=liquidity,
            confidence_level=classify_confidence(volume, liquidity, self._thresholds),
            volatility=self._volatility(symbol, change),
            captured_at=self._clock(),
        )

    def _volatility(self, symbol: str, price_change_24h: float) -> Volatility:
        current = abs(price_change_24h) / 100.0
        previous = self._ema.get(symbol)
        average = current if previous is None else (
            EMA_SMOOTHING * current + (1 - EMA_SMOOTHING) * previous
        )
        self._ema[symbol] = average
        adjustment = current / average if average > 0 else 1.0
        return Volatility(
            current=round(current, 6),
            average=round(average, 6),
            adjustment_factor=round(adjustment, 4),
        )

    def _fallback(self, symbol: str, key: str, error: Exception) -> MarketSnapshot:
        self._metrics.incr("aggregator.fetch_failures")
        entry = self._cache.get_stale(key, self._max_staleness)
        snapshot = self._decode(entry.value) if entry is not None else None
        if snapshot is None:
            log.warning("aggregator.data_unavailable", symbol=symbol, error=str(error))
            raise DataUnavailable(symbol, str(error)) from error

        self._metrics.incr("aggregator.degraded")
        log.warning(
            "aggregator.degraded",
            symbol=symbol,
            age_secs=round(self._clock() - snapshot.captured_at, 1),
            error=str(error),
        )
        return snapshot.as_degraded()

    def _decode(self, value: str) -> MarketSnapshot | None:
        try:
            return MarketSnapshot.from_dict(json.loads(value))
        except (TypeError, ValueError, KeyError) as e:
            log.warning("aggregator.bad_cache_payload", error=str(e))
            return None
