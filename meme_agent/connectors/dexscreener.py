"""DexScreener market-data connector.

DexScreener's public token endpoint lists every DEX pair for a mint.  We
take the most liquid pair and read price, 24h volume, 24h price change,
liquidity and market cap from it.  Trade and liquidity lookups for the
same symbol share one HTTP request.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meme_agent.connectors.base import LiquidityData, TradeData
from meme_agent.connectors.rate_limiter import rate_limiter
from meme_agent.errors import TransientFetchError
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)

DEXSCREENER_BASE = "https://api.dexscreener.com"


def _num(value: Any) -> float:
    """Parse a numeric field; missing or unparseable becomes 0."""
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def pick_best_pair(pairs: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Most liquid pair, or None if the list is empty."""
    if not pairs:
        return None
    return max(pairs, key=lambda p: _num((p.get("liquidity") or {}).get("usd")))


def parse_trade(pair: dict[str, Any]) -> TradeData:
    created = pair.get("pairCreatedAt")
    return TradeData(
        price=_num(pair.get("priceUsd")),
        volume_24h=_num((pair.get("volume") or {}).get("h24")),
        price_change_24h=_num((pair.get("priceChange") or {}).get("h24")),
        last_trade_time=_num(created) / 1000.0 if created else None,
    )


def parse_liquidity(pair: dict[str, Any]) -> LiquidityData:
    return LiquidityData(
        liquidity_usd=_num((pair.get("liquidity") or {}).get("usd")),
        market_cap=_num(pair.get("marketCap") or pair.get("fdv")),
    )


class DexScreenerSource:
    """MarketDataSource backed by the DexScreener REST API."""

    def __init__(
        self,
        tokens: dict[str, str] | None = None,
        base_url: str = DEXSCREENER_BASE,
        timeout: float = 15.0,
        reuse_window_secs: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._tokens = {k.upper(): v for k, v in (tokens or {}).items()}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._reuse_window = reuse_window_secs
        self._recent: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        await self._client.aclose()

    def resolve(self, symbol: str) -> str:
        return self._tokens.get(symbol.upper(), symbol)

    async def fetch_trade(self, symbol: str) -> TradeData:
        return parse_trade(await self._pair(symbol))

    async def fetch_liquidity(self, symbol: str) -> LiquidityData:
        return parse_liquidity(await self._pair(symbol))

    async def _pair(self, symbol: str) -> dict[str, Any]:
        mint = self.resolve(symbol)
        async with self._lock:
            cached = self._recent.get(mint)
            if cached and time.monotonic() - cached[0] < self._reuse_window:
                return cached[1]
            try:
                data = await self._get(f"/latest/dex/tokens/{mint}")
            except httpx.HTTPError as e:
                raise TransientFetchError(f"DexScreener request failed for {symbol}: {e}") from e
            except ValueError as e:
                raise TransientFetchError(f"DexScreener returned bad JSON for {symbol}") from e

            pairs = data.get("pairs") if isinstance(data, dict) else None
            pair = pick_best_pair(pairs or [])
            if pair is None:
                raise TransientFetchError(f"DexScreener has no pairs for {symbol}")
            self._recent[mint] = (time.monotonic(), pair)
            log.debug(
                "dexscreener.pair_fetched",
                symbol=symbol,
                dex=pair.get("dexId", ""),
                pairs=len(pairs or []),
            )
            return pair

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, path: str) -> Any:
        await rate_limiter.get("dexscreener").acquire()
        resp = await self._client.get(path)
        resp.raise_for_status()
        return resp.json()
