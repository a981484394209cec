"""Contracts for the agent's external collaborators.

The engine only talks to these protocols; concrete clients live in the
sibling modules (DexScreener, Jupiter, Twitter) and tests swap in fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from meme_agent.engine.models import MarketSnapshot


# ── Data Models ──────────────────────────────────────────────────────

class TradeData(BaseModel):
    price: float = 0.0
    volume_24h: float = 0.0
    price_change_24h: float = 0.0  # percent
    last_trade_time: float | None = None


class LiquidityData(BaseModel):
    liquidity_usd: float = 0.0
    market_cap: float = 0.0


class TradeReceipt(BaseModel):
    tx_id: str
    from_asset: str = ""
    to_asset: str = ""
    amount: float = 0.0
    simulated: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)


class PublishReceipt(BaseModel):
    post_id: str
    text: str = ""
    mocked: bool = False


# ── Protocols ────────────────────────────────────────────────────────

class MarketDataSource(Protocol):
    async def fetch_trade(self, symbol: str) -> TradeData: ...

    async def fetch_liquidity(self, symbol: str) -> LiquidityData: ...


class TradeSink(Protocol):
    async def execute_trade(
        self,
        from_asset: str,
        to_asset: str,
        amount: float,
        slippage_bps: int,
    ) -> TradeReceipt: ...


class ContentSink(Protocol):
    async def publish(self, text: str) -> PublishReceipt: ...


class ContentGenerator(Protocol):
    async def generate(self, snapshot: MarketSnapshot) -> str: ...
