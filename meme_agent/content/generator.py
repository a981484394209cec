"""Post text generation.

TemplateContentGenerator renders a fixed market-update template and is
always available.  LLMContentGenerator asks an OpenAI-compatible chat
endpoint (Groq by default) for the text and falls back to the template
when the call fails or returns nothing.
"""

from __future__ import annotations

from typing import Any

from openai import AsyncOpenAI

from meme_agent.connectors.rate_limiter import rate_limiter
from meme_agent.engine.models import MarketSnapshot
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)


def _compact_usd(value: float) -> str:
    if value >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    if value >= 1_000:
        return f"${value / 1_000:.1f}K"
    return f"${value:,.2f}"


def _price(value: float) -> str:
    if value == 0:
        return "$0"
    if value < 0.01:
        return f"${value:.8f}".rstrip("0")
    return f"${value:,.4f}"


class TemplateContentGenerator:
    """Deterministic market update post."""

    def __init__(self, max_length: int = 280):
        self._max_length = max_length

    def render(self, snapshot: MarketSnapshot) -> str:
        direction = "up" if snapshot.price_change_24h > 0 else (
            "down" if snapshot.price_change_24h < 0 else "flat"
        )
        lines = [
            f"${snapshot.symbol} market update",
            f"Price: {_price(snapshot.price)} ({snapshot.price_change_24h:+.2f}% 24h, {direction})",
            f"24h volume: {_compact_usd(snapshot.volume_24h)}",
            f"Liquidity: {_compact_usd(snapshot.liquidity_usd)}",
        ]
        if snapshot.market_cap > 0:
            lines.append(f"Market cap: {_compact_usd(snapshot.market_cap)}")
        lines.append(f"Signal confidence: {snapshot.confidence_level.value}")
        if snapshot.degraded:
            lines.append("(delayed data)")
        return "\n".join(lines)[: self._max_length]

    async def generate(self, snapshot: MarketSnapshot) -> str:
        return self.render(snapshot)


_SYSTEM_PROMPT = (
    "You write short, factual social posts about a Solana meme token. "
    "Use only the numbers you are given. No financial advice. "
    "No hashtags, no emojis."
)

_USER_PROMPT = """Write one post about ${symbol} using these market metrics.

Price (USD): {price}
24h change: {change:+.2f}%
24h volume (USD): {volume:,.0f}
Liquidity (USD): {liquidity:,.0f}
Market cap (USD): {market_cap:,.0f}
Signal confidence: {confidence}

Max length: {max_length} characters. Return only the post text."""


class LLMContentGenerator:
    """Chat-completions post writer with template fallback."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = "llama-3.3-70b-versatile",
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 100,
        max_length: int = 280,
        client: Any | None = None,
    ):
        self._llm = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._max_length = max_length
        self._fallback = TemplateContentGenerator(max_length=max_length)

    async def generate(self, snapshot: MarketSnapshot) -> str:
        prompt = _USER_PROMPT.format(
            symbol=snapshot.symbol,
            price=snapshot.price,
            change=snapshot.price_change_24h,
            volume=snapshot.volume_24h,
            liquidity=snapshot.liquidity_usd,
            market_cap=snapshot.market_cap,
            confidence=snapshot.confidence_level.value,
            max_length=self._max_length,
        )
        try:
            await rate_limiter.get("llm").acquire()
            resp = await self._llm.chat.completions.create(
                model=self._model,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
            text = (resp.choices[0].message.content or "").strip().strip('"')
        except Exception as e:
            log.warning("content.llm_failed", symbol=snapshot.symbol, error=str(e))
            return self._fallback.render(snapshot)

        if not text:
            log.warning("content.llm_empty", symbol=snapshot.symbol)
            return self._fallback.render(snapshot)
        return text[: self._max_length]
