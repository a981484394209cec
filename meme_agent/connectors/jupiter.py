"""Jupiter aggregator trade sink (Solana swaps).

Flow for one trade: GET /quote -> POST /swap -> sign and send.  Signing
is delegated to an injected TransactionSigner; without one (or with live
trading disabled) the sink stops after the quote and returns a simulated
receipt.  PaperTradeSink never touches the network.
"""

from __future__ import annotations

import itertools
import time
from collections import deque
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meme_agent.connectors.base import TradeReceipt
from meme_agent.connectors.rate_limiter import rate_limiter
from meme_agent.errors import ExecutionError
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)

JUPITER_BASE = "https://quote-api.jup.ag/v6"

MAX_TRADE_AMOUNT = 1000.0

# mint -> decimals; anything unknown is treated as a 9-decimal SPL token
_DECIMALS: dict[str, int] = {
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": 6,  # USDC
    "So11111111111111111111111111111111111111112": 9,   # SOL
}


class TransactionSigner(Protocol):
    @property
    def public_key(self) -> str: ...

    async def sign_and_send(self, swap_transaction_b64: str) -> str:
        """Sign the base64 versioned transaction, submit it, return its signature."""
        ...


def to_base_units(amount: float, mint: str) -> int:
    return int(round(amount * 10 ** _DECIMALS.get(mint, 9)))


def validate_amount(amount: float) -> None:
    if amount <= 0:
        raise ExecutionError(f"Invalid trade amount: {amount}")
    if amount > MAX_TRADE_AMOUNT:
        raise ExecutionError(f"Trade amount {amount} exceeds maximum {MAX_TRADE_AMOUNT}")


class JupiterTradeSink:
    """TradeSink backed by the Jupiter v6 swap API."""

    def __init__(
        self,
        tokens: dict[str, str] | None = None,
        base_url: str = JUPITER_BASE,
        signer: TransactionSigner | None = None,
        live: bool = False,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._tokens = {k.upper(): v for k, v in (tokens or {}).items()}
        self._signer = signer
        self._live = live
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def is_live(self) -> bool:
        return self._live and self._signer is not None

    async def close(self) -> None:
        await self._client.aclose()

    def resolve(self, asset: str) -> str:
        return self._tokens.get(asset.upper(), asset)

    async def execute_trade(
        self,
        from_asset: str,
        to_asset: str,
        amount: float,
        slippage_bps: int,
    ) -> TradeReceipt:
        validate_amount(amount)
        input_mint = self.resolve(from_asset)
        output_mint = self.resolve(to_asset)

        try:
            quote = await self._quote(input_mint, output_mint, to_base_units(amount, input_mint), slippage_bps)
        except httpx.HTTPError as e:
            raise ExecutionError(f"Jupiter quote failed: {e}") from e

        log.info(
            "jupiter.quote",
            from_asset=from_asset,
            to_asset=to_asset,
            amount=amount,
            out_amount=quote.get("outAmount"),
            price_impact_pct=quote.get("priceImpactPct"),
            live=self.is_live,
        )

        if not self.is_live:
            return TradeReceipt(
                tx_id=f"sim-{int(time.time() * 1000)}",
                from_asset=from_asset,
                to_asset=to_asset,
                amount=amount,
                simulated=True,
                raw=quote,
            )

        assert self._signer is not None
        try:
            resp = await self._client.post("/swap", json={
                "quoteResponse": quote,
                "userPublicKey": self._signer.public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": "auto",
            })
            resp.raise_for_status()
            swap_tx = resp.json().get("swapTransaction")
        except (httpx.HTTPError, ValueError) as e:
            raise ExecutionError(f"Jupiter swap request failed: {e}") from e
        if not swap_tx:
            raise ExecutionError("Jupiter swap response had no transaction")

        signature = await self._signer.sign_and_send(swap_tx)
        log.info("jupiter.swap_sent", signature=signature, from_asset=from_asset, to_asset=to_asset)
        return TradeReceipt(
            tx_id=signature,
            from_asset=from_asset,
            to_asset=to_asset,
            amount=amount,
            raw=quote,
        )

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> dict[str, Any]:
        await rate_limiter.get("jupiter").acquire()
        resp = await self._client.get("/quote", params={
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        })
        resp.raise_for_status()
        return resp.json()


class PaperTradeSink:
    """Simulated fills; every trade succeeds and the latest ``history`` are kept."""

    def __init__(self, history: int = 500) -> None:
        self._seq = itertools.count(1)
        self.trades: deque[TradeReceipt] = deque(maxlen=history)

    async def execute_trade(
        self,
        from_asset: str,
        to_asset: str,
        amount: float,
        slippage_bps: int,
    ) -> TradeReceipt:
        validate_amount(amount)
        receipt = TradeReceipt(
            tx_id=f"paper-{next(self._seq)}",
            from_asset=from_asset,
            to_asset=to_asset,
            amount=amount,
            simulated=True,
        )
        self.trades.append(receipt)
        log.info("paper_trade.filled", tx_id=receipt.tx_id, from_asset=from_asset,
                 to_asset=to_asset, amount=amount, slippage_bps=slippage_bps)
        return receipt
