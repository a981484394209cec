"""Action executor: turns a Decision into a trade or a post.

  HOLD -> SKIPPED, no sink is contacted
  BUY  -> quote asset -> symbol
  SELL -> symbol -> quote asset
  POST -> generate text, publish

Trades size at ``base_amount * confidence``.  Every sink call runs under
the retry policy; the executor itself never raises.  When the caller
passes ``is_current``, it is re-checked before each sink attempt and a
false answer ends the action as SKIPPED without touching the sink again.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from meme_agent.config import TradingConfig
from meme_agent.connectors.base import ContentGenerator, ContentSink, TradeSink
from meme_agent.engine.models import (
    Action,
    ActionResult,
    ActionStatus,
    Decision,
    ErrorKind,
    MarketSnapshot,
)
from meme_agent.execution.retry import RetryPolicy, run_with_retry
from meme_agent.observability.logger import get_logger
from meme_agent.observability.metrics import MetricsCollector, metrics as default_metrics

log = get_logger(__name__)


def trade_amount(base_amount: float, confidence: float) -> float:
    return base_amount * confidence


def _superseded(attempts: int) -> ActionResult:
    return ActionResult(
        status=ActionStatus.SKIPPED,
        attempts=attempts,
        error=ErrorKind.STALE_CYCLE,
        detail="superseded by a mode change",
    )


class ActionExecutor:
    def __init__(
        self,
        trade_sink: TradeSink,
        content_sink: ContentSink,
        generator: ContentGenerator,
        *,
        trading: TradingConfig | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: MetricsCollector | None = None,
    ):
        self._trade_sink = trade_sink
        self._content_sink = content_sink
        self._generator = generator
        self._trading = trading or TradingConfig()
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._metrics = metrics or default_metrics
        self._lock = asyncio.Lock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        decision: Decision,
        snapshot: MarketSnapshot | None = None,
        *,
        is_current: Callable[[], bool] | None = None,
    ) -> ActionResult:
        if decision.action is Action.HOLD:
            self._metrics.incr("executor.skipped")
            return ActionResult(status=ActionStatus.SKIPPED, detail="HOLD")

        async with self._lock:
            if is_current is not None and not is_current():
                result = _superseded(0)
            elif decision.action.is_trade:
                result = await self._trade(decision, is_current)
            else:
                result = await self._post(decision, snapshot, is_current)

        self._metrics.incr(f"executor.{result.status.value.lower()}", action=decision.action.value)
        self._metrics.histogram("executor.attempts", result.attempts)
        log.info(
            "executor.result",
            action=decision.action.value,
            symbol=decision.symbol,
            status=result.status.value,
            attempts=result.attempts,
            reference=result.reference,
            detail=result.detail,
        )
        return result

    async def _trade(self, decision: Decision, is_current: Callable[[], bool] | None) -> ActionResult:
        symbol = decision.symbol or self._trading.symbol
        quote = self._trading.quote_asset
        if decision.action is Action.BUY:
            from_asset, to_asset = quote, symbol
        else:
            from_asset, to_asset = symbol, quote
        amount = trade_amount(self._trading.base_amount, decision.confidence)
        slippage = self._trading.slippage_bps

        outcome = await run_with_retry(
            lambda: self._trade_sink.execute_trade(from_asset, to_asset, amount, slippage),
            self._policy,
            label=f"trade:{decision.action.value}",
            sleep=self._sleep,
            is_current=is_current,
        )
        if outcome.superseded:
            return _superseded(outcome.attempts)
        if not outcome.ok:
            return ActionResult(
                status=ActionStatus.FAILED,
                attempts=outcome.attempts,
                error=ErrorKind.EXECUTION,
                detail=str(outcome.error),
            )
        receipt = outcome.value
        return ActionResult(
            status=ActionStatus.SUCCESS,
            attempts=outcome.attempts,
            detail=f"{decision.action.value} {amount:.6g} {from_asset} -> {to_asset}",
            reference=receipt.tx_id if receipt else "",
        )

    async def _post(
        self,
        decision: Decision,
        snapshot: MarketSnapshot | None,
        is_current: Callable[[], bool] | None,
    ) -> ActionResult:
        if snapshot is None:
            return ActionResult(
                status=ActionStatus.FAILED,
                error=ErrorKind.EXECUTION,
                detail="POST needs a market snapshot",
            )
        try:
            text = await self._generator.generate(snapshot)
        except Exception as e:
            log.error("executor.generate_failed", symbol=snapshot.symbol, error=str(e))
            return ActionResult(
                status=ActionStatus.FAILED,
                error=ErrorKind.EXECUTION,
                detail=f"content generation failed: {e}",
            )

        outcome = await run_with_retry(
            lambda: self._content_sink.publish(text),
            self._policy,
            label="post",
            sleep=self._sleep,
            is_current=is_current,
        )
        if outcome.superseded:
            return _superseded(outcome.attempts)
        if not outcome.ok:
            return ActionResult(
                status=ActionStatus.FAILED,
                attempts=outcome.attempts,
                error=ErrorKind.EXECUTION,
                detail=str(outcome.error),
            )
        receipt = outcome.value
        return ActionResult(
            status=ActionStatus.SUCCESS,
            attempts=outcome.attempts,
            detail=receipt.text if receipt else text,
            reference=receipt.post_id if receipt else "",
        )
