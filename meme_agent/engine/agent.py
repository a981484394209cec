"""Agent: wires the cycle pipeline, the mode machine and the command surface.

One cycle is strictly ordered:
  1. Aggregator      -> MarketSnapshot (cache first, degraded fallback)
  2. DecisionEngine  -> Decision (pure)
  3. Epoch check     -> a superseded cycle stops here
  4. ActionExecutor  -> ActionResult (retried, never raises)

Cycle outcomes delivered by the scheduler land in a bounded history.
"""

from __future__ import annotations

import itertools
import os
import time
from collections import deque
from typing import Any, Callable

from meme_agent.config import AgentConfig, is_live_trading_enabled
from meme_agent.connectors.dexscreener import DexScreenerSource
from meme_agent.connectors.jupiter import JupiterTradeSink, PaperTradeSink, TransactionSigner
from meme_agent.connectors.twitter import TwitterContentSink
from meme_agent.content.generator import LLMContentGenerator, TemplateContentGenerator
from meme_agent.engine.aggregator import MarketDataAggregator
from meme_agent.engine.decision import DecisionEngine, assess_risk, numeric_confidence
from meme_agent.engine.models import (
    Action,
    ActionResult,
    ActionStatus,
    CycleResult,
    Decision,
    ErrorKind,
    MarketSnapshot,
)
from meme_agent.engine.modes import Command, CommandResponse, Mode, ModeController, ModeSpec
from meme_agent.engine.scheduler import CycleToken, Scheduler
from meme_agent.errors import DataUnavailable
from meme_agent.execution.executor import ActionExecutor
from meme_agent.execution.retry import RetryPolicy
from meme_agent.observability.logger import get_logger
from meme_agent.observability.metrics import MetricsCollector, metrics as default_metrics
from meme_agent.storage.backing import CacheBackingStore, MemoryBackingStore, SQLiteBackingStore
from meme_agent.storage.cache import CacheLayer, CircuitBreaker

log = get_logger(__name__)


def format_snapshot(s: MarketSnapshot) -> str:
    lines = [
        f"{s.symbol} market data" + (" (delayed)" if s.degraded else ""),
        f"  Price:        ${s.price:,.8g}",
        f"  24h change:   {s.price_change_24h:+.2f}%",
        f"  24h volume:   ${s.volume_24h:,.0f}",
        f"  Liquidity:    ${s.liquidity_usd:,.0f}",
        f"  Market cap:   ${s.market_cap:,.0f}",
        f"  Volatility:   {s.volatility.current:.2%} (avg {s.volatility.average:.2%})",
        f"  Confidence:   {s.confidence_level.value}",
    ]
    return "\n".join(lines)


def format_decision(d: Decision) -> str:
    lines = [f"{d.symbol}: {d.action.value} (confidence {d.confidence:.2f}, risk {d.risk_level.value})"]
    lines.extend(f"  - {r}" for r in d.reasons)
    return "\n".join(lines)


class Agent:
    def __init__(
        self,
        config: AgentConfig,
        *,
        aggregator: MarketDataAggregator,
        executor: ActionExecutor,
        cache: CacheLayer | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
        metrics: MetricsCollector | None = None,
        closeables: list[Any] | None = None,
    ):
        self.config = config
        self._aggregator = aggregator
        self._executor = executor
        self._cache = cache
        self._engine = DecisionEngine(config)
        self._scheduler = scheduler or Scheduler(metrics=metrics)
        self._clock = clock
        self._metrics = metrics or default_metrics
        self._closeables = closeables or []
        self._history: deque[CycleResult] = deque(maxlen=config.engine.history_size)
        self._cycle_seq = itertools.count(1)
        self._last_post_at: float | None = None

        self.modes = ModeController(
            self._scheduler,
            interval_secs=config.engine.cycle_interval_ms / 1000.0,
            cycle_fn=self.run_cycle,
            on_result=self._record,
        )
        self._install_commands()

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def cycle_history(self) -> list[CycleResult]:
        return list(self._history)

    # ── lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._cache is not None:
            connected = await self._cache.connect()
            if not connected:
                log.warning("agent.cache_unavailable", breaker=self._cache.breaker.state.value)
        log.info(
            "agent.started",
            symbol=self.config.trading.symbol,
            dry_run=self.config.execution.dry_run,
            live_trading=is_live_trading_enabled(),
        )

    async def close(self) -> None:
        if self.modes.mode is not Mode.IDLE:
            self.modes.stop()
        await self._scheduler.stop()
        await self._scheduler.wait_idle()
        for resource in self._closeables:
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                log.warning("agent.close_error", resource=type(resource).__name__, error=str(e))
        if self._cache is not None:
            await self._cache.close()
        log.info("agent.closed")

    # ── cycle ────────────────────────────────────────────────────────

    def post_due(self) -> bool:
        interval = self.config.engine.post_interval_secs
        if interval <= 0:
            return False
        if self._last_post_at is None:
            return True
        return self._clock() - self._last_post_at >= interval

    async def run_cycle(self, token: CycleToken | None = None, symbol: str | None = None) -> CycleResult:
        epoch = self._scheduler.epoch
        if token is None:
            token = CycleToken(epoch=epoch.current)
        symbol = self.normalize_symbol(symbol or self.config.trading.symbol)
        cycle = CycleResult(
            cycle_id=next(self._cycle_seq),
            epoch=token.epoch,
            symbol=symbol,
            started_at=self._clock(),
        )

        try:
            snapshot = await self._aggregator.get_snapshot(symbol)
        except DataUnavailable as e:
            cycle.errors.append(str(e))
            cycle.result = ActionResult(
                status=ActionStatus.SKIPPED,
                error=ErrorKind.DATA_UNAVAILABLE,
                detail=str(e),
            )
            return cycle.finish("skipped")
        cycle.snapshot = snapshot

        decision = self._engine.decide(snapshot, post_due=self.post_due())
        cycle.decision = decision

        if not epoch.is_current(token):
            cycle.result = ActionResult(
                status=ActionStatus.SKIPPED,
                error=ErrorKind.STALE_CYCLE,
                detail="cycle superseded before execution",
            )
            log.info("agent.cycle_superseded", cycle_id=cycle.cycle_id, epoch=token.epoch)
            return cycle.finish("stale")

        result = await self._executor.execute(
            decision, snapshot, is_current=lambda: epoch.is_current(token),
        )
        cycle.result = result
        if result.error is ErrorKind.STALE_CYCLE:
            log.info("agent.cycle_superseded", cycle_id=cycle.cycle_id, epoch=token.epoch)
            return cycle.finish("stale")
        if decision.action is Action.POST and result.status is ActionStatus.SUCCESS:
            self._last_post_at = self._clock()
        if result.status is ActionStatus.FAILED:
            cycle.errors.append(result.detail)
            return cycle.finish("failed")
        return cycle.finish("completed")

    def _record(self, cycle: CycleResult) -> None:
        self._history.append(cycle)
        self._metrics.incr(f"agent.cycles_{cycle.status}")
        self._metrics.histogram("agent.cycle_duration_secs", cycle.duration_secs)
        log.info(
            "agent.cycle_complete",
            cycle_id=cycle.cycle_id,
            epoch=cycle.epoch,
            symbol=cycle.symbol,
            status=cycle.status,
            action=cycle.decision.action.value if cycle.decision else None,
            result=cycle.result.status.value if cycle.result else None,
            duration_secs=cycle.duration_secs,
        )

    # ── commands ─────────────────────────────────────────────────────

    def normalize_symbol(self, raw: str) -> str:
        s = raw.strip().lstrip("$")
        return s.upper() if s.upper() in self.config.trading.tokens else s

    def _symbol_arg(self, args: list[str]) -> str:
        return self.normalize_symbol(args[0] if args else self.config.trading.symbol)

    def _install_commands(self) -> None:
        chat = ModeSpec(welcome=(
            "Chat mode. Commands: market <symbol>, analyze <symbol>, post <symbol>, help."
        ))
        chat.add(Command("market", self._cmd_market, "Show current market data", "market <symbol>"))
        chat.add(Command("analyze", self._cmd_analyze, "Show the decision for a symbol", "analyze <symbol>"))
        chat.add(Command("post", self._cmd_post, "Publish a market update post", "post <symbol>"))
        chat.add(Command("help", self._cmd_help, "List commands", "help"))

        auto = ModeSpec(welcome=(
            "Auto mode. The agent runs on its own. Commands: pause, resume, status, help."
        ))
        auto.add(Command("pause", self._cmd_pause, "Pause the autonomous loop", "pause"))
        auto.add(Command("resume", self._cmd_resume, "Resume the autonomous loop", "resume"))
        auto.add(Command("status", self._cmd_status, "Show loop, cache and cycle status", "status"))
        auto.add(Command("help", self._cmd_help, "List commands", "help"))

        self.modes.set_spec(Mode.CHAT, chat)
        self.modes.set_spec(Mode.AUTO, auto)

    async def _cmd_market(self, args: list[str]) -> CommandResponse:
        snapshot = await self._aggregator.get_snapshot(self._symbol_arg(args))
        return CommandResponse(ok=True, message=format_snapshot(snapshot), data=snapshot.to_dict())

    async def _cmd_analyze(self, args: list[str]) -> CommandResponse:
        snapshot = await self._aggregator.get_snapshot(self._symbol_arg(args))
        decision = self._engine.decide(snapshot)
        return CommandResponse(
            ok=True,
            message=format_decision(decision),
            data={"snapshot": snapshot.to_dict(), "decision": decision.to_dict()},
        )

    async def _cmd_post(self, args: list[str]) -> CommandResponse:
        snapshot = await self._aggregator.get_snapshot(self._symbol_arg(args))
        risk, risk_reason = assess_risk(
            snapshot.volume_24h,
            snapshot.liquidity_usd,
            self.config.decision.thresholds,
            self.config.decision.max_turnover_ratio,
        )
        decision = Decision(
            action=Action.POST,
            confidence=numeric_confidence(snapshot, self.config.decision),
            risk_level=risk,
            reasons=("requested by user", risk_reason),
            symbol=snapshot.symbol,
            momentum=snapshot.price_change_24h,
        )
        result = await self._executor.execute(decision, snapshot)
        if result.status is not ActionStatus.SUCCESS:
            return CommandResponse(ok=False, message=f"Post failed: {result.detail}", data=result.to_dict())
        self._last_post_at = self._clock()
        return CommandResponse(ok=True, message=f"Posted ({result.reference}):\n{result.detail}", data=result.to_dict())

    async def _cmd_help(self, args: list[str]) -> CommandResponse:
        commands = self.modes.commands()
        lines = [f"{c.usage or c.name:<20} {c.help}" for c in commands.values()]
        return CommandResponse(ok=True, message="\n".join(lines), data={"commands": sorted(commands)})

    async def _cmd_pause(self, args: list[str]) -> CommandResponse:
        self.modes.pause()
        return CommandResponse(ok=True, message="Autonomous loop paused.")

    async def _cmd_resume(self, args: list[str]) -> CommandResponse:
        self.modes.resume()
        return CommandResponse(ok=True, message="Autonomous loop resumed.")

    async def _cmd_status(self, args: list[str]) -> CommandResponse:
        status = self.get_status()
        last = status["last_cycle"]
        lines = [
            f"Mode: {status['mode']}" + (" (paused)" if status["paused"] else ""),
            f"Epoch: {status['scheduler']['epoch']}  cycles recorded: {status['cycles_recorded']}",
        ]
        if last:
            action = (last.get("decision") or {}).get("action", "-")
            lines.append(f"Last cycle #{last['cycle_id']}: {last['status']} ({action})")
        if status["cache"]:
            lines.append(f"Cache: {status['cache']['breaker']}, hit rate {status['cache']['hit_rate']:.0%}")
        return CommandResponse(ok=True, message="\n".join(lines), data=status)

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": self.modes.mode.value,
            "paused": self.modes.paused,
            "scheduler": self._scheduler.stats,
            "cycle_in_flight": self._scheduler.in_flight,
            "cycles_recorded": len(self._history),
            "last_cycle": self._history[-1].to_dict() if self._history else None,
            "cache": self._cache.stats if self._cache is not None else None,
            "recent_cycle_secs": [p.value for p in self._metrics.recent("agent.cycle_duration_secs", 10)],
            "metrics": self._metrics.counters(),
        }


# ── Construction ─────────────────────────────────────────────────────

def build_backing_store(config: AgentConfig) -> CacheBackingStore:
    if config.cache.backend == "sqlite":
        return SQLiteBackingStore(config.cache.sqlite_path)
    return MemoryBackingStore(max_size_mb=config.cache.max_size_mb)


def build_agent(
    config: AgentConfig,
    *,
    environ: dict[str, str] | None = None,
    signer: TransactionSigner | None = None,
) -> Agent:
    """Assemble an Agent with the concrete collaborators named in config."""
    env = dict(os.environ) if environ is None else environ
    c = config

    cache = CacheLayer(
        build_backing_store(c),
        breaker=CircuitBreaker(
            failure_threshold=c.cache.breaker_failure_threshold,
            cooldown_secs=c.cache.breaker_cooldown_secs,
        ),
        key_prefix=c.cache.key_prefix,
    )
    source = DexScreenerSource(
        tokens=c.trading.tokens,
        base_url=c.connectors.dexscreener_base_url,
        timeout=c.connectors.timeout_secs,
    )
    aggregator = MarketDataAggregator(
        source,
        cache,
        thresholds=c.decision.thresholds,
        ttl_secs=c.cache.ttl_secs,
        max_staleness_secs=c.cache.staleness_ceiling_secs,
    )

    trade_sink: PaperTradeSink | JupiterTradeSink
    if c.execution.dry_run:
        trade_sink = PaperTradeSink()
    else:
        trade_sink = JupiterTradeSink(
            tokens=c.trading.tokens,
            base_url=c.connectors.jupiter_base_url,
            signer=signer,
            live=is_live_trading_enabled(),
            timeout=c.connectors.timeout_secs,
        )

    content_sink = TwitterContentSink(
        access_token=env.get("TWITTER_ACCESS_TOKEN", ""),
        base_url=c.connectors.twitter_base_url,
        max_length=c.content.max_length,
        max_hashtags=c.content.max_hashtags,
        max_emojis=c.content.max_emojis,
        min_interval_secs=c.content.min_interval_secs,
        mock_mode=c.content.mock_mode,
        timeout=c.connectors.timeout_secs,
    )

    generator: TemplateContentGenerator | LLMContentGenerator
    if c.content.generator == "llm":
        generator = LLMContentGenerator(
            api_key=env.get("GROQ_API_KEY"),
            model=c.content.llm_model,
            base_url=c.content.llm_base_url,
            temperature=c.content.llm_temperature,
            max_tokens=c.content.llm_max_tokens,
            max_length=c.content.max_length,
        )
    else:
        generator = TemplateContentGenerator(max_length=c.content.max_length)

    executor = ActionExecutor(
        trade_sink,
        content_sink,
        generator,
        trading=c.trading,
        policy=RetryPolicy.from_ms(c.execution.max_retries, c.execution.retry_base_delay_ms),
    )
    return Agent(
        c,
        aggregator=aggregator,
        executor=executor,
        cache=cache,
        closeables=[source, trade_sink, content_sink],
    )
