"""Periodic cycle scheduler with epoch-based stale-result suppression.

  - A ticker task fires every ``interval_secs`` (the first tick is
    immediate).  If the previous cycle is still running the tick is
    skipped, never queued, so at most one cycle is in flight.
  - Each cycle receives a CycleToken carrying the epoch at its start.
    Stopping the scheduler advances the epoch; a cycle that finishes
    after that has its result dropped instead of delivered.
  - A failing cycle is logged and counted; the ticker keeps going.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from meme_agent.observability.logger import get_logger
from meme_agent.observability.metrics import MetricsCollector, metrics as default_metrics

log = get_logger(__name__)


@dataclass(frozen=True)
class CycleToken:
    epoch: int
    cycle_id: int = 0


class EpochCounter:
    """Monotonic counter; advanced whenever the auto loop starts or stops."""

    def __init__(self, start: int = 0):
        self._value = start

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def is_current(self, token: CycleToken) -> bool:
        return token.epoch == self._value


CycleFn = Callable[[CycleToken], Awaitable[Any]]
ResultFn = Callable[[Any], Any]


class Scheduler:
    def __init__(
        self,
        epoch: EpochCounter | None = None,
        *,
        metrics: MetricsCollector | None = None,
    ):
        self._epoch = epoch or EpochCounter()
        self._metrics = metrics or default_metrics
        self._ticker: asyncio.Task[None] | None = None
        self._cycle: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)
        self._ticks = 0
        self._skipped = 0
        self._discarded = 0
        self._failed = 0

    @property
    def epoch(self) -> EpochCounter:
        return self._epoch

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def in_flight(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    @property
    def stats(self) -> dict[str, int]:
        return {
            "epoch": self._epoch.current,
            "ticks": self._ticks,
            "skipped": self._skipped,
            "discarded": self._discarded,
            "failed": self._failed,
        }

    def start(
        self,
        interval_secs: float,
        cycle_fn: CycleFn,
        *,
        on_result: ResultFn | None = None,
    ) -> None:
        """Start ticking. Must be called from inside a running event loop."""
        if interval_secs <= 0:
            raise ValueError("interval_secs must be > 0")
        if self.running:
            log.warning("scheduler.already_running", epoch=self._epoch.current)
            return
        self._ticker = asyncio.get_running_loop().create_task(
            self._tick_loop(interval_secs, cycle_fn, on_result),
            name="scheduler-ticker",
        )
        self._metrics.gauge("scheduler.running", 1)
        log.info("scheduler.started", interval_secs=interval_secs, epoch=self._epoch.current)

    def cancel(self) -> None:
        """Stop ticking and invalidate any in-flight cycle. Synchronous."""
        ticker, self._ticker = self._ticker, None
        if ticker is not None and not ticker.done():
            ticker.cancel()
        epoch = self._epoch.advance()
        self._metrics.gauge("scheduler.running", 0)
        self._metrics.gauge("scheduler.epoch", epoch)
        log.info("scheduler.stopped", epoch=epoch, cycle_in_flight=self.in_flight)

    async def stop(self) -> None:
        ticker = self._ticker
        self.cancel()
        if ticker is not None:
            with suppress(asyncio.CancelledError):
                await ticker

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        cycle = self._cycle
        if cycle is not None and not cycle.done():
            with suppress(asyncio.CancelledError):
                await cycle

    async def _tick_loop(self, interval: float, cycle_fn: CycleFn, on_result: ResultFn | None) -> None:
        while True:
            self._tick(cycle_fn, on_result)
            await asyncio.sleep(interval)

    def _tick(self, cycle_fn: CycleFn, on_result: ResultFn | None) -> None:
        self._ticks += 1
        if self.in_flight:
            self._skipped += 1
            self._metrics.incr("scheduler.ticks_skipped")
            log.info("scheduler.tick_skipped", reason="cycle in flight", skipped=self._skipped)
            return
        token = CycleToken(epoch=self._epoch.current, cycle_id=next(self._ids))
        self._cycle = asyncio.get_running_loop().create_task(
            self._run(token, cycle_fn, on_result),
            name=f"cycle-{token.cycle_id}",
        )

    async def _run(self, token: CycleToken, cycle_fn: CycleFn, on_result: ResultFn | None) -> None:
        self._metrics.incr("scheduler.cycles")
        try:
            result = await cycle_fn(token)
        except Exception as e:
            self._failed += 1
            self._metrics.incr("scheduler.cycle_errors")
            log.error("scheduler.cycle_failed", cycle_id=token.cycle_id, epoch=token.epoch, error=str(e))
            return

        if not self._epoch.is_current(token):
            self._discarded += 1
            self._metrics.incr("scheduler.stale_results")
            log.info(
                "scheduler.stale_result_discarded",
                cycle_id=token.cycle_id,
                cycle_epoch=token.epoch,
                current_epoch=self._epoch.current,
            )
            return

        if on_result is None:
            return
        try:
            delivered = on_result(result)
            if inspect.isawaitable(delivered):
                await delivered
        except Exception as e:
            log.error("scheduler.on_result_failed", cycle_id=token.cycle_id, error=str(e))
