"""TTL cache layer with a circuit breaker over a fallible backing store.

  - Every read checks the entry's own expiry before returning a hit, so a
    backing store that keeps values past their TTL can never serve them.
  - Backing-store failures open the breaker; while open, reads are misses
    and writes are dropped.  Nothing is raised to the caller.
  - A bounded in-process shadow keeps the last value written per key so
    the aggregator can fall back to a stale snapshot when upstream is down.
"""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from meme_agent.observability.logger import get_logger
from meme_agent.observability.metrics import MetricsCollector, metrics as default_metrics
from meme_agent.storage.backing import CacheBackingStore

log = get_logger(__name__)

_BYPASSED = object()


# ── Circuit breaker ──────────────────────────────────────────────────

class BreakerState(str, Enum):
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls bypass the store
    HALF_OPEN = "half_open"  # one probe allowed


@dataclass(frozen=True)
class BreakerTransition:
    previous: BreakerState
    current: BreakerState
    reason: str = ""


class CircuitBreaker:
    """Closed/Open/Half-Open breaker with a single half-open probe.

    After ``failure_threshold`` consecutive failures the breaker opens.
    Once ``cooldown_secs`` have elapsed the next ``allow()`` moves it to
    half-open and lets exactly one probe through; the probe's outcome
    closes or re-opens it (re-opening restarts the cooldown).
    """

    def __init__(
        self,
        failure_threshold: int = 1,
        cooldown_secs: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_secs = cooldown_secs
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._listeners: list[Callable[[BreakerTransition], None]] = []

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def subscribe(self, listener: Callable[[BreakerTransition], None]) -> Callable[[], None]:
        """Register a transition listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def allow(self) -> bool:
        if self._state is BreakerState.CLOSED:
            return True
        if self._state is BreakerState.OPEN:
            if self._clock() - self._opened_at < self.cooldown_secs:
                return False
            self._transition(BreakerState.HALF_OPEN, "cooldown elapsed")
            self._probe_in_flight = True
            return True
        # HALF_OPEN: only the probe already granted may run
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._probe_in_flight = False
        if self._state is not BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED, "probe succeeded")

    def record_failure(self, reason: str = "") -> None:
        self._probe_in_flight = False
        if self._state is BreakerState.HALF_OPEN:
            self._open(f"probe failed: {reason}" if reason else "probe failed")
            return
        self._failures += 1
        if self._state is BreakerState.CLOSED and self._failures >= self.failure_threshold:
            self._open(reason)

    def _open(self, reason: str) -> None:
        self._opened_at = self._clock()
        self._transition(BreakerState.OPEN, reason)

    def _transition(self, new_state: BreakerState, reason: str) -> None:
        event = BreakerTransition(previous=self._state, current=new_state, reason=reason)
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.warning("circuit_breaker.listener_error", error=str(e))


# ── Cache layer ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: str
    expires_at: float
    stored_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age_secs(self, now: float) -> float:
        return max(0.0, now - self.stored_at)


class CacheLayer:
    """Read/write-through TTL cache. Callers treat an open breaker as a miss."""

    def __init__(
        self,
        store: CacheBackingStore,
        *,
        breaker: CircuitBreaker | None = None,
        key_prefix: str = "",
        clock: Callable[[], float] = time.time,
        metrics: MetricsCollector | None = None,
        max_shadow_entries: int = 1000,
    ):
        self._store = store
        self._breaker = breaker or CircuitBreaker()
        self._prefix = key_prefix
        self._clock = clock
        self._metrics = metrics or default_metrics
        self._shadow: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_shadow = max_shadow_entries
        self._hits = 0
        self._misses = 0
        self._bypassed = 0
        self._breaker.subscribe(self._on_breaker_transition)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def connect(self) -> bool:
        """Connect the backing store. Returns False if it is unreachable."""
        result = await self._guarded("connect", self._store.connect)
        connected = result is not _BYPASSED
        if connected:
            log.info("cache.connected", store=type(self._store).__name__)
        return connected

    async def close(self) -> None:
        try:
            await self._store.close()
        except Exception as e:
            log.warning("cache.close_error", error=str(e))

    async def get(self, key: str) -> str | None:
        """Return the cached value, or None on miss, expiry or open breaker."""
        raw = await self._guarded("get", self._store.get, self._k(key))
        if raw is _BYPASSED or raw is None:
            return self._miss()

        entry = self._decode(key, raw)
        if entry is None or entry.is_expired(self._clock()):
            return self._miss()

        self._remember(entry)
        self._hits += 1
        self._metrics.incr("cache.hits")
        return entry.value

    async def set(self, key: str, value: str, ttl_secs: float) -> None:
        now = self._clock()
        entry = CacheEntry(key=key, value=value, expires_at=now + ttl_secs, stored_at=now)
        self._remember(entry)
        payload = json.dumps({"v": value, "exp": entry.expires_at, "ts": now})
        await self._guarded("set", self._store.set, self._k(key), payload, ttl_secs)

    async def delete(self, key: str) -> None:
        self._shadow.pop(key, None)
        await self._guarded("delete", self._store.delete, self._k(key))

    async def flush_all(self) -> None:
        self._shadow.clear()
        await self._guarded("flush_all", self._store.flush_all)

    def get_stale(self, key: str, max_age_secs: float) -> CacheEntry | None:
        """Last value written for key, expired or not, if younger than max_age_secs.

        Only for degraded-mode fallback; ``get`` never returns expired data.
        """
        entry = self._shadow.get(key)
        if entry is None:
            return None
        if entry.age_secs(self._clock()) > max_age_secs:
            return None
        return entry

    @property
    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "bypassed": self._bypassed,
            "hit_rate": round(self._hits / total, 3) if total > 0 else 0.0,
            "breaker": self._breaker.state.value,
            "shadow_entries": len(self._shadow),
        }

    # ── internals ────────────────────────────────────────────────────

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _miss(self) -> None:
        self._misses += 1
        self._metrics.incr("cache.misses")
        return None

    def _remember(self, entry: CacheEntry) -> None:
        self._shadow[entry.key] = entry
        self._shadow.move_to_end(entry.key)
        while len(self._shadow) > self._max_shadow:
            self._shadow.popitem(last=False)

    def _decode(self, key: str, raw: str) -> CacheEntry | None:
        try:
            payload = json.loads(raw)
            return CacheEntry(
                key=key,
                value=payload["v"],
                expires_at=float(payload["exp"]),
                stored_at=float(payload.get("ts", 0.0)),
            )
        except (TypeError, ValueError, KeyError) as e:
            log.warning("cache.corrupt_entry", key=key, error=str(e))
            return None

    async def _guarded(self, op: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        if not self._breaker.allow():
            self._bypassed += 1
            self._metrics.incr("cache.bypassed")
            log.debug("cache.bypassed", op=op, breaker=self._breaker.state.value)
            return _BYPASSED
        try:
            result = await fn(*args)
        except Exception as e:
            # Any store failure counts against the breaker; never propagated.
            self._breaker.record_failure(f"{op}: {e}")
            self._metrics.incr("cache.backend_errors")
            log.warning("cache.backend_error", op=op, error=str(e))
            return _BYPASSED
        self._breaker.record_success()
        return result

    def _on_breaker_transition(self, event: BreakerTransition) -> None:
        self._metrics.incr(f"cache.breaker_{event.current.value}")
        log.warning(
            "cache.breaker_transition",
            previous=event.previous.value,
            current=event.current.value,
            reason=event.reason,
        )
