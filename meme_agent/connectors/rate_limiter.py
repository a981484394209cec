"""Token-bucket rate limiter for the agent's upstream APIs.

One bucket per upstream (DexScreener, Jupiter, Twitter, LLM provider);
callers ``await rate_limiter.get("dexscreener").acquire()`` before each
request.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass
class BucketConfig:
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "dexscreener": BucketConfig(tokens_per_second=4.0, max_burst=8, name="DexScreener"),
    "jupiter": BucketConfig(tokens_per_second=2.0, max_burst=4, name="Jupiter"),
    # Twitter's posting limits are far lower; the sink enforces its own interval
    "twitter": BucketConfig(tokens_per_second=0.5, max_burst=2, name="Twitter"),
    "llm": BucketConfig(tokens_per_second=1.0, max_burst=3, name="LLM"),
}


class TokenBucket:
    """Thread-safe token bucket."""

    def __init__(self, config: BucketConfig, clock: Callable[[], float] = time.monotonic):
        self._config = config
        self._clock = clock
        self._tokens = float(config.max_burst)
        self._last_refill = clock()
        self._lock = Lock()
        self._granted = 0
        self._waits = 0

    @property
    def config(self) -> BucketConfig:
        return self._config

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + (now - self._last_refill) * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens < 1.0:
                return False
            self._tokens -= 1.0
            self._granted += 1
            return True

    def wait_time(self) -> float:
        """Seconds until the next token is available (0 if one is ready)."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._config.tokens_per_second

    async def acquire(self) -> None:
        while not self.try_acquire():
            self._waits += 1
            await asyncio.sleep(max(self.wait_time(), 0.001))

    @property
    def stats(self) -> dict[str, int]:
        return {"granted": self._granted, "waits": self._waits}


class RateLimiterRegistry:
    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = Lock()

    def get(self, endpoint: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(endpoint)
            if bucket is None:
                config = DEFAULT_LIMITS.get(
                    endpoint,
                    BucketConfig(tokens_per_second=2.0, max_burst=4, name=endpoint),
                )
                bucket = self._buckets[endpoint] = TokenBucket(config)
            return bucket

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        with self._lock:
            self._buckets[endpoint] = TokenBucket(
                BucketConfig(tokens_per_second=tokens_per_second, max_burst=max_burst, name=endpoint)
            )

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {name: bucket.stats for name, bucket in self._buckets.items()}


# Global singleton
rate_limiter = RateLimiterRegistry()
