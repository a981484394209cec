"""Bounded linear retry for actions against external sinks.

The delay after attempt *i* is ``base_delay_secs * i``, so the schedule
never shrinks.  Only errors an upstream can plausibly recover from are
retried; anything else fails on the first attempt.

An optional ``is_current`` predicate is checked before every attempt,
including the first; once it turns false no further call is made.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from meme_agent.errors import ExecutionError, PostRateLimited, TransientFetchError
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    ExecutionError,
    TransientFetchError,
    httpx.HTTPError,
)

# Retrying these cannot help within a retry schedule
NON_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (PostRateLimited,)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RETRYABLE_ERRORS) and not isinstance(exc, NON_RETRYABLE_ERRORS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_secs: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_secs < 0:
            raise ValueError("base_delay_secs must be >= 0")

    def delay_after(self, attempt: int) -> float:
        return self.base_delay_secs * attempt

    @classmethod
    def from_ms(cls, max_attempts: int, base_delay_ms: int) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay_secs=base_delay_ms / 1000.0)


@dataclass
class RetryOutcome(Generic[T]):
    value: T | None
    attempts: int
    error: Exception | None = None
    superseded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.superseded


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "action",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    is_current: Callable[[], bool] | None = None,
) -> RetryOutcome[T]:
    """Run ``fn`` under ``policy``. Never raises; the outcome carries the error."""
    attempts = 0

    def _log_failure(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry.attempt_failed",
            label=label,
            attempt=state.attempt_number,
            max_attempts=policy.max_attempts,
            error=str(exc),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_incrementing(start=policy.base_delay_secs, increment=policy.base_delay_secs),
        retry=retry_if_exception(is_retryable),
        after=_log_failure,
        sleep=sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            if is_current is not None and not is_current():
                log.info("retry.superseded", label=label, attempts=attempts)
                return RetryOutcome(value=None, attempts=attempts, superseded=True)
            with attempt:
                attempts = attempt.retry_state.attempt_number
                value = await fn()
    except Exception as e:
        if not is_retryable(e):
            log.warning("retry.not_retryable", label=label, attempt=attempts, error=str(e))
        else:
            log.error("retry.exhausted", label=label, attempts=attempts, error=str(e))
        return RetryOutcome(value=None, attempts=attempts, error=e)

    return RetryOutcome(value=value, attempts=attempts)
