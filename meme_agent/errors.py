"""Exception taxonomy for the agent.

Per-cycle errors (fetch, cache, data, execution) are contained to the
cycle that raised them.  Only FatalConfigError is allowed to abort the
process, and only during startup.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent errors."""


class TransientFetchError(AgentError):
    """Upstream market-data call failed (network hiccup, 5xx, bad payload)."""


class CacheBackendError(AgentError):
    """The cache backing store is unreachable or rejected the call."""


class DataUnavailable(AgentError):
    """No fresh or acceptably-stale snapshot exists for a symbol."""

    def __init__(self, symbol: str, reason: str = ""):
        self.symbol = symbol
        self.reason = reason
        msg = f"No market data available for {symbol}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class ExecutionError(AgentError):
    """A trade or content sink rejected the action."""


class PostRateLimited(ExecutionError):
    """The content sink's minimum post interval has not elapsed yet."""

    def __init__(self, wait_secs: float):
        self.wait_secs = wait_secs
        super().__init__(f"Post rate limit: next post allowed in {wait_secs:.0f}s")


class FatalConfigError(AgentError):
    """Missing or invalid configuration at startup."""


class ModeTransitionError(AgentError):
    """Requested mode transition is not allowed from the current mode."""
