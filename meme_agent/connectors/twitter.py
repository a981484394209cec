"""Twitter/X content sink.

Posts through the v2 ``POST /2/tweets`` endpoint with a user-context
bearer token.  The sink owns the platform's content rules (length,
hashtag and emoji caps) and the minimum spacing between posts; a post
attempted inside that window is rejected with ExecutionError.
"""

from __future__ import annotations

import itertools
import re
import time
from typing import Callable

import httpx

from meme_agent.connectors.base import PublishReceipt
from meme_agent.connectors.rate_limiter import rate_limiter
from meme_agent.errors import ExecutionError, PostRateLimited
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)

TWITTER_BASE = "https://api.twitter.com"

_HASHTAG_RE = re.compile(r"#\w+")
_EMOJI_RE = re.compile(
    "["
    "\U0001F300-\U0001FAFF"
    "\U00002600-\U000027BF"
    "\U0001F1E6-\U0001F1FF"
    "\U0000FE0F"
    "]"
)
_SPACES_RE = re.compile(r"[ \t]{2,}")


def _keep_first(pattern: re.Pattern[str], text: str, limit: int) -> str:
    seen = 0

    def _sub(match: re.Match[str]) -> str:
        nonlocal seen
        seen += 1
        return match.group(0) if seen <= limit else ""

    return pattern.sub(_sub, text)


def apply_content_rules(
    text: str,
    *,
    max_length: int = 280,
    max_hashtags: int = 0,
    max_emojis: int = 0,
) -> str:
    """Drop hashtags/emojis past their caps and trim to max_length."""
    out = _keep_first(_HASHTAG_RE, text, max_hashtags)
    out = _keep_first(_EMOJI_RE, out, max_emojis)
    out = _SPACES_RE.sub(" ", out).strip()
    if len(out) > max_length:
        out = out[: max_length - 1].rstrip() + "…"
    return out


class TwitterContentSink:
    """ContentSink for Twitter/X."""

    def __init__(
        self,
        access_token: str = "",
        base_url: str = TWITTER_BASE,
        *,
        max_length: int = 280,
        max_hashtags: int = 0,
        max_emojis: int = 0,
        min_interval_secs: float = 300.0,
        mock_mode: bool = False,
        timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._mock = mock_mode
        self._max_length = max_length
        self._max_hashtags = max_hashtags
        self._max_emojis = max_emojis
        self._min_interval = min_interval_secs
        self._clock = clock
        self._last_post_at: float | None = None
        self._mock_ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def seconds_until_allowed(self) -> float:
        if self._last_post_at is None:
            return 0.0
        return max(0.0, self._min_interval - (self._clock() - self._last_post_at))

    async def publish(self, text: str) -> PublishReceipt:
        wait = self.seconds_until_allowed()
        if wait > 0:
            raise PostRateLimited(wait)

        body = apply_content_rules(
            text,
            max_length=self._max_length,
            max_hashtags=self._max_hashtags,
            max_emojis=self._max_emojis,
        )
        if not body:
            raise ExecutionError("Post text is empty after applying content rules")

        if self._mock:
            self._last_post_at = self._clock()
            post_id = f"mock-{next(self._mock_ids)}"
            log.info("twitter.mock_post", post_id=post_id, length=len(body), text=body)
            return PublishReceipt(post_id=post_id, text=body, mocked=True)

        await rate_limiter.get("twitter").acquire()
        try:
            resp = await self._client.post("/2/tweets", json={"text": body})
            resp.raise_for_status()
            data = resp.json().get("data") or {}
        except httpx.HTTPStatusError as e:
            raise ExecutionError(f"Twitter rejected post: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExecutionError(f"Twitter request failed: {e}") from e

        post_id = str(data.get("id", ""))
        if not post_id:
            raise ExecutionError("Twitter response had no post id")
        self._last_post_at = self._clock()
        log.info("twitter.posted", post_id=post_id, length=len(body))
        return PublishReceipt(post_id=post_id, text=body)
