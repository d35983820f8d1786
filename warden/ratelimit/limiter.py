"""
Fixed-Window Rate Limiting.

Counters live in the shared key/value store and are keyed by identifier and
window start, with `window_start = floor(now / window) * window`. Each
request is counted with a single atomic increment-with-TTL.

A counter store failure fails open: the request is allowed and the outage
is logged.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from warden.core.config import RateLimitSettings
from warden.errors import UpstreamUnavailable
from warden.storage.kv import KeyValueStore

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds of the next window boundary
    limit: int = 0
    retry_after: Optional[int] = None  # seconds


@dataclass(frozen=True)
class RateLimitRule:
    """Fixed-window limit configuration."""
    max_requests: int
    window_ms: int


def rate_limit_rule_for(path: str, settings: RateLimitSettings) -> RateLimitRule:
    """Look up the limit for an endpoint path."""
    rule = settings.rules.get(path, settings.default_rule)
    return RateLimitRule(max_requests=rule.max_requests, window_ms=rule.window_seconds * 1000)


class FixedWindowRateLimiter:
    """Fixed-window request counter."""

    def __init__(
        self,
        store: KeyValueStore,
        key_prefix: str = "rate_limit",
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.key_prefix = key_prefix
        self._clock = clock
        self._logger = logger.bind(component="rate_limiter")

    async def check(self, identifier: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """Count one request against `identifier` and report whether it is allowed."""
        now_ms = int(self._clock() * 1000)
        window_start = (now_ms // window_ms) * window_ms
        reset_time = window_start + window_ms
        ttl_seconds = max(1, math.ceil((reset_time - now_ms) / 1000))

        key = f"{self.key_prefix}:{identifier}:{window_start}"
        try:
            count = await self._store.incr_with_ttl(key, ttl_seconds)
        except UpstreamUnavailable as e:
            self._logger.warning("Rate limit store unavailable; allowing request", identifier=identifier, error=str(e))
            return RateLimitResult(
                allowed=True,
                remaining=max_requests,
                reset_time=reset_time,
                limit=max_requests,
            )

        if count > max_requests:
            self._logger.info("Rate limit exceeded", identifier=identifier, count=count, limit=max_requests)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                limit=max_requests,
                retry_after=ttl_seconds,
            )

        return RateLimitResult(
            allowed=True,
            remaining=max_requests - count,
            reset_time=reset_time,
            limit=max_requests,
        )
