"""Fixed-window rate limiting."""

from warden.ratelimit.limiter import (
    FixedWindowRateLimiter,
    RateLimitResult,
    RateLimitRule,
    rate_limit_rule_for,
)

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitResult",
    "RateLimitRule",
    "rate_limit_rule_for",
]
