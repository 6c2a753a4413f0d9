"""
Rate limiting for external API access.
"""

from dra.sync.gateway.rate_limiter import (
    PROVIDER_PRESETS,
    RateLimitConfig,
    RateLimiterRegistry,
    TokenBucketRateLimiter,
)

__all__ = [
    "PROVIDER_PRESETS",
    "RateLimitConfig",
    "RateLimiterRegistry",
    "TokenBucketRateLimiter",
]
