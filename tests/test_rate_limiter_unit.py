"""
Unit tests for the connector rate limiter.

Tests:
- Burst capacity and refill
- Sliding window cap and minimum spacing
- FIFO service order of waiters
- Acquire timeout and rejection accounting
- Registry presets, overrides and per-account limiters
"""

import asyncio
import time

import pytest

from dra.config.settings import RateLimitSettings
from dra.sync.errors import RateLimitExceeded
from dra.sync.gateway.rate_limiter import (
    PROVIDER_PRESETS, RateLimitConfig, RateLimiterRegistry, TokenBucketRateLimiter,
)
from dra.system.metrics import EngineMetrics


class TestRateLimitConfig:
    """Tests for derived config values."""

    def test_capacity_defaults_to_max_requests(self):
        config = RateLimitConfig(max_requests=10, window_ms=1000)
        assert config.capacity == 10

    def test_burst_size_overrides_capacity(self):
        config = RateLimitConfig(max_requests=10, window_ms=1000, burst_size=25)
        assert config.capacity == 25

    def test_refill_rate_per_second(self):
        config = RateLimitConfig(max_requests=200, window_ms=3600000)
        assert config.refill_rate == pytest.approx(200 / 3600)


class TestTokenBucketRateLimiter:
    """Tests for acquire semantics."""

    @pytest.mark.asyncio
    async def test_burst_is_served_immediately(self):
        limiter = TokenBucketRateLimiter(RateLimitConfig(max_requests=5, window_ms=1000), name="burst")

        started = time.monotonic()
        for _ in range(5):
            await limiter.acquire(timeout=1.0)

        assert time.monotonic() - started < 0.1
        assert limiter.get_stats()["requests_in_window"] == 5

    @pytest.mark.asyncio
    async def test_window_cap_delays_extra_request(self):
        limiter = TokenBucketRateLimiter(RateLimitConfig(max_requests=2, window_ms=100), name="window")

        started = time.monotonic()
        for _ in range(3):
            await limiter.acquire(timeout=1.0)

        # Third request waits for the oldest one to leave the window
        assert time.monotonic() - started >= 0.08

    @pytest.mark.asyncio
    async def test_min_interval_spaces_requests(self):
        limiter = TokenBucketRateLimiter(
            RateLimitConfig(max_requests=100, window_ms=1000, min_interval_ms=50), name="spacing"
        )

        started = time.monotonic()
        await limiter.acquire(timeout=1.0)
        await limiter.acquire(timeout=1.0)

        assert time.monotonic() - started >= 0.045

    @pytest.mark.asyncio
    async def test_timeout_raises_rate_limit_exceeded(self):
        limiter = TokenBucketRateLimiter(RateLimitConfig(max_requests=1, window_ms=60000), name="slow")
        await limiter.acquire(timeout=1.0)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire(timeout=0.01)

        assert exc_info.value.retry_after is not None
        assert exc_info.value.retry_after > 0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_rejection_callback_receives_limiter_name(self):
        rejected = []
        limiter = TokenBucketRateLimiter(
            RateLimitConfig(max_requests=1, window_ms=60000), name="meta_ads:act_1", on_reject=rejected.append
        )
        await limiter.acquire(timeout=1.0)

        with pytest.raises(RateLimitExceeded):
            await limiter.acquire(timeout=0)

        assert rejected == ["meta_ads:act_1"]

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_arrival_order(self):
        limiter = TokenBucketRateLimiter(RateLimitConfig(max_requests=1, window_ms=20), name="fifo")
        served = []

        async def request(index: int):
            await limiter.acquire(timeout=2.0)
            served.append(index)

        tasks = [asyncio.create_task(request(i)) for i in range(5)]
        await asyncio.gather(*tasks)

        assert served == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_get_stats_does_not_consume_tokens(self):
        limiter = TokenBucketRateLimiter(RateLimitConfig(max_requests=3, window_ms=60000), name="stats")
        await limiter.acquire(timeout=1.0)

        first = limiter.get_stats()
        second = limiter.get_stats()

        assert first["requests_in_window"] == second["requests_in_window"] == 1
        assert second["tokens_remaining"] == pytest.approx(2, abs=0.01)
        assert second["queue_length"] == 0

    @pytest.mark.asyncio
    async def test_reset_restores_full_bucket(self):
        limiter = TokenBucketRateLimiter(RateLimitConfig(max_requests=1, window_ms=60000), name="reset")
        await limiter.acquire(timeout=1.0)

        limiter.reset()
        await limiter.acquire(timeout=0.01)

        assert limiter.get_stats()["requests_in_window"] == 1


class TestRateLimiterRegistry:
    """Tests for limiter lookup and configuration."""

    def test_provider_presets_are_used(self):
        registry = RateLimiterRegistry(RateLimitSettings(acquire_timeout_seconds=7.0))

        config = registry.config_for("google_analytics")

        preset = PROVIDER_PRESETS["google_analytics"]
        assert config.max_requests == preset.max_requests
        assert config.min_interval_ms == 50
        assert config.acquire_timeout == 7.0

    @pytest.mark.parametrize("provider", sorted(PROVIDER_PRESETS))
    def test_preset_burst_fits_the_window_cap(self, provider):
        preset = PROVIDER_PRESETS[provider]

        assert preset.capacity <= preset.max_requests

    def test_unknown_provider_uses_defaults(self):
        registry = RateLimiterRegistry(RateLimitSettings(
            max_requests=42, window_ms=5000, burst_size=None, min_interval_ms=0, acquire_timeout_seconds=3.0,
        ))

        config = registry.config_for("custom_api")

        assert config.max_requests == 42
        assert config.window_ms == 5000
        assert config.acquire_timeout == 3.0

    def test_configure_overrides_preset(self):
        registry = RateLimiterRegistry()
        override = RateLimitConfig(max_requests=1000, window_ms=1000)

        registry.configure("meta_ads", override)

        assert registry.get("meta_ads", "act_1").config is override

    def test_same_account_shares_limiter(self):
        registry = RateLimiterRegistry()

        first = registry.get("google_ads", "123")
        second = registry.get("google_ads", "123")
        other = registry.get("google_ads", "456")

        assert first is second
        assert first is not other
        assert set(registry.get_all_stats()) == {"google_ads:123", "google_ads:456"}

    @pytest.mark.asyncio
    async def test_rejections_are_counted_in_metrics(self):
        metrics = EngineMetrics()
        registry = RateLimiterRegistry(metrics=metrics)
        registry.configure("meta_ads", RateLimitConfig(max_requests=1, window_ms=60000))
        limiter = registry.get("meta_ads", "act_9")
        await limiter.acquire(timeout=1.0)

        with pytest.raises(RateLimitExceeded):
            await limiter.acquire(timeout=0)

        value = metrics.registry.get_sample_value(
            "dra_rate_limit_rejections_total", {"limiter": "meta_ads:act_9"}
        )
        assert value == 1.0
