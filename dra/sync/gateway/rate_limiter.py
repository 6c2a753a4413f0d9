"""
Connector Rate Limiter.

Token-bucket gate shared per external API account, combined with a
sliding window cap and a minimum spacing between requests.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from dra.config.settings import RateLimitSettings
from dra.sync.errors import RateLimitExceeded
from dra.system.metrics import EngineMetrics

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limit configuration for one API account."""
    max_requests: int
    window_ms: int
    burst_size: Optional[int] = None  # Defaults to max_requests; the window cap still bounds a burst
    min_interval_ms: int = 0
    acquire_timeout: float = 120.0  # Seconds

    @property
    def capacity(self) -> int:
        return self.burst_size or self.max_requests

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.max_requests / (self.window_ms / 1000.0)


# Provider quotas
PROVIDER_PRESETS: Dict[str, RateLimitConfig] = {
    "google_ad_manager": RateLimitConfig(max_requests=10, window_ms=60000, burst_size=10, min_interval_ms=100),
    "google_analytics": RateLimitConfig(max_requests=10, window_ms=1000, burst_size=10, min_interval_ms=50),
    "google_ads": RateLimitConfig(max_requests=15, window_ms=1000, min_interval_ms=50),
    "hubspot": RateLimitConfig(max_requests=100, window_ms=10000),
    "klaviyo": RateLimitConfig(max_requests=150, window_ms=60000, burst_size=10),
    "linkedin_ads": RateLimitConfig(max_requests=100, window_ms=60000, min_interval_ms=100),
    "meta_ads": RateLimitConfig(max_requests=200, window_ms=3600000, burst_size=50, min_interval_ms=100),
}


class TokenBucketRateLimiter:
    """
    Token bucket with a sliding window cap.

    Waiters are served in arrival order: the asyncio.Lock queue is FIFO,
    and only the lock holder sleeps waiting for a token.
    """

    def __init__(self, config: RateLimitConfig, name: str = "default",
                 clock: Callable[[], float] = time.monotonic,
                 on_reject: Optional[Callable[[str], None]] = None):
        self.config = config
        self.name = name
        self._clock = clock
        self._tokens = float(config.capacity)
        self._last_refill = clock()
        self._last_request: Optional[float] = None
        self._window: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._on_reject = on_reject

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.config.capacity), self._tokens + elapsed * self.config.refill_rate)
            self._last_refill = now

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.window_ms / 1000.0
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

    def _wait_time(self, now: float) -> float:
        """Seconds until a request may be issued; 0 when it may go now."""
        wait = 0.0
        if self._tokens < 1:
            wait = max(wait, (1 - self._tokens) / self.config.refill_rate)
        if len(self._window) >= self.config.max_requests:
            wait = max(wait, self._window[0] + self.config.window_ms / 1000.0 - now)
        if self._last_request is not None and self.config.min_interval_ms:
            wait = max(wait, self._last_request + self.config.min_interval_ms / 1000.0 - now)
        return max(wait, 0.0)

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Wait for a request slot.

        Args:
            timeout: Maximum seconds to wait; defaults to the configured acquire timeout

        Raises:
            RateLimitExceeded: the slot would not become available in time
        """
        timeout = self.config.acquire_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        self._waiting += 1
        try:
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=max(timeout, 0.0))
            except asyncio.TimeoutError:
                raise RateLimitExceeded(f"Rate limiter {self.name}: timed out waiting in queue")

            try:
                while True:
                    now = self._clock()
                    self._refill(now)
                    self._prune(now)
                    wait = self._wait_time(now)
                    if wait <= 0:
                        self._tokens -= 1
                        self._window.append(now)
                        self._last_request = now
                        return
                    if now + wait > deadline:
                        raise RateLimitExceeded(
                            f"Rate limiter {self.name}: no slot within {timeout:.2f}s",
                            retry_after=wait,
                        )
                    logger.debug(f"Rate limiter {self.name} waiting {wait:.3f}s")
                    await asyncio.sleep(wait)
            finally:
                self._lock.release()
        except RateLimitExceeded:
            if self._on_reject is not None:
                self._on_reject(self.name)
            raise
        finally:
            self._waiting -= 1

    def get_stats(self) -> Dict[str, float]:
        """Read-only snapshot for observability."""
        now = self._clock()
        elapsed = max(now - self._last_refill, 0.0)
        tokens = min(float(self.config.capacity), self._tokens + elapsed * self.config.refill_rate)
        cutoff = now - self.config.window_ms / 1000.0
        return {
            "queue_length": self._waiting,
            "tokens_remaining": tokens,
            "requests_in_window": sum(1 for ts in self._window if ts > cutoff),
        }

    def reset(self) -> None:
        self._tokens = float(self.config.capacity)
        self._last_refill = self._clock()
        self._last_request = None
        self._window.clear()


class RateLimiterRegistry:
    """Limiters keyed by API account (or data source when no account id exists)."""

    def __init__(self, defaults: Optional[RateLimitSettings] = None, metrics: Optional[EngineMetrics] = None):
        self.defaults = defaults or RateLimitSettings()
        self._limiters: Dict[str, TokenBucketRateLimiter] = {}
        self._overrides: Dict[str, RateLimitConfig] = {}
        self.metrics = metrics

    def configure(self, provider: str, config: RateLimitConfig) -> None:
        """Override the config used for new limiters of a provider."""
        self._overrides[provider] = config

    def config_for(self, provider: str) -> RateLimitConfig:
        if provider in self._overrides:
            return self._overrides[provider]
        preset = PROVIDER_PRESETS.get(provider)
        if preset is not None:
            return RateLimitConfig(
                max_requests=preset.max_requests,
                window_ms=preset.window_ms,
                burst_size=preset.burst_size,
                min_interval_ms=preset.min_interval_ms,
                acquire_timeout=self.defaults.acquire_timeout_seconds,
            )
        return RateLimitConfig(
            max_requests=self.defaults.max_requests,
            window_ms=self.defaults.window_ms,
            burst_size=self.defaults.burst_size,
            min_interval_ms=self.defaults.min_interval_ms,
            acquire_timeout=self.defaults.acquire_timeout_seconds,
        )

    def get(self, provider: str, account_key: str) -> TokenBucketRateLimiter:
        key = f"{provider}:{account_key}"
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = TokenBucketRateLimiter(self.config_for(provider), name=key, on_reject=self._record_rejection)
            self._limiters[key] = limiter
        return limiter

    def get_all_stats(self) -> Dict[str, Dict[str, float]]:
        return {key: limiter.get_stats() for key, limiter in self._limiters.items()}

    def _record_rejection(self, name: str) -> None:
        logger.warning(f"Rate limiter {name} rejected a request")
        if self.metrics is not None:
            self.metrics.rate_limit_rejections_total.labels(limiter=name).inc()
