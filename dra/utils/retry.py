"""
Retry Utilities for the DRA Sync Engine.

Backoff delays shared by connector fetch retries and by the worker pool
when it re-enqueues a retryable job.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Type

logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """How the delay grows between attempts."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)
    non_retryable_exceptions: List[Type[Exception]] = field(default_factory=list)


_GROWTH = {
    RetryStrategy.FIXED: lambda config, attempt: config.base_delay,
    RetryStrategy.EXPONENTIAL: lambda config, attempt: config.base_delay * config.backoff_multiplier ** attempt,
    RetryStrategy.LINEAR: lambda config, attempt: config.base_delay * (attempt + 1),
}


def calculate_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before the retry following the given zero-based attempt, capped at ``max_delay``."""
    delay = min(_GROWTH[config.strategy](config, attempt), config.max_delay)
    if not config.jitter or config.jitter_range <= 0 or delay <= 0:
        return delay

    spread = delay * config.jitter_range
    return max(0.0, min(random.uniform(delay - spread, delay + spread), config.max_delay))


class RetryExecutor:
    """
    Runs an async callable until it succeeds or retries are exhausted.

    An exception is retried when it matches ``retryable_exceptions`` (or,
    with none configured, carries a truthy ``retryable`` attribute) and does
    not match ``non_retryable_exceptions``. A ``retry_after`` hint on the
    exception raises the delay up to ``max_delay``. The last exception
    propagates unchanged.
    """

    def __init__(self, config: RetryConfig, sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self.config = config
        self._sleep = sleep or asyncio.sleep

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, tuple(self.config.non_retryable_exceptions)):
            return False
        if self.config.retryable_exceptions:
            return isinstance(exc, tuple(self.config.retryable_exceptions))
        return bool(getattr(exc, "retryable", False))

    def _delay_for(self, exc: Exception, attempt: int) -> float:
        delay = calculate_delay(self.config, attempt)
        hint = getattr(exc, "retry_after", None)
        if hint:
            delay = max(delay, min(float(hint), self.config.max_delay))
        return delay

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        for attempt in range(max(1, self.config.max_attempts)):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                last_attempt = attempt + 1 >= self.config.max_attempts
                if last_attempt or not self._is_retryable(exc):
                    if attempt:
                        logger.error(f"Giving up after {attempt + 1} attempts: {exc}")
                    raise
                delay = self._delay_for(exc, attempt)
                logger.warning(f"Attempt {attempt + 1}/{self.config.max_attempts} failed ({exc}); "
                               f"retrying in {delay:.2f}s")
                await self._sleep(delay)
