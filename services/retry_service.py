"""
Retry Service with Exponential Backoff
Retries provider calls that fail with a retryable error (network, timeout, rate limit)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = False

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=Config.PAYMENT_RETRY_MAX_ATTEMPTS,
            initial_delay=Config.PAYMENT_RETRY_INITIAL_DELAY,
            backoff_multiplier=Config.PAYMENT_RETRY_BACKOFF_MULTIPLIER,
            max_delay=Config.PAYMENT_RETRY_MAX_DELAY,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        delay = min(self.initial_delay * (self.backoff_multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


def is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False))


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
        operation: Optional[str] = None,
    ) -> Any:
        """
        Retry an async callable with exponential backoff

        Only exceptions whose `retryable` attribute is true are retried; anything else
        propagates on the first failure.

        Args:
            func: Zero-argument coroutine factory
            policy: Attempt count and delay schedule
            operation: Name used in log lines
        """
        policy = policy or RetryPolicy.from_config()
        name = operation or getattr(func, "__name__", "operation")
        attempt = 0

        while True:
            attempt += 1
            try:
                return await func()
            except Exception as e:
                if not is_retryable(e):
                    raise
                if attempt >= policy.max_attempts:
                    logger.error(f"❌ RETRY_EXHAUSTED: {name} failed after {attempt} attempts")
                    raise

                delay = policy.delay_for(attempt)
                logger.warning(
                    f"🔄 PROVIDER_RETRY: {name} attempt {attempt}/{policy.max_attempts} failed "
                    f"({type(e).__name__}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)


retry_service = RetryService()
