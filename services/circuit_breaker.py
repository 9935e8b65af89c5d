"""
Circuit Breaker Pattern for Provider API Calls
Stops hammering a provider that keeps failing and lets it recover
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from config import Config
from services.payment_errors import ProviderError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


def counts_as_failure(error: BaseException) -> bool:
    """Only upstream trouble trips the breaker; declines and auth errors do not"""
    return bool(getattr(error, "retryable", False)) or getattr(error, "upstream_failure", False)


class CircuitBreaker:
    """
    In-process circuit breaker keyed by provider

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many consecutive failures, requests blocked
    - HALF_OPEN: One trial request allowed after the recovery timeout
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: int = 60,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.stats = {"total_calls": 0, "successful_calls": 0, "failed_calls": 0, "blocked_calls": 0}

    async def async_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        self.stats["total_calls"] += 1

        if self.state == CircuitState.OPEN:
            if self._clock() - (self.opened_at or 0) >= self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info(f"🟡 CIRCUIT_HALF_OPEN: {self.name} trial request allowed")
            else:
                self.stats["blocked_calls"] += 1
                raise ProviderError(
                    f"Circuit breaker {self.name} is OPEN. Service unavailable.",
                    provider=self.name,
                    retryable=True,
                )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if counts_as_failure(e):
                self._on_failure()
            else:
                self._on_success(count=False)
            raise

        self._on_success()
        return result

    def _on_success(self, count: bool = True):
        if count:
            self.stats["successful_calls"] += 1
        if self.state != CircuitState.CLOSED:
            logger.info(f"🟢 CIRCUIT_CLOSED: {self.name} recovered")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None

    def _on_failure(self):
        self.stats["failed_calls"] += 1
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            logger.warning(f"🔴 CIRCUIT_OPEN: {self.name} after {self.failure_count} consecutive failures")

    def reset(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            **self.stats,
        }


circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    breaker = circuit_breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(
            name=name,
            failure_threshold=Config.PAYMENT_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=Config.PAYMENT_CIRCUIT_RECOVERY_TIMEOUT,
        )
        circuit_breakers[name] = breaker
    return breaker
