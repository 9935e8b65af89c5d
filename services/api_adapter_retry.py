"""
Standardized API Adapter with Unified Retry System
Base class for external HTTP integrations (payment providers, rate feeds, chain explorers)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import orjson

from config import Config
from services.circuit_breaker import get_circuit_breaker
from services.payment_errors import (
    PaymentDeclinedError, PaymentError, PaymentNetworkError, PaymentNotFoundError,
    ProviderError, RateLimitError, UnauthorizedError,
)
from services.retry_service import RetryPolicy, RetryService
from utils.data_sanitizer import DataSanitizer

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    status: int
    text: str

    def json(self) -> Any:
        return orjson.loads(self.text) if self.text else {}


class APIAdapterRetry:
    """
    Base class for external API integrations with unified retry logic

    Provides:
    - aiohttp request helper with bounded timeout
    - HTTP status and transport failure mapping to payment errors
    - Exponential backoff for retryable errors only
    - Per-service circuit breaker
    - Redaction of known secrets in every surfaced message
    """

    service_name: str = "external_api"

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, timeout: Optional[int] = None):
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.timeout = timeout or Config.PAYMENT_HTTP_TIMEOUT_SECONDS

    def _secrets(self) -> List[str]:
        return []

    def _sanitize(self, text: Any) -> str:
        return DataSanitizer.sanitize_error_message(text, known_secrets=self._secrets())

    def _get_circuit_breaker_name(self) -> str:
        return self.service_name

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Any] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        retry: bool = True,
    ) -> HttpResponse:
        """
        Perform an HTTP call with retry and circuit breaker protection

        Raises:
            PaymentError subclass mapped from the HTTP status or transport failure
        """
        breaker = get_circuit_breaker(self._get_circuit_breaker_name())

        async def exchange():
            response = await self._send(
                method, url, headers=headers, params=params, json=json, data=data, auth=auth
            )
            if response.status >= 400:
                raise self._map_http_error(response, operation)
            return response

        async def attempt():
            # Mapped errors pass through the breaker so 5xx responses count against it
            return await breaker.async_call(exchange)

        if not retry:
            return await attempt()

        started = asyncio.get_running_loop().time()
        response = await RetryService.retry_async(
            attempt, self.retry_policy, operation=f"{self.service_name}.{operation}"
        )
        elapsed = asyncio.get_running_loop().time() - started
        logger.debug(f"✅ API_SUCCESS: {self.service_name}.{operation} completed in {elapsed:.3f}s")
        return response

    async def _send(self, method: str, url: str, headers=None, params=None, json=None,
                    data=None, auth=None) -> HttpResponse:
        """One raw HTTP exchange; transport failures become retryable network errors"""
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.request(
                    method=method, url=url, headers=headers, params=params, json=json, data=data, auth=auth
                ) as response:
                    text = await response.text()
                    return HttpResponse(status=response.status, text=text)
        except asyncio.TimeoutError as e:
            raise PaymentNetworkError(
                f"Request timed out after {self.timeout}s", provider=self.service_name, original_error=e
            ) from e
        except aiohttp.ClientError as e:
            raise PaymentNetworkError(
                f"Network error: {self._sanitize(e)}", provider=self.service_name, original_error=e
            ) from e

    def _extract_error_message(self, response: HttpResponse) -> str:
        """Service-specific error text; subclasses pull the human message out of the body"""
        return response.text

    def _map_http_error(self, response: HttpResponse, operation: str) -> PaymentError:
        message = self._sanitize(self._extract_error_message(response) or f"HTTP {response.status}")
        status = response.status
        log_line = f"❌ API_HTTP_ERROR: {self.service_name}.{operation} HTTP {status}: {message}"

        if status == 429:
            logger.warning(log_line)
            return RateLimitError(message, provider=self.service_name)
        if status in (401, 403):
            logger.error(log_line)
            return UnauthorizedError(message, provider=self.service_name)
        if status == 404:
            logger.warning(log_line)
            return PaymentNotFoundError(message, provider=self.service_name)
        if status in (400, 402, 422):
            logger.warning(log_line)
            return self._map_client_error(response, message)

        logger.error(log_line)
        error = ProviderError(message, provider=self.service_name)
        if status >= 500:
            error.upstream_failure = True
        return error

    def _map_client_error(self, response: HttpResponse, message: str) -> PaymentError:
        if response.status == 402:
            return PaymentDeclinedError(message, provider=self.service_name)
        return ProviderError(message, provider=self.service_name)

    def get_retry_stats(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "circuit_breaker": get_circuit_breaker(self._get_circuit_breaker_name()).get_state(),
            "timeout_seconds": self.timeout,
            "max_attempts": self.retry_policy.max_attempts,
        }
