"""
Exchange Rate Service
Fiat -> USDT conversion for the on-chain rail.

Rates are "fiat units per 1 USDT". Sources: Binance ticker, CoinGecko simple price or a
manual operator rate. Each (source, currency) pair is cached for
EXCHANGE_RATE_CACHE_TTL_SECONDS and the last good value is served when the upstream fails.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from config import Config
from services.api_adapter_retry import APIAdapterRetry
from services.payment_errors import InvalidConfigError, PaymentError, ProviderError
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

BINANCE_TICKER_URL = "https://api.binance.com/api/v3/ticker/price"
COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

SUPPORTED_SOURCES = ("binance", "coingecko", "manual")
PARITY_CURRENCIES = frozenset({"USD", "USDT"})


@dataclass(frozen=True)
class UsdtConversion:
    usdt_amount: Decimal
    rate: Decimal
    source: str


class ExchangeRateService(APIAdapterRetry):
    """Cached fiat/USDT rates with stale-on-error fallback"""

    service_name = "exchange_rates"

    def __init__(self, cache_ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic,
                 **kwargs):
        super().__init__(**kwargs)
        self.cache_ttl_seconds = cache_ttl_seconds if cache_ttl_seconds is not None \
            else Config.EXCHANGE_RATE_CACHE_TTL_SECONDS
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Tuple[Decimal, float]] = {}

    async def get_rate(self, currency: str, source: str = "binance",
                       manual_rate: Optional[Decimal] = None) -> Decimal:
        """Fiat units per 1 USDT"""
        currency = currency.upper()
        if currency in PARITY_CURRENCIES:
            return Decimal("1")

        if source == "manual":
            if manual_rate is None or Decimal(str(manual_rate)) <= 0:
                raise InvalidConfigError("manual_exchange_rate must be > 0", errors=["manual_exchange_rate"])
            return MonetaryDecimal.quantize_rate(manual_rate)

        if source not in SUPPORTED_SOURCES:
            raise InvalidConfigError(f"Unknown exchange rate source: {source}", errors=["exchange_rate_source"])

        cache_key = (source, currency)
        cached = self._cache.get(cache_key)
        if cached and self._clock() - cached[1] < self.cache_ttl_seconds:
            return cached[0]

        try:
            if source == "binance":
                rate = await self._fetch_binance(currency)
            else:
                rate = await self._fetch_coingecko(currency)
        except PaymentError as e:
            if cached:
                logger.warning(f"⚠️ EXCHANGE_RATE_STALE: {source} {currency} unavailable ({e.code.value}), "
                               f"serving cached {cached[0]}")
                return cached[0]
            raise

        if rate <= 0:
            raise ProviderError(f"{source} returned a non-positive rate for {currency}", provider=self.service_name)

        rate = MonetaryDecimal.quantize_rate(rate)
        self._cache[cache_key] = (rate, self._clock())
        logger.info(f"💱 EXCHANGE_RATE: 1 USDT = {rate} {currency} ({source})")
        return rate

    async def convert_to_usdt(self, amount: Decimal, currency: str, source: str = "binance",
                              manual_rate: Optional[Decimal] = None,
                              markup_percent: Decimal = Decimal("0")) -> UsdtConversion:
        """
        Convert a fiat amount to USDT.

        The markup raises (or lowers, when negative) the rate: rate * (1 + markup/100).
        """
        rate = await self.get_rate(currency, source, manual_rate)
        adjusted_rate = MonetaryDecimal.quantize_rate(
            rate * (Decimal("1") + Decimal(str(markup_percent)) / Decimal("100"))
        )
        usdt_amount = MonetaryDecimal.quantize_usdt(MonetaryDecimal.to_decimal(amount) / adjusted_rate)
        return UsdtConversion(usdt_amount=usdt_amount, rate=adjusted_rate, source=source)

    async def _fetch_binance(self, currency: str) -> Decimal:
        response = await self._request("GET", BINANCE_TICKER_URL, "binance_ticker",
                                       params={"symbol": f"USDT{currency}"})
        price = response.json().get("price")
        if price is None:
            raise ProviderError(f"Binance has no USDT{currency} ticker", provider=self.service_name)
        return MonetaryDecimal.to_decimal(price, "exchange_rate")

    async def _fetch_coingecko(self, currency: str) -> Decimal:
        vs_currency = currency.lower()
        response = await self._request("GET", COINGECKO_PRICE_URL, "coingecko_price",
                                       params={"ids": "tether", "vs_currencies": vs_currency})
        price = (response.json().get("tether") or {}).get(vs_currency)
        if price is None:
            raise ProviderError(f"CoinGecko has no tether/{vs_currency} price", provider=self.service_name)
        return MonetaryDecimal.to_decimal(price, "exchange_rate")

    def clear_cache(self):
        self._cache.clear()


exchange_rate_service = ExchangeRateService()
