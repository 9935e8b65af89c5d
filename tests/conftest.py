"""
Shared fixtures for the payment engine test suite

Key Components:
1. In-memory SQLite database, rebuilt for every test
2. A transaction engine wired to a private adapter cache and event bus
3. A controllable clock for expiry and signature tolerance scenarios
4. Config helpers that save real, encrypted provider settings through the config service

No test touches the network: adapters are exercised through patched `_request` calls.
"""

import os

# Environment must be in place before config/database are imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("PAYMENT_ENCRYPTION_KEY", "test-master-secret-for-payment-vault")
os.environ["CRYPTO_MONITOR_ENABLED"] = "false"
os.environ["PAYMENT_PUBLIC_BASE_URL"] = "https://pay.example.test"

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from database import async_engine
from models import Base
from services.circuit_breaker import circuit_breakers
from services.payment_config_service import PaymentConfigService
from services.payment_events import ALL_EVENTS, PaymentEvent, PaymentEventBus
from services.payment_transaction_service import PaymentTransactionService
from services.providers.provider_factory import ProviderAdapterCache
from services.retry_service import RetryPolicy

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

SHOP_ID = "shop-1"
OWNER_ID = "owner-1"
TRON_WALLET = "TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf"

ROBOKASSA_SETTINGS = {
    "merchant_login": "demo_shop",
    "password1": "pass-one-123",
    "password2": "pass-two-456",
}
YOOKASSA_SETTINGS = {"shop_id": "123456", "secret_key": "test_yookassa_secret_key"}
TINKOFF_SETTINGS = {"terminal_key": "TinkoffBankTest", "secret_key": "tinkoff-terminal-pw"}
STRIPE_SETTINGS = {
    "publishable_key": "pk_test_51Habcdefgh",
    "secret_key": "sk_test_51Habcdefghijkl",
    "webhook_secret": "whsec_testsigningsecret",
}
CRYPTO_SETTINGS = {
    "wallet_address": TRON_WALLET,
    "exchange_rate_source": "manual",
    "manual_exchange_rate": "90",
    "expiration_minutes": 60,
}

# Zero-delay retries keep retry tests fast
FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay=0, backoff_multiplier=1, max_delay=0)


class FrozenClock:
    """Callable clock returning a fixed aware UTC time until advanced"""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now


class EventRecorder:
    """Subscribes to every payment event and keeps them in order"""

    def __init__(self, bus: PaymentEventBus):
        self.events: List[PaymentEvent] = []
        for event_type in ALL_EVENTS:
            bus.subscribe(event_type, self.events.append)

    def types(self) -> List[str]:
        return [e.event_type for e in self.events]


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    circuit_breakers.clear()
    yield
    circuit_breakers.clear()


@pytest_asyncio.fixture
async def db():
    """Fresh schema per test; disposing the pool drops the in-memory database"""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await async_engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def adapter_cache():
    return ProviderAdapterCache()


@pytest.fixture
def config_service(adapter_cache):
    return PaymentConfigService(adapter_cache=adapter_cache)


@pytest.fixture
def event_bus():
    return PaymentEventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture
def engine(db, config_service, adapter_cache, event_bus, clock):
    return PaymentTransactionService(
        config_service=config_service,
        adapter_cache=adapter_cache,
        event_bus=event_bus,
        provider_kwargs={
            "crypto_trc20": {"clock": clock, "retry_policy": FAST_RETRY},
            "yookassa": {"retry_policy": FAST_RETRY},
            "tinkoff": {"retry_policy": FAST_RETRY},
            "stripe": {"retry_policy": FAST_RETRY},
            "robokassa": {"retry_policy": FAST_RETRY},
        },
        clock=clock,
    )


async def save_provider_config(config_service: PaymentConfigService, provider: str,
                               provider_settings: Dict[str, Any], entity_type: str = "shop",
                               entity_id: str = SHOP_ID, test_mode: bool = True,
                               settings: Dict[str, Any] = None) -> Dict[str, Any]:
    return await config_service.save_config(entity_type, entity_id, {
        "enabled": True,
        "test_mode": test_mode,
        "providers": [provider],
        "provider_settings": {provider: dict(provider_settings)},
        "settings": settings or {},
    }, user_id=OWNER_ID)
