"""
Provider Factory
Builds provider adapters from a tenant's decrypted provider config.

The raw config is checked against the provider schema first so a bad credential set
fails here with every violation listed, not on the first payment attempt.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from models import PaymentProviderType
from services.payment_errors import InvalidConfigError
from services.providers.base_provider import BasePaymentProvider
from services.providers.crypto_trc20_provider import CryptoTRC20Provider
from services.providers.robokassa_provider import RobokassaProvider
from services.providers.stripe_provider import StripeProvider
from services.providers.tinkoff_provider import TinkoffProvider
from services.providers.yookassa_provider import YookassaProvider
from utils.provider_config_validator import provider_config_validator

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BasePaymentProvider]] = {
    PaymentProviderType.YOOKASSA.value: YookassaProvider,
    PaymentProviderType.TINKOFF.value: TinkoffProvider,
    PaymentProviderType.ROBOKASSA.value: RobokassaProvider,
    PaymentProviderType.STRIPE.value: StripeProvider,
    PaymentProviderType.CRYPTO_TRC20.value: CryptoTRC20Provider,
}


class PaymentProviderFactory:
    """Maps a provider tag to its adapter class"""

    @staticmethod
    def get_supported_providers() -> List[str]:
        return list(PROVIDER_CLASSES.keys())

    @staticmethod
    def is_supported(provider_type: str) -> bool:
        return provider_type in PROVIDER_CLASSES

    @staticmethod
    def create(provider_type: str, raw_config: Optional[Dict[str, Any]], test_mode: bool = False,
               **adapter_kwargs) -> BasePaymentProvider:
        """
        Validate raw_config and build the adapter.

        Raises:
            InvalidConfigError: unknown provider or any schema violation (all listed)
        """
        provider_cls = PROVIDER_CLASSES.get(provider_type)
        if provider_cls is None:
            raise InvalidConfigError(f"Unsupported payment provider: {provider_type}",
                                     errors=[f"Unknown provider: {provider_type}"], provider=provider_type)

        result, normalized = provider_config_validator.validate(provider_type, raw_config, test_mode)
        if not result.is_valid:
            logger.warning(f"⚠️ PROVIDER_CONFIG_INVALID: {provider_type} - {len(result.errors)} error(s)")
            raise InvalidConfigError(
                f"Invalid {provider_type} configuration: {'; '.join(result.errors)}",
                errors=result.errors,
                provider=provider_type,
            )

        adapter = provider_cls(normalized, test_mode=test_mode, **adapter_kwargs)
        logger.debug(f"🏭 PROVIDER_CREATED: {provider_type} (test_mode={test_mode})")
        return adapter


CacheKey = Tuple[str, str, str, bool]


class ProviderAdapterCache:
    """
    Adapters keyed by (entity_type, entity_id, provider, test_mode)

    Owned by the transaction engine; the config service invalidates an entity's entries
    whenever that entity's config is saved or deleted.
    """

    def __init__(self):
        self._adapters: Dict[CacheKey, BasePaymentProvider] = {}

    @staticmethod
    def key(entity_type: str, entity_id: str, provider: str, test_mode: bool) -> CacheKey:
        return (entity_type, str(entity_id), provider, bool(test_mode))

    def get(self, entity_type: str, entity_id: str, provider: str,
            test_mode: bool) -> Optional[BasePaymentProvider]:
        return self._adapters.get(self.key(entity_type, entity_id, provider, test_mode))

    def put(self, entity_type: str, entity_id: str, provider: str, test_mode: bool,
            adapter: BasePaymentProvider):
        self._adapters[self.key(entity_type, entity_id, provider, test_mode)] = adapter

    def invalidate(self, entity_type: str, entity_id: str) -> int:
        stale = [k for k in self._adapters if k[0] == entity_type and k[1] == str(entity_id)]
        for k in stale:
            del self._adapters[k]
        if stale:
            logger.info(f"🧹 PROVIDER_CACHE_INVALIDATED: {entity_type}:{entity_id} ({len(stale)} adapter(s))")
        return len(stale)

    def clear(self):
        self._adapters.clear()

    def __len__(self) -> int:
        return len(self._adapters)
