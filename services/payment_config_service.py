"""
Payment Config Service
Per-entity payment settings: which providers are active, their credentials and the
module settings (currency, amount bounds, ...).

Secrets are stored encrypted. Reads for display are masked, reads for internal use are
decrypted, and a save merges masked placeholders back to the stored ciphertext before
validating and re-encrypting. Every save or delete invalidates the entity's cached
adapters so a revoked credential is never reused.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from config import Config
from database import get_async_session
from models import PaymentConfig, PaymentProviderType
from services.credential_vault import CredentialVault, credential_vault
from services.crypto_amount_service import UniqueAmountService
from services.payment_errors import InvalidConfigError, PaymentAccessDeniedError
from services.providers.provider_factory import PaymentProviderFactory, ProviderAdapterCache
from utils.provider_config_validator import provider_config_validator

logger = logging.getLogger(__name__)


def default_settings() -> Dict[str, Any]:
    return {
        "currency": Config.DEFAULT_PAYMENT_CURRENCY,
        "supported_payment_methods": ["card", "sbp"],
        "require_customer_data": True,
        "allow_partial_payments": False,
        "send_payment_confirmations": True,
        "send_receipts": True,
    }


def _optional_decimal(value: Any, name: str, errors: List[str]) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        errors.append(f"{name} must be a number")
        return None
    if number <= 0:
        errors.append(f"{name} must be > 0")
        return None
    return number


class PaymentConfigService:
    """CRUD and lookups over PaymentConfig rows"""

    def __init__(self, adapter_cache: Optional[ProviderAdapterCache] = None,
                 vault: Optional[CredentialVault] = None):
        self.adapter_cache = adapter_cache
        self.vault = vault or credential_vault

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, session, entity_type: str, entity_id: str, for_update: bool = False):
        query = select(PaymentConfig).where(
            PaymentConfig.entity_type == entity_type,
            PaymentConfig.entity_id == str(entity_id),
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _check_owner(config: Optional[PaymentConfig], user_id: Optional[str]):
        if config is None or user_id is None or config.owner_id is None:
            return
        if str(config.owner_id) != str(user_id):
            logger.warning(f"🚫 PAYMENT_CONFIG_ACCESS_DENIED: user {user_id} on "
                           f"{config.entity_type}:{config.entity_id}")
            raise PaymentAccessDeniedError("You do not have access to this payment configuration")

    @staticmethod
    def _default_config(entity_type: str, entity_id: str, owner_id: Optional[str] = None) -> PaymentConfig:
        return PaymentConfig(
            entity_type=entity_type,
            entity_id=str(entity_id),
            owner_id=owner_id,
            enabled=False,
            test_mode=True,
            settings=default_settings(),
            providers=[],
            provider_settings={},
        )

    @staticmethod
    def to_dict(config: PaymentConfig, provider_settings: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "id": config.id,
            "entity_type": config.entity_type,
            "entity_id": config.entity_id,
            "owner_id": config.owner_id,
            "enabled": bool(config.enabled),
            "test_mode": bool(config.test_mode),
            "settings": {**default_settings(), **(config.settings or {})},
            "providers": list(config.providers or []),
            "provider_settings": provider_settings,
        }

    async def get_config(self, entity_type: str, entity_id: str, user_id: Optional[str] = None) -> PaymentConfig:
        """Stored config, or an unsaved default (payments disabled) when none exists"""
        async with get_async_session() as session:
            config = await self._load(session, entity_type, entity_id)
        if config is None:
            return self._default_config(entity_type, entity_id, user_id)
        self._check_owner(config, user_id)
        return config

    async def get_config_for_display(self, entity_type: str, entity_id: str,
                                     user_id: Optional[str] = None) -> Dict[str, Any]:
        config = await self.get_config(entity_type, entity_id, user_id)
        return self.to_dict(config, self.vault.mask_all(config.provider_settings or {}))

    async def get_config_internal(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        """Decrypted config; never log or return the result to a client"""
        config = await self.get_config(entity_type, entity_id)
        return self.to_dict(config, self.vault.decrypt_all(config.provider_settings or {}))

    async def is_payment_enabled(self, entity_type: str, entity_id: str) -> bool:
        config = await self.get_config(entity_type, entity_id)
        return bool(config.enabled) and bool(config.providers)

    async def get_enabled_providers(self, entity_type: str, entity_id: str) -> List[str]:
        config = await self.get_config(entity_type, entity_id)
        if not config.enabled:
            return []
        return list(config.providers or [])

    async def get_provider_config(self, entity_type: str, entity_id: str,
                                  provider: str) -> Optional[Dict[str, Any]]:
        """Decrypted settings of one active provider, or None"""
        config = await self.get_config(entity_type, entity_id)
        if provider not in (config.providers or []):
            return None
        stored = (config.provider_settings or {}).get(provider)
        if not stored:
            return None
        return self.vault.decrypt_provider_config(provider, stored)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_config(self, entity_type: str, entity_id: str, update: Dict[str, Any],
                          user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Apply a partial update and return the masked result.

        update keys (all optional): enabled, test_mode, settings, providers,
        provider_settings {provider: blob}. Secret fields left empty or masked keep
        their stored value.

        Raises:
            InvalidConfigError: every violation found across settings and providers
            PaymentAccessDeniedError: user_id is not the config owner
        """
        async with get_async_session() as session:
            config = await self._load(session, entity_type, entity_id, for_update=True)
            self._check_owner(config, user_id)
            is_new = config is None
            if is_new:
                config = self._default_config(entity_type, entity_id, user_id)
                session.add(config)

            enabled = update["enabled"] if update.get("enabled") is not None else config.enabled
            test_mode = update["test_mode"] if update.get("test_mode") is not None else config.test_mode
            settings = {**default_settings(), **(config.settings or {}), **(update.get("settings") or {})}
            providers = list(update["providers"]) if update.get("providers") is not None \
                else list(config.providers or [])

            provider_settings = dict(config.provider_settings or {})
            for provider, incoming in (update.get("provider_settings") or {}).items():
                provider_settings[provider] = self.vault.merge_on_update(
                    provider, provider_settings.get(provider), incoming
                )

            errors = self._validate(enabled, bool(test_mode), settings, providers, provider_settings)
            if errors:
                logger.warning(f"⚠️ PAYMENT_CONFIG_REJECTED: {entity_type}:{entity_id} - {len(errors)} error(s)")
                raise InvalidConfigError(f"Invalid payment configuration: {'; '.join(errors)}", errors=errors)

            config.enabled = bool(enabled)
            config.test_mode = bool(test_mode)
            config.settings = settings
            config.providers = providers
            config.provider_settings = self.vault.encrypt_all(provider_settings)
            await session.flush()
            result = self.to_dict(config, self.vault.mask_all(config.provider_settings))

        if self.adapter_cache is not None:
            self.adapter_cache.invalidate(entity_type, entity_id)
        logger.info(f"✅ PAYMENT_CONFIG_{'CREATED' if is_new else 'UPDATED'}: {entity_type}:{entity_id} "
                    f"enabled={result['enabled']} providers={result['providers']}")
        return result

    def _validate(self, enabled: bool, test_mode: bool, settings: Dict[str, Any], providers: List[str],
                  provider_settings: Dict[str, Dict[str, Any]]) -> List[str]:
        errors: List[str] = []
        min_amount = _optional_decimal(settings.get("min_amount"), "min_amount", errors)
        max_amount = _optional_decimal(settings.get("max_amount"), "max_amount", errors)
        if min_amount is not None and max_amount is not None and min_amount > max_amount:
            errors.append("min_amount must not exceed max_amount")

        for provider in providers:
            if not PaymentProviderFactory.is_supported(provider):
                errors.append(f"Unknown provider: {provider}")
            elif enabled and not provider_settings.get(provider):
                errors.append(f"{provider}: credentials are not configured")

        for provider, stored in provider_settings.items():
            if not PaymentProviderFactory.is_supported(provider):
                if provider not in providers:
                    errors.append(f"Unknown provider: {provider}")
                continue
            if not stored:
                continue
            plaintext = self.vault.decrypt_provider_config(provider, stored)
            result, normalized = provider_config_validator.validate(provider, plaintext, test_mode)
            errors.extend(f"{provider}: {e}" for e in result.errors)

            if provider == PaymentProviderType.CRYPTO_TRC20.value and result.is_valid:
                errors.extend(
                    f"{provider}: {e}" for e in UniqueAmountService.validate_tuning(
                        normalized["amount_tolerance_percent"],
                        normalized["unique_amount_decimals"],
                        reference_amount=max_amount or Config.CRYPTO_REFERENCE_AMOUNT,
                    )
                )
        return errors

    async def delete_config(self, entity_type: str, entity_id: str, user_id: Optional[str] = None) -> bool:
        async with get_async_session() as session:
            config = await self._load(session, entity_type, entity_id)
            if config is None:
                return False
            self._check_owner(config, user_id)
            await session.execute(delete(PaymentConfig).where(PaymentConfig.id == config.id))

        if self.adapter_cache is not None:
            self.adapter_cache.invalidate(entity_type, entity_id)
        logger.info(f"🗑️ PAYMENT_CONFIG_DELETED: {entity_type}:{entity_id}")
        return True
