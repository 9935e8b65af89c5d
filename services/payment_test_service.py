"""
Provider self-test for the settings page

Runs three steps against the stored (decrypted) credentials and stops at the first
failure: config lookup and schema check, adapter construction, live credential check.
No payment is ever created.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from config import Config
from services.payment_config_service import PaymentConfigService
from services.payment_errors import PaymentError
from services.providers.base_provider import BasePaymentProvider
from services.providers.provider_factory import PaymentProviderFactory
from utils.data_sanitizer import safe_error_log
from utils.provider_config_validator import provider_config_validator

logger = logging.getLogger(__name__)

STEP_CONFIG = "config_validation"
STEP_ADAPTER = "adapter_creation"
STEP_CREDENTIALS = "live_credential_check"


@dataclass
class ProviderTestStep:
    name: str
    passed: bool
    message: str
    duration_ms: int


@dataclass
class ProviderTestResult:
    provider: str
    success: bool
    test_mode: bool
    steps: List[ProviderTestStep] = field(default_factory=list)
    webhook_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def webhook_url_for(entity_type: str, entity_id: str, provider: str) -> str:
    return f"{Config.PAYMENT_PUBLIC_BASE_URL}/payments/webhooks/{entity_type}/{entity_id}/{provider}"


class PaymentTestService:
    def __init__(self, config_service: PaymentConfigService):
        self.config_service = config_service

    async def run_provider_test(self, entity_type: str, entity_id: str, provider: str,
                                user_id: Optional[str] = None) -> ProviderTestResult:
        # Owner check happens before any decrypted value is touched
        await self.config_service.get_config(entity_type, entity_id, user_id)
        config = await self.config_service.get_config_internal(entity_type, entity_id)
        test_mode = bool(config["test_mode"])
        result = ProviderTestResult(provider=provider, success=False, test_mode=test_mode,
                                    webhook_url=webhook_url_for(entity_type, entity_id, provider))

        started = time.monotonic()
        raw = (config.get("provider_settings") or {}).get(provider)
        if not raw:
            result.steps.append(self._step(STEP_CONFIG, False, f"{provider} is not configured", started))
            return self._finish(result, entity_type, entity_id)
        validation, _ = provider_config_validator.validate(provider, raw, test_mode)
        if not validation.is_valid:
            result.steps.append(self._step(STEP_CONFIG, False, "; ".join(validation.errors), started))
            return self._finish(result, entity_type, entity_id)
        message = "Configuration is valid"
        if provider not in config["providers"]:
            message += " (provider is not active yet)"
        result.steps.append(self._step(STEP_CONFIG, True, message, started))

        started = time.monotonic()
        try:
            adapter: BasePaymentProvider = PaymentProviderFactory.create(provider, raw, test_mode)
        except PaymentError as e:
            result.steps.append(self._step(STEP_ADAPTER, False, e.message, started))
            return self._finish(result, entity_type, entity_id)
        result.steps.append(self._step(STEP_ADAPTER, True, f"{adapter.info.name} adapter created", started))

        started = time.monotonic()
        try:
            check = await adapter.validate_config()
        except PaymentError as e:
            logger.warning(f"⚠️ PROVIDER_TEST_CHECK_FAILED: {provider} {safe_error_log(e)}")
            result.steps.append(self._step(STEP_CREDENTIALS, False, e.message, started))
            return self._finish(result, entity_type, entity_id)
        if check.is_valid:
            message = "Credentials accepted by the provider"
            if check.warnings:
                message += f" ({'; '.join(check.warnings)})"
        else:
            message = "; ".join(check.errors)
        result.steps.append(self._step(STEP_CREDENTIALS, check.is_valid, message, started))

        result.success = all(step.passed for step in result.steps)
        return self._finish(result, entity_type, entity_id)

    @staticmethod
    def _step(name: str, passed: bool, message: str, started: float) -> ProviderTestStep:
        return ProviderTestStep(name=name, passed=passed, message=message,
                                duration_ms=int((time.monotonic() - started) * 1000))

    @staticmethod
    def _finish(result: ProviderTestResult, entity_type: str, entity_id: str) -> ProviderTestResult:
        icon = "✅" if result.success else "❌"
        logger.info(f"{icon} PROVIDER_TEST: {result.provider} for {entity_type}:{entity_id} "
                    f"passed {sum(s.passed for s in result.steps)}/{len(result.steps)} step(s)")
        return result
