"""Per-provider configuration schemas with structural validation"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigLevel(Enum):
    """Configuration validation levels"""

    REQUIRED = "required"
    OPTIONAL = "optional"


class ConfigType(Enum):
    """Configuration data types"""

    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"


@dataclass
class ConfigRule:
    """Validation rule for one field of a provider config blob"""

    name: str
    type: ConfigType
    level: ConfigLevel
    description: str
    default: Any = None
    min_length: Optional[int] = None
    min_value: Optional[Decimal] = None
    max_value: Optional[Decimal] = None
    pattern: Optional[str] = None
    choices: Optional[List[str]] = None
    validates_with: Optional[Callable[[Any], Optional[str]]] = None


@dataclass
class ValidationResult:
    """Result of configuration validation"""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.is_valid = False
        self.errors.append(message)


def _required(name, description, **kwargs) -> ConfigRule:
    return ConfigRule(name, kwargs.pop("type", ConfigType.STRING), ConfigLevel.REQUIRED, description, **kwargs)


def _optional(name, description, **kwargs) -> ConfigRule:
    return ConfigRule(name, kwargs.pop("type", ConfigType.STRING), ConfigLevel.OPTIONAL, description, **kwargs)


PROVIDER_SCHEMAS: Dict[str, List[ConfigRule]] = {
    "yookassa": [
        _required("shop_id", "YooKassa shop identifier", pattern=r"^\d+$"),
        _required("secret_key", "YooKassa API secret key", min_length=10),
    ],
    "tinkoff": [
        _required("terminal_key", "Tinkoff terminal key", min_length=10),
        _required("secret_key", "Tinkoff terminal password", min_length=10),
        _optional("taxation", "Taxation system for receipts",
                  choices=["osn", "usn_income", "usn_income_outcome", "envd", "eshn", "patent"]),
    ],
    "robokassa": [
        _required("merchant_login", "Robokassa merchant login", min_length=3),
        _required("password1", "Password #1 (payment signature)", min_length=6),
        _required("password2", "Password #2 (result and status signature)", min_length=6),
        _optional("password3", "Password #3 (refund API)", min_length=6),
        _optional("password4", "Password #4 (reserved)", min_length=6),
        _optional("culture", "Payment page language", choices=["ru", "en"], default="ru"),
        _optional("is_test", "Use Robokassa test mode", type=ConfigType.BOOLEAN, default=False),
    ],
    "stripe": [
        _required("publishable_key", "Stripe publishable key", pattern=r"^pk_(test|live)_"),
        _required("secret_key", "Stripe secret key", pattern=r"^sk_(test|live)_"),
        _required("webhook_secret", "Stripe webhook signing secret", pattern=r"^whsec_"),
        _optional("account_id", "Connected account id", pattern=r"^acct_"),
        _optional("application_fee", "Platform fee percent", type=ConfigType.DECIMAL,
                  min_value=Decimal("0"), max_value=Decimal("100")),
    ],
    "crypto_trc20": [
        _required("wallet_address", "Receiving TRON wallet address", pattern=r"^T[a-zA-Z0-9]{33}$"),
        _optional("expiration_minutes", "Invoice lifetime", type=ConfigType.INTEGER,
                  min_value=Decimal("5"), max_value=Decimal("1440"), default=60),
        _optional("amount_tolerance_percent", "Allowed deviation of a received transfer",
                  type=ConfigType.DECIMAL, min_value=Decimal("0"), max_value=Decimal("5"),
                  default=Decimal("0.0001")),
        _optional("unique_amount_decimals", "Decimal places used by the invoice perturbation",
                  type=ConfigType.INTEGER, min_value=Decimal("2"), max_value=Decimal("6"), default=4),
        _optional("use_testnet", "Watch the Nile testnet", type=ConfigType.BOOLEAN, default=False),
        _optional("trongrid_api_key", "TronGrid API key"),
        _optional("exchange_rate_source", "Fiat to USDT rate source",
                  choices=["binance", "coingecko", "manual"], default="binance"),
        _optional("manual_exchange_rate", "Fiat units per 1 USDT", type=ConfigType.DECIMAL,
                  min_value=Decimal("0")),
        _optional("exchange_rate_markup", "Markup percent applied to the rate", type=ConfigType.DECIMAL,
                  min_value=Decimal("-10"), max_value=Decimal("10"), default=Decimal("0")),
    ],
}


class ProviderConfigValidator:
    """Validates and normalizes a raw provider config blob against its schema"""

    def __init__(self, schemas: Optional[Dict[str, List[ConfigRule]]] = None):
        self.schemas = schemas or PROVIDER_SCHEMAS

    def get_rules(self, provider: str) -> List[ConfigRule]:
        return self.schemas.get(provider, [])

    def validate(self, provider: str, raw_config: Optional[Dict[str, Any]],
                 test_mode: bool = False) -> Tuple[ValidationResult, Dict[str, Any]]:
        """
        Check every rule and collect all violations.

        Returns:
            (result, normalized config with typed values and defaults applied)
        """
        result = ValidationResult(is_valid=True)
        if provider not in self.schemas:
            result.add_error(f"Unknown provider: {provider}")
            return result, {}

        raw_config = raw_config or {}
        normalized: Dict[str, Any] = {}

        for rule in self.schemas[provider]:
            value = raw_config.get(rule.name)
            if value is None or value == "":
                if rule.level == ConfigLevel.REQUIRED:
                    result.add_error(f"{rule.name} is required")
                elif rule.default is not None:
                    normalized[rule.name] = rule.default
                continue

            typed_value, error = self._validate_single(rule, value)
            if error:
                result.add_error(error)
            else:
                normalized[rule.name] = typed_value

        self._validate_cross_field(provider, normalized, test_mode, result)
        return result, normalized

    def _validate_single(self, rule: ConfigRule, value: Any) -> Tuple[Any, Optional[str]]:
        try:
            typed_value = self._convert_type(value, rule.type)
        except ValueError as e:
            return None, f"{rule.name}: {e}"

        if rule.min_length is not None and len(str(typed_value)) < rule.min_length:
            return None, f"{rule.name} must be at least {rule.min_length} characters"
        if rule.min_value is not None and typed_value < rule.min_value:
            return None, f"{rule.name} must be >= {rule.min_value}"
        if rule.max_value is not None and typed_value > rule.max_value:
            return None, f"{rule.name} must be <= {rule.max_value}"
        if rule.pattern and not re.match(rule.pattern, str(typed_value)):
            return None, f"{rule.name} has an invalid format"
        if rule.choices and str(typed_value) not in rule.choices:
            return None, f"{rule.name} must be one of: {', '.join(rule.choices)}"
        if rule.validates_with:
            custom_error = rule.validates_with(typed_value)
            if custom_error:
                return None, f"{rule.name}: {custom_error}"
        return typed_value, None

    @staticmethod
    def _convert_type(value: Any, config_type: ConfigType) -> Any:
        if config_type == ConfigType.STRING:
            if not isinstance(value, str):
                raise ValueError("must be a string")
            return value.strip()
        if config_type == ConfigType.INTEGER:
            if isinstance(value, bool):
                raise ValueError(f"invalid integer: {value}")
            try:
                decimal_value = Decimal(str(value))
            except InvalidOperation:
                raise ValueError(f"invalid integer: {value}")
            if decimal_value != decimal_value.to_integral_value():
                raise ValueError(f"invalid integer: {value}")
            return int(decimal_value)
        if config_type == ConfigType.DECIMAL:
            if isinstance(value, bool):
                raise ValueError(f"invalid number: {value}")
            try:
                return Decimal(str(value))
            except InvalidOperation:
                raise ValueError(f"invalid number: {value}")
        if config_type == ConfigType.BOOLEAN:
            if isinstance(value, bool):
                return value
            return str(value).lower() in ("true", "1", "yes", "on")
        return value

    @staticmethod
    def _validate_cross_field(provider: str, config: Dict[str, Any], test_mode: bool,
                              result: ValidationResult):
        if provider == "stripe" and "secret_key" in config:
            secret_key = config["secret_key"]
            if test_mode and secret_key.startswith("sk_live_"):
                result.add_error("secret_key is a live key but the entity is in test mode")
            elif not test_mode and secret_key.startswith("sk_test_"):
                result.add_error("secret_key is a test key but the entity is in production mode")
        if provider == "crypto_trc20" and config.get("exchange_rate_source") == "manual":
            rate = config.get("manual_exchange_rate")
            if rate is None or rate <= 0:
                result.add_error("manual_exchange_rate must be > 0 when exchange_rate_source is manual")


provider_config_validator = ProviderConfigValidator()
