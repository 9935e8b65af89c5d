"""
Common capability interface for payment provider adapters

Provides:
- Request/result types shared by every adapter
- The abstract adapter every gateway implements
- Distinct NotSupported failures for capabilities a provider lacks

HTTP, retry, circuit breaker and error mapping come from APIAdapterRetry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from models import PaymentStatus, RefundStatus
from services.api_adapter_retry import APIAdapterRetry, HttpResponse  # noqa: F401 (re-exported for adapters)
from services.credential_vault import SENSITIVE_FIELDS
from services.payment_errors import NotSupportedError
from services.retry_service import RetryPolicy
from utils.data_sanitizer import sanitize_for_log
from utils.provider_config_validator import ValidationResult

logger = logging.getLogger(__name__)


# ============================================================================
# Request / result types
# ============================================================================

@dataclass
class CustomerData:
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["CustomerData"]:
        if not data:
            return None
        return cls(email=data.get("email"), phone=data.get("phone"), name=data.get("name"))

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (("email", self.email), ("phone", self.phone), ("name", self.name)) if v}


@dataclass
class PaymentRequest:
    amount: Decimal
    currency: str
    idempotency_key: str
    description: Optional[str] = None
    order_id: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    customer: Optional[CustomerData] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Amounts still awaited on the same receiving address (on-chain rail only)
    reserved_amounts: List[Decimal] = field(default_factory=list)
    # Bumped by the engine when a locally numbered invoice id is already taken
    invoice_attempt: int = 0


@dataclass
class PaymentResult:
    external_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Optional[Dict[str, Any]] = None


@dataclass
class PaymentStatusInfo:
    external_id: str
    status: PaymentStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Optional[Dict[str, Any]] = None


@dataclass
class RefundRequest:
    external_payment_id: str
    amount: Decimal
    currency: str
    idempotency_key: str
    reason: Optional[str] = None


@dataclass
class RefundResult:
    refund_id: str
    status: RefundStatus
    amount: Decimal
    raw: Optional[Dict[str, Any]] = None


@dataclass
class WebhookData:
    """Provider notification normalized to the internal vocabulary"""
    event: str
    external_id: str
    status: PaymentStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_payload: Any = None


@dataclass
class WebhookAck:
    """Body the provider expects back to stop retrying"""
    content: Any
    media_type: str = "application/json"


@dataclass
class ProviderInfo:
    name: str
    type: str
    supported_currencies: List[str]
    supported_methods: List[str]
    supports_refunds: bool
    supports_capture: bool
    supports_webhooks: bool
    test_mode: bool

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


# ============================================================================
# Base adapter
# ============================================================================

class BasePaymentProvider(APIAdapterRetry, ABC):
    """
    Base class for provider adapters

    Subclasses implement the wire protocol; retries, the circuit breaker and error
    mapping come from APIAdapterRetry so every adapter behaves the same on upstream
    failure.
    """

    provider_name: str = ""
    # Adapters that mint external ids themselves can be asked for a fresh one on conflict
    mints_external_id: bool = False

    def __init__(self, config: Dict[str, Any], test_mode: bool = False,
                 retry_policy: Optional[RetryPolicy] = None, timeout: Optional[int] = None):
        super().__init__(retry_policy=retry_policy, timeout=timeout)
        self.config = config
        self.test_mode = test_mode

    @property
    def service_name(self) -> str:
        return self.provider_name

    # -- capability interface ------------------------------------------------

    @property
    @abstractmethod
    def info(self) -> ProviderInfo:
        ...

    @abstractmethod
    async def validate_config(self) -> ValidationResult:
        """Structural check plus one low-risk live call proving the credentials work"""

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        ...

    @abstractmethod
    async def get_payment_status(self, external_id: str) -> PaymentStatusInfo:
        ...

    async def cancel_payment(self, external_id: str) -> PaymentStatusInfo:
        raise self._not_supported("cancel_payment")

    async def capture_payment(self, external_id: str, amount: Optional[Decimal] = None) -> PaymentStatusInfo:
        raise self._not_supported("capture_payment")

    async def refund(self, request: RefundRequest) -> RefundResult:
        raise self._not_supported("refund")

    async def parse_webhook(self, payload: Any, signature: Optional[str] = None) -> WebhookData:
        raise self._not_supported("webhooks")

    async def verify_webhook_signature(self, payload: Any, signature: Optional[str]) -> bool:
        raise self._not_supported("webhooks")

    def webhook_ack(self, payload: Any) -> WebhookAck:
        return WebhookAck({"success": True})

    STATUS_MAP: Dict[str, PaymentStatus] = {}

    def map_status(self, provider_status: Optional[str]) -> PaymentStatus:
        """Unrecognized provider codes stay pending; success is never assumed"""
        return self.STATUS_MAP.get(provider_status or "", PaymentStatus.PENDING)

    # -- shared helpers ------------------------------------------------------

    def _not_supported(self, operation: str) -> NotSupportedError:
        return NotSupportedError(operation, provider=self.provider_name)

    def _secrets(self) -> List[str]:
        return [str(self.config[f]) for f in SENSITIVE_FIELDS.get(self.provider_name, []) if self.config.get(f)]

    def log_operation(self, operation: str, details: Optional[Dict[str, Any]] = None):
        logger.info(f"💳 PROVIDER_OP: {self.provider_name}.{operation} "
                    f"(test_mode={self.test_mode}) {sanitize_for_log(details or {})}")
