"""
Tinkoff adapter (card/aggregator B)

JSON-over-POST API (Init, GetState, Confirm, Cancel) where every request and every
notification is signed with a SHA-256 token over the sorted top-level values plus the
terminal password. Amounts travel in kopecks.
"""

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from models import PaymentStatus, RefundStatus
from services.payment_errors import (
    PaymentDeclinedError, PaymentError, ProviderError, RefundFailedError, UnauthorizedError,
    WebhookVerificationError,
)
from services.providers.base_provider import (
    BasePaymentProvider, PaymentRequest, PaymentResult, PaymentStatusInfo, ProviderInfo,
    RefundRequest, RefundResult, WebhookAck, WebhookData,
)
from utils.decimal_precision import MonetaryDecimal
from utils.provider_config_validator import ValidationResult, provider_config_validator

logger = logging.getLogger(__name__)

TINKOFF_API_URL = "https://securepay.tinkoff.ru/v2"
TINKOFF_TEST_API_URL = "https://rest-api-test.tinkoff.ru/v2"

# ErrorCode values meaning the terminal credentials were rejected
AUTH_ERROR_CODES = {"202", "204", "205"}
DECLINE_ERROR_CODES = {"1051", "1057", "1082", "1089"}


def generate_token(params: Dict[str, Any], password: str) -> str:
    """SHA-256 over values of top-level scalar fields sorted by key, Password included"""
    values = {k: v for k, v in params.items() if k != "Token" and not isinstance(v, (dict, list))}
    values["Password"] = password
    parts = []
    for key in sorted(values):
        value = values[key]
        if isinstance(value, bool):
            value = "true" if value else "false"
        parts.append(str(value))
    return hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()


class TinkoffProvider(BasePaymentProvider):
    provider_name = "tinkoff"

    STATUS_MAP = {
        "NEW": PaymentStatus.PENDING,
        "FORM_SHOWED": PaymentStatus.PENDING,
        "AUTHORIZING": PaymentStatus.PENDING,
        "AUTHORIZED": PaymentStatus.WAITING_FOR_CAPTURE,
        "CONFIRMING": PaymentStatus.PENDING,
        "CONFIRMED": PaymentStatus.SUCCEEDED,
        "REVERSING": PaymentStatus.PENDING,
        "REVERSED": PaymentStatus.CANCELED,
        "REFUNDING": PaymentStatus.PENDING,
        "REFUNDED": PaymentStatus.REFUNDED,
        "PARTIAL_REFUNDED": PaymentStatus.PARTIALLY_REFUNDED,
        "REJECTED": PaymentStatus.FAILED,
        "CANCELED": PaymentStatus.CANCELED,
    }

    def __init__(self, config: Dict[str, Any], test_mode: bool = False, **kwargs):
        super().__init__(config, test_mode, **kwargs)
        self.base_url = TINKOFF_TEST_API_URL if test_mode else TINKOFF_API_URL
        self.terminal_key = config["terminal_key"]

    @property
    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name="Tinkoff",
            type=self.provider_name,
            supported_currencies=["RUB"],
            supported_methods=["card", "sbp"],
            supports_refunds=True,
            supports_capture=True,
            supports_webhooks=True,
            test_mode=self.test_mode,
        )

    async def _call(self, method: str, params: Dict[str, Any], operation: str) -> Dict[str, Any]:
        body = {"TerminalKey": self.terminal_key, **params}
        body["Token"] = generate_token(body, self.config["secret_key"])
        response = await self._request("POST", f"{self.base_url}/{method}", operation,
                                       headers={"Content-Type": "application/json"}, json=body)
        data = response.json()
        if not data.get("Success"):
            raise self._error_from_body(data)
        return data

    def _error_from_body(self, data: Dict[str, Any]) -> PaymentError:
        code = str(data.get("ErrorCode", ""))
        message = self._sanitize(" ".join(filter(None, [data.get("Message"), data.get("Details")]))
                                 or f"Tinkoff error {code}")
        logger.warning(f"❌ TINKOFF_API_ERROR: ErrorCode={code} {message}")
        if code in AUTH_ERROR_CODES:
            return UnauthorizedError(message, provider=self.provider_name)
        if code in DECLINE_ERROR_CODES:
            return PaymentDeclinedError(message, provider=self.provider_name)
        return ProviderError(message, provider=self.provider_name)

    def _to_status_info(self, data: Dict[str, Any], fallback_id: Optional[str] = None) -> PaymentStatusInfo:
        kopecks = data.get("Amount") if data.get("Amount") is not None else data.get("OriginalAmount")
        return PaymentStatusInfo(
            external_id=str(data.get("PaymentId") or fallback_id),
            status=self.map_status(data.get("Status")),
            amount=MonetaryDecimal.from_minor_units(kopecks, "RUB") if kopecks is not None else None,
            currency="RUB",
            metadata=dict(data.get("DATA") or {}),
            raw=data,
        )

    async def validate_config(self) -> ValidationResult:
        result, _ = provider_config_validator.validate(self.provider_name, self.config, self.test_mode)
        if not result.is_valid:
            return result
        try:
            # A status lookup for a non-existent payment is rejected after the token check
            await self._call("GetState", {"PaymentId": "0"}, "validate_config")
        except UnauthorizedError:
            result.add_error("Invalid terminal_key or secret_key")
        except PaymentError as e:
            if e.retryable:
                result.warnings.append(f"Could not verify credentials: {e.message}")
        return result

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        self.log_operation("create_payment", {"amount": str(request.amount), "order_id": request.order_id})
        kopecks = MonetaryDecimal.to_minor_units(request.amount, "RUB")
        params: Dict[str, Any] = {
            "Amount": kopecks,
            # OrderId is derived from the idempotency key so a resubmission maps to the same order
            "OrderId": request.idempotency_key[:36],
            "Description": (request.description or "")[:140],
        }
        if request.return_url:
            params["SuccessURL"] = request.return_url
        if request.cancel_url:
            params["FailURL"] = request.cancel_url

        data_block = {str(k): str(v) for k, v in request.metadata.items() if v is not None}
        if request.order_id:
            data_block["order_id"] = str(request.order_id)
        if request.customer:
            if request.customer.email:
                data_block["Email"] = request.customer.email
            if request.customer.phone:
                data_block["Phone"] = request.customer.phone
        if data_block:
            params["DATA"] = data_block

        data = await self._call("Init", params, "create_payment")
        return PaymentResult(
            external_id=str(data["PaymentId"]),
            status=self.map_status(data.get("Status")),
            amount=MonetaryDecimal.from_minor_units(data.get("Amount", kopecks), "RUB"),
            currency="RUB",
            payment_url=data.get("PaymentURL"),
            metadata={"order_id": params["OrderId"], **data_block},
            raw=data,
        )

    async def get_payment_status(self, external_id: str) -> PaymentStatusInfo:
        data = await self._call("GetState", {"PaymentId": external_id}, "get_payment_status")
        return self._to_status_info(data, external_id)

    async def cancel_payment(self, external_id: str) -> PaymentStatusInfo:
        self.log_operation("cancel_payment", {"external_id": external_id})
        data = await self._call("Cancel", {"PaymentId": external_id}, "cancel_payment")
        return self._to_status_info(data, external_id)

    async def capture_payment(self, external_id: str, amount: Optional[Decimal] = None) -> PaymentStatusInfo:
        self.log_operation("capture_payment", {"external_id": external_id, "amount": str(amount)})
        params: Dict[str, Any] = {"PaymentId": external_id}
        if amount is not None:
            params["Amount"] = MonetaryDecimal.to_minor_units(amount, "RUB")
        data = await self._call("Confirm", params, "capture_payment")
        return self._to_status_info(data, external_id)

    async def refund(self, request: RefundRequest) -> RefundResult:
        self.log_operation("refund", {"external_id": request.external_payment_id, "amount": str(request.amount)})
        kopecks = MonetaryDecimal.to_minor_units(request.amount, "RUB")
        try:
            data = await self._call("Cancel", {"PaymentId": request.external_payment_id, "Amount": kopecks},
                                    "refund")
        except PaymentError as e:
            if e.retryable:
                raise
            raise RefundFailedError(e.message, provider=self.provider_name, original_error=e) from e
        refund_status = RefundStatus.SUCCEEDED if data.get("Status") in ("REFUNDED", "PARTIAL_REFUNDED", "REVERSED") \
            else RefundStatus.PENDING
        return RefundResult(
            refund_id=f"{request.external_payment_id}:{request.idempotency_key}",
            status=refund_status,
            amount=MonetaryDecimal.from_minor_units(kopecks, "RUB"),
            raw=data,
        )

    async def verify_webhook_signature(self, payload: Any, signature: Optional[str]) -> bool:
        token = signature or (payload.get("Token") if isinstance(payload, dict) else None)
        if not token or not isinstance(payload, dict):
            return False
        if str(payload.get("TerminalKey")) != str(self.terminal_key):
            return False
        expected = generate_token(payload, self.config["secret_key"])
        return hmac.compare_digest(expected.lower(), str(token).lower())

    async def parse_webhook(self, payload: Any, signature: Optional[str] = None) -> WebhookData:
        if not await self.verify_webhook_signature(payload, signature):
            logger.warning("❌ WEBHOOK_VERIFICATION_FAILED: tinkoff token mismatch")
            raise WebhookVerificationError("Invalid Tinkoff notification token", provider=self.provider_name)

        status_code = str(payload.get("Status", ""))
        amount = payload.get("Amount")
        return WebhookData(
            event=f"payment.{status_code.lower()}",
            external_id=str(payload["PaymentId"]),
            status=self.map_status(status_code),
            amount=MonetaryDecimal.from_minor_units(amount, "RUB") if amount is not None else None,
            currency="RUB",
            metadata=dict(payload.get("DATA") or {}),
            raw_payload=payload,
        )

    def webhook_ack(self, payload: Any) -> WebhookAck:
        return WebhookAck("OK", media_type="text/plain")
