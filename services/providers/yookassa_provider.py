"""
YooKassa adapter (card/aggregator A)

REST API v3 with HTTP Basic auth (shop_id:secret_key) and an Idempotence-Key header on
every mutating call. Notifications are not signed; they are checked structurally and the
payment is re-read from the API before its status is trusted.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from models import PaymentStatus, RefundStatus
from services.payment_errors import (
    PaymentDeclinedError, PaymentError, RefundFailedError, UnauthorizedError, WebhookVerificationError,
)
from services.providers.base_provider import (
    BasePaymentProvider, HttpResponse, PaymentRequest, PaymentResult, PaymentStatusInfo,
    ProviderInfo, RefundRequest, RefundResult, WebhookAck, WebhookData,
)
from utils.decimal_precision import MonetaryDecimal
from utils.provider_config_validator import ValidationResult, provider_config_validator

logger = logging.getLogger(__name__)

YOOKASSA_API_URL = "https://api.yookassa.ru/v3"

WEBHOOK_EVENTS = {
    "payment.waiting_for_capture",
    "payment.succeeded",
    "payment.canceled",
    "refund.succeeded",
}


class YookassaProvider(BasePaymentProvider):
    provider_name = "yookassa"

    STATUS_MAP = {
        "pending": PaymentStatus.PENDING,
        "waiting_for_capture": PaymentStatus.WAITING_FOR_CAPTURE,
        "succeeded": PaymentStatus.SUCCEEDED,
        "canceled": PaymentStatus.CANCELED,
    }

    REFUND_STATUS_MAP = {
        "pending": RefundStatus.PENDING,
        "succeeded": RefundStatus.SUCCEEDED,
        "canceled": RefundStatus.FAILED,
    }

    def __init__(self, config: Dict[str, Any], test_mode: bool = False, **kwargs):
        super().__init__(config, test_mode, **kwargs)
        # Test shops use the same endpoint; the shop credentials decide the sandbox
        self.base_url = YOOKASSA_API_URL
        self._auth = aiohttp.BasicAuth(str(config["shop_id"]), config["secret_key"])

    @property
    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name="YooKassa",
            type=self.provider_name,
            supported_currencies=["RUB", "USD", "EUR"],
            supported_methods=["card", "sbp", "wallet", "bank_transfer"],
            supports_refunds=True,
            supports_capture=True,
            supports_webhooks=True,
            test_mode=self.test_mode,
        )

    def _extract_error_message(self, response: HttpResponse) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        return body.get("description") or body.get("code") or response.text

    def _map_client_error(self, response: HttpResponse, message: str) -> PaymentError:
        try:
            code = response.json().get("code")
        except ValueError:
            code = None
        if code == "invalid_credentials":
            return UnauthorizedError(message, provider=self.provider_name)
        if response.status == 402:
            return PaymentDeclinedError(message, provider=self.provider_name)
        return super()._map_client_error(response, message)

    async def _call(self, method: str, path: str, operation: str, body: Optional[Dict] = None,
                    idempotence_key: Optional[str] = None, params: Optional[Dict] = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if idempotence_key:
            headers["Idempotence-Key"] = idempotence_key
        response = await self._request(
            method, f"{self.base_url}{path}", operation,
            headers=headers, json=body, params=params, auth=self._auth,
        )
        return response.json()

    async def validate_config(self) -> ValidationResult:
        result, _ = provider_config_validator.validate(self.provider_name, self.config, self.test_mode)
        if not result.is_valid:
            return result
        try:
            await self._call("GET", "/payments", "validate_config", params={"limit": 1})
        except UnauthorizedError:
            result.add_error("Invalid shop_id or secret_key")
        except PaymentError as e:
            # Upstream trouble does not prove the credentials wrong
            result.warnings.append(f"Could not verify credentials: {e.message}")
        return result

    def _payment_to_status(self, payment: Dict[str, Any]) -> PaymentStatusInfo:
        amount = payment.get("amount") or {}
        captured_at = payment.get("captured_at")
        metadata = dict(payment.get("metadata") or {})
        if payment.get("refunded_amount"):
            metadata["refunded_amount"] = payment["refunded_amount"]["value"]
        return PaymentStatusInfo(
            external_id=payment["id"],
            status=self.map_status(payment.get("status")),
            amount=Decimal(amount["value"]) if amount.get("value") else None,
            currency=amount.get("currency"),
            paid_at=datetime.fromisoformat(captured_at.replace("Z", "+00:00")) if captured_at else None,
            metadata=metadata,
            raw=payment,
        )

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        self.log_operation("create_payment", {"amount": str(request.amount), "order_id": request.order_id})

        body: Dict[str, Any] = {
            "amount": {"value": MonetaryDecimal.format_fiat(request.amount), "currency": request.currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": request.return_url},
            "description": (request.description or "")[:128] or None,
            "metadata": {**request.metadata, "order_id": request.order_id},
        }
        body["metadata"] = {k: str(v) for k, v in body["metadata"].items() if v is not None}
        if body["description"] is None:
            body.pop("description")

        payment = await self._call("POST", "/payments", "create_payment", body=body,
                                   idempotence_key=request.idempotency_key)
        return PaymentResult(
            external_id=payment["id"],
            status=self.map_status(payment.get("status")),
            amount=Decimal(payment["amount"]["value"]),
            currency=payment["amount"]["currency"],
            payment_url=(payment.get("confirmation") or {}).get("confirmation_url"),
            metadata=payment.get("metadata") or {},
            raw=payment,
        )

    async def get_payment_status(self, external_id: str) -> PaymentStatusInfo:
        payment = await self._call("GET", f"/payments/{external_id}", "get_payment_status")
        return self._payment_to_status(payment)

    async def cancel_payment(self, external_id: str) -> PaymentStatusInfo:
        self.log_operation("cancel_payment", {"external_id": external_id})
        payment = await self._call("POST", f"/payments/{external_id}/cancel", "cancel_payment",
                                   body={}, idempotence_key=str(uuid.uuid4()))
        return self._payment_to_status(payment)

    async def capture_payment(self, external_id: str, amount: Optional[Decimal] = None) -> PaymentStatusInfo:
        self.log_operation("capture_payment", {"external_id": external_id, "amount": str(amount)})
        body: Dict[str, Any] = {}
        if amount is not None:
            current = await self.get_payment_status(external_id)
            body["amount"] = {"value": MonetaryDecimal.format_fiat(amount), "currency": current.currency}
        payment = await self._call("POST", f"/payments/{external_id}/capture", "capture_payment",
                                   body=body, idempotence_key=str(uuid.uuid4()))
        return self._payment_to_status(payment)

    async def refund(self, request: RefundRequest) -> RefundResult:
        self.log_operation("refund", {"external_id": request.external_payment_id, "amount": str(request.amount)})
        body: Dict[str, Any] = {
            "payment_id": request.external_payment_id,
            "amount": {"value": MonetaryDecimal.format_fiat(request.amount), "currency": request.currency},
        }
        if request.reason:
            body["description"] = request.reason[:250]
        try:
            refund = await self._call("POST", "/refunds", "refund", body=body,
                                      idempotence_key=request.idempotency_key)
        except PaymentError as e:
            if e.retryable:
                raise
            raise RefundFailedError(e.message, provider=self.provider_name, original_error=e) from e
        return RefundResult(
            refund_id=refund["id"],
            status=self.REFUND_STATUS_MAP.get(refund.get("status"), RefundStatus.PENDING),
            amount=Decimal(refund["amount"]["value"]),
            raw=refund,
        )

    async def verify_webhook_signature(self, payload: Any, signature: Optional[str] = None) -> bool:
        """YooKassa notifications carry no signature; accept only well-formed known events"""
        if not isinstance(payload, dict):
            return False
        event = payload.get("event")
        obj = payload.get("object")
        return (
            payload.get("type", "notification") == "notification"
            and event in WEBHOOK_EVENTS
            and isinstance(obj, dict)
            and bool(obj.get("id"))
        )

    async def parse_webhook(self, payload: Any, signature: Optional[str] = None) -> WebhookData:
        if not await self.verify_webhook_signature(payload, signature):
            raise WebhookVerificationError("Malformed or unknown YooKassa notification",
                                           provider=self.provider_name)

        event = payload["event"]
        obj = payload["object"]
        payment_id = obj.get("payment_id") if event.startswith("refund.") else obj["id"]
        if not payment_id:
            raise WebhookVerificationError("Refund notification without payment_id", provider=self.provider_name)

        # The notification body is unauthenticated; the API copy is authoritative
        current = await self.get_payment_status(payment_id)
        status = current.status
        metadata = dict(current.metadata)
        if event.startswith("refund."):
            refunded = Decimal(metadata.get("refunded_amount") or obj["amount"]["value"])
            status = PaymentStatus.REFUNDED if current.amount is not None and refunded >= current.amount \
                else PaymentStatus.PARTIALLY_REFUNDED
            metadata["refunded_amount"] = str(refunded)
            metadata["refund_id"] = obj["id"]

        return WebhookData(
            event=event,
            external_id=payment_id,
            status=status,
            amount=current.amount,
            currency=current.currency,
            metadata=metadata,
            raw_payload=payload,
        )

    def webhook_ack(self, payload: Any) -> WebhookAck:
        return WebhookAck({"success": True})
