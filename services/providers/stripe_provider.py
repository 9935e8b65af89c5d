"""
Stripe adapter (hosted-checkout processor D)

Checkout Sessions over the REST API (form-encoded, Bearer auth, Idempotency-Key header).
Webhooks are verified from the raw request body with the Stripe-Signature header.
"""

import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import orjson

from models import PaymentStatus, RefundStatus
from services.payment_errors import (
    PaymentDeclinedError, PaymentError, PaymentNotFoundError, ProviderError, RefundFailedError,
    UnauthorizedError, WebhookVerificationError,
)
from services.providers.base_provider import (
    BasePaymentProvider, HttpResponse, PaymentRequest, PaymentResult, PaymentStatusInfo,
    ProviderInfo, RefundRequest, RefundResult, WebhookAck, WebhookData,
)
from utils.decimal_precision import MonetaryDecimal
from utils.provider_config_validator import ValidationResult, provider_config_validator

logger = logging.getLogger(__name__)

STRIPE_API_URL = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE_SECONDS = 300
PAYMENT_REFERENCE_KEY = "payment_reference"


def flatten_form(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Encode nested dicts/lists the way Stripe expects: a[b][0][c]=v"""
    items: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            items.extend(flatten_form(value, name))
        elif isinstance(value, list):
            for index, element in enumerate(value):
                element_name = f"{name}[{index}]"
                if isinstance(element, dict):
                    items.extend(flatten_form(element, element_name))
                else:
                    items.append((element_name, str(element)))
        elif isinstance(value, bool):
            items.append((name, "true" if value else "false"))
        else:
            items.append((name, str(value)))
    return items


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, raw_body: str) -> str:
    signed_payload = f"{timestamp}.{raw_body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


class StripeProvider(BasePaymentProvider):
    provider_name = "stripe"

    SESSION_STATUS_MAP = {
        "open": PaymentStatus.PENDING,
        "complete": PaymentStatus.SUCCEEDED,
        "expired": PaymentStatus.CANCELED,
    }

    STATUS_MAP = {
        "requires_payment_method": PaymentStatus.PENDING,
        "requires_confirmation": PaymentStatus.PENDING,
        "requires_action": PaymentStatus.PENDING,
        "processing": PaymentStatus.PENDING,
        "requires_capture": PaymentStatus.WAITING_FOR_CAPTURE,
        "canceled": PaymentStatus.CANCELED,
        "succeeded": PaymentStatus.SUCCEEDED,
    }

    REFUND_STATUS_MAP = {
        "pending": RefundStatus.PENDING,
        "succeeded": RefundStatus.SUCCEEDED,
        "failed": RefundStatus.FAILED,
        "canceled": RefundStatus.FAILED,
    }

    EVENT_STATUS_MAP = {
        "checkout.session.completed": PaymentStatus.SUCCEEDED,
        "checkout.session.expired": PaymentStatus.CANCELED,
        "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
        "payment_intent.payment_failed": PaymentStatus.FAILED,
        "payment_intent.canceled": PaymentStatus.CANCELED,
        "payment_intent.amount_capturable_updated": PaymentStatus.WAITING_FOR_CAPTURE,
        "charge.refunded": PaymentStatus.REFUNDED,
    }

    def __init__(self, config: Dict[str, Any], test_mode: bool = False, clock=time.time, **kwargs):
        super().__init__(config, test_mode, **kwargs)
        self.base_url = STRIPE_API_URL
        self._clock = clock

    @property
    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name="Stripe",
            type=self.provider_name,
            supported_currencies=["USD", "EUR", "GBP", "RUB", "JPY", "KRW", "VND"],
            supported_methods=["card"],
            supports_refunds=True,
            supports_capture=True,
            supports_webhooks=True,
            test_mode=self.test_mode,
        )

    # -- HTTP ----------------------------------------------------------------

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config['secret_key']}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _call(self, method: str, path: str, operation: str, form: Optional[Dict[str, Any]] = None,
                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        response = await self._request(
            method, f"{self.base_url}{path}", operation,
            headers=self._headers(idempotency_key),
            data=flatten_form(form) if form else None,
        )
        return response.json()

    @staticmethod
    def _error_body(response: HttpResponse) -> Dict[str, Any]:
        try:
            return response.json().get("error") or {}
        except ValueError:
            return {}

    def _extract_error_message(self, response: HttpResponse) -> str:
        return self._error_body(response).get("message") or response.text

    def _map_client_error(self, response: HttpResponse, message: str) -> PaymentError:
        error = self._error_body(response)
        if error.get("type") == "card_error" or response.status == 402:
            return PaymentDeclinedError(message, provider=self.provider_name)
        if error.get("code") == "resource_missing":
            return PaymentNotFoundError(message, provider=self.provider_name)
        if error.get("type") == "authentication_error":
            return UnauthorizedError(message, provider=self.provider_name)
        return ProviderError(message, provider=self.provider_name)

    def _currency_of(self, obj: Dict[str, Any]) -> str:
        return (obj.get("currency") or "usd").upper()

    def _from_minor(self, value: Optional[int], currency: str) -> Optional[Decimal]:
        return MonetaryDecimal.from_minor_units(value, currency) if value is not None else None

    async def _resolve_payment_intent(self, external_id: str) -> Optional[str]:
        if not external_id.startswith("cs_"):
            return external_id
        session = await self._call("GET", f"/checkout/sessions/{external_id}", "retrieve_session")
        return session.get("payment_intent")

    # -- capability interface ------------------------------------------------

    async def validate_config(self) -> ValidationResult:
        result, _ = provider_config_validator.validate(self.provider_name, self.config, self.test_mode)
        if not result.is_valid:
            return result
        try:
            await self._call("GET", "/balance", "validate_config")
        except UnauthorizedError:
            result.add_error("Invalid secret_key")
        except PaymentError as e:
            result.warnings.append(f"Could not verify credentials: {e.message}")
        return result

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        self.log_operation("create_payment", {"amount": str(request.amount), "order_id": request.order_id})
        currency = request.currency.upper()
        unit_amount = MonetaryDecimal.to_minor_units(request.amount, currency)
        metadata = {str(k): str(v) for k, v in request.metadata.items() if v is not None}
        metadata["order_id"] = request.order_id or ""
        metadata[PAYMENT_REFERENCE_KEY] = request.idempotency_key

        form: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": request.description or "Payment"},
                    "unit_amount": unit_amount,
                },
                "quantity": 1,
            }],
            "success_url": request.return_url,
            "cancel_url": request.cancel_url or request.return_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if request.customer and request.customer.email:
            form["customer_email"] = request.customer.email
        if self.config.get("application_fee") and self.config.get("account_id"):
            fee = (Decimal(unit_amount) * Decimal(str(self.config["application_fee"])) / 100).to_integral_value()
            form["payment_intent_data"]["application_fee_amount"] = int(fee)
            form["payment_intent_data"]["transfer_data"] = {"destination": self.config["account_id"]}

        session = await self._call("POST", "/checkout/sessions", "create_payment", form=form,
                                   idempotency_key=request.idempotency_key)
        return PaymentResult(
            external_id=session["id"],
            status=PaymentStatus.PENDING,
            amount=self._from_minor(session.get("amount_total"), currency) or request.amount,
            currency=currency,
            payment_url=session.get("url"),
            metadata=session.get("metadata") or metadata,
            raw=session,
        )

    async def get_payment_status(self, external_id: str) -> PaymentStatusInfo:
        if external_id.startswith("cs_"):
            session = await self._call("GET", f"/checkout/sessions/{external_id}", "get_payment_status")
            intent_id = session.get("payment_intent")
            if not intent_id:
                currency = self._currency_of(session)
                return PaymentStatusInfo(
                    external_id=external_id,
                    status=self.SESSION_STATUS_MAP.get(session.get("status") or "", PaymentStatus.PENDING),
                    amount=self._from_minor(session.get("amount_total"), currency),
                    currency=currency,
                    metadata=session.get("metadata") or {},
                    raw=session,
                )
        else:
            intent_id = external_id

        intent = await self._call("GET", f"/payment_intents/{intent_id}", "get_payment_status")
        currency = self._currency_of(intent)
        metadata = dict(intent.get("metadata") or {})
        metadata["payment_intent"] = intent["id"]
        return PaymentStatusInfo(
            external_id=external_id,
            status=self.map_status(intent.get("status")),
            amount=self._from_minor(intent.get("amount"), currency),
            currency=currency,
            metadata=metadata,
            raw=intent,
        )

    async def cancel_payment(self, external_id: str) -> PaymentStatusInfo:
        self.log_operation("cancel_payment", {"external_id": external_id})
        if external_id.startswith("cs_"):
            session = await self._call("GET", f"/checkout/sessions/{external_id}", "cancel_payment")
            if not session.get("payment_intent"):
                # Nothing charged yet: expiring the session cancels it
                session = await self._call("POST", f"/checkout/sessions/{external_id}/expire", "cancel_payment")
                return PaymentStatusInfo(
                    external_id=external_id,
                    status=self.SESSION_STATUS_MAP.get(session.get("status") or "", PaymentStatus.CANCELED),
                    raw=session,
                )
            intent_id = session["payment_intent"]
        else:
            intent_id = external_id
        intent = await self._call("POST", f"/payment_intents/{intent_id}/cancel", "cancel_payment")
        return PaymentStatusInfo(external_id=external_id, status=self.map_status(intent.get("status")), raw=intent)

    async def capture_payment(self, external_id: str, amount: Optional[Decimal] = None) -> PaymentStatusInfo:
        self.log_operation("capture_payment", {"external_id": external_id, "amount": str(amount)})
        intent_id = await self._resolve_payment_intent(external_id)
        if not intent_id:
            raise ProviderError("Checkout session has no payment to capture", provider=self.provider_name)
        form: Dict[str, Any] = {}
        if amount is not None:
            current = await self._call("GET", f"/payment_intents/{intent_id}", "capture_payment")
            form["amount_to_capture"] = MonetaryDecimal.to_minor_units(amount, self._currency_of(current))
        intent = await self._call("POST", f"/payment_intents/{intent_id}/capture", "capture_payment", form=form)
        currency = self._currency_of(intent)
        return PaymentStatusInfo(
            external_id=external_id,
            status=self.map_status(intent.get("status")),
            amount=self._from_minor(intent.get("amount_received"), currency),
            currency=currency,
            raw=intent,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        self.log_operation("refund", {"external_id": request.external_payment_id, "amount": str(request.amount)})
        try:
            intent_id = await self._resolve_payment_intent(request.external_payment_id)
            if not intent_id:
                raise RefundFailedError("Checkout session has no captured payment", provider=self.provider_name)
            form: Dict[str, Any] = {
                "payment_intent": intent_id,
                "amount": MonetaryDecimal.to_minor_units(request.amount, request.currency),
            }
            if request.reason:
                form["reason"] = "requested_by_customer"
                form["metadata"] = {"reason": request.reason}
            refund = await self._call("POST", "/refunds", "refund", form=form,
                                      idempotency_key=request.idempotency_key)
        except RefundFailedError:
            raise
        except PaymentError as e:
            if e.retryable:
                raise
            raise RefundFailedError(e.message, provider=self.provider_name, original_error=e) from e

        return RefundResult(
            refund_id=refund["id"],
            status=self.REFUND_STATUS_MAP.get(refund.get("status") or "", RefundStatus.PENDING),
            amount=self._from_minor(refund.get("amount"), self._currency_of(refund)),
            raw=refund,
        )

    # -- webhooks ------------------------------------------------------------

    @staticmethod
    def _raw_body(payload: Any) -> str:
        if isinstance(payload, bytes):
            return payload.decode("utf-8")
        if isinstance(payload, str):
            return payload
        # A re-serialized dict will not match the signed bytes; kept for completeness
        return orjson.dumps(payload).decode("utf-8")

    async def verify_webhook_signature(self, payload: Any, signature: Optional[str]) -> bool:
        if not signature:
            return False
        timestamp, signatures = parse_signature_header(signature)
        if timestamp is None or not signatures:
            return False
        if abs(self._clock() - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
            logger.warning("⚠️ STRIPE_WEBHOOK_STALE: signature timestamp outside tolerance")
            return False
        expected = compute_signature(self.config["webhook_secret"], timestamp, self._raw_body(payload))
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)

    async def parse_webhook(self, payload: Any, signature: Optional[str] = None) -> WebhookData:
        if not await self.verify_webhook_signature(payload, signature):
            logger.warning("❌ WEBHOOK_VERIFICATION_FAILED: stripe signature mismatch")
            raise WebhookVerificationError("Invalid Stripe signature", provider=self.provider_name)

        event = orjson.loads(self._raw_body(payload))
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        currency = self._currency_of(obj)
        metadata = dict(obj.get("metadata") or {})
        status = self.EVENT_STATUS_MAP.get(event_type, PaymentStatus.PENDING)
        amount = None

        if event_type.startswith("checkout.session."):
            external_id = obj["id"]
            amount = self._from_minor(obj.get("amount_total"), currency)
            if event_type == "checkout.session.completed" and obj.get("payment_status") not in (None, "paid", "no_payment_required"):
                # Delayed payment methods complete the session before money arrives
                status = PaymentStatus.PENDING
        elif event_type == "charge.refunded":
            external_id = obj.get("payment_intent") or obj["id"]
            amount = self._from_minor(obj.get("amount"), currency)
            refunded = self._from_minor(obj.get("amount_refunded"), currency)
            if refunded is not None:
                metadata["refunded_amount"] = str(refunded)
            if not obj.get("refunded"):
                status = PaymentStatus.PARTIALLY_REFUNDED
        else:
            external_id = obj["id"]
            amount = self._from_minor(obj.get("amount_received") or obj.get("amount"), currency)

        if PAYMENT_REFERENCE_KEY not in metadata and event_type == "charge.refunded" and obj.get("payment_intent"):
            intent = await self._call("GET", f"/payment_intents/{obj['payment_intent']}", "parse_webhook")
            metadata.update({k: v for k, v in (intent.get("metadata") or {}).items() if k not in metadata})

        return WebhookData(
            event=event_type,
            external_id=external_id,
            status=status,
            amount=amount,
            currency=currency,
            metadata=metadata,
            raw_payload=event,
        )

    def webhook_ack(self, payload: Any) -> WebhookAck:
        return WebhookAck({"received": True})
