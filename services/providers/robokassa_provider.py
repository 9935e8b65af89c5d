"""
Robokassa adapter (redirect aggregator C)

Payments are a signed redirect URL built locally; confirmation arrives on the ResultURL
with an MD5 signature made with password #2. Status can be polled through the OpStateExt
XML interface. Refunds, cancellation and two-stage capture are not available via API.
"""

import hashlib
import hmac
import logging
import xml.etree.ElementTree as ElementTree
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from models import PaymentStatus
from services.payment_errors import (
    PaymentNotFoundError, PaymentError, ProviderError, UnauthorizedError, WebhookVerificationError,
)
from services.providers.base_provider import (
    BasePaymentProvider, PaymentRequest, PaymentResult, PaymentStatusInfo, ProviderInfo,
    WebhookAck, WebhookData,
)
from utils.decimal_precision import MonetaryDecimal
from utils.provider_config_validator import ValidationResult, provider_config_validator

logger = logging.getLogger(__name__)

ROBOKASSA_PAYMENT_URL = "https://auth.robokassa.ru/Merchant/Index.aspx"
ROBOKASSA_OP_STATE_URL = "https://auth.robokassa.ru/Merchant/WebService/Service.asmx/OpStateExt"

# InvId must be a positive 32-bit integer
MAX_INVOICE_ID = 2_000_000_000


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def shp_params(payload: Dict[str, Any]) -> Dict[str, str]:
    return {k: str(v) for k, v in payload.items() if k.startswith("Shp_")}


def shp_suffix(params: Dict[str, str]) -> str:
    """':Shp_a=1:Shp_b=2' in key order, empty when there are none"""
    if not params:
        return ""
    return ":" + ":".join(f"{k}={params[k]}" for k in sorted(params))


def invoice_id_from_key(idempotency_key: str, attempt: int = 0) -> str:
    """Stable numeric InvId so a resubmitted request yields the same invoice"""
    seed = idempotency_key if not attempt else f"{idempotency_key}#{attempt}"
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return str(int(digest[:12], 16) % MAX_INVOICE_ID + 1)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ElementTree.Element, *path: str) -> Optional[str]:
    node = root
    for name in path:
        node = next((child for child in node if _local_name(child.tag) == name), None)
        if node is None:
            return None
    return (node.text or "").strip()


class RobokassaProvider(BasePaymentProvider):
    provider_name = "robokassa"
    mints_external_id = True

    STATE_MAP = {
        "5": PaymentStatus.PENDING,
        "10": PaymentStatus.CANCELED,
        "50": PaymentStatus.SUCCEEDED,
        "60": PaymentStatus.REFUNDED,
        "80": PaymentStatus.PENDING,
        "100": PaymentStatus.SUCCEEDED,
    }

    def __init__(self, config: Dict[str, Any], test_mode: bool = False, **kwargs):
        super().__init__(config, test_mode, **kwargs)
        self.merchant_login = config["merchant_login"]
        self.is_test = bool(test_mode or config.get("is_test"))

    @property
    def info(self) -> ProviderInfo:
        return ProviderInfo(
            name="Robokassa",
            type=self.provider_name,
            supported_currencies=["RUB"],
            supported_methods=["card", "sbp", "wallet"],
            supports_refunds=False,
            supports_capture=False,
            supports_webhooks=True,
            test_mode=self.test_mode,
        )

    def map_status(self, provider_status: Optional[str]) -> PaymentStatus:
        return self.STATE_MAP.get(str(provider_status), PaymentStatus.PENDING)

    def payment_signature(self, out_sum: str, invoice_id: str, shp: Dict[str, str]) -> str:
        return md5_hex(f"{self.merchant_login}:{out_sum}:{invoice_id}:{self.config['password1']}{shp_suffix(shp)}")

    def result_signature(self, out_sum: str, invoice_id: str, shp: Dict[str, str]) -> str:
        return md5_hex(f"{out_sum}:{invoice_id}:{self.config['password2']}{shp_suffix(shp)}")

    async def _op_state(self, invoice_id: str, operation: str) -> ElementTree.Element:
        signature = md5_hex(f"{self.merchant_login}:{invoice_id}:{self.config['password2']}")
        response = await self._request(
            "GET", ROBOKASSA_OP_STATE_URL, operation,
            params={"MerchantLogin": self.merchant_login, "InvoiceID": invoice_id, "Signature": signature},
        )
        try:
            root = ElementTree.fromstring(response.text)
        except ElementTree.ParseError as e:
            raise ProviderError("Unreadable OpStateExt response", provider=self.provider_name,
                                original_error=e) from e

        result_code = _find_text(root, "Result", "Code")
        if result_code in (None, "0"):
            return root
        description = self._sanitize(_find_text(root, "Result", "Description") or f"code {result_code}")
        if result_code in ("1", "2"):
            raise UnauthorizedError(f"Robokassa rejected credentials: {description}", provider=self.provider_name)
        if result_code == "3":
            raise PaymentNotFoundError(f"Invoice {invoice_id} not found", provider=self.provider_name)
        raise ProviderError(f"Robokassa OpStateExt error: {description}", provider=self.provider_name)

    async def validate_config(self) -> ValidationResult:
        result, _ = provider_config_validator.validate(self.provider_name, self.config, self.test_mode)
        if not result.is_valid:
            return result
        try:
            await self._op_state("1", "validate_config")
        except PaymentNotFoundError:
            pass
        except UnauthorizedError:
            result.add_error("Invalid merchant_login or password2")
        except PaymentError as e:
            result.warnings.append(f"Could not verify credentials: {e.message}")
        return result

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        self.log_operation("create_payment", {"amount": str(request.amount), "order_id": request.order_id})
        invoice_id = invoice_id_from_key(request.idempotency_key, request.invoice_attempt)
        out_sum = MonetaryDecimal.format_fiat(request.amount)

        metadata = dict(request.metadata)
        if request.order_id:
            metadata["order_id"] = request.order_id
        shp = {f"Shp_{k}": str(v) for k, v in metadata.items() if v is not None}

        params: Dict[str, str] = {
            "MerchantLogin": self.merchant_login,
            "OutSum": out_sum,
            "InvId": invoice_id,
            "Description": (request.description or "Payment")[:100],
            "SignatureValue": self.payment_signature(out_sum, invoice_id, shp),
            "Culture": self.config.get("culture") or "ru",
            "Encoding": "utf-8",
        }
        if self.is_test:
            params["IsTest"] = "1"
        if request.customer and request.customer.email:
            params["Email"] = request.customer.email
        params.update(shp)

        return PaymentResult(
            external_id=invoice_id,
            status=PaymentStatus.PENDING,
            amount=Decimal(out_sum),
            currency=request.currency,
            payment_url=f"{ROBOKASSA_PAYMENT_URL}?{urlencode(params)}",
            metadata={"invoice_id": invoice_id, **metadata},
        )

    async def get_payment_status(self, external_id: str) -> PaymentStatusInfo:
        root = await self._op_state(external_id, "get_payment_status")
        state_code = _find_text(root, "State", "Code")
        out_sum = _find_text(root, "Info", "OutSum")
        return PaymentStatusInfo(
            external_id=external_id,
            status=self.map_status(state_code),
            amount=Decimal(out_sum) if out_sum else None,
            currency="RUB",
            metadata={"state_code": state_code},
        )

    async def verify_webhook_signature(self, payload: Any, signature: Optional[str]) -> bool:
        if not isinstance(payload, dict):
            return False
        signature = signature or payload.get("SignatureValue")
        out_sum, invoice_id = payload.get("OutSum"), payload.get("InvId")
        if not signature or out_sum is None or invoice_id is None:
            return False
        expected = self.result_signature(str(out_sum), str(invoice_id), shp_params(payload))
        return hmac.compare_digest(expected.lower(), str(signature).lower())

    async def parse_webhook(self, payload: Any, signature: Optional[str] = None) -> WebhookData:
        if not await self.verify_webhook_signature(payload, signature):
            logger.warning("❌ WEBHOOK_VERIFICATION_FAILED: robokassa signature mismatch")
            raise WebhookVerificationError("Invalid Robokassa signature", provider=self.provider_name)

        # ResultURL is only called for completed payments
        return WebhookData(
            event="payment.succeeded",
            external_id=str(payload["InvId"]),
            status=PaymentStatus.SUCCEEDED,
            amount=Decimal(str(payload["OutSum"])),
            currency="RUB",
            metadata={k[len("Shp_"):]: v for k, v in shp_params(payload).items()},
            raw_payload=payload,
        )

    def webhook_ack(self, payload: Any) -> WebhookAck:
        invoice_id = payload.get("InvId", "") if isinstance(payload, dict) else ""
        return WebhookAck(f"OK{invoice_id}", media_type="text/plain")
