"""
Provider webhook endpoint

One route for every provider: /payments/webhooks/{entity_type}/{entity_id}/{provider}.
The body is decoded the way each provider sends it, handed to the transaction engine
for verification and reconciliation, and answered with the acknowledgement body the
provider expects. The answer is always 200 so providers stop retrying; verification
failures and unknown payments are logged instead.
"""

import logging
from typing import Any, Optional

import orjson
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from models import PaymentProviderType
from services.payment_errors import PaymentError, WebhookVerificationError
from services.payment_transaction_service import payment_transaction_service
from services.providers.base_provider import WebhookAck
from utils.data_sanitizer import safe_error_log

logger = logging.getLogger(__name__)

router = APIRouter()


async def _parse_webhook_payload(request: Request, provider: str) -> Any:
    """Stripe needs the raw body for its signature; Robokassa posts a form or query string"""
    body = await request.body()
    if provider == PaymentProviderType.STRIPE.value:
        return body.decode("utf-8")

    if provider == PaymentProviderType.ROBOKASSA.value:
        data = dict(request.query_params)
        if body:
            form = await request.form()
            data.update({key: str(value) for key, value in form.items()})
        return data

    if not body:
        return dict(request.query_params)
    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError:
        logger.warning(f"⚠️ WEBHOOK_BAD_JSON: {provider} sent a body that is not JSON")
        return {}


def _ack_response(ack: WebhookAck) -> Response:
    if ack.media_type == "text/plain":
        return PlainTextResponse(str(ack.content))
    return JSONResponse(ack.content)


@router.api_route("/payments/webhooks/{entity_type}/{entity_id}/{provider}", methods=["GET", "POST"])
async def provider_webhook(
    entity_type: str,
    entity_id: str,
    provider: str,
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    payload = await _parse_webhook_payload(request, provider)
    ack = WebhookAck({"success": True})

    try:
        adapter = await payment_transaction_service.get_adapter(entity_type, entity_id, provider)
        ack = adapter.webhook_ack(payload)
        payment = await payment_transaction_service.handle_webhook(
            entity_type, entity_id, provider, payload, signature=stripe_signature
        )
        if payment is not None:
            logger.info(f"✅ WEBHOOK_PROCESSED: {provider} for {entity_type}:{entity_id} "
                        f"payment {payment.id} is {payment.status}")
    except WebhookVerificationError as e:
        logger.warning(f"🚨 WEBHOOK_REJECTED: {provider} for {entity_type}:{entity_id}: {e.message}")
    except PaymentError as e:
        logger.error(f"❌ WEBHOOK_PROCESSING_FAILED: {provider} for {entity_type}:{entity_id}: "
                     f"{safe_error_log(e)}")

    return _ack_response(ack)
