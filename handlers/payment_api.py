"""
Payment REST API

Thin HTTP layer over the transaction engine. The caller identifies itself with the
X-User-Id header; ownership checks happen in the engine. PaymentError subclasses map
to HTTP status codes in one place and their to_dict() becomes the response body.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from models import Payment, PaymentEntityType, PaymentTargetType
from services.payment_errors import (
    InvalidAmountError, InvalidConfigError, InvalidCurrencyError, InvalidStateTransitionError,
    NotSupportedError, PaymentAccessDeniedError, PaymentError, PaymentNotFoundError,
    PaymentsDisabledError, ProviderNotEnabledError, RateLimitError, UnauthorizedError,
)
from services.payment_transaction_service import CreatePaymentDto, payment_transaction_service
from utils.data_sanitizer import safe_error_log
from utils.datetime_helpers import to_iso
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments")

# Orders live in shops, bookings in booking systems
TARGET_ENTITY_TYPES = {
    PaymentTargetType.ORDER.value: PaymentEntityType.SHOP.value,
    PaymentTargetType.BOOKING.value: PaymentEntityType.BOOKING_SYSTEM.value,
}

ERROR_STATUS_CODES = (
    ((InvalidConfigError, InvalidAmountError, InvalidCurrencyError, InvalidStateTransitionError,
      PaymentsDisabledError, ProviderNotEnabledError, NotSupportedError), 400),
    ((UnauthorizedError, PaymentAccessDeniedError), 403),
    ((PaymentNotFoundError,), 404),
    ((RateLimitError,), 429),
)


def http_status_for(error: PaymentError) -> int:
    for error_types, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_types):
            return status_code
    return 502


def error_response(error: PaymentError, operation: str) -> JSONResponse:
    status_code = http_status_for(error)
    if status_code >= 500:
        logger.error(f"❌ PAYMENT_API_{operation.upper()}_FAILED: {safe_error_log(error)}")
    else:
        logger.warning(f"⚠️ PAYMENT_API_{operation.upper()}_REJECTED: {error.code.value} {error.message}")
    return JSONResponse({"success": False, "error": error.to_dict()}, status_code=status_code)


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "entity_type": payment.entity_type,
        "entity_id": payment.entity_id,
        "target_type": payment.target_type,
        "target_id": payment.target_id,
        "provider": payment.provider,
        "external_id": payment.external_id,
        "idempotency_key": payment.idempotency_key,
        "test_mode": bool(payment.test_mode),
        "amount": MonetaryDecimal.format_fiat(payment.amount),
        "currency": payment.currency,
        "refunded_amount": MonetaryDecimal.format_fiat(payment.refunded_amount or 0),
        "status": payment.status,
        "description": payment.description,
        "payment_url": payment.payment_url,
        "metadata": payment.payment_metadata or {},
        "status_history": payment.status_history or [],
        "refunds": payment.refunds or [],
        "error_code": payment.error_code,
        "error_message": payment.error_message,
        "created_at": to_iso(payment.created_at),
        "updated_at": to_iso(payment.updated_at),
        "paid_at": to_iso(payment.paid_at),
        "canceled_at": to_iso(payment.canceled_at),
        "expires_at": to_iso(payment.expires_at),
    }


class CreatePaymentBody(BaseModel):
    provider: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    target_type: str = PaymentTargetType.CUSTOM.value
    target_id: Optional[str] = None
    description: Optional[str] = None
    customer: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class RefundBody(BaseModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class CancelBody(BaseModel):
    reason: Optional[str] = None


class CaptureBody(BaseModel):
    amount: Optional[Decimal] = None


# Action routes are registered before the generic /{entity_type}/{entity_id} create route

@router.post("/{payment_id}/check-status")
async def check_payment_status(payment_id: str, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    try:
        payment = await payment_transaction_service.check_payment_status(payment_id, user_id=x_user_id)
    except PaymentError as e:
        return error_response(e, "check_status")
    return {"success": True, "payment": payment_to_dict(payment)}


@router.post("/{payment_id}/refund")
async def refund_payment(payment_id: str, body: Optional[RefundBody] = None,
                         x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    body = body or RefundBody()
    try:
        payment = await payment_transaction_service.refund_payment(
            payment_id, amount=body.amount, reason=body.reason, user_id=x_user_id
        )
    except PaymentError as e:
        return error_response(e, "refund")
    return {"success": True, "payment": payment_to_dict(payment)}


@router.post("/{payment_id}/cancel")
async def cancel_payment(payment_id: str, body: Optional[CancelBody] = None,
                         x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    body = body or CancelBody()
    try:
        payment = await payment_transaction_service.cancel_payment(payment_id, reason=body.reason,
                                                                   user_id=x_user_id)
    except PaymentError as e:
        return error_response(e, "cancel")
    return {"success": True, "payment": payment_to_dict(payment)}


@router.post("/{payment_id}/capture")
async def capture_payment(payment_id: str, body: Optional[CaptureBody] = None,
                          x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    body = body or CaptureBody()
    try:
        payment = await payment_transaction_service.capture_payment(payment_id, amount=body.amount,
                                                                    user_id=x_user_id)
    except PaymentError as e:
        return error_response(e, "capture")
    return {"success": True, "payment": payment_to_dict(payment)}


@router.get("/entity/{entity_type}/{entity_id}")
async def list_entity_payments(
    entity_type: str,
    entity_id: str,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    try:
        # Ownership of the listing follows ownership of the entity's config
        await payment_transaction_service.config_service.get_config(entity_type, entity_id, x_user_id)
    except PaymentError as e:
        return error_response(e, "list")
    payments = await payment_transaction_service.get_payments_by_entity(
        entity_type, entity_id, status=status, limit=limit, offset=offset
    )
    return {"success": True, "payments": [payment_to_dict(p) for p in payments],
            "limit": limit, "offset": offset}


@router.get("/{payment_id}")
async def get_payment(payment_id: str, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    payment = await payment_transaction_service.get_payment(payment_id)
    if payment is None:
        return error_response(PaymentNotFoundError(f"Payment {payment_id} not found"), "get")
    if x_user_id is not None and payment.owner_id is not None and str(payment.owner_id) != str(x_user_id):
        return error_response(PaymentAccessDeniedError("You do not have access to this payment"), "get")
    return {"success": True, "payment": payment_to_dict(payment)}


@router.post("/{entity_type}/{entity_id}")
async def create_payment(
    entity_type: str,
    entity_id: str,
    body: CreatePaymentBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    engine = payment_transaction_service
    try:
        owner_type = TARGET_ENTITY_TYPES.get(body.target_type)
        if owner_type and body.target_id and entity_type != owner_type:
            raise PaymentNotFoundError(f"{body.target_type.capitalize()} {body.target_id} not found in "
                                       f"{entity_type} {entity_id}")
        if body.target_type == PaymentTargetType.ORDER.value and body.target_id:
            payment = await engine.create_order_payment(
                entity_id, body.target_id, body.provider, return_url=body.return_url,
                cancel_url=body.cancel_url, idempotency_key=idempotency_key,
            )
        elif body.target_type == PaymentTargetType.BOOKING.value and body.target_id:
            payment = await engine.create_booking_payment(
                entity_id, body.target_id, body.provider, amount=body.amount, currency=body.currency,
                return_url=body.return_url, cancel_url=body.cancel_url, idempotency_key=idempotency_key,
            )
        else:
            if body.amount is None:
                raise InvalidAmountError("amount is required")
            payment = await engine.create_payment(CreatePaymentDto(
                entity_type=entity_type,
                entity_id=entity_id,
                provider=body.provider,
                amount=body.amount,
                currency=body.currency,
                target_type=body.target_type,
                target_id=body.target_id,
                description=body.description,
                customer=body.customer,
                metadata=body.metadata,
                return_url=body.return_url,
                cancel_url=body.cancel_url,
                idempotency_key=idempotency_key,
            ))
    except PaymentError as e:
        return error_response(e, "create")
    return JSONResponse({"success": True, "payment": payment_to_dict(payment)}, status_code=201)
