"""
Payment Transaction Service
The engine that owns every Payment row.

- create_payment validates the tenant (enabled, provider active, amount in bounds)
  before any provider call, persists the Payment and propagates its status to the
  order/booking it pays for
- every status change, whatever its source (webhook, poll, crypto monitor, refund,
  cancel), goes through one locked transition that rejects backward moves, appends
  history, stamps paid_at/canceled_at once and publishes a domain event after commit
- adapters are built per (entity, provider, test mode) and cached here; the config
  service invalidates the cache on save
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from config import Config
from database import get_async_session
from models import (
    Booking, EntityPaymentStatus, Order, Payment, PaymentEntityType, PaymentProviderType,
    PaymentStatus, PaymentTargetType, RefundStatus,
)
from services.payment_config_service import PaymentConfigService
from services.payment_errors import (
    InvalidAmountError, InvalidConfigError, InvalidStateTransitionError, PaymentAccessDeniedError,
    PaymentNotFoundError, PaymentsDisabledError, ProviderError, ProviderNotEnabledError, RefundFailedError,
)
from services.payment_events import (
    CRYPTO_PAYMENT_CONFIRMED, CRYPTO_PAYMENT_EXPIRED, PAYMENT_CREATED, STATUS_EVENTS,
    PaymentEvent, PaymentEventBus,
)
from services.providers.base_provider import (
    BasePaymentProvider, CustomerData, PaymentRequest, PaymentStatusInfo, RefundRequest,
)
from services.providers.crypto_trc20_provider import PendingCryptoPayment
from services.providers.provider_factory import PaymentProviderFactory, ProviderAdapterCache
from utils.datetime_helpers import ensure_aware_utc, to_iso, utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

CRYPTO_PROVIDER = PaymentProviderType.CRYPTO_TRC20.value
EXPIRED_REASON = "expired"
# Fresh invoice ids an adapter may mint before a conflict is reported
MAX_EXTERNAL_ID_DRAWS = 5

# Forward-only lifecycle; anything not listed is a backward or sideways move
ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.WAITING_FOR_CAPTURE, PaymentStatus.SUCCEEDED,
        PaymentStatus.CANCELED, PaymentStatus.FAILED,
    }),
    PaymentStatus.WAITING_FOR_CAPTURE: frozenset({
        PaymentStatus.SUCCEEDED, PaymentStatus.CANCELED, PaymentStatus.FAILED,
    }),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

REFUNDABLE_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})
CANCELABLE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.WAITING_FOR_CAPTURE})
REFUND_RESULT_STATUSES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED})

ENTITY_STATUS_MAP: Dict[PaymentStatus, EntityPaymentStatus] = {
    PaymentStatus.PENDING: EntityPaymentStatus.PENDING,
    PaymentStatus.WAITING_FOR_CAPTURE: EntityPaymentStatus.PENDING,
    PaymentStatus.SUCCEEDED: EntityPaymentStatus.PAID,
    PaymentStatus.CANCELED: EntityPaymentStatus.FAILED,
    PaymentStatus.FAILED: EntityPaymentStatus.FAILED,
    PaymentStatus.REFUNDED: EntityPaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED: EntityPaymentStatus.PARTIALLY_REFUNDED,
}


def is_transition_allowed(current: PaymentStatus, requested: PaymentStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def positive_amount(value: Any) -> Decimal:
    """Amount as a 2-dp Decimal; anything non-numeric or <= 0 is an InvalidAmountError"""
    try:
        return MonetaryDecimal.validate_positive(MonetaryDecimal.quantize_fiat(value))
    except ValueError as e:
        raise InvalidAmountError(str(e)) from e


def refund_status_for(payment: Payment, refunded_amount: Decimal) -> PaymentStatus:
    return PaymentStatus.REFUNDED if payment.amount - refunded_amount <= 0 else PaymentStatus.PARTIALLY_REFUNDED


def pending_crypto_view(payment: Payment, claimed_transaction_ids=()) -> PendingCryptoPayment:
    metadata = payment.payment_metadata or {}
    expires_at = payment.expires_at
    if expires_at is None and metadata.get("expires_at"):
        expires_at = datetime.fromisoformat(metadata["expires_at"])
    return PendingCryptoPayment(
        external_id=payment.external_id,
        expected_amount=Decimal(str(metadata.get("expected_amount", payment.amount))),
        wallet_address=metadata.get("wallet_address", ""),
        created_at=ensure_aware_utc(payment.created_at),
        expires_at=ensure_aware_utc(expires_at),
        original_amount=payment.amount,
        original_currency=metadata.get("original_currency", payment.currency),
        exchange_rate=Decimal(str(metadata["exchange_rate"])) if metadata.get("exchange_rate") else None,
        transaction_id=metadata.get("transaction_id"),
        claimed_transaction_ids=list(claimed_transaction_ids),
    )


@dataclass
class CreatePaymentDto:
    entity_type: str
    entity_id: str
    provider: str
    amount: Decimal
    currency: Optional[str] = None
    target_type: str = PaymentTargetType.CUSTOM.value
    target_id: Optional[str] = None
    description: Optional[str] = None
    customer: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    idempotency_key: Optional[str] = None


class PaymentTransactionService:
    """Create, reconcile, refund and cancel payments"""

    def __init__(self, config_service: Optional[PaymentConfigService] = None,
                 adapter_cache: Optional[ProviderAdapterCache] = None,
                 event_bus: Optional[PaymentEventBus] = None,
                 provider_kwargs: Optional[Dict[str, Dict[str, Any]]] = None,
                 clock: Callable = utc_now):
        self.adapter_cache = adapter_cache if adapter_cache is not None else ProviderAdapterCache()
        self.config_service = config_service if config_service is not None else PaymentConfigService(
            adapter_cache=self.adapter_cache)
        if self.config_service.adapter_cache is None:
            self.config_service.adapter_cache = self.adapter_cache
        self.event_bus = event_bus if event_bus is not None else PaymentEventBus()
        # Extra constructor arguments per provider tag (e.g. a shared exchange rate service)
        self.provider_kwargs = provider_kwargs or {}
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Adapters
    # ------------------------------------------------------------------

    async def get_adapter(self, entity_type: str, entity_id: str, provider: str,
                          test_mode: Optional[bool] = None,
                          config: Optional[Dict[str, Any]] = None) -> BasePaymentProvider:
        """
        Cached adapter for an entity's provider.

        test_mode defaults to the entity's current mode; reconciliation of an existing
        payment passes the mode the payment was created in.
        """
        if config is None:
            config = await self.config_service.get_config_internal(entity_type, entity_id)
        mode = bool(config["test_mode"] if test_mode is None else test_mode)

        adapter = self.adapter_cache.get(entity_type, entity_id, provider, mode)
        if adapter is not None:
            return adapter

        raw = (config.get("provider_settings") or {}).get(provider)
        if not raw:
            raise InvalidConfigError(f"{provider} is not configured for {entity_type}:{entity_id}",
                                     errors=[f"{provider}: credentials are not configured"], provider=provider)

        kwargs = dict(self.provider_kwargs.get(provider, {}))
        if provider == CRYPTO_PROVIDER:
            kwargs.setdefault("payment_lookup", self._crypto_lookup)
        adapter = PaymentProviderFactory.create(provider, raw, mode, **kwargs)
        self.adapter_cache.put(entity_type, entity_id, provider, mode, adapter)
        return adapter

    async def _adapter_for(self, payment: Payment) -> BasePaymentProvider:
        return await self.get_adapter(payment.entity_type, payment.entity_id, payment.provider,
                                      test_mode=bool(payment.test_mode))

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_payment(self, dto: CreatePaymentDto) -> Payment:
        """
        Validate, call the provider and persist a pending Payment.

        Raises:
            PaymentsDisabledError / ProviderNotEnabledError / InvalidAmountError:
                before any provider call
            PaymentError subclasses from the adapter
        """
        config = await self.config_service.get_config_internal(dto.entity_type, dto.entity_id)
        if not config["enabled"] or not config["providers"]:
            raise PaymentsDisabledError(f"Payments are disabled for {dto.entity_type}:{dto.entity_id}")
        if dto.provider not in config["providers"]:
            raise ProviderNotEnabledError(f"Provider {dto.provider} is not enabled", provider=dto.provider)

        settings = config["settings"]
        amount = positive_amount(dto.amount)
        min_amount, max_amount = settings.get("min_amount"), settings.get("max_amount")
        if min_amount not in (None, "") and amount < Decimal(str(min_amount)):
            raise InvalidAmountError(f"Amount {amount} is below the minimum of {min_amount}")
        if max_amount not in (None, "") and amount > Decimal(str(max_amount)):
            raise InvalidAmountError(f"Amount {amount} exceeds the maximum of {max_amount}")
        currency = (dto.currency or settings.get("currency") or Config.DEFAULT_PAYMENT_CURRENCY).upper()

        if dto.idempotency_key:
            existing = await self.get_payment_by_idempotency_key(dto.provider, dto.idempotency_key)
            if existing is not None:
                logger.info(f"🔁 PAYMENT_IDEMPOTENT_REPLAY: {existing.id} for key {dto.idempotency_key}")
                return existing
        idempotency_key = dto.idempotency_key or str(uuid.uuid4())

        adapter = await self.get_adapter(dto.entity_type, dto.entity_id, dto.provider, config=config)
        reserved = []
        if dto.provider == CRYPTO_PROVIDER:
            reserved = await self._reserved_crypto_amounts(adapter.wallet_address)

        return_url = dto.return_url or (
            f"{Config.PAYMENT_PUBLIC_BASE_URL}/payments/return/{dto.entity_type}/{dto.entity_id}"
        )
        request = PaymentRequest(
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
            description=dto.description,
            order_id=dto.target_id,
            return_url=return_url,
            cancel_url=dto.cancel_url,
            customer=CustomerData.from_dict(dto.customer),
            metadata={k: v for k, v in {
                **dto.metadata, "entity_type": dto.entity_type, "entity_id": str(dto.entity_id),
                "target_type": dto.target_type, "target_id": dto.target_id,
            }.items() if v is not None},
            reserved_amounts=reserved,
        )

        while True:
            result = await adapter.create_payment(request)
            payment = self._new_payment(dto, config, amount, currency, idempotency_key, result)
            try:
                async with get_async_session() as session:
                    session.add(payment)
                    await session.flush()
                    await self._propagate_to_target(session, payment)
                break
            except IntegrityError as e:
                # A concurrent request with the same idempotency key won the insert
                existing = await self.get_payment_by_idempotency_key(dto.provider, idempotency_key)
                if existing is not None:
                    return existing
                if await self.get_payment_by_external_id(dto.provider, result.external_id) is None:
                    raise ProviderError(f"Could not store payment for {dto.provider}:{result.external_id}",
                                        provider=dto.provider, original_error=e) from e
                if not adapter.mints_external_id or request.invoice_attempt + 1 >= MAX_EXTERNAL_ID_DRAWS:
                    raise ProviderError(f"{dto.provider} invoice id {result.external_id} is already in use",
                                        provider=dto.provider, original_error=e) from e
                logger.warning(f"⚠️ PAYMENT_EXTERNAL_ID_TAKEN: {dto.provider}:{result.external_id}, "
                               f"drawing another (attempt {request.invoice_attempt + 1})")
                request.invoice_attempt += 1

        logger.info(f"✅ PAYMENT_CREATED: {payment.id} {dto.provider}:{result.external_id} "
                    f"{amount} {currency} for {dto.entity_type}:{dto.entity_id}")
        await self._publish(PAYMENT_CREATED, payment, None)

        if result.status != PaymentStatus.PENDING:
            payment = await self._transition(payment.id, result.status, reason="provider_initial_status")
        return payment

    def _new_payment(self, dto: CreatePaymentDto, config: Dict[str, Any], amount: Decimal, currency: str,
                     idempotency_key: str, result) -> Payment:
        now = self._clock()
        return Payment(
            id=str(uuid.uuid4()),
            entity_type=dto.entity_type,
            entity_id=str(dto.entity_id),
            owner_id=config.get("owner_id"),
            target_type=dto.target_type,
            target_id=dto.target_id,
            provider=dto.provider,
            external_id=result.external_id,
            idempotency_key=idempotency_key,
            test_mode=bool(config["test_mode"]),
            amount=amount,
            currency=currency,
            refunded_amount=Decimal("0"),
            description=dto.description,
            payment_url=result.payment_url,
            customer_data=CustomerData.from_dict(dto.customer).to_dict() if dto.customer else None,
            payment_metadata={**dto.metadata, **result.metadata},
            status=PaymentStatus.PENDING.value,
            status_history=[{
                "status": PaymentStatus.PENDING.value,
                "previous_status": None,
                "timestamp": to_iso(now),
                "reason": "created",
                "metadata": {},
            }],
            refunds=[],
            created_at=now,
            updated_at=now,
            expires_at=result.expires_at,
        )

    async def create_order_payment(self, shop_id: str, order_id: str, provider: str,
                                   return_url: Optional[str] = None, cancel_url: Optional[str] = None,
                                   idempotency_key: Optional[str] = None) -> Payment:
        async with get_async_session() as session:
            order = await session.get(Order, order_id)
        if order is None or str(order.shop_id) != str(shop_id):
            raise PaymentNotFoundError(f"Order {order_id} not found in shop {shop_id}")
        if order.payment_status == EntityPaymentStatus.PAID.value:
            raise InvalidStateTransitionError(f"Order {order_id} is already paid",
                                              current_status=order.payment_status)
        return await self.create_payment(CreatePaymentDto(
            entity_type=PaymentEntityType.SHOP.value,
            entity_id=str(shop_id),
            provider=provider,
            amount=order.total_amount,
            currency=order.currency,
            target_type=PaymentTargetType.ORDER.value,
            target_id=order.id,
            description=f"Order #{order.id}",
            customer={"email": order.customer_email, "name": order.customer_name,
                      "phone": order.customer_phone},
            return_url=return_url,
            cancel_url=cancel_url,
            idempotency_key=idempotency_key,
        ))

    async def create_booking_payment(self, booking_system_id: str, booking_id: str, provider: str,
                                     amount: Optional[Decimal] = None, currency: Optional[str] = None,
                                     return_url: Optional[str] = None, cancel_url: Optional[str] = None,
                                     idempotency_key: Optional[str] = None) -> Payment:
        async with get_async_session() as session:
            booking = await session.get(Booking, booking_id)
        if booking is None or str(booking.booking_system_id) != str(booking_system_id):
            raise PaymentNotFoundError(f"Booking {booking_id} not found in booking system {booking_system_id}")
        if booking.payment_status == EntityPaymentStatus.PAID.value:
            raise InvalidStateTransitionError(f"Booking {booking_id} is already paid",
                                              current_status=booking.payment_status)
        amount = amount if amount is not None else booking.price
        if amount is None:
            raise InvalidAmountError(f"Booking {booking_id} has no price")
        return await self.create_payment(CreatePaymentDto(
            entity_type=PaymentEntityType.BOOKING_SYSTEM.value,
            entity_id=str(booking_system_id),
            provider=provider,
            amount=amount,
            currency=currency or booking.currency,
            target_type=PaymentTargetType.BOOKING.value,
            target_id=booking.id,
            description=f"Booking #{booking.id}",
            customer={"email": booking.client_email, "name": booking.client_name},
            return_url=return_url,
            cancel_url=cancel_url,
            idempotency_key=idempotency_key,
        ))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        async with get_async_session() as session:
            return await session.get(Payment, payment_id)

    async def get_payment_by_external_id(self, provider: str, external_id: str) -> Optional[Payment]:
        async with get_async_session() as session:
            result = await session.execute(
                select(Payment).where(Payment.provider == provider, Payment.external_id == external_id)
            )
            return result.scalar_one_or_none()

    async def get_payment_by_idempotency_key(self, provider: str, idempotency_key: str) -> Optional[Payment]:
        async with get_async_session() as session:
            result = await session.execute(
                select(Payment).where(Payment.provider == provider, Payment.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def get_payments_by_entity(self, entity_type: str, entity_id: str, status: Optional[str] = None,
                                     limit: int = 50, offset: int = 0) -> List[Payment]:
        query = select(Payment).where(Payment.entity_type == entity_type, Payment.entity_id == str(entity_id))
        if status:
            query = query.where(Payment.status == status)
        query = query.order_by(Payment.created_at.desc()).limit(limit).offset(offset)
        async with get_async_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_payment_by_target(self, target_type: str, target_id: str) -> Optional[Payment]:
        async with get_async_session() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.target_type == target_type, Payment.target_id == str(target_id))
                .order_by(Payment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_pending_crypto_payments(self) -> List[Payment]:
        async with get_async_session() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.provider == CRYPTO_PROVIDER, Payment.status == PaymentStatus.PENDING.value)
                .order_by(Payment.created_at.asc())
            )
            return list(result.scalars().all())

    async def get_claimed_transaction_ids(self, wallet_address: str, since=None) -> List[str]:
        """Transfer ids already recorded on confirmed crypto payments to wallet_address"""
        query = select(Payment).where(
            Payment.provider == CRYPTO_PROVIDER,
            Payment.status.in_([PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value,
                                PaymentStatus.PARTIALLY_REFUNDED.value]),
        )
        if since is not None:
            query = query.where(Payment.paid_at >= since)
        async with get_async_session() as session:
            result = await session.execute(query)
            payments = result.scalars().all()
        return [
            p.payment_metadata["transaction_id"] for p in payments
            if (p.payment_metadata or {}).get("wallet_address") == wallet_address
            and (p.payment_metadata or {}).get("transaction_id")
        ]

    async def _reserved_crypto_amounts(self, wallet_address: str) -> List[Decimal]:
        return [
            Decimal(str(p.payment_metadata["expected_amount"]))
            for p in await self.get_pending_crypto_payments()
            if (p.payment_metadata or {}).get("wallet_address") == wallet_address
            and (p.payment_metadata or {}).get("expected_amount")
        ]

    async def _crypto_lookup(self, external_id: str) -> Optional[PendingCryptoPayment]:
        payment = await self.get_payment_by_external_id(CRYPTO_PROVIDER, external_id)
        if payment is None:
            return None
        wallet = (payment.payment_metadata or {}).get("wallet_address", "")
        claimed = await self.get_claimed_transaction_ids(wallet, since=payment.created_at)
        return pending_crypto_view(payment, claimed)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _lock_for(self, payment_id: str) -> asyncio.Lock:
        lock = self._locks.get(payment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[payment_id] = lock
        return lock

    @asynccontextmanager
    async def _locked_payment(self, payment_id: str):
        """One writer per payment: in-process lock plus a row lock on the reload"""
        async with self._lock_for(payment_id):
            async with get_async_session() as session:
                result = await session.execute(
                    select(Payment).where(Payment.id == payment_id).with_for_update()
                )
                payment = result.scalar_one_or_none()
                if payment is None:
                    raise PaymentNotFoundError(f"Payment {payment_id} not found")
                yield session, payment

    def _apply_status(self, payment: Payment, new_status: PaymentStatus, reason: Optional[str],
                      metadata: Optional[Dict[str, Any]]) -> Optional[PaymentStatus]:
        """
        Mutate payment in place; returns the previous status, or None for a no-op.

        Raises:
            InvalidStateTransitionError: backward or sideways move
        """
        current = PaymentStatus(payment.status)
        if new_status == current:
            return None
        if not is_transition_allowed(current, new_status):
            raise InvalidStateTransitionError(
                f"Cannot move payment {payment.id} from {current.value} to {new_status.value}",
                current_status=current.value,
                requested_status=new_status.value,
            )

        now = self._clock()
        payment.status_history = [*(payment.status_history or []), {
            "status": new_status.value,
            "previous_status": current.value,
            "timestamp": to_iso(now),
            "reason": reason,
            "metadata": metadata or {},
        }]
        payment.status = new_status.value
        payment.updated_at = now
        if metadata:
            payment.payment_metadata = {**(payment.payment_metadata or {}), **metadata}
        if new_status == PaymentStatus.SUCCEEDED and payment.paid_at is None:
            payment.paid_at = now
        if new_status == PaymentStatus.CANCELED and payment.canceled_at is None:
            payment.canceled_at = now
        if new_status == PaymentStatus.FAILED and metadata:
            if metadata.get("error_code"):
                payment.error_code = str(metadata["error_code"])
            if metadata.get("error_message"):
                payment.error_message = str(metadata["error_message"])
        return current

    async def _transition(self, payment_id: str, new_status: PaymentStatus, reason: Optional[str] = None,
                          metadata: Optional[Dict[str, Any]] = None) -> Payment:
        async with self._locked_payment(payment_id) as (session, payment):
            if new_status in REFUND_RESULT_STATUSES:
                # Refund reports carry totals; the status follows from what remains
                self._set_refunded_amount(payment, self._reported_refund_total(payment, new_status, metadata))
                new_status = refund_status_for(payment, payment.refunded_amount or Decimal("0"))
            previous = self._apply_status(payment, new_status, reason, metadata)
            if previous is not None:
                await self._propagate_to_target(session, payment)

        if previous is not None:
            logger.info(f"🔄 PAYMENT_STATUS_CHANGED: {payment.id} {previous.value} → {new_status.value} "
                        f"(reason={reason})")
            await self._publish_status(payment, previous, reason)
        else:
            logger.debug(f"⏭️ PAYMENT_STATUS_UNCHANGED: {payment.id} already {new_status.value}")
        return payment

    @staticmethod
    def _reported_refund_total(payment: Payment, status: PaymentStatus,
                               metadata: Optional[Dict[str, Any]]) -> Decimal:
        if status == PaymentStatus.REFUNDED:
            return payment.amount
        if metadata and metadata.get("refunded_amount"):
            return MonetaryDecimal.to_decimal(metadata["refunded_amount"])
        return payment.refunded_amount or Decimal("0")

    @staticmethod
    def _set_refunded_amount(payment: Payment, refunded_amount: Decimal):
        # Provider totals never shrink what is already recorded and never exceed the charge
        refunded_amount = min(MonetaryDecimal.quantize_fiat(refunded_amount), payment.amount)
        if refunded_amount > (payment.refunded_amount or 0):
            payment.refunded_amount = refunded_amount

    async def update_payment_status(self, external_id: str, new_status: PaymentStatus,
                                    reason: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
                                    provider: Optional[str] = None) -> Payment:
        """
        The single mutation point for status changes reported by providers.

        Raises:
            PaymentNotFoundError: no payment with that external id
            InvalidStateTransitionError: the report would move the payment backward
        """
        query = select(Payment.id).where(Payment.external_id == external_id)
        if provider:
            query = query.where(Payment.provider == provider)
        async with get_async_session() as session:
            payment_id = (await session.execute(query)).scalars().first()
        if payment_id is None:
            raise PaymentNotFoundError(f"Payment with external id {external_id} not found", provider=provider)
        return await self._transition(payment_id, new_status, reason, metadata)

    async def _propagate_to_target(self, session, payment: Payment):
        entity_status = ENTITY_STATUS_MAP[PaymentStatus(payment.status)].value
        if not payment.target_id:
            return
        if payment.target_type == PaymentTargetType.ORDER.value:
            target = await session.get(Order, payment.target_id)
        elif payment.target_type == PaymentTargetType.BOOKING.value:
            target = await session.get(Booking, payment.target_id)
        else:
            return
        if target is None:
            logger.warning(f"⚠️ PAYMENT_TARGET_MISSING: {payment.target_type} {payment.target_id} "
                           f"for payment {payment.id}")
            return
        target.payment_id = payment.id
        target.payment_status = entity_status
        logger.debug(f"📌 PAYMENT_TARGET_UPDATED: {payment.target_type} {payment.target_id} → {entity_status}")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def handle_webhook(self, entity_type: str, entity_id: str, provider: str, payload: Any,
                             signature: Optional[str] = None) -> Optional[Payment]:
        """
        Verify and apply a provider notification.

        Returns the payment, or None when the notification refers to a payment this
        entity does not have.

        Raises:
            WebhookVerificationError: bad signature; nothing is changed
        """
        adapter = await self.get_adapter(entity_type, entity_id, provider)
        data = await adapter.parse_webhook(payload, signature)

        payment = await self.get_payment_by_external_id(provider, data.external_id)
        reference = data.metadata.get("payment_reference")
        if payment is None and reference:
            payment = await self.get_payment_by_idempotency_key(provider, str(reference))
        if payment is None or payment.entity_type != entity_type or payment.entity_id != str(entity_id):
            logger.warning(f"⚠️ WEBHOOK_PAYMENT_NOT_FOUND: {provider}:{data.external_id} "
                           f"for {entity_type}:{entity_id} (event={data.event})")
            return None

        logger.info(f"📥 WEBHOOK_RECEIVED: {provider} {data.event} for payment {payment.id} "
                    f"→ {data.status.value}")
        return await self._reconcile(payment, data.status, f"webhook:{data.event}", data.metadata)

    async def check_payment_status(self, payment_id: str, user_id: Optional[str] = None) -> Payment:
        """Poll the provider and reconcile exactly as a webhook would"""
        payment = await self._get_owned_payment(payment_id, user_id)
        adapter = await self._adapter_for(payment)
        info = await adapter.get_payment_status(payment.external_id)
        return await self.apply_status_info(payment, info, reason="status_check")

    async def apply_status_info(self, payment: Payment, info: PaymentStatusInfo, reason: str) -> Payment:
        if payment.provider == CRYPTO_PROVIDER:
            if info.status == PaymentStatus.SUCCEEDED:
                reason = "crypto_transfer_confirmed"
            elif info.status == PaymentStatus.CANCELED and info.metadata.get("reason") == EXPIRED_REASON:
                reason = EXPIRED_REASON
        return await self._reconcile(payment, info.status, reason, info.metadata)

    async def _reconcile(self, payment: Payment, reported: PaymentStatus, reason: str,
                         metadata: Dict[str, Any]) -> Payment:
        # A repeated partial refund report may still carry a new refunded total
        if reported == PaymentStatus(payment.status) and reported != PaymentStatus.PARTIALLY_REFUNDED:
            logger.debug(f"⏭️ PAYMENT_DUPLICATE_REPORT: {payment.id} already {reported.value}")
            return payment
        try:
            return await self.update_payment_status(payment.external_id, reported, reason=reason,
                                                    metadata=self._history_metadata(metadata),
                                                    provider=payment.provider)
        except InvalidStateTransitionError as e:
            logger.warning(f"⚠️ PAYMENT_TRANSITION_REJECTED: {payment.id} {e.current_status} → "
                           f"{e.requested_status} ({reason})")
            return await self.get_payment(payment.id)

    @staticmethod
    def _history_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Provider metadata reduced to JSON-safe scalars"""
        safe = {}
        for key, value in (metadata or {}).items():
            if value is None or isinstance(value, (str, int, float, bool)):
                safe[str(key)] = value
            else:
                safe[str(key)] = str(value)
        return safe

    # ------------------------------------------------------------------
    # Refund / cancel / capture
    # ------------------------------------------------------------------

    async def _get_owned_payment(self, payment_id: str, user_id: Optional[str]) -> Payment:
        payment = await self.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        if user_id is not None and payment.owner_id is not None and str(payment.owner_id) != str(user_id):
            raise PaymentAccessDeniedError("You do not have access to this payment")
        return payment

    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None,
                             reason: Optional[str] = None, user_id: Optional[str] = None) -> Payment:
        """
        Full or partial refund.

        Raises:
            InvalidStateTransitionError: payment is not succeeded or partially refunded
            InvalidAmountError: amount is not positive or exceeds what remains
            NotSupportedError: the provider has no refund API
            RefundFailedError: the provider rejected the refund
        """
        payment = await self._get_owned_payment(payment_id, user_id)
        self._check_refundable(payment, amount)
        adapter = await self._adapter_for(payment)

        async with self._locked_payment(payment_id) as (session, payment):
            refund_amount = self._check_refundable(payment, amount)
            result = await adapter.refund(RefundRequest(
                external_payment_id=payment.external_id,
                amount=refund_amount,
                currency=payment.currency,
                idempotency_key=f"refund_{payment.id}_{len(payment.refunds or []) + 1}",
                reason=reason,
            ))
            if result.status == RefundStatus.FAILED:
                raise RefundFailedError(f"Refund of {refund_amount} was rejected by {payment.provider}",
                                        provider=payment.provider)

            refunded_total = (payment.refunded_amount or Decimal("0")) + refund_amount
            payment.refunds = [*(payment.refunds or []), {
                "refund_id": result.refund_id,
                "amount": MonetaryDecimal.format_fiat(refund_amount),
                "status": result.status.value,
                "reason": reason,
                "created_at": to_iso(self._clock()),
            }]
            payment.refunded_amount = refunded_total
            new_status = refund_status_for(payment, refunded_total)
            previous = self._apply_status(payment, new_status, reason or "refund",
                                          {"refund_id": result.refund_id,
                                           "refunded_amount": MonetaryDecimal.format_fiat(refunded_total)})
            await self._propagate_to_target(session, payment)

        logger.info(f"💸 PAYMENT_REFUNDED: {payment.id} {refund_amount} {payment.currency} "
                    f"(total {refunded_total}, status {payment.status})")
        if previous is not None:
            await self._publish_status(payment, previous, reason or "refund")
        return payment

    @staticmethod
    def _check_refundable(payment: Payment, amount: Optional[Decimal]) -> Decimal:
        status = PaymentStatus(payment.status)
        if status not in REFUNDABLE_STATUSES:
            raise InvalidStateTransitionError(
                f"Payment {payment.id} cannot be refunded in status {status.value}",
                current_status=status.value,
                requested_status=PaymentStatus.REFUNDED.value,
            )
        remaining = payment.remaining_amount
        refund_amount = remaining if amount is None else positive_amount(amount)
        if refund_amount > remaining:
            raise InvalidAmountError(f"Refund {refund_amount} exceeds the refundable {remaining}")
        return refund_amount

    async def cancel_payment(self, payment_id: str, reason: Optional[str] = None,
                             user_id: Optional[str] = None) -> Payment:
        payment = await self._get_owned_payment(payment_id, user_id)
        status = PaymentStatus(payment.status)
        if status not in CANCELABLE_STATUSES:
            raise InvalidStateTransitionError(
                f"Payment {payment.id} cannot be canceled in status {status.value}",
                current_status=status.value,
                requested_status=PaymentStatus.CANCELED.value,
            )
        adapter = await self._adapter_for(payment)
        info = await adapter.cancel_payment(payment.external_id)
        return await self._transition(payment.id, PaymentStatus.CANCELED, reason or "canceled",
                                      self._history_metadata(info.metadata))

    async def capture_payment(self, payment_id: str, amount: Optional[Decimal] = None,
                              user_id: Optional[str] = None) -> Payment:
        payment = await self._get_owned_payment(payment_id, user_id)
        status = PaymentStatus(payment.status)
        if status != PaymentStatus.WAITING_FOR_CAPTURE:
            raise InvalidStateTransitionError(
                f"Payment {payment.id} is not awaiting capture (status {status.value})",
                current_status=status.value,
                requested_status=PaymentStatus.SUCCEEDED.value,
            )
        adapter = await self._adapter_for(payment)
        info = await adapter.capture_payment(payment.external_id, amount)
        return await self._transition(payment.id, info.status, "captured", self._history_metadata(info.metadata))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _publish(self, event_type: str, payment: Payment, previous: Optional[PaymentStatus],
                       reason: Optional[str] = None):
        event = PaymentEvent(
            event_type=event_type,
            payment_id=payment.id,
            entity_type=payment.entity_type,
            entity_id=payment.entity_id,
            provider=payment.provider,
            status=payment.status,
            previous_status=previous.value if previous else None,
            target_type=payment.target_type,
            target_id=payment.target_id,
            reason=reason,
            data={"amount": MonetaryDecimal.format_fiat(payment.amount), "currency": payment.currency,
                  "external_id": payment.external_id},
        )
        await self.event_bus.publish(event)

    async def _publish_status(self, payment: Payment, previous: PaymentStatus, reason: Optional[str]):
        status = PaymentStatus(payment.status)
        event_type = STATUS_EVENTS.get(status)
        if event_type:
            await self._publish(event_type, payment, previous, reason)
        if payment.provider == CRYPTO_PROVIDER:
            if status == PaymentStatus.SUCCEEDED:
                await self._publish(CRYPTO_PAYMENT_CONFIRMED, payment, previous, reason)
            elif status == PaymentStatus.CANCELED and reason == EXPIRED_REASON:
                await self._publish(CRYPTO_PAYMENT_EXPIRED, payment, previous, reason)


payment_transaction_service = PaymentTransactionService()
