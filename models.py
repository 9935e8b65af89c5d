"""
Payment Reconciliation Engine - Database Schema
===============================================

Schema for the multi-tenant payment module:
- Payment: one attempt to collect money through a provider, with append-only status history
- PaymentConfig: per-entity provider settings with encrypted secret fields
- Order / Booking: the business entities a payment writes its status back to
"""

import uuid
from enum import Enum
from sqlalchemy import (
    Column, String, Numeric, DateTime, Boolean, Text,
    UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Payment lifecycle states"""
    PENDING = "pending"
    WAITING_FOR_CAPTURE = "waiting_for_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


class PaymentProviderType(Enum):
    """Supported payment gateways"""
    YOOKASSA = "yookassa"
    TINKOFF = "tinkoff"
    ROBOKASSA = "robokassa"
    STRIPE = "stripe"
    CRYPTO_TRC20 = "crypto_trc20"


class PaymentEntityType(Enum):
    """Tenant-side party collecting money"""
    SHOP = "shop"
    BOOKING_SYSTEM = "booking_system"
    CUSTOM_PAGE = "custom_page"
    BOT = "bot"


class PaymentTargetType(Enum):
    """What is being paid for"""
    ORDER = "order"
    BOOKING = "booking"
    API_CALL = "api_call"
    FLOW_PAYMENT = "flow_payment"
    CUSTOM = "custom"


class EntityPaymentStatus(Enum):
    """Payment status as seen by orders and bookings"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ============================================================================
# PAYMENTS
# ============================================================================

class Payment(Base):
    """One attempt to collect money through a provider"""
    __tablename__ = 'payments'

    id = Column(String(36), primary_key=True, default=generate_uuid)

    # Who is charging
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False)
    owner_id = Column(String(64), nullable=True, index=True)

    # What is being paid for
    target_type = Column(String(32), nullable=False)
    target_id = Column(String(64), nullable=True)

    # Provider linkage
    provider = Column(String(32), nullable=False)
    external_id = Column(String(255), nullable=True)
    idempotency_key = Column(String(128), nullable=False)
    test_mode = Column(Boolean, default=False, nullable=False)

    # Money
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    refunded_amount = Column(Numeric(18, 2), default=0, nullable=False)

    description = Column(Text, nullable=True)
    payment_url = Column(Text, nullable=True)
    customer_data = Column(JSONType, nullable=True)
    # 'metadata' is reserved by the declarative base
    payment_metadata = Column("metadata", JSONType, nullable=True)

    # Status and audit trail
    status = Column(String(32), default=PaymentStatus.PENDING.value, nullable=False)
    status_history = Column(JSONType, nullable=False, default=list)
    refunds = Column(JSONType, nullable=False, default=list)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    # Important timestamps
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('provider', 'external_id', name='uq_payments_provider_external_id'),
        UniqueConstraint('provider', 'idempotency_key', name='uq_payments_provider_idempotency_key'),
        CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        CheckConstraint('refunded_amount >= 0 AND refunded_amount <= amount', name='ck_payments_refund_bounds'),
        Index('ix_payments_entity', 'entity_type', 'entity_id'),
        Index('ix_payments_target', 'target_type', 'target_id'),
        Index('ix_payments_provider_status', 'provider', 'status'),
        Index('ix_payments_created_at', 'created_at'),
    )

    @property
    def remaining_amount(self):
        return self.amount - (self.refunded_amount or 0)

    def __repr__(self):
        return f"<Payment {self.id} {self.provider}:{self.external_id} {self.status} {self.amount} {self.currency}>"


class PaymentConfig(Base):
    """Per-entity payment module settings"""
    __tablename__ = 'payment_configs'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False)
    owner_id = Column(String(64), nullable=True)

    enabled = Column(Boolean, default=False, nullable=False)
    test_mode = Column(Boolean, default=True, nullable=False)
    settings = Column(JSONType, nullable=False, default=dict)
    providers = Column(JSONType, nullable=False, default=list)
    # Secret fields inside are stored encrypted (iv:tag:ciphertext hex)
    provider_settings = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', name='uq_payment_configs_entity'),
    )


# ============================================================================
# BUSINESS ENTITIES (collaborators)
# ============================================================================

class Order(Base):
    """Shop order; the payment module reads the amount owed and writes payment status"""
    __tablename__ = 'orders'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    shop_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=True)
    total_amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="RUB")
    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)

    payment_id = Column(String(36), nullable=True)
    payment_status = Column(String(32), default=EntityPaymentStatus.PENDING.value, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class Booking(Base):
    """Booking-system reservation; same two-field contract as Order"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_system_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=True)
    price = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(10), nullable=False, default="RUB")
    client_email = Column(String(255), nullable=True)
    client_name = Column(String(255), nullable=True)

    payment_id = Column(String(36), nullable=True)
    payment_status = Column(String(32), default=EntityPaymentStatus.PENDING.value, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
