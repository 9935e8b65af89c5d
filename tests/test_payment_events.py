"""
Payment event bus: typed subscriptions, sync and async handlers, failure isolation
"""

import pytest

from services.payment_events import (
    PAYMENT_CREATED, PAYMENT_SUCCEEDED, STATUS_EVENTS, PaymentEvent, PaymentEventBus,
)
from models import PaymentStatus


def _event(event_type=PAYMENT_SUCCEEDED):
    return PaymentEvent(event_type=event_type, payment_id="p-1", entity_type="shop", entity_id="shop-1",
                        provider="yookassa", status="succeeded", previous_status="pending")


class TestPaymentEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_both_receive(self):
        bus = PaymentEventBus()
        seen = []

        async def async_handler(event):
            seen.append(("async", event.payment_id))

        bus.subscribe(PAYMENT_SUCCEEDED, lambda e: seen.append(("sync", e.payment_id)))
        bus.subscribe(PAYMENT_SUCCEEDED, async_handler)

        assert await bus.publish(_event()) == 2
        assert seen == [("sync", "p-1"), ("async", "p-1")]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        bus = PaymentEventBus()
        seen = []

        def broken(event):
            raise RuntimeError("notification service down")

        bus.subscribe(PAYMENT_SUCCEEDED, broken)
        bus.subscribe(PAYMENT_SUCCEEDED, seen.append)

        assert await bus.publish(_event()) == 1
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_only_matching_type_is_delivered(self):
        bus = PaymentEventBus()
        seen = []
        bus.subscribe(PAYMENT_CREATED, seen.append)
        await bus.publish(_event(PAYMENT_SUCCEEDED))
        assert seen == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = PaymentEventBus()
        seen = []
        bus.subscribe(PAYMENT_SUCCEEDED, seen.append)
        bus.unsubscribe(PAYMENT_SUCCEEDED, seen.append)
        assert await bus.publish(_event()) == 0

    def test_unknown_event_type_is_rejected(self):
        with pytest.raises(ValueError):
            PaymentEventBus().subscribe("payment.teleported", print)

    def test_pending_states_emit_nothing(self):
        assert PaymentStatus.PENDING not in STATUS_EVENTS
        assert PaymentStatus.WAITING_FOR_CAPTURE not in STATUS_EVENTS
        assert STATUS_EVENTS[PaymentStatus.PARTIALLY_REFUNDED] == STATUS_EVENTS[PaymentStatus.REFUNDED]
