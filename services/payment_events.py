"""
Payment domain events

The transaction engine is the only publisher; it publishes after a status change has
been committed. Subscribers (notifications, analytics, order fulfilment) register an
async or plain callable per event type. A failing subscriber is logged and never
affects the publisher or the other subscribers.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from models import PaymentStatus
from utils.datetime_helpers import utc_now

logger = logging.getLogger(__name__)

PAYMENT_CREATED = "payment.created"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_CANCELED = "payment.canceled"
PAYMENT_REFUNDED = "payment.refunded"
CRYPTO_PAYMENT_CONFIRMED = "crypto.payment.confirmed"
CRYPTO_PAYMENT_EXPIRED = "crypto.payment.expired"

ALL_EVENTS = (
    PAYMENT_CREATED, PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_CANCELED, PAYMENT_REFUNDED,
    CRYPTO_PAYMENT_CONFIRMED, CRYPTO_PAYMENT_EXPIRED,
)

# pending and waiting_for_capture emit nothing
STATUS_EVENTS: Dict[PaymentStatus, str] = {
    PaymentStatus.SUCCEEDED: PAYMENT_SUCCEEDED,
    PaymentStatus.CANCELED: PAYMENT_CANCELED,
    PaymentStatus.FAILED: PAYMENT_FAILED,
    PaymentStatus.REFUNDED: PAYMENT_REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED: PAYMENT_REFUNDED,
}


@dataclass
class PaymentEvent:
    event_type: str
    payment_id: str
    entity_type: str
    entity_id: str
    provider: str
    status: str
    previous_status: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


EventHandler = Callable[[PaymentEvent], Union[None, Awaitable[None]]]


class PaymentEventBus:
    """Typed callback registry for payment events"""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler):
        if event_type not in ALL_EVENTS:
            raise ValueError(f"Unknown payment event: {event_type}")
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: PaymentEvent) -> int:
        """Deliver event to every subscriber; returns how many handled it without error"""
        delivered = 0
        for handler in list(self._handlers.get(event.event_type, [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"❌ EVENT_HANDLER_FAILED: {event.event_type} for payment {event.payment_id} "
                             f"in {getattr(handler, '__name__', repr(handler))}: {e}")
        logger.debug(f"📣 PAYMENT_EVENT: {event.event_type} payment={event.payment_id} "
                     f"delivered={delivered}")
        return delivered

    def clear(self):
        self._handlers.clear()
