"""
In-process order event channel.

Services publish events after their transaction has committed; subscribers
(emails, wholesaler dispatch) react to them. Subscriber failures are logged
and contained, so a broken email template can never fail a checkout or make
the payment gateway retry a webhook.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Type

from src.core.logging import bind_order_context, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OrderEvent:
    """Base class of all order events."""

    order_id: uuid.UUID
    order_number: str
    occurred_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), kw_only=True
    )

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class OrderCreated(OrderEvent):
    """A checkout persisted a new order."""

    customer_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class PaymentConfirmed(OrderEvent):
    """An order went from unpaid to paid. Published once per order."""

    gateway_payment_id: str = ""
    previous_payment_status: str = ""


@dataclass(frozen=True)
class OrderStatusChanged(OrderEvent):
    """An administrator changed the order status."""

    previous_status: str = ""
    new_status: str = ""
    tracking_number: Optional[str] = None
    changed_by: Optional[str] = None


EventHandler = Callable[[OrderEvent], Awaitable[None]]


class OrderEventBus:
    """
    Minimal publish/subscribe dispatcher keyed by event type.

    Handlers run sequentially in subscription order.
    """

    def __init__(self) -> None:
        self._handlers: dict[Type[OrderEvent], list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: Type[OrderEvent], handler: EventHandler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[OrderEvent], handler: EventHandler) -> None:
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def handlers_for(self, event_type: Type[OrderEvent]) -> list[EventHandler]:
        return list(self._handlers.get(event_type, ()))

    async def publish(self, event: OrderEvent) -> int:
        """
        Deliver ``event`` to every subscriber.

        Returns:
            Number of handlers that completed without raising
        """
        handlers = self.handlers_for(type(event))
        succeeded = 0

        with bind_order_context(event.order_id, event.order_number):
            logger.debug(
                "Publishing order event",
                event_name=event.name,
                handler_count=len(handlers),
            )
            for handler in handlers:
                try:
                    await handler(event)
                    succeeded += 1
                except Exception as e:
                    logger.error(
                        "Order event handler failed",
                        event_name=event.name,
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )

        return succeeded


_event_bus: Optional[OrderEventBus] = None


def get_event_bus() -> OrderEventBus:
    """Get the process-wide event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = OrderEventBus()
    return _event_bus
