"""
Default subscribers of the order event bus.

Handlers run after the publishing transaction has committed and open their
own session, so their writes (notification logs, item bookkeeping) commit
independently of the request that triggered them.
"""

import uuid
from typing import Optional

from src.core.logging import get_logger
from src.database.connection import get_session
from src.database.models.notification import NotificationType
from src.database.models.order import Order, OrderStatus
from src.services.events import (
    OrderCreated,
    OrderEventBus,
    OrderStatusChanged,
    PaymentConfirmed,
)
from src.services.notifications.service import NotificationService
from src.services.orders.repository import OrderRepository
from src.services.wholesalers.dispatcher import WholesalerNotificationDispatcher

logger = get_logger(__name__)


async def _load_order(
    repository: OrderRepository, event_name: str, order_id: uuid.UUID
) -> Optional[Order]:
    order = await repository.get_order_by_id(order_id)
    if order is None:
        logger.warning("Order for event not found", event_name=event_name)
    return order


async def send_order_confirmation(event: OrderCreated) -> None:
    async with get_session() as session:
        order = await _load_order(OrderRepository(session), event.name, event.order_id)
        if order is not None:
            await NotificationService(session).send_order_email(
                order, NotificationType.ORDER_CONFIRMATION
            )


async def send_payment_receipt(event: PaymentConfirmed) -> None:
    async with get_session() as session:
        order = await _load_order(OrderRepository(session), event.name, event.order_id)
        if order is not None:
            await NotificationService(session).send_order_email(
                order,
                NotificationType.PAYMENT_RECEIPT,
                extra_context={"gateway_payment_id": event.gateway_payment_id},
            )


async def notify_wholesalers(event: PaymentConfirmed) -> None:
    async with get_session() as session:
        dispatcher = WholesalerNotificationDispatcher(session)
        await dispatcher.dispatch_order(event.order_id)


async def send_status_update(event: OrderStatusChanged) -> None:
    """Email the customer when an order starts processing, ships or arrives."""
    if not OrderStatus(event.new_status).notifies_customer:
        return

    async with get_session() as session:
        order = await _load_order(OrderRepository(session), event.name, event.order_id)
        if order is not None:
            await NotificationService(session).send_order_email(
                order,
                NotificationType.ORDER_STATUS_UPDATE,
                extra_context={
                    "previous_status": event.previous_status,
                    "new_status": event.new_status,
                },
            )


def register_default_handlers(bus: OrderEventBus) -> None:
    """Subscribe the email and wholesaler handlers. Safe to call twice."""
    bus.subscribe(OrderCreated, send_order_confirmation)
    # Handlers run in subscription order: receipt before wholesaler dispatch.
    bus.subscribe(PaymentConfirmed, send_payment_receipt)
    bus.subscribe(PaymentConfirmed, notify_wholesalers)
    bus.subscribe(OrderStatusChanged, send_status_update)
    logger.info("Order event handlers registered")
