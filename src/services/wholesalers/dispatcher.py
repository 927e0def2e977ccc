"""
Wholesaler notification dispatcher.

Once an order is paid, every line item's wholesaler gets one email asking
them to ship the item. Bookkeeping lives on the item itself
(``wholesaler_notified``, ``notification_attempts``,
``last_notification_error``) and is written with one atomic UPDATE per item,
so the webhook path, the periodic sweep and manual retries can overlap
without losing attempts or un-notifying an item.

A dispatch run has two phases:

1. sends are fanned out concurrently (bounded by a semaphore and the
   notification timeout) without touching the database session;
2. outcomes are written item by item and committed together.

Already-notified items are never sent again, which is what makes webhook
re-delivery and retries safe. Delivery is at-least-once: two runs that
start before either commits may both email the same wholesaler.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import get_settings
from src.core.logging import bind_order_context, get_logger, log_performance
from src.database.models.notification import NotificationType
from src.database.models.order import Order, OrderItem
from src.services.notifications.service import (
    NotificationDeliveryError,
    NotificationService,
    build_wholesaler_context,
    get_notification_service,
)
from src.services.orders.repository import (
    OrderNotFoundError,
    OrderRepository,
    OrderRepositoryError,
)

logger = get_logger(__name__)
settings = get_settings()


class WholesalerDispatchError(Exception):
    """Base exception for wholesaler dispatch errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotEligibleError(WholesalerDispatchError):
    """Raised when dispatching an order that is neither paid nor processing."""

    pass


@dataclass(frozen=True)
class ItemDispatchOutcome:
    item_id: uuid.UUID
    wholesaler_email: str
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class DispatchResult:
    """Outcome of one dispatch run over one order."""

    order_id: uuid.UUID
    order_number: str
    skipped: int = 0
    outcomes: list[ItemDispatchOutcome] = field(default_factory=list)
    all_notified: bool = False

    @property
    def sent(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "order_number": self.order_number,
            "attempted": len(self.outcomes),
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "all_notified": self.all_notified,
            "failures": [
                {"item_id": str(outcome.item_id), "error": outcome.error}
                for outcome in self.outcomes
                if not outcome.success
            ],
        }


class WholesalerNotificationDispatcher:
    """
    Sends and tracks wholesaler notifications for paid orders.

    Attributes:
        session: Database session used for lookups and bookkeeping
        repository: Order repository
        notification_service: Renders and delivers emails
        max_concurrency: Upper bound of sends in flight per order
    """

    def __init__(
        self,
        session: AsyncSession,
        notification_service: Optional[NotificationService] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.session = session
        self.repository = OrderRepository(session)
        self.notification_service = notification_service or get_notification_service(session)
        self.max_concurrency = max_concurrency or settings.notification_max_concurrency

    @staticmethod
    def build_wholesaler_payload(order: Order, item: OrderItem) -> dict[str, Any]:
        """
        Email payload for one item: order number and date, shipping address,
        product name, code and quantity, and the order notes.
        """
        return build_wholesaler_context(order, item)

    async def dispatch_order(self, order_id: uuid.UUID) -> DispatchResult:
        """
        Notify the wholesalers of every unnotified item of an order.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderNotEligibleError: If the order is not paid or processing
            WholesalerDispatchError: If bookkeeping cannot be persisted
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        if not order.is_dispatch_eligible:
            raise OrderNotEligibleError(
                "Order must be paid or processing before notifying wholesalers",
                order_id=str(order_id),
                payment_status=order.payment_status.value,
                status=order.status.value,
            )

        return await self.dispatch(order)

    async def dispatch(self, order: Order) -> DispatchResult:
        """Dispatch an already loaded, eligible order."""
        with bind_order_context(order.id, order.order_number):
            pending = order.pending_notification_items()
            result = DispatchResult(
                order_id=order.id,
                order_number=order.order_number,
                skipped=len(order.items) - len(pending),
            )

            if not pending:
                result.all_notified = order.all_wholesalers_notified()
                logger.info("No wholesaler notifications pending")
                return result

            with log_performance(logger, "wholesaler_dispatch", item_count=len(pending)):
                result.outcomes = await self._send_all(order, pending)

            try:
                await self._record_outcomes(order, result.outcomes)
                await self.session.commit()
            except OrderRepositoryError as e:
                await self.session.rollback()
                raise WholesalerDispatchError(
                    "Failed to record wholesaler notification outcomes",
                    order_id=str(order.id),
                    **e.context,
                ) from e

            refreshed = await self.repository.get_order_by_id(order.id)
            result.all_notified = (refreshed or order).all_wholesalers_notified()

            log = logger.warning if result.failed else logger.info
            log(
                "Wholesaler dispatch finished",
                sent=result.sent,
                failed=result.failed,
                skipped=result.skipped,
                all_notified=result.all_notified,
            )
            return result

    async def _send_all(
        self, order: Order, items: list[OrderItem]
    ) -> list[ItemDispatchOutcome]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def send_one(item: OrderItem) -> ItemDispatchOutcome:
            async with semaphore:
                try:
                    email = self.notification_service.render(
                        NotificationType.WHOLESALER_ORDER,
                        self.build_wholesaler_payload(order, item),
                    )
                    response = await self.notification_service.deliver_email(
                        item.wholesaler_email, email
                    )
                except NotificationDeliveryError as e:
                    return ItemDispatchOutcome(
                        item_id=item.id,
                        wholesaler_email=item.wholesaler_email,
                        success=False,
                        error=str(e),
                    )
                return ItemDispatchOutcome(
                    item_id=item.id,
                    wholesaler_email=item.wholesaler_email,
                    success=True,
                    message_id=response.get("message_id"),
                )

        results = await asyncio.gather(
            *(send_one(item) for item in items), return_exceptions=True
        )

        outcomes = []
        for item, outcome in zip(items, results):
            if isinstance(outcome, Exception):
                logger.error(
                    "Unexpected error notifying wholesaler",
                    item_id=str(item.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                    exc_info=outcome,
                )
                outcome = ItemDispatchOutcome(
                    item_id=item.id,
                    wholesaler_email=item.wholesaler_email,
                    success=False,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            outcomes.append(outcome)
        return outcomes

    async def _record_outcomes(
        self, order: Order, outcomes: list[ItemDispatchOutcome]
    ) -> None:
        notified_at = datetime.now(timezone.utc)

        for outcome in outcomes:
            log = self.notification_service.record_attempt(
                NotificationType.WHOLESALER_ORDER,
                outcome.wholesaler_email,
                order_id=order.id,
                order_item_id=outcome.item_id,
            )
            if outcome.success:
                await self.repository.record_item_notification_success(
                    outcome.item_id, notified_at
                )
                log.mark_sent(outcome.message_id)
            else:
                await self.repository.record_item_notification_failure(
                    outcome.item_id, outcome.error or "Unknown error"
                )
                log.mark_failed(outcome.error or "Unknown error")
                logger.warning(
                    "Wholesaler notification failed",
                    item_id=str(outcome.item_id),
                    error=outcome.error,
                )

    async def process_pending(self, limit: Optional[int] = None) -> dict[str, int]:
        """
        Retry every order that still has unnotified wholesalers.

        The pending set is walked page by page (``limit`` orders each), so
        orders whose wholesalers keep rejecting mail cannot starve newer
        ones. One failing order does not stop the run.
        """
        page_size = limit or settings.notification_sweep_batch_size
        summary = {
            "orders_processed": 0,
            "orders_completed": 0,
            "orders_failed": 0,
            "notifications_sent": 0,
            "notifications_failed": 0,
        }

        after = None
        while True:
            orders = await self.repository.find_pending_notifications(
                limit=page_size, after=after
            )
            for order in orders:
                try:
                    result = await self.dispatch(order)
                except WholesalerDispatchError as e:
                    summary["orders_failed"] += 1
                    logger.error(
                        "Pending notification dispatch failed",
                        order_id=str(order.id),
                        error=str(e),
                    )
                    continue

                summary["orders_processed"] += 1
                summary["notifications_sent"] += result.sent
                summary["notifications_failed"] += result.failed
                if result.all_notified:
                    summary["orders_completed"] += 1

            if len(orders) < page_size:
                break
            after = (orders[-1].created_at, orders[-1].id)

        logger.info("Pending wholesaler notifications processed", **summary)
        return summary

    async def list_pending(self, limit: Optional[int] = None) -> dict[str, Any]:
        """First page of the pending set plus the size of the whole set."""
        orders = await self.repository.find_pending_notifications(
            limit=limit or settings.notification_sweep_batch_size
        )
        total = await self.repository.count_pending_notifications()
        return {
            "orders": [
                {
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "created_at": order.created_at,
                    "payment_status": order.payment_status.value,
                    "status": order.status.value,
                    "pending_items": len(order.pending_notification_items()),
                }
                for order in orders
            ],
            "total": total,
        }

    async def get_notification_status(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Per-item notification bookkeeping of an order.

        Includes wholesaler contact data; only for administrators.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "payment_status": order.payment_status.value,
            "status": order.status.value,
            "all_notified": order.all_wholesalers_notified(),
            "items": [
                {
                    "item_id": str(item.id),
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "wholesaler_name": item.wholesaler_name,
                    "wholesaler_email": item.wholesaler_email,
                    "wholesaler_product_code": item.wholesaler_product_code,
                    "notified": item.wholesaler_notified,
                    "notified_at": item.wholesaler_notified_at,
                    "notification_attempts": item.notification_attempts,
                    "last_notification_error": item.last_notification_error,
                }
                for item in order.items
            ],
        }
