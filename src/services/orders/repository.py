"""
Order data access repository.

This module implements the OrderRepository class: creating orders with their
items, loading and listing orders, and the single-statement updates that
concurrent writers rely on. Payment confirmation is a compare-and-swap on
``payment_status``, association only matches unowned orders, and wholesaler
notification bookkeeping is applied to one item row at a time so that
concurrent dispatch runs cannot lose an attempt or un-notify an item.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import and_, exists, func, or_, select, true, tuple_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
)

logger = get_logger(__name__)

ORDER_NUMBER_CONSTRAINT = "uq_orders_order_number"


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when order is not found."""

    pass


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class OrderUpdateError(OrderRepositoryError):
    """Raised when order update fails."""

    pass


class OrderNumberConflictError(OrderCreationError):
    """Raised when a generated order number is already taken."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderRepository:
    """
    Repository for order data access operations.

    Methods flush but never commit; the calling service owns the
    transaction boundary.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order_with_items(
        self,
        order_number: str,
        items: Sequence[dict[str, Any]],
        shipping_address: dict[str, Any],
        billing_address: dict[str, Any],
        subtotal: Any,
        tax: Any,
        shipping: Any,
        total: Any,
        currency: str,
        customer_id: Optional[uuid.UUID] = None,
        guest_info: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
        referral_source: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Order:
        """
        Create order with items atomically.

        The insert runs inside a savepoint so that an order number collision
        only discards this attempt and the caller can retry with a new number.

        Args:
            order_number: Human-readable order number
            items: Item snapshots (product_id, product_name, quantity, price,
                wholesaler_name, wholesaler_email, wholesaler_product_code)
            shipping_address: Shipping address
            billing_address: Billing address
            subtotal: Sum of line totals
            tax: Sales tax
            shipping: Shipping cost
            total: Amount to charge
            currency: ISO 4217 currency code
            customer_id: Registered owner, if any
            guest_info: Guest contact details, if no customer
            notes: Customer notes
            referral_source: Marketing attribution
            created_by: Actor recorded in the audit columns

        Returns:
            Created order

        Raises:
            OrderNumberConflictError: If the order number is already taken
            OrderCreationError: If order creation fails
        """
        logger.info(
            "Creating order with items",
            order_number=order_number,
            customer_id=str(customer_id) if customer_id else None,
            item_count=len(items),
        )

        order = Order(
            order_number=order_number,
            customer_id=customer_id,
            guest_info=guest_info,
            shipping_address=shipping_address,
            billing_address=billing_address,
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=total,
            currency=currency,
            payment_method=PaymentMethod.OTHER,
            payment_status=PaymentStatus.PENDING,
            status=OrderStatus.PENDING,
            notes=notes,
            referral_source=referral_source,
            created_by=created_by,
        )
        order.items = [
            OrderItem(
                line_number=position,
                product_id=item["product_id"],
                product_name=item["product_name"],
                quantity=item["quantity"],
                price=item["price"],
                wholesaler_name=item.get("wholesaler_name"),
                wholesaler_email=item.get("wholesaler_email"),
                wholesaler_product_code=item.get("wholesaler_product_code"),
                wholesaler_notified=False,
                notification_attempts=0,
            )
            for position, item in enumerate(items, start=1)
        ]
        order.status_history = [
            OrderStatusHistory(
                from_status=None,
                to_status=OrderStatus.PENDING,
                changed_by=created_by,
                change_reason="Order created",
            )
        ]

        try:
            async with self.session.begin_nested():
                self.session.add(order)
                await self.session.flush()
        except IntegrityError as e:
            if ORDER_NUMBER_CONSTRAINT in str(e.orig):
                logger.warning(
                    "Order number collision",
                    order_number=order_number,
                )
                raise OrderNumberConflictError(
                    "Order number already exists",
                    order_number=order_number,
                ) from e
            logger.error(
                "Order creation failed - integrity error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                order_number=order_number,
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed - database error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                order_number=order_number,
                error=str(e),
            ) from e

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order_number,
        )
        return order

    async def _fetch_one(self, condition: Any, **log_context: Any) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(condition)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", error=str(e), **log_context)
            raise OrderRepositoryError(
                "Failed to fetch order",
                error=str(e),
                **log_context,
            ) from e
        return result.scalar_one_or_none()

    async def get_order_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID with its items and customer loaded.

        Rows already in the session are refreshed, so values written by the
        atomic update statements below are visible to the caller.
        """
        return await self._fetch_one(Order.id == order_id, order_id=str(order_id))

    async def get_order_by_number(self, order_number: str) -> Optional[Order]:
        return await self._fetch_one(
            Order.order_number == order_number, order_number=order_number
        )

    async def get_order_by_gateway_payment_id(
        self, gateway_payment_id: str
    ) -> Optional[Order]:
        """Find the order a gateway payment belongs to."""
        return await self._fetch_one(
            Order.gateway_payment_id == gateway_payment_id,
            gateway_payment_id=gateway_payment_id,
        )

    async def list_orders(
        self,
        customer_id: Optional[uuid.UUID] = None,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> tuple[Sequence[Order], int]:
        """
        List orders newest first with pagination.

        Args:
            customer_id: Restrict to one customer's orders
            status: Optional status filter
            skip: Number of records to skip
            limit: Maximum number of records to return

        Returns:
            Tuple of (orders, total_count)

        Raises:
            OrderRepositoryError: If query fails
        """
        conditions = []
        if customer_id is not None:
            conditions.append(Order.customer_id == customer_id)
        if status is not None:
            conditions.append(Order.status == status)
        where_clause = and_(true(), *conditions)

        stmt = (
            select(Order)
            .where(where_clause)
            .order_by(Order.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(Order).where(where_clause)

        try:
            result = await self.session.execute(stmt)
            count_result = await self.session.execute(count_stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to list orders",
                customer_id=str(customer_id) if customer_id else None,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to list orders",
                error=str(e),
            ) from e

        orders = result.scalars().all()
        total_count = count_result.scalar_one()

        logger.debug(
            "Orders listed",
            customer_id=str(customer_id) if customer_id else None,
            count=len(orders),
            total=total_count,
        )
        return orders, total_count

    async def add_status_history(
        self,
        order_id: uuid.UUID,
        from_status: Optional[OrderStatus],
        to_status: OrderStatus,
        changed_by: Optional[str] = None,
        change_reason: Optional[str] = None,
        tracking_number: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            changed_by=changed_by,
            change_reason=change_reason,
            tracking_number=tracking_number,
            details=details or {},
        )
        self.session.add(entry)
        return entry

    async def update_order_status(
        self,
        order: Order,
        new_status: OrderStatus,
        changed_by: Optional[str] = None,
        change_reason: Optional[str] = None,
        tracking_number: Optional[str] = None,
        shipping_carrier: Optional[str] = None,
        estimated_delivery_date: Optional[datetime] = None,
    ) -> Order:
        """
        Apply an administrative status change with history tracking.

        Only the status and shipment columns are written; payment columns
        are left to the reconciliation path.

        Raises:
            OrderUpdateError: If update fails
        """
        old_status = order.status

        order.status = new_status
        if tracking_number:
            order.tracking_number = tracking_number
        if shipping_carrier:
            order.shipping_carrier = shipping_carrier
        if estimated_delivery_date:
            order.estimated_delivery_date = estimated_delivery_date
        if new_status == OrderStatus.SHIPPED and order.shipped_at is None:
            order.shipped_at = _utcnow()
        order.updated_by = changed_by

        await self.add_status_history(
            order.id,
            from_status=old_status,
            to_status=new_status,
            changed_by=changed_by,
            change_reason=change_reason,
            tracking_number=tracking_number,
        )

        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update order status",
                order_id=str(order.id),
                error=str(e),
            )
            raise OrderUpdateError(
                "Failed to update order status",
                order_id=str(order.id),
                error=str(e),
            ) from e

        logger.info(
            "Order status updated",
            order_id=str(order.id),
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return order

    async def _execute_update(self, stmt: Any, action: str, **context: Any) -> int:
        try:
            result = await self.session.execute(
                stmt.execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to {action}", error=str(e), **context)
            raise OrderUpdateError(
                f"Failed to {action}",
                error=str(e),
                **context,
            ) from e
        return result.rowcount

    async def mark_payment_paid(
        self,
        order_id: uuid.UUID,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """
        Move an order to paid/processing unless it is already paid.

        This is the compare-and-swap guarding payment side effects: when
        several deliveries of the same webhook race, exactly one of them
        gets ``True``.

        Returns:
            True if this call performed the transition
        """
        values: dict[str, Any] = {
            "payment_status": PaymentStatus.PAID,
            "status": OrderStatus.PROCESSING,
            "paid_at": _utcnow(),
            "updated_by": "payment_webhook",
        }
        if transaction_id:
            values["transaction_id"] = transaction_id

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status != PaymentStatus.PAID,
            )
            .values(**values)
        )
        matched = await self._execute_update(
            stmt, "mark payment paid", order_id=str(order_id)
        )
        return matched == 1

    async def update_payment_state(
        self,
        order_id: uuid.UUID,
        payment_status: PaymentStatus,
        order_status: Optional[OrderStatus] = None,
    ) -> bool:
        """
        Record a non-paid payment status reported by the gateway.

        Paid orders are never moved back by this statement.

        Returns:
            True if the order row was updated
        """
        values: dict[str, Any] = {
            "payment_status": payment_status,
            "updated_by": "payment_webhook",
        }
        if order_status is not None:
            values["status"] = order_status

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status != PaymentStatus.PAID,
            )
            .values(**values)
        )
        matched = await self._execute_update(
            stmt,
            "update payment state",
            order_id=str(order_id),
            payment_status=payment_status.value,
        )
        return matched == 1

    async def set_gateway_payment(
        self,
        order_id: uuid.UUID,
        gateway_payment_id: str,
        payment_method: PaymentMethod,
    ) -> None:
        """Attach a freshly created gateway payment to an unpaid order."""
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status != PaymentStatus.PAID,
            )
            .values(
                gateway_payment_id=gateway_payment_id,
                payment_method=payment_method,
            )
        )
        matched = await self._execute_update(
            stmt, "attach gateway payment", order_id=str(order_id)
        )
        if matched != 1:
            raise OrderUpdateError(
                "Order is already paid or no longer exists",
                order_id=str(order_id),
            )

    async def associate_customer(
        self,
        order_id: uuid.UUID,
        customer_id: uuid.UUID,
    ) -> bool:
        """
        Bind a guest order to a customer account.

        Only matches orders without an owner, so an association can never
        be overwritten.

        Returns:
            True if the order was claimed by this call
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.customer_id.is_(None))
            .values(customer_id=customer_id, updated_by=str(customer_id))
        )
        matched = await self._execute_update(
            stmt,
            "associate order",
            order_id=str(order_id),
            customer_id=str(customer_id),
        )
        return matched == 1

    async def record_item_notification_success(
        self,
        item_id: uuid.UUID,
        notified_at: Optional[datetime] = None,
    ) -> None:
        """
        Mark one item's wholesaler as notified.

        The attempt counter is incremented in SQL and an existing
        notification timestamp is kept.
        """
        stmt = (
            update(OrderItem)
            .where(OrderItem.id == item_id)
            .values(
                wholesaler_notified=True,
                wholesaler_notified_at=func.coalesce(
                    OrderItem.wholesaler_notified_at, notified_at or _utcnow()
                ),
                notification_attempts=OrderItem.notification_attempts + 1,
                last_notification_error=None,
            )
        )
        await self._execute_update(
            stmt, "record notification success", item_id=str(item_id)
        )

    async def record_item_notification_failure(
        self,
        item_id: uuid.UUID,
        error_message: str,
    ) -> None:
        """
        Record a failed notification attempt for one item.

        ``wholesaler_notified`` is not touched, so a concurrent success
        is never undone.
        """
        stmt = (
            update(OrderItem)
            .where(OrderItem.id == item_id)
            .values(
                notification_attempts=OrderItem.notification_attempts + 1,
                last_notification_error=error_message[:2000],
            )
        )
        await self._execute_update(
            stmt, "record notification failure", item_id=str(item_id)
        )

    @staticmethod
    def _pending_notification_filter() -> Any:
        """Paid (or processing) orders with an unnotified, reachable wholesaler."""
        pending_item = exists().where(
            OrderItem.order_id == Order.id,
            OrderItem.wholesaler_notified.is_(False),
            OrderItem.wholesaler_email.is_not(None),
        )
        return and_(
            or_(
                Order.payment_status == PaymentStatus.PAID,
                Order.status == OrderStatus.PROCESSING,
            ),
            pending_item,
        )

    async def find_pending_notifications(
        self,
        limit: int = 50,
        after: Optional[tuple[datetime, uuid.UUID]] = None,
    ) -> Sequence[Order]:
        """
        One page of orders that still have an unnotified wholesaler.

        Pages are ordered by ``(created_at, id)``. Passing the key of the
        last order of a page as ``after`` returns the next page, so a sweep
        reaches every pending order even when older ones keep failing.

        Args:
            limit: Page size
            after: ``(created_at, id)`` of the last order already seen
        """
        conditions = [self._pending_notification_filter()]
        if after is not None:
            conditions.append(tuple_(Order.created_at, Order.id) > tuple_(*after))

        stmt = (
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at, Order.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to find pending notifications", error=str(e))
            raise OrderRepositoryError(
                "Failed to find pending notifications",
                error=str(e),
            ) from e

        orders = result.scalars().all()
        logger.debug("Pending notification orders found", count=len(orders))
        return orders

    async def count_pending_notifications(self) -> int:
        stmt = select(func.count()).select_from(Order).where(
            self._pending_notification_filter()
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to count pending notifications", error=str(e))
            raise OrderRepositoryError(
                "Failed to count pending notifications",
                error=str(e),
            ) from e
        return result.scalar_one()
