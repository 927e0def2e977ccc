"""
Order service orchestrating checkout, fulfillment and association.

This module implements the OrderService class: creating guest and customer
orders from trusted catalog prices, the administrative status endpoints,
order visibility rules and the one-way association of guest orders with a
customer account. Side effects (emails, wholesaler dispatch) are not called
from here; they are triggered through events published after commit.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings, get_settings
from src.core.logging import bind_order_context, get_logger
from src.database.models.order import Order, OrderStatus
from src.database.models.user import User
from src.services.catalog.repository import CatalogRepositoryError, ProductRepository
from src.services.events import (
    OrderCreated,
    OrderEventBus,
    OrderStatusChanged,
    get_event_bus,
)
from src.services.orders.numbering import generate_order_number
from src.services.orders.repository import (
    OrderNotFoundError,
    OrderNumberConflictError,
    OrderRepository,
    OrderRepositoryError,
)
from src.services.orders.state_machine import (
    OrderStateMachine,
    StateTransitionError,
    TransitionGuardError,
)

logger = get_logger(__name__)

CENT = Decimal("0.01")
ADDRESS_FIELDS = ("street", "city", "state", "zip_code", "country")
GUEST_FIELDS = ("email", "first_name", "last_name")
MAX_ITEM_QUANTITY = 99
MAX_PAGE_SIZE = 100


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderValidationError(OrderServiceError):
    """Raised when order input is invalid. ``context["errors"]`` lists fields."""

    pass


class InvalidProductError(OrderServiceError):
    """Raised when an item references a missing or inactive product."""

    pass


class InvalidOrderStatusError(OrderServiceError):
    """Raised when a status value is not one of the known statuses."""

    pass


class InvalidStatusTransitionError(OrderServiceError):
    """Raised when a fulfillment transition is not allowed."""

    pass


class TrackingNumberRequiredError(OrderServiceError):
    """Raised when shipping an order without a tracking number."""

    pass


class OrderAlreadyAssociatedError(OrderServiceError):
    """Raised when a guest order has already been claimed."""

    pass


class OrderAccessDeniedError(OrderServiceError):
    """Raised when a caller may not see or act on an order."""

    pass


class OrderProcessingError(OrderServiceError):
    """Raised when order processing fails."""

    pass


def round2(value: Decimal) -> Decimal:
    """Round a currency amount to cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderPricing:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


def calculate_order_pricing(
    lines: Iterable[tuple[Decimal, int]],
    tax_rate: Decimal,
    free_shipping_threshold: Decimal,
    flat_shipping_cost: Decimal,
) -> OrderPricing:
    """
    Price an order from ``(unit_price, quantity)`` pairs.

    Shipping is free when the subtotal reaches the threshold.

    Example:
        >>> calculate_order_pricing(
        ...     [(Decimal("25.00"), 2)], Decimal("0.08"), Decimal("50"), Decimal("5.99")
        ... )
        OrderPricing(subtotal=Decimal('50.00'), tax=Decimal('4.00'), shipping=Decimal('0.00'), total=Decimal('54.00'))
    """
    subtotal = round2(
        sum((Decimal(price) * quantity for price, quantity in lines), Decimal("0"))
    )
    tax = round2(subtotal * tax_rate)
    shipping = (
        Decimal("0.00")
        if subtotal >= free_shipping_threshold
        else round2(flat_shipping_cost)
    )
    total = round2(subtotal + tax + shipping)
    return OrderPricing(subtotal=subtotal, tax=tax, shipping=shipping, total=total)


def _missing_fields(data: Optional[dict[str, Any]], fields: Iterable[str]) -> list[str]:
    data = data or {}
    return [name for name in fields if not str(data.get(name) or "").strip()]


class OrderService:
    """
    Order service orchestrating business logic.

    Attributes:
        repository: Order repository for data access
        products: Catalog lookups for checkout
        state_machine: Fulfillment transition rules
        event_bus: Channel for post-commit side effects
    """

    def __init__(
        self,
        session: AsyncSession,
        event_bus: Optional[OrderEventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.repository = OrderRepository(session)
        self.products = ProductRepository(session)
        self.state_machine = OrderStateMachine()
        self.event_bus = event_bus or get_event_bus()
        self.settings = settings or get_settings()

    def _validate_checkout(
        self,
        customer: Optional[User],
        guest_info: Optional[dict[str, Any]],
        items: list[dict[str, Any]],
        shipping_address: Optional[dict[str, Any]],
        billing_address: Optional[dict[str, Any]],
    ) -> None:
        errors: list[dict[str, str]] = []

        if customer is None and not guest_info:
            errors.append(
                {"field": "guest_info", "message": "Guest information is required"}
            )
        elif customer is not None and guest_info:
            errors.append(
                {
                    "field": "guest_info",
                    "message": "Guest information is not allowed for customer orders",
                }
            )
        elif guest_info:
            for name in _missing_fields(guest_info, GUEST_FIELDS):
                errors.append(
                    {"field": f"guest_info.{name}", "message": "Field is required"}
                )

        if not items:
            errors.append(
                {"field": "items", "message": "Order must contain at least one item"}
            )
        for index, item in enumerate(items):
            quantity = item.get("quantity")
            if not isinstance(quantity, int) or not 1 <= quantity <= MAX_ITEM_QUANTITY:
                errors.append(
                    {
                        "field": f"items.{index}.quantity",
                        "message": f"Quantity must be between 1 and {MAX_ITEM_QUANTITY}",
                    }
                )
            if not item.get("product_id"):
                errors.append(
                    {"field": f"items.{index}.product_id", "message": "Field is required"}
                )

        for label, address in (
            ("shipping_address", shipping_address),
            ("billing_address", billing_address),
        ):
            for name in _missing_fields(address, ADDRESS_FIELDS):
                errors.append({"field": f"{label}.{name}", "message": "Field is required"})

        if errors:
            logger.warning("Order validation failed", error_count=len(errors))
            raise OrderValidationError("Order validation failed", errors=errors)

    async def _snapshot_items(self, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Resolve client items against the catalog, which is the only price source."""
        product_ids = [uuid.UUID(str(item["product_id"])) for item in items]
        try:
            products = await self.products.get_active_products(product_ids)
        except CatalogRepositoryError as e:
            raise OrderProcessingError("Failed to load products", **e.context) from e

        missing = sorted({str(pid) for pid in product_ids if pid not in products})
        if missing:
            logger.warning("Order references unavailable products", product_ids=missing)
            raise InvalidProductError(
                "One or more products are invalid or inactive",
                product_ids=missing,
            )

        snapshots = []
        for product_id, item in zip(product_ids, items):
            product = products[product_id]
            snapshots.append(
                {
                    "product_id": product.id,
                    "product_name": product.name,
                    "quantity": item["quantity"],
                    "price": round2(product.price),
                    "wholesaler_name": product.wholesaler_name or None,
                    "wholesaler_email": product.wholesaler_email or None,
                    "wholesaler_product_code": product.wholesaler_product_code or None,
                }
            )
        return snapshots

    async def create_order(
        self,
        items: list[dict[str, Any]],
        shipping_address: dict[str, Any],
        billing_address: dict[str, Any],
        customer: Optional[User] = None,
        guest_info: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
        referral_source: Optional[str] = None,
    ) -> Order:
        """
        Create a guest or customer order.

        Args:
            items: ``{"product_id", "quantity"}`` entries
            shipping_address: Shipping address
            billing_address: Billing address
            customer: Authenticated customer placing the order
            guest_info: Guest contact details (guest checkout only)
            notes: Customer notes
            referral_source: Marketing attribution

        Returns:
            Persisted order

        Raises:
            OrderValidationError: If input is invalid
            InvalidProductError: If a product is missing or inactive
            OrderProcessingError: If the order cannot be persisted
        """
        self._validate_checkout(customer, guest_info, items, shipping_address, billing_address)
        snapshots = await self._snapshot_items(items)

        pricing = calculate_order_pricing(
            ((line["price"], line["quantity"]) for line in snapshots),
            tax_rate=self.settings.tax_rate,
            free_shipping_threshold=self.settings.free_shipping_threshold,
            flat_shipping_cost=self.settings.flat_shipping_cost,
        )

        customer_id = customer.id if customer is not None else None
        created_by = str(customer_id) if customer_id else "guest"
        max_attempts = self.settings.order_number_max_attempts

        order: Optional[Order] = None
        for attempt in range(1, max_attempts + 1):
            order_number = generate_order_number()
            try:
                order = await self.repository.create_order_with_items(
                    order_number=order_number,
                    items=snapshots,
                    shipping_address=dict(shipping_address),
                    billing_address=dict(billing_address),
                    subtotal=pricing.subtotal,
                    tax=pricing.tax,
                    shipping=pricing.shipping,
                    total=pricing.total,
                    currency=self.settings.currency,
                    customer_id=customer_id,
                    guest_info=dict(guest_info) if guest_info else None,
                    notes=notes,
                    referral_source=referral_source,
                    created_by=created_by,
                )
                break
            except OrderNumberConflictError:
                logger.warning(
                    "Retrying order creation with a new order number",
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
            except OrderRepositoryError as e:
                await self.session.rollback()
                raise OrderProcessingError("Failed to create order", **e.context) from e

        if order is None:
            await self.session.rollback()
            raise OrderProcessingError(
                "Could not allocate a unique order number",
                attempts=max_attempts,
            )

        await self.session.commit()
        order = await self.repository.get_order_by_id(order.id)

        with bind_order_context(order.id, order.order_number):
            logger.info(
                "Order placed",
                customer_id=str(customer_id) if customer_id else None,
                guest=customer_id is None,
                item_count=len(snapshots),
                total=str(pricing.total),
            )

        await self.event_bus.publish(
            OrderCreated(
                order_id=order.id,
                order_number=order.order_number,
                customer_id=customer_id,
            )
        )
        return order

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Load an order or raise.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def get_order_for_viewer(self, order_id: uuid.UUID, viewer: User) -> Order:
        """
        Load an order the viewer owns, or any order for administrators.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderAccessDeniedError: If the viewer may not see the order
        """
        order = await self.get_order(order_id)
        if not viewer.is_admin and order.customer_id != viewer.id:
            logger.warning(
                "Order access denied",
                order_id=str(order_id),
                viewer_id=str(viewer.id),
            )
            raise OrderAccessDeniedError(
                "Not authorized to access this order",
                order_id=str(order_id),
            )
        return order

    async def _paginate(
        self,
        page: int,
        limit: int,
        customer_id: Optional[uuid.UUID] = None,
        status: Optional[OrderStatus] = None,
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        orders, total = await self.repository.list_orders(
            customer_id=customer_id,
            status=status,
            skip=(page - 1) * limit,
            limit=limit,
        )
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "orders": list(orders),
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_orders": total,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
        }

    async def list_customer_orders(
        self, customer: User, page: int = 1, limit: int = 10
    ) -> dict[str, Any]:
        """List the caller's own orders, newest first."""
        return await self._paginate(page, limit, customer_id=customer.id)

    async def list_all_orders(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
    ) -> dict[str, Any]:
        """List every order for administrators, optionally by status."""
        status_filter = self._parse_status(status) if status else None
        return await self._paginate(page, limit, status=status_filter)

    @staticmethod
    def _parse_status(value: str) -> OrderStatus:
        try:
            return OrderStatus.from_string(value)
        except ValueError as e:
            raise InvalidOrderStatusError(
                "Invalid order status",
                status=value,
                allowed=[s.value for s in OrderStatus],
            ) from e

    async def _apply_status_change(
        self,
        order: Order,
        new_status: OrderStatus,
        actor: User,
        reason: str,
        tracking_number: Optional[str] = None,
        shipping_carrier: Optional[str] = None,
        estimated_delivery_date: Optional[datetime] = None,
    ) -> Order:
        previous_status = order.status
        try:
            await self.repository.update_order_status(
                order,
                new_status,
                changed_by=str(actor.id),
                change_reason=reason,
                tracking_number=tracking_number,
                shipping_carrier=shipping_carrier,
                estimated_delivery_date=estimated_delivery_date,
            )
        except OrderRepositoryError as e:
            await self.session.rollback()
            raise OrderProcessingError("Failed to update order status", **e.context) from e

        await self.session.commit()
        order = await self.get_order(order.id)

        if previous_status != new_status:
            await self.event_bus.publish(
                OrderStatusChanged(
                    order_id=order.id,
                    order_number=order.order_number,
                    previous_status=previous_status.value,
                    new_status=new_status.value,
                    tracking_number=order.tracking_number,
                    changed_by=str(actor.id),
                )
            )
        return order

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        status: str,
        actor: User,
        tracking_number: Optional[str] = None,
    ) -> Order:
        """
        Administrative status update.

        Any of the known statuses may be set; only unknown values are
        rejected.

        Raises:
            InvalidOrderStatusError: If status is not a known value
            OrderNotFoundError: If the order does not exist
        """
        new_status = self._parse_status(status)
        order = await self.get_order(order_id)

        with bind_order_context(order.id, order.order_number):
            logger.info(
                "Updating order status",
                from_status=order.status.value,
                to_status=new_status.value,
                actor_id=str(actor.id),
            )
            return await self._apply_status_change(
                order,
                new_status,
                actor,
                reason="Administrative status update",
                tracking_number=tracking_number,
            )

    async def fulfill_order(
        self,
        order_id: uuid.UUID,
        status: str,
        actor: User,
        tracking_number: Optional[str] = None,
        shipping_carrier: Optional[str] = None,
        estimated_delivery_date: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Fulfillment update following the strict transition graph.

        Raises:
            InvalidOrderStatusError: If status is not a known value
            InvalidStatusTransitionError: If the transition is not allowed
            TrackingNumberRequiredError: If shipping without tracking number
            OrderNotFoundError: If the order does not exist
        """
        new_status = self._parse_status(status)
        order = await self.get_order(order_id)

        try:
            self.state_machine.validate_transition(
                order.status,
                new_status,
                tracking_number=tracking_number,
            )
        except TransitionGuardError as e:
            raise TrackingNumberRequiredError(
                str(e),
                order_id=str(order_id),
            ) from e
        except StateTransitionError as e:
            raise InvalidStatusTransitionError(
                str(e),
                order_id=str(order_id),
                current_status=e.current_state.value,
                target_status=e.target_state.value,
                **e.context,
            ) from e

        with bind_order_context(order.id, order.order_number):
            return await self._apply_status_change(
                order,
                new_status,
                actor,
                reason=reason or "Fulfillment update",
                tracking_number=tracking_number,
                shipping_carrier=shipping_carrier,
                estimated_delivery_date=estimated_delivery_date,
            )

    async def associate_order(self, order_id: uuid.UUID, customer: User) -> Order:
        """
        Claim a guest order for the authenticated customer.

        One-way and one-time: an order that already has an owner is never
        reassigned, including to the same customer.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderAlreadyAssociatedError: If the order already has an owner
        """
        order = await self.get_order(order_id)
        if order.customer_id is not None:
            raise OrderAlreadyAssociatedError(
                "Order is already associated with an account",
                order_id=str(order_id),
            )

        try:
            claimed = await self.repository.associate_customer(order.id, customer.id)
        except OrderRepositoryError as e:
            await self.session.rollback()
            raise OrderProcessingError("Failed to associate order", **e.context) from e

        if not claimed:
            # Another request claimed the order after it was loaded
            await self.session.rollback()
            raise OrderAlreadyAssociatedError(
                "Order is already associated with an account",
                order_id=str(order_id),
            )

        await self.session.commit()

        with bind_order_context(order.id, order.order_number):
            logger.info("Guest order associated", customer_id=str(customer.id))

        return await self.get_order(order_id)
