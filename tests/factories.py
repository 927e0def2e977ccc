"""
Model factories for tests.

Users, orders and items are built as transient SQLAlchemy objects; no
database is involved.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from src.database.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from src.database.models.user import User, UserRole
from src.services.events import OrderEvent, OrderEventBus

SHIPPING_ADDRESS = {
    "street": "12 Harbour Road",
    "city": "Portland",
    "state": "OR",
    "zip_code": "97201",
    "country": "US",
}


def build_user(
    role: UserRole = UserRole.CUSTOMER,
    email: str = "jane@example.com",
    **overrides: Any,
) -> User:
    """Create a transient user."""
    values = {
        "id": uuid.uuid4(),
        "email": email,
        "first_name": "Jane",
        "last_name": "Doe",
        "role": role,
        "is_active": True,
        "locked_until": None,
    }
    values.update(overrides)
    return User(**values)


def build_item(
    price: Decimal = Decimal("25.00"),
    quantity: int = 2,
    wholesaler_email: Optional[str] = "orders@acme-supply.com",
    notified: bool = False,
    **overrides: Any,
) -> OrderItem:
    """Create a transient order item with a wholesaler snapshot."""
    values = {
        "id": uuid.uuid4(),
        "product_id": uuid.uuid4(),
        "line_number": 1,
        "product_name": "Ceramic Mug",
        "quantity": quantity,
        "price": price,
        "wholesaler_name": "Acme Supply",
        "wholesaler_email": wholesaler_email,
        "wholesaler_product_code": "ACME-MUG-01",
        "wholesaler_notified": notified,
        "wholesaler_notified_at": datetime.now(timezone.utc) if notified else None,
        "notification_attempts": 1 if notified else 0,
        "last_notification_error": None,
    }
    values.update(overrides)
    return OrderItem(**values)


def build_order(
    items: Optional[list[OrderItem]] = None,
    customer: Optional[User] = None,
    guest_info: Optional[dict[str, Any]] = None,
    status: OrderStatus = OrderStatus.PENDING,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    **overrides: Any,
) -> Order:
    """
    Create a transient order priced like a 2 x 25.00 checkout.

    Guest orders are built unless a customer is given.
    """
    if customer is None and guest_info is None:
        guest_info = {
            "email": "guest@example.com",
            "first_name": "Sam",
            "last_name": "Guest",
        }
    now = datetime(2025, 1, 14, 9, 35, 12, tzinfo=timezone.utc)
    values = {
        "id": uuid.uuid4(),
        "order_number": "ORD-20250114093512-9F3A61C2",
        "customer_id": customer.id if customer is not None else None,
        "guest_info": guest_info,
        "shipping_address": dict(SHIPPING_ADDRESS),
        "billing_address": dict(SHIPPING_ADDRESS),
        "subtotal": Decimal("50.00"),
        "tax": Decimal("4.00"),
        "shipping": Decimal("0.00"),
        "total": Decimal("54.00"),
        "currency": "USD",
        "payment_method": PaymentMethod.CARD,
        "payment_status": payment_status,
        "gateway_payment_id": None,
        "paid_at": None,
        "transaction_id": None,
        "status": status,
        "tracking_number": None,
        "shipping_carrier": None,
        "estimated_delivery_date": None,
        "notes": None,
        "referral_source": None,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    order = Order(**values)
    order.items = items if items is not None else [build_item()]
    if customer is not None:
        order.customer = customer
    return order


class RecordingEventBus(OrderEventBus):
    """Event bus that remembers every published event."""

    def __init__(self) -> None:
        super().__init__()
        self.published: list[OrderEvent] = []

    async def publish(self, event: OrderEvent) -> int:
        self.published.append(event)
        return await super().publish(event)

