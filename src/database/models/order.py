"""
Order models for checkout, payment tracking and wholesaler fulfillment.

This module defines the Order aggregate root, its owned OrderItem children
(each carrying a snapshot of the product price and the wholesaler contact
data plus per-item notification bookkeeping) and the OrderStatusHistory
audit trail.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import AuditedModel, BaseModel


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class OrderStatus(str, Enum):
    """
    Order status enumeration for tracking order lifecycle.

    Attributes:
        PENDING: Order placed, payment not yet confirmed
        PROCESSING: Payment confirmed, wholesalers preparing shipment
        SHIPPED: Handed to the carrier
        DELIVERED: Delivered to the customer
        CANCELLED: Cancelled by payment failure or administrative action
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """
        Create OrderStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid order status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions)."""
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    @property
    def notifies_customer(self) -> bool:
        """Statuses that trigger a status update email."""
        return self in (
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        )


class PaymentStatus(str, Enum):
    """Payment status of an order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    """Payment method chosen by the customer."""

    CARD = "card"
    CRYPTO = "crypto"
    OTHER = "other"


class Order(AuditedModel):
    """
    Order aggregate root.

    Exactly one of ``customer_id`` or ``guest_info`` is set when the order
    is created. ``customer_id`` may be filled in later by associating a
    guest order with an account, but it is never cleared or reassigned.
    Monetary columns satisfy ``total == subtotal + tax + shipping``.

    Attributes:
        id: Unique order identifier (UUID)
        order_number: Human-readable unique number (``ORD-...``)
        customer_id: Registered customer who owns the order
        guest_info: Guest contact details (email, first/last name, phone)
        shipping_address: Postal shipping address
        billing_address: Postal billing address
        subtotal: Sum of line totals
        tax: Sales tax
        shipping: Shipping cost
        total: Amount charged
        currency: ISO 4217 currency code
        payment_method: Payment method
        payment_status: Payment status
        gateway_payment_id: Payment identifier at the payment gateway
        paid_at: When the payment was confirmed
        transaction_id: Gateway transaction reference
        status: Order status
        tracking_number: Carrier tracking number
        notes: Customer notes forwarded to wholesalers
        referral_source: Marketing attribution
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Human-readable order number",
    )

    # Ownership
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Registered customer who owns the order",
    )

    guest_info: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Guest contact details stored as JSONB",
    )

    # Addresses
    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Shipping address stored as JSONB",
    )

    billing_address: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Billing address stored as JSONB",
    )

    # Pricing
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        comment="Sum of line totals",
    )

    tax: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Sales tax",
    )

    shipping: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Shipping cost",
    )

    total: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        comment="Amount charged",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
        comment="ISO 4217 currency code",
    )

    # Payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(
            PaymentMethod,
            name="payment_method",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=PaymentMethod.OTHER,
        comment="Payment method",
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(
            PaymentStatus,
            name="payment_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
        comment="Payment status",
    )

    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Payment identifier at the payment gateway",
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the payment was confirmed",
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Gateway transaction reference",
    )

    # Fulfillment
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Order status",
    )

    tracking_number: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Carrier tracking number",
    )

    shipping_carrier: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Carrier handling the shipment",
    )

    shipped_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the order was shipped",
    )

    estimated_delivery_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Estimated delivery date",
    )

    # Metadata
    notes: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Customer notes forwarded to wholesalers",
    )

    referral_source: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Marketing attribution",
    )

    # Relationships
    customer: Mapped[Optional["User"]] = relationship(
        "User",
        back_populates="orders",
        foreign_keys=[customer_id],
        lazy="selectin",
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.line_number",
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        lazy="noload",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at",
    )

    __table_args__ = (
        UniqueConstraint("order_number", name="uq_orders_order_number"),
        UniqueConstraint("gateway_payment_id", name="uq_orders_gateway_payment_id"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
        Index("ix_orders_status_created", "status", "created_at"),
        Index(
            "ix_orders_guest_email",
            text("(guest_info ->> 'email')"),
        ),
        CheckConstraint(
            "customer_id IS NOT NULL OR guest_info IS NOT NULL",
            name="ck_orders_owner_present",
        ),
        CheckConstraint(
            "subtotal >= 0 AND tax >= 0 AND shipping >= 0",
            name="ck_orders_amounts_non_negative",
        ),
        CheckConstraint(
            "total = subtotal + tax + shipping",
            name="ck_orders_total_matches_components",
        ),
        {
            "comment": "Storefront orders with payment and fulfillment state",
        },
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number}, "
            f"status={self.status.value}, payment_status={self.payment_status.value}, "
            f"total={self.total})>"
        )

    @property
    def is_guest_order(self) -> bool:
        """Check if the order has not been claimed by a customer account."""
        return self.customer_id is None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def is_dispatch_eligible(self) -> bool:
        """Check if wholesalers may be notified for this order."""
        return (
            self.payment_status == PaymentStatus.PAID
            or self.status == OrderStatus.PROCESSING
        )

    def resolve_customer_email(self) -> Optional[str]:
        """
        Resolve the address that order emails go to.

        Prefers the customer account, then the guest contact details.
        Returns None when neither yields an address; callers must skip
        the notification in that case.
        """
        if self.customer_id is not None and self.customer is not None:
            email = self.customer.email
            if email:
                return email
        if self.guest_info:
            email = self.guest_info.get("email")
            if email:
                return email
        return None

    def resolve_customer_name(self) -> str:
        """Display name for emails, falling back to a neutral greeting."""
        if self.customer_id is not None and self.customer is not None:
            return self.customer.full_name
        if self.guest_info:
            name = " ".join(
                part
                for part in (
                    self.guest_info.get("first_name"),
                    self.guest_info.get("last_name"),
                )
                if part
            )
            if name:
                return name
        return "Customer"

    def pending_notification_items(self) -> list["OrderItem"]:
        """Items whose wholesaler still has to be notified."""
        return [item for item in self.items if item.awaiting_notification]

    def all_wholesalers_notified(self) -> bool:
        """
        Check if every wholesaler of the order has been notified.

        Items without a wholesaler email cannot be notified and are ignored.
        """
        return all(
            item.wholesaler_notified
            for item in self.items
            if item.wholesaler_email
        )

    def to_public_dict(self) -> dict[str, Any]:
        """
        Client-safe representation of the order.

        Wholesaler name, email and product code never leave the service
        through this view; only the fulfillment flags are exposed.
        """
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "customer_id": str(self.customer_id) if self.customer_id else None,
            "guest_info": dict(self.guest_info) if self.guest_info else None,
            "items": [item.to_public_dict() for item in self.items],
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "subtotal": self.subtotal,
            "tax": self.tax,
            "shipping": self.shipping,
            "total": self.total,
            "currency": self.currency,
            "payment": {
                "method": self.payment_method.value,
                "status": self.payment_status.value,
                "paid_at": self.paid_at,
            },
            "status": self.status.value,
            "tracking_number": self.tracking_number,
            "shipping_carrier": self.shipping_carrier,
            "estimated_delivery_date": self.estimated_delivery_date,
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class OrderItem(BaseModel):
    """
    Line item owned by an order.

    The unit price and the wholesaler contact data are snapshots taken
    from the catalog at checkout. Notification bookkeeping columns are
    only ever changed through single-row atomic updates: attempts only
    grow and ``wholesaler_notified`` never goes back to false.
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent order identifier",
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Catalog product",
    )

    line_number: Mapped[int] = mapped_column(
        nullable=False,
        default=1,
        comment="Position of the item within the order",
    )

    product_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Product name at purchase time",
    )

    quantity: Mapped[int] = mapped_column(
        nullable=False,
        default=1,
        comment="Quantity ordered",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        comment="Unit price at purchase time",
    )

    # Wholesaler snapshot
    wholesaler_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Wholesaler shipping this item",
    )

    wholesaler_email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Wholesaler contact address",
    )

    wholesaler_product_code: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Wholesaler's product code",
    )

    # Notification bookkeeping
    wholesaler_notified: Mapped[bool] = mapped_column(
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Whether the wholesaler has been notified",
    )

    wholesaler_notified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the wholesaler was notified",
    )

    notification_attempts: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
        server_default=text("0"),
        comment="Number of notification attempts",
    )

    last_notification_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Error of the last failed notification attempt",
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="items",
        foreign_keys=[order_id],
    )

    __table_args__ = (
        Index("ix_order_items_order_line", "order_id", "line_number"),
        Index(
            "ix_order_items_pending_notification",
            "order_id",
            postgresql_where=text(
                "wholesaler_notified = false AND wholesaler_email IS NOT NULL"
            ),
        ),
        CheckConstraint(
            "quantity BETWEEN 1 AND 99",
            name="ck_order_items_quantity_range",
        ),
        CheckConstraint(
            "price >= 0",
            name="ck_order_items_price_non_negative",
        ),
        CheckConstraint(
            "notification_attempts >= 0",
            name="ck_order_items_attempts_non_negative",
        ),
        CheckConstraint(
            "NOT wholesaler_notified OR wholesaler_notified_at IS NOT NULL",
            name="ck_order_items_notified_has_timestamp",
        ),
        {
            "comment": "Order line items with wholesaler notification tracking",
        },
    )

    def __repr__(self) -> str:
        return (
            f"<OrderItem(id={self.id}, order_id={self.order_id}, "
            f"quantity={self.quantity}, notified={self.wholesaler_notified})>"
        )

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    @property
    def awaiting_notification(self) -> bool:
        """Check if the dispatcher still has to notify this item's wholesaler."""
        return not self.wholesaler_notified and bool(self.wholesaler_email)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "product_id": str(self.product_id),
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price": self.price,
            "wholesaler": {
                "notified": self.wholesaler_notified,
                "notified_at": self.wholesaler_notified_at,
            },
        }


class OrderStatusHistory(BaseModel):
    """
    Order status history for audit trail.

    One row per status change: creation, payment-driven and administrative.
    """

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent order identifier",
    )

    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=True,
        comment="Previous status (NULL for the creation entry)",
    )

    to_status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        comment="New status",
    )

    changed_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="User ID or system component that made the change",
    )

    change_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Reason for status change",
    )

    tracking_number: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Tracking number set with the change",
    )

    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
        comment="Additional metadata stored as JSONB",
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="status_history",
        foreign_keys=[order_id],
    )

    __table_args__ = (
        Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {
            "comment": "Order status change history for audit trail",
        },
    )

    def __repr__(self) -> str:
        from_value = self.from_status.value if self.from_status else None
        return (
            f"<OrderStatusHistory(id={self.id}, order_id={self.order_id}, "
            f"from_status={from_value}, to_status={self.to_status.value})>"
        )
