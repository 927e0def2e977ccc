"""
Notification database models for delivery tracking and recipient preferences.

NotificationLog keeps one row per email attempt, for customers, guests and
wholesalers alike, so failed sends can be inspected after the fact.
NotificationPreference holds a registered customer's opt-outs per
notification type; guests have no rows and always receive order emails.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import BaseModel


class NotificationType(str, enum.Enum):
    """Notification type enumeration for categorizing notifications."""

    ORDER_CONFIRMATION = "order_confirmation"
    PAYMENT_RECEIPT = "payment_receipt"
    ORDER_STATUS_UPDATE = "order_status_update"
    WHOLESALER_ORDER = "wholesaler_order"

    @classmethod
    def from_string(cls, value: str) -> "NotificationType":
        """
        Convert string to NotificationType enum.

        Raises:
            ValueError: If value is not a valid notification type
        """
        try:
            return cls[value.upper()]
        except KeyError:
            raise ValueError(f"Invalid notification type: {value}")

    @property
    def template_name(self) -> str:
        """Name of the email template rendered for this type."""
        return self.value


class NotificationChannel(str, enum.Enum):
    """Delivery channel."""

    EMAIL = "email"


class NotificationStatus(str, enum.Enum):
    """Delivery status of a single notification attempt."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self != NotificationStatus.PENDING


class NotificationLog(BaseModel):
    """
    Notification log model for tracking every sent notification.

    Attributes:
        id: Unique notification identifier (UUID)
        user_id: Registered recipient, NULL for guests and wholesalers
        order_id: Order the notification is about
        order_item_id: Item the notification is about (wholesaler emails)
        notification_type: Type of notification
        channel: Delivery channel
        recipient: Recipient email address
        subject: Email subject line
        content: Plain text body
        status: Delivery status
        sent_at: Timestamp when notification was sent
        error_message: Error details if delivery failed
        provider_message_id: Message ID returned by the email provider
        details: Additional notification metadata (``metadata`` column)
    """

    __tablename__ = "notification_logs"

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Registered recipient",
    )

    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Order the notification is about",
    )

    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=True,
        comment="Order item the notification is about",
    )

    notification_type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, name="notification_type", native_enum=False),
        nullable=False,
        index=True,
        comment="Type of notification",
    )

    channel: Mapped[NotificationChannel] = mapped_column(
        SQLEnum(NotificationChannel, name="notification_channel", native_enum=False),
        nullable=False,
        default=NotificationChannel.EMAIL,
        comment="Delivery channel",
    )

    recipient: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Recipient email address",
    )

    subject: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Email subject line",
    )

    content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Plain text body",
    )

    status: Mapped[NotificationStatus] = mapped_column(
        SQLEnum(NotificationStatus, name="notification_status", native_enum=False),
        nullable=False,
        default=NotificationStatus.PENDING,
        index=True,
        comment="Delivery status",
    )

    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp when notification was sent",
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Error details if delivery failed",
    )

    provider_message_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Message ID returned by the email provider",
    )

    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
        comment="Additional notification metadata",
    )

    __table_args__ = (
        Index(
            "ix_notification_logs_order_type",
            "order_id",
            "notification_type",
        ),
        Index(
            "ix_notification_logs_status_created",
            "status",
            "created_at",
        ),
        CheckConstraint(
            "length(recipient) >= 3",
            name="ck_notification_logs_recipient_min_length",
        ),
        {
            "comment": "Notification delivery logs with status tracking",
        },
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationLog(id={self.id}, order_id={self.order_id}, "
            f"type={self.notification_type.value}, status={self.status.value})>"
        )

    def mark_sent(self, provider_message_id: Optional[str] = None) -> None:
        """Mark notification as sent."""
        self.status = NotificationStatus.SENT
        self.sent_at = datetime.now(timezone.utc)
        self.provider_message_id = provider_message_id

    def mark_failed(self, error_message: str) -> None:
        """Mark notification as failed."""
        self.status = NotificationStatus.FAILED
        self.error_message = error_message

    def mark_skipped(self, reason: str) -> None:
        """Mark notification as skipped (recipient opted out)."""
        self.status = NotificationStatus.SKIPPED
        self.details = {**(self.details or {}), "skip_reason": reason}


class NotificationPreference(BaseModel):
    """
    Per-type email opt-in of a registered customer.

    A missing row means the customer receives that notification type.
    """

    __tablename__ = "notification_preferences"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        comment="User who owns these preferences",
    )

    notification_type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, name="notification_type", native_enum=False),
        nullable=False,
        comment="Type of notification",
    )

    email_enabled: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
        comment="Enable email notifications",
    )

    user: Mapped["User"] = relationship(
        "User",
        back_populates="notification_preferences",
    )

    __table_args__ = (
        Index(
            "ix_notification_preferences_user_type",
            "user_id",
            "notification_type",
            unique=True,
        ),
        {
            "comment": "User notification preferences by type",
        },
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationPreference(user_id={self.user_id}, "
            f"type={self.notification_type.value}, email_enabled={self.email_enabled})>"
        )
