"""
Notification service orchestrating order email delivery.

Customer and guest emails go through ``send_order_email``, which resolves the
recipient from the order, honours the recipient's preference and records the
attempt in ``notification_logs``. Wholesaler emails are rendered here too but
their delivery is driven by the wholesaler dispatcher, which needs the raw
``deliver_email`` primitive to fan sends out concurrently.
"""

import asyncio
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import get_settings
from src.core.logging import get_logger
from src.database.models.notification import (
    NotificationChannel,
    NotificationLog,
    NotificationPreference,
    NotificationStatus,
    NotificationType,
)
from src.database.models.order import Order, OrderItem
from src.services.notifications.aws_clients import (
    SESClient,
    SESClientError,
    get_ses_client,
)
from src.services.notifications.templates import (
    RenderedEmail,
    TemplateEngine,
    TemplateEngineError,
    get_template_engine,
)

logger = get_logger(__name__)
settings = get_settings()


class NotificationServiceError(Exception):
    """Base exception for notification service errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class NotificationDeliveryError(NotificationServiceError):
    """Exception for notification rendering or delivery failures."""

    pass


def build_order_context(order: Order) -> dict[str, Any]:
    """Template variables shared by every customer-facing order email."""
    return {
        "order_number": order.order_number,
        "order_date": order.created_at,
        "customer_name": order.resolve_customer_name(),
        "items": [
            {
                "product_name": item.product_name,
                "quantity": item.quantity,
                "price": item.price,
                "line_total": item.line_total,
            }
            for item in order.items
        ],
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shipping": order.shipping,
        "total": order.total,
        "currency": order.currency,
        "shipping_address": order.shipping_address or {},
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "paid_at": order.paid_at,
        "transaction_id": order.transaction_id,
        "tracking_number": order.tracking_number,
        "shipping_carrier": order.shipping_carrier,
        "estimated_delivery_date": order.estimated_delivery_date,
        "notes": order.notes,
    }


def build_wholesaler_context(order: Order, item: OrderItem) -> dict[str, Any]:
    """Template variables of the email sent to one item's wholesaler."""
    return {
        "order_number": order.order_number,
        "order_date": order.created_at,
        "wholesaler_name": item.wholesaler_name,
        "shipping_address": order.shipping_address or {},
        "customer_name": order.resolve_customer_name(),
        "product_name": item.product_name,
        "product_code": item.wholesaler_product_code,
        "quantity": item.quantity,
        "notes": order.notes,
    }


class NotificationService:
    """
    Email notification service.

    Attributes:
        db: Session that notification logs are written to
        ses_client: AWS SES client
        template_engine: Jinja2 template engine
        timeout_seconds: Upper bound of a single delivery, retries included
    """

    def __init__(
        self,
        db_session: AsyncSession,
        ses_client: Optional[SESClient] = None,
        template_engine: Optional[TemplateEngine] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.db = db_session
        self.ses_client = ses_client or get_ses_client()
        self.template_engine = template_engine or get_template_engine()
        self.timeout_seconds = timeout_seconds or settings.notification_timeout_seconds

    def render(
        self, notification_type: NotificationType, context: dict[str, Any]
    ) -> RenderedEmail:
        """
        Render the email for a notification type.

        Raises:
            NotificationDeliveryError: If the template is missing or broken
        """
        try:
            return self.template_engine.render_email(notification_type.template_name, context)
        except TemplateEngineError as e:
            raise NotificationDeliveryError(
                f"Template error: {e}",
                notification_type=notification_type.value,
            ) from e

    async def deliver_email(self, recipient: str, email: RenderedEmail) -> dict[str, Any]:
        """
        Send a rendered email, bounded by the notification timeout.

        Touches no database state, so it is safe to run concurrently.

        Raises:
            NotificationDeliveryError: If SES fails or the timeout elapses
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.ses_client.send_email,
                    to_addresses=[recipient],
                    subject=email.subject,
                    body_text=email.text_body,
                    body_html=email.html_body,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise NotificationDeliveryError(
                f"Email delivery timed out after {self.timeout_seconds}s",
                recipient=recipient,
            ) from e
        except SESClientError as e:
            raise NotificationDeliveryError(
                f"SES error: {e}",
                recipient=recipient,
                **e.context,
            ) from e

    async def is_email_enabled(
        self, user_id: UUID, notification_type: NotificationType
    ) -> bool:
        """Check the customer's preference; a missing row means enabled."""
        stmt = select(NotificationPreference.email_enabled).where(
            NotificationPreference.user_id == user_id,
            NotificationPreference.notification_type == notification_type,
        )
        result = await self.db.execute(stmt)
        enabled = result.scalar_one_or_none()
        return True if enabled is None else bool(enabled)

    def record_attempt(
        self,
        notification_type: NotificationType,
        recipient: str,
        order_id: Optional[UUID] = None,
        order_item_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> NotificationLog:
        """Add a pending notification log row to the session."""
        log = NotificationLog(
            user_id=user_id,
            order_id=order_id,
            order_item_id=order_item_id,
            notification_type=notification_type,
            channel=NotificationChannel.EMAIL,
            recipient=recipient,
            status=NotificationStatus.PENDING,
            details=details or {},
        )
        self.db.add(log)
        return log

    async def send_order_email(
        self,
        order: Order,
        notification_type: NotificationType,
        extra_context: Optional[dict[str, Any]] = None,
    ) -> Optional[NotificationLog]:
        """
        Send a customer-facing email about an order.

        Delivery failures are recorded on the returned log row instead of
        being raised. The caller owns the transaction.

        Returns:
            The notification log, or None if the order has no resolvable
            recipient
        """
        recipient = order.resolve_customer_email()
        if not recipient:
            logger.warning(
                "No recipient for order email",
                notification_type=notification_type.value,
            )
            return None

        log = self.record_attempt(
            notification_type,
            recipient,
            order_id=order.id,
            user_id=order.customer_id,
        )

        if order.customer_id is not None and not await self.is_email_enabled(
            order.customer_id, notification_type
        ):
            log.mark_skipped("recipient_opted_out")
            logger.info(
                "Order email skipped by preference",
                notification_type=notification_type.value,
            )
            await self.db.flush()
            return log

        context = build_order_context(order)
        if extra_context:
            context.update(extra_context)

        try:
            email = self.render(notification_type, context)
            log.subject = email.subject
            log.content = email.text_body
            result = await self.deliver_email(recipient, email)
        except NotificationDeliveryError as e:
            log.mark_failed(str(e))
            logger.warning(
                "Order email failed",
                notification_type=notification_type.value,
                error=str(e),
            )
        else:
            log.mark_sent(result.get("message_id"))
            logger.info(
                "Order email sent",
                notification_type=notification_type.value,
                message_id=result.get("message_id"),
            )

        await self.db.flush()
        return log


def get_notification_service(db_session: AsyncSession) -> NotificationService:
    """Factory function to create notification service instance."""
    return NotificationService(db_session=db_session)
