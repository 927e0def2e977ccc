"""
Payment service: gateway payment creation and webhook reconciliation.

Webhook deliveries are at-least-once and may race each other. The flow is:

1. re-fetch the payment from the gateway (the webhook body is only a hint);
2. find the order holding that gateway payment ID;
3. remember the payment status before touching anything;
4. apply the gateway status (paid through a compare-and-swap);
5. commit, then publish ``PaymentConfirmed`` only if this delivery performed
   the unpaid -> paid transition.

Receipt emails and wholesaler notifications hang off that event, so their
failures never turn into webhook failures.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import bind_order_context, get_logger, log_performance
from src.database.models.order import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from src.database.models.user import User
from src.services.events import OrderEventBus, PaymentConfirmed, get_event_bus
from src.services.orders.repository import OrderRepository, OrderRepositoryError
from src.services.orders.service import OrderAccessDeniedError
from src.services.payments.stripe_client import (
    StripeClient,
    StripeClientError,
    get_stripe_client,
)

logger = get_logger(__name__)

PAID_STATUSES = frozenset({"paid"})
FAILED_STATUSES = frozenset({"failed", "canceled", "expired"})
PENDING_STATUSES = frozenset({"pending", "open"})


class PaymentServiceError(Exception):
    """Base exception for payment service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class PaymentGatewayError(PaymentServiceError):
    """Raised when the gateway cannot be reached. The caller should retry."""

    pass


class PaymentOrderNotFoundError(PaymentServiceError):
    """Raised when no order matches the payment."""

    pass


class OrderAlreadyPaidError(PaymentServiceError):
    """Raised when creating a payment for an order that is already paid."""

    pass


class PaymentProcessingError(PaymentServiceError):
    """Raised when payment state cannot be persisted."""

    pass


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of processing one webhook delivery."""

    order_id: uuid.UUID
    order_number: str
    gateway_payment_id: str
    gateway_status: str
    previous_payment_status: PaymentStatus
    payment_status: PaymentStatus
    order_status: OrderStatus
    payment_confirmed: bool


class PaymentService:
    """
    Payment service coordinating the gateway and order payment state.

    Attributes:
        repository: Order repository
        stripe_client: Payment gateway client
        event_bus: Channel for post-commit side effects
    """

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        event_bus: Optional[OrderEventBus] = None,
    ):
        self.session = session
        self.repository = OrderRepository(session)
        self.stripe_client = stripe_client or get_stripe_client()
        self.event_bus = event_bus or get_event_bus()

    async def create_payment(
        self,
        order_id: uuid.UUID,
        requester: Optional[User] = None,
        method: PaymentMethod = PaymentMethod.CARD,
    ) -> dict[str, Any]:
        """
        Create a gateway payment for an order's total.

        Args:
            order_id: Order to pay
            requester: Authenticated caller, None for guest checkout
            method: Payment method chosen by the customer

        Returns:
            Payment details including the client secret

        Raises:
            PaymentOrderNotFoundError: If the order does not exist
            OrderAccessDeniedError: If a customer order is paid by someone else
            OrderAlreadyPaidError: If the order is already paid
            PaymentGatewayError: If the gateway call fails
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise PaymentOrderNotFoundError("Order not found", order_id=str(order_id))

        if not order.is_guest_order:
            is_owner = requester is not None and requester.id == order.customer_id
            is_admin = requester is not None and requester.is_admin
            if not (is_owner or is_admin):
                raise OrderAccessDeniedError(
                    "Not authorized to pay for this order",
                    order_id=str(order_id),
                )

        if order.is_paid:
            raise OrderAlreadyPaidError(
                "Order is already paid",
                order_id=str(order_id),
                order_number=order.order_number,
            )

        with bind_order_context(order.id, order.order_number):
            try:
                with log_performance(logger, "create_gateway_payment"):
                    payment = await self.stripe_client.create_payment(
                        amount=order.total,
                        currency=order.currency,
                        order_id=order.id,
                        order_number=order.order_number,
                        customer_email=order.resolve_customer_email(),
                    )
            except StripeClientError as e:
                raise PaymentGatewayError(
                    "Payment gateway request failed",
                    order_id=str(order_id),
                    code=e.code,
                ) from e

            try:
                await self.repository.set_gateway_payment(order.id, payment.id, method)
                await self.session.commit()
            except OrderRepositoryError as e:
                await self.session.rollback()
                raise PaymentProcessingError(
                    "Failed to attach payment to order", **e.context
                ) from e

            logger.info(
                "Gateway payment created",
                gateway_payment_id=payment.id,
                payment_method=method.value,
            )

        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "gateway_payment_id": payment.id,
            "client_secret": payment.client_secret,
            "amount": order.total,
            "currency": order.currency,
            "status": payment.status,
        }

    async def handle_webhook(self, gateway_payment_id: str) -> ReconciliationResult:
        """
        Reconcile an order with the gateway's view of a payment.

        Raises:
            PaymentGatewayError: If the gateway lookup fails (retryable)
            PaymentOrderNotFoundError: If no order holds the payment
            PaymentProcessingError: If the new state cannot be persisted
        """
        try:
            with log_performance(
                logger, "gateway_payment_lookup", gateway_payment_id=gateway_payment_id
            ):
                payment = await self.stripe_client.fetch_payment(gateway_payment_id)
        except StripeClientError as e:
            raise PaymentGatewayError(
                "Payment gateway lookup failed",
                gateway_payment_id=gateway_payment_id,
                code=e.code,
            ) from e

        order = await self.repository.get_order_by_gateway_payment_id(gateway_payment_id)
        if order is None:
            logger.warning(
                "Webhook for unknown payment",
                gateway_payment_id=gateway_payment_id,
                gateway_status=payment.status,
            )
            raise PaymentOrderNotFoundError(
                "No order for payment",
                gateway_payment_id=gateway_payment_id,
            )

        with bind_order_context(order.id, order.order_number):
            return await self._reconcile(order, payment.id, payment.status, payment)

    async def _reconcile(
        self,
        order: Order,
        gateway_payment_id: str,
        gateway_status: str,
        payment: Any,
    ) -> ReconciliationResult:
        previous_status = order.payment_status
        previous_order_status = order.status
        confirmed = False

        try:
            if gateway_status in PAID_STATUSES:
                if payment.amount != order.total:
                    logger.warning(
                        "Paid amount differs from order total",
                        paid_amount=str(payment.amount),
                        order_total=str(order.total),
                    )
                confirmed = await self.repository.mark_payment_paid(
                    order.id, transaction_id=payment.transaction_id
                )
                if confirmed:
                    await self.repository.add_status_history(
                        order.id,
                        from_status=previous_order_status,
                        to_status=OrderStatus.PROCESSING,
                        changed_by="payment_webhook",
                        change_reason="Payment confirmed",
                        details={"gateway_payment_id": gateway_payment_id},
                    )

            elif gateway_status in FAILED_STATUSES:
                updated = await self.repository.update_payment_state(
                    order.id, PaymentStatus.FAILED, OrderStatus.CANCELLED
                )
                if updated and previous_order_status != OrderStatus.CANCELLED:
                    await self.repository.add_status_history(
                        order.id,
                        from_status=previous_order_status,
                        to_status=OrderStatus.CANCELLED,
                        changed_by="payment_webhook",
                        change_reason=f"Payment {gateway_status}",
                        details={"gateway_payment_id": gateway_payment_id},
                    )
                if not updated:
                    logger.warning(
                        "Ignoring failure status for a paid order",
                        gateway_status=gateway_status,
                    )

            elif gateway_status in PENDING_STATUSES:
                updated = await self.repository.update_payment_state(
                    order.id, PaymentStatus.PENDING
                )
                if not updated:
                    logger.warning(
                        "Ignoring pending status for a paid order",
                        gateway_status=gateway_status,
                    )

            else:
                logger.warning(
                    "Unhandled gateway payment status",
                    gateway_status=gateway_status,
                    gateway_payment_id=gateway_payment_id,
                )

            await self.session.commit()
        except OrderRepositoryError as e:
            await self.session.rollback()
            raise PaymentProcessingError(
                "Failed to persist payment state",
                gateway_payment_id=gateway_payment_id,
                **e.context,
            ) from e

        refreshed = await self.repository.get_order_by_id(order.id)
        order = refreshed or order

        payment_confirmed = confirmed and previous_status != PaymentStatus.PAID
        logger.info(
            "Payment reconciled",
            gateway_payment_id=gateway_payment_id,
            gateway_status=gateway_status,
            previous_payment_status=previous_status.value,
            payment_status=order.payment_status.value,
            order_status=order.status.value,
            payment_confirmed=payment_confirmed,
        )

        if payment_confirmed:
            await self.event_bus.publish(
                PaymentConfirmed(
                    order_id=order.id,
                    order_number=order.order_number,
                    gateway_payment_id=gateway_payment_id,
                    previous_payment_status=previous_status.value,
                )
            )

        return ReconciliationResult(
            order_id=order.id,
            order_number=order.order_number,
            gateway_payment_id=gateway_payment_id,
            gateway_status=gateway_status,
            previous_payment_status=previous_status,
            payment_status=order.payment_status,
            order_status=order.status,
            payment_confirmed=payment_confirmed,
        )
