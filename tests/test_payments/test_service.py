"""
Test suite for PaymentService.

Covers gateway payment creation and webhook reconciliation: the
compare-and-swap that makes payment confirmation happen once, failure and
pending statuses, unknown statuses, gateway and storage errors, and the
isolation of post-commit side effects.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from src.database.models.order import OrderStatus, PaymentMethod, PaymentStatus
from src.services.events import PaymentConfirmed
from src.services.orders.repository import OrderUpdateError
from src.services.orders.service import OrderAccessDeniedError
from src.services.payments.service import (
    OrderAlreadyPaidError,
    PaymentGatewayError,
    PaymentOrderNotFoundError,
    PaymentProcessingError,
    PaymentService,
)
from src.services.payments.stripe_client import (
    GatewayPayment,
    StripeClient,
    StripeConnectionError,
)
from tests.factories import build_order, build_user


def gateway_payment(status: str = "paid", amount: str = "54.00", **overrides) -> GatewayPayment:
    values = {
        "id": "pi_3Nf8Test",
        "status": status,
        "raw_status": "succeeded" if status == "paid" else status,
        "amount": Decimal(amount),
        "currency": "USD",
        "transaction_id": "ch_3Nf8Test",
        "client_secret": "pi_3Nf8Test_secret_abc",
    }
    values.update(overrides)
    return GatewayPayment(**values)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def stripe_client() -> AsyncMock:
    return AsyncMock(spec=StripeClient)


@pytest.fixture
def payment_service(mock_session, stripe_client, event_bus) -> PaymentService:
    service = PaymentService(
        session=mock_session,
        stripe_client=stripe_client,
        event_bus=event_bus,
    )
    service.repository = AsyncMock()
    return service


@pytest.fixture
def pending_order():
    return build_order(gateway_payment_id="pi_3Nf8Test")


@pytest.fixture
def paid_order(pending_order):
    return build_order(
        id=pending_order.id,
        gateway_payment_id="pi_3Nf8Test",
        payment_status=PaymentStatus.PAID,
        status=OrderStatus.PROCESSING,
        transaction_id="ch_3Nf8Test",
    )


# ============================================================================
# Webhook Reconciliation
# ============================================================================


class TestHandleWebhookPaid:
    """Tests for the unpaid -> paid transition."""

    @pytest.mark.asyncio
    async def test_first_paid_delivery_confirms_payment(
        self, payment_service, stripe_client, event_bus, pending_order, paid_order
    ):
        """
        Verifies:
        - The status is re-fetched from the gateway
        - The payment is marked paid through the compare-and-swap
        - A history row records pending -> processing
        - PaymentConfirmed is published exactly once, after commit
        """
        stripe_client.fetch_payment.return_value = gateway_payment()
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.mark_payment_paid.return_value = True
        payment_service.repository.get_order_by_id.return_value = paid_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        stripe_client.fetch_payment.assert_awaited_once_with("pi_3Nf8Test")
        payment_service.repository.mark_payment_paid.assert_awaited_once_with(
            pending_order.id, transaction_id="ch_3Nf8Test"
        )
        history = payment_service.repository.add_status_history.await_args
        assert history.kwargs["from_status"] == OrderStatus.PENDING
        assert history.kwargs["to_status"] == OrderStatus.PROCESSING
        payment_service.session.commit.assert_awaited_once()

        assert result.payment_confirmed is True
        assert result.previous_payment_status == PaymentStatus.PENDING
        assert result.payment_status == PaymentStatus.PAID
        assert result.order_status == OrderStatus.PROCESSING

        assert len(event_bus.published) == 1
        event = event_bus.published[0]
        assert isinstance(event, PaymentConfirmed)
        assert event.order_id == pending_order.id
        assert event.gateway_payment_id == "pi_3Nf8Test"
        assert event.previous_payment_status == "pending"

    @pytest.mark.asyncio
    async def test_redelivery_publishes_nothing(
        self, payment_service, stripe_client, event_bus, paid_order
    ):
        """
        Verifies:
        - A second paid delivery leaves the order unchanged
        - No history row and no PaymentConfirmed event
        """
        stripe_client.fetch_payment.return_value = gateway_payment()
        payment_service.repository.get_order_by_gateway_payment_id.return_value = paid_order
        payment_service.repository.mark_payment_paid.return_value = False
        payment_service.repository.get_order_by_id.return_value = paid_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        assert result.payment_confirmed is False
        assert result.payment_status == PaymentStatus.PAID
        payment_service.repository.add_status_history.assert_not_awaited()
        assert event_bus.published == []

    @pytest.mark.asyncio
    async def test_concurrent_delivery_that_loses_the_swap(
        self, payment_service, stripe_client, event_bus, pending_order, paid_order
    ):
        """Both deliveries saw an unpaid order; only the swap winner publishes."""
        stripe_client.fetch_payment.return_value = gateway_payment()
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.mark_payment_paid.return_value = False
        payment_service.repository.get_order_by_id.return_value = paid_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        assert result.payment_confirmed is False
        assert event_bus.published == []

    @pytest.mark.asyncio
    async def test_amount_mismatch_still_confirms(
        self, payment_service, stripe_client, pending_order, paid_order
    ):
        stripe_client.fetch_payment.return_value = gateway_payment(amount="50.00")
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.mark_payment_paid.return_value = True
        payment_service.repository.get_order_by_id.return_value = paid_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        assert result.payment_confirmed is True

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_fail_webhook(
        self, payment_service, stripe_client, event_bus, pending_order, paid_order
    ):
        broken_handler = AsyncMock(side_effect=RuntimeError("SES template missing"))
        event_bus.subscribe(PaymentConfirmed, broken_handler)
        stripe_client.fetch_payment.return_value = gateway_payment()
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.mark_payment_paid.return_value = True
        payment_service.repository.get_order_by_id.return_value = paid_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        assert result.payment_confirmed is True
        broken_handler.assert_awaited_once()


class TestHandleWebhookOtherStatuses:
    """Tests for failed, pending and unknown gateway statuses."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("gateway_status", ["failed", "canceled", "expired"])
    async def test_failure_cancels_order(
        self, payment_service, stripe_client, event_bus, pending_order, gateway_status
    ):
        cancelled = build_order(
            id=pending_order.id,
            payment_status=PaymentStatus.FAILED,
            status=OrderStatus.CANCELLED,
        )
        stripe_client.fetch_payment.return_value = gateway_payment(status=gateway_status)
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.update_payment_state.return_value = True
        payment_service.repository.get_order_by_id.return_value = cancelled

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        payment_service.repository.update_payment_state.assert_awaited_once_with(
            pending_order.id, PaymentStatus.FAILED, OrderStatus.CANCELLED
        )
        history = payment_service.repository.add_status_history.await_args
        assert history.kwargs["to_status"] == OrderStatus.CANCELLED
        assert result.payment_status == PaymentStatus.FAILED
        assert result.order_status == OrderStatus.CANCELLED
        assert result.payment_confirmed is False
        assert event_bus.published == []

    @pytest.mark.asyncio
    async def test_failure_never_downgrades_paid_order(
        self, payment_service, stripe_client, paid_order
    ):
        stripe_client.fetch_payment.return_value = gateway_payment(status="failed")
        payment_service.repository.get_order_by_gateway_payment_id.return_value = paid_order
        payment_service.repository.update_payment_state.return_value = False
        payment_service.repository.get_order_by_id.return_value = paid_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        payment_service.repository.add_status_history.assert_not_awaited()
        assert result.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    @pytest.mark.parametrize("gateway_status", ["pending", "open"])
    async def test_pending_statuses(
        self, payment_service, stripe_client, pending_order, gateway_status
    ):
        stripe_client.fetch_payment.return_value = gateway_payment(status=gateway_status)
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.update_payment_state.return_value = True
        payment_service.repository.get_order_by_id.return_value = pending_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        payment_service.repository.update_payment_state.assert_awaited_once_with(
            pending_order.id, PaymentStatus.PENDING
        )
        assert result.order_status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_status_changes_nothing(
        self, payment_service, stripe_client, event_bus, pending_order
    ):
        stripe_client.fetch_payment.return_value = gateway_payment(status="requires_capture")
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.get_order_by_id.return_value = pending_order

        result = await payment_service.handle_webhook("pi_3Nf8Test")

        payment_service.repository.mark_payment_paid.assert_not_awaited()
        payment_service.repository.update_payment_state.assert_not_awaited()
        assert result.gateway_status == "requires_capture"
        assert result.payment_status == PaymentStatus.PENDING
        assert event_bus.published == []


class TestHandleWebhookErrors:
    """Tests for webhook failures the gateway must see."""

    @pytest.mark.asyncio
    async def test_gateway_lookup_failure(self, payment_service, stripe_client):
        stripe_client.fetch_payment.side_effect = StripeConnectionError(
            "Operation failed after 2 retries"
        )

        with pytest.raises(PaymentGatewayError):
            await payment_service.handle_webhook("pi_3Nf8Test")

        payment_service.repository.get_order_by_gateway_payment_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_payment(self, payment_service, stripe_client):
        stripe_client.fetch_payment.return_value = gateway_payment()
        payment_service.repository.get_order_by_gateway_payment_id.return_value = None

        with pytest.raises(PaymentOrderNotFoundError):
            await payment_service.handle_webhook("pi_3Nf8Test")

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back(
        self, payment_service, stripe_client, event_bus, pending_order
    ):
        stripe_client.fetch_payment.return_value = gateway_payment()
        payment_service.repository.get_order_by_gateway_payment_id.return_value = pending_order
        payment_service.repository.mark_payment_paid.side_effect = OrderUpdateError(
            "Failed to mark order paid"
        )

        with pytest.raises(PaymentProcessingError):
            await payment_service.handle_webhook("pi_3Nf8Test")

        payment_service.session.rollback.assert_awaited_once()
        payment_service.session.commit.assert_not_awaited()
        assert event_bus.published == []


# ============================================================================
# Payment Creation
# ============================================================================


class TestCreatePayment:
    """Tests for creating a gateway payment for an order."""

    @pytest.mark.asyncio
    async def test_guest_order_payment(self, payment_service, stripe_client, pending_order):
        stripe_client.create_payment.return_value = gateway_payment(status="open")
        payment_service.repository.get_order_by_id.return_value = pending_order

        result = await payment_service.create_payment(pending_order.id)

        call = stripe_client.create_payment.await_args
        assert call.kwargs["amount"] == Decimal("54.00")
        assert call.kwargs["customer_email"] == "guest@example.com"
        payment_service.repository.set_gateway_payment.assert_awaited_once_with(
            pending_order.id, "pi_3Nf8Test", PaymentMethod.CARD
        )
        payment_service.session.commit.assert_awaited_once()
        assert result["client_secret"] == "pi_3Nf8Test_secret_abc"
        assert result["amount"] == Decimal("54.00")
        assert result["status"] == "open"

    @pytest.mark.asyncio
    async def test_customer_order_requires_owner(self, payment_service, customer):
        order = build_order(customer=customer)
        payment_service.repository.get_order_by_id.return_value = order

        with pytest.raises(OrderAccessDeniedError):
            await payment_service.create_payment(
                order.id, requester=build_user(email="other@example.com")
            )

        with pytest.raises(OrderAccessDeniedError):
            await payment_service.create_payment(order.id, requester=None)

    @pytest.mark.asyncio
    async def test_already_paid(self, payment_service, stripe_client, paid_order):
        payment_service.repository.get_order_by_id.return_value = paid_order

        with pytest.raises(OrderAlreadyPaidError):
            await payment_service.create_payment(paid_order.id)

        stripe_client.create_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_order(self, payment_service):
        payment_service.repository.get_order_by_id.return_value = None

        with pytest.raises(PaymentOrderNotFoundError):
            await payment_service.create_payment(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_gateway_failure(self, payment_service, stripe_client, pending_order):
        payment_service.repository.get_order_by_id.return_value = pending_order
        stripe_client.create_payment.side_effect = StripeConnectionError("Connection reset")

        with pytest.raises(PaymentGatewayError):
            await payment_service.create_payment(pending_order.id)

        payment_service.repository.set_gateway_payment.assert_not_awaited()
