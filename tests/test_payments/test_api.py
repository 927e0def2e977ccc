"""
Integration tests for payment API endpoints.

The payment service is replaced through dependency overrides; the tests
cover status codes and error translation for payment creation and the
gateway webhook.
"""

from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi import status

from src.api.deps import get_optional_user, get_payment_service
from src.database.models.order import OrderStatus, PaymentStatus
from src.main import app
from src.services.orders.service import OrderAccessDeniedError
from src.services.payments.service import (
    OrderAlreadyPaidError,
    PaymentGatewayError,
    PaymentOrderNotFoundError,
    PaymentProcessingError,
    PaymentService,
    ReconciliationResult,
)

PAYMENTS_URL = "/api/v1/payments"
ORDER_NUMBER = "ORD-20250114093512-9F3A61C2"


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def mock_payment_service() -> AsyncMock:
    service = AsyncMock(spec=PaymentService)
    app.dependency_overrides[get_payment_service] = lambda: service
    app.dependency_overrides[get_optional_user] = lambda: None
    return service


def reconciliation(**overrides) -> ReconciliationResult:
    values = {
        "order_id": uuid4(),
        "order_number": ORDER_NUMBER,
        "gateway_payment_id": "pi_3Nf8Test",
        "gateway_status": "paid",
        "previous_payment_status": PaymentStatus.PENDING,
        "payment_status": PaymentStatus.PAID,
        "order_status": OrderStatus.PROCESSING,
        "payment_confirmed": True,
    }
    values.update(overrides)
    return ReconciliationResult(**values)


# ============================================================================
# Webhook
# ============================================================================


class TestWebhook:
    """Tests for POST /payments/webhook."""

    def test_paid_webhook(self, test_client, mock_payment_service):
        """
        Verifies:
        - The gateway ID from the body is reconciled
        - The response reports the stored payment and order status
        """
        mock_payment_service.handle_webhook.return_value = reconciliation()

        response = test_client.post(f"{PAYMENTS_URL}/webhook", json={"id": " pi_3Nf8Test "})

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "received": True,
            "orderNumber": ORDER_NUMBER,
            "paymentStatus": "paid",
            "status": "processing",
        }
        mock_payment_service.handle_webhook.assert_awaited_once_with("pi_3Nf8Test")

    def test_redelivery_is_still_acknowledged(self, test_client, mock_payment_service):
        mock_payment_service.handle_webhook.return_value = reconciliation(
            previous_payment_status=PaymentStatus.PAID,
            payment_confirmed=False,
        )

        response = test_client.post(f"{PAYMENTS_URL}/webhook", json={"id": "pi_3Nf8Test"})

        assert response.status_code == status.HTTP_200_OK

    def test_missing_id(self, test_client, mock_payment_service):
        response = test_client.post(f"{PAYMENTS_URL}/webhook", json={"id": "   "})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        mock_payment_service.handle_webhook.assert_not_awaited()

    def test_unknown_payment(self, test_client, mock_payment_service):
        mock_payment_service.handle_webhook.side_effect = PaymentOrderNotFoundError(
            "No order for payment"
        )

        response = test_client.post(f"{PAYMENTS_URL}/webhook", json={"id": "pi_unknown"})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["code"] == "ORDER_NOT_FOUND"

    @pytest.mark.parametrize(
        "error,code",
        [
            (PaymentGatewayError("Payment gateway lookup failed"), "PAYMENT_GATEWAY_ERROR"),
            (PaymentProcessingError("Failed to persist payment state"), "INTERNAL_ERROR"),
        ],
    )
    def test_failures_ask_for_redelivery(self, test_client, mock_payment_service, error, code):
        mock_payment_service.handle_webhook.side_effect = error

        response = test_client.post(f"{PAYMENTS_URL}/webhook", json={"id": "pi_3Nf8Test"})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["detail"]["code"] == code


# ============================================================================
# Payment Creation
# ============================================================================


class TestCreatePayment:
    """Tests for POST /payments/create."""

    def test_create_payment(self, test_client, mock_payment_service):
        order_id = uuid4()
        mock_payment_service.create_payment.return_value = {
            "order_id": order_id,
            "order_number": ORDER_NUMBER,
            "gateway_payment_id": "pi_3Nf8Test",
            "client_secret": "pi_3Nf8Test_secret_abc",
            "amount": Decimal("54.00"),
            "currency": "USD",
            "status": "open",
        }

        response = test_client.post(
            f"{PAYMENTS_URL}/create", json={"orderId": str(order_id)}
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["clientSecret"] == "pi_3Nf8Test_secret_abc"
        assert data["amount"] == "54.00"
        call = mock_payment_service.create_payment.await_args
        assert call.args[0] == order_id
        assert call.kwargs["requester"] is None

    @pytest.mark.parametrize(
        "error,status_code,code",
        [
            (PaymentOrderNotFoundError("Order not found"), 404, "ORDER_NOT_FOUND"),
            (OrderAccessDeniedError("Not authorized"), 403, "FORBIDDEN"),
            (OrderAlreadyPaidError("Order is already paid"), 409, "ORDER_ALREADY_PAID"),
            (PaymentGatewayError("Payment gateway request failed"), 502, "PAYMENT_GATEWAY_ERROR"),
        ],
    )
    def test_error_translation(
        self, test_client, mock_payment_service, error, status_code, code
    ):
        mock_payment_service.create_payment.side_effect = error

        response = test_client.post(f"{PAYMENTS_URL}/create", json={"orderId": str(uuid4())})

        assert response.status_code == status_code
        assert response.json()["detail"]["code"] == code
