"""
Integration tests for order API endpoints.

The order service and authentication are replaced through FastAPI
dependency overrides; requests run through the real routing, validation
and error translation.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient

from src.api.deps import get_current_user, get_order_service
from src.database.connection import get_db
from src.database.models.order import OrderStatus
from src.main import app
from src.services.orders.repository import OrderNotFoundError
from src.services.orders.service import (
    InvalidOrderStatusError,
    OrderAlreadyAssociatedError,
    OrderService,
    OrderValidationError,
    TrackingNumberRequiredError,
)
from tests.factories import build_item, build_order

ORDERS_URL = "/api/v1/orders"

ADDRESS = {
    "street": "12 Harbour Road",
    "city": "Portland",
    "state": "OR",
    "zipCode": "97201",
    "country": "US",
}


def guest_payload(**overrides) -> dict:
    payload = {
        "items": [{"productId": str(uuid4()), "quantity": 2}],
        "shippingAddress": dict(ADDRESS),
        "billingAddress": dict(ADDRESS),
        "guestInfo": {
            "email": "guest@example.com",
            "firstName": "Sam",
            "lastName": "Guest",
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def mock_order_service() -> AsyncMock:
    service = AsyncMock(spec=OrderService)
    app.dependency_overrides[get_order_service] = lambda: service
    return service


@pytest.fixture
def as_user():
    """Authenticate requests as the given user."""

    def authenticate(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    return authenticate


class TestCreateGuestOrder:
    """Tests for POST /orders."""

    def test_guest_checkout_success(self, test_client, mock_order_service):
        """
        Verifies:
        - camelCase request bodies are accepted
        - The response carries number, total, status and creation time
        - Response keys are camelCase
        """
        order = build_order()
        mock_order_service.create_order.return_value = order

        response = test_client.post(ORDERS_URL, json=guest_payload())

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert set(data) == {"id", "orderNumber", "total", "status", "createdAt"}
        assert data["orderNumber"] == order.order_number
        assert data["total"] == "54.00"
        assert data["status"] == "pending"
        assert data["createdAt"].startswith("2025-01-14T09:35:12")

        kwargs = mock_order_service.create_order.await_args.kwargs
        assert kwargs["guest_info"]["email"] == "guest@example.com"
        assert kwargs["shipping_address"]["zip_code"] == "97201"
        assert kwargs["items"][0]["quantity"] == 2

    def test_missing_guest_info_is_validation_error(self, test_client, mock_order_service):
        payload = guest_payload()
        del payload["guestInfo"]

        response = test_client.post(ORDERS_URL, json=payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert any(error["field"] == "guestInfo" for error in detail["errors"])
        mock_order_service.create_order.assert_not_awaited()

    @pytest.mark.parametrize("quantity", [0, 100])
    def test_quantity_out_of_range(self, test_client, mock_order_service, quantity):
        payload = guest_payload(items=[{"productId": str(uuid4()), "quantity": quantity}])

        response = test_client.post(ORDERS_URL, json=payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    def test_service_validation_errors_are_listed(self, test_client, mock_order_service):
        mock_order_service.create_order.side_effect = OrderValidationError(
            "Order validation failed",
            errors=[{"field": "guest_info.first_name", "message": "Field is required"}],
        )

        response = test_client.post(ORDERS_URL, json=guest_payload())

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert detail["errors"][0]["field"] == "guest_info.first_name"


class TestGetOrder:
    """Tests for GET /orders/{order_id}."""

    def test_public_view_hides_wholesaler_contact(
        self, test_client, mock_order_service, as_user, customer
    ):
        """
        Verifies:
        - Wholesaler name, email and product code never appear
        - The per-item notification flag is exposed
        """
        as_user(customer)
        order = build_order(customer=customer, items=[build_item()])
        mock_order_service.get_order_for_viewer.return_value = order

        response = test_client.get(f"{ORDERS_URL}/{order.id}")

        assert response.status_code == status.HTTP_200_OK
        body = response.text
        assert "orders@acme-supply.com" not in body
        assert "Acme Supply" not in body
        assert "ACME-MUG-01" not in body
        item = response.json()["items"][0]
        assert item["wholesaler"] == {"notified": False, "notifiedAt": None}
        assert response.json()["shippingAddress"]["zipCode"] == "97201"

    def test_not_found(self, test_client, mock_order_service, as_user, customer):
        as_user(customer)
        mock_order_service.get_order_for_viewer.side_effect = OrderNotFoundError(
            "Order not found"
        )

        response = test_client.get(f"{ORDERS_URL}/{uuid4()}")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["code"] == "ORDER_NOT_FOUND"

    def test_requires_authentication(self, test_client, mock_order_service):
        async def no_db() -> AsyncGenerator[AsyncMock, None]:
            yield AsyncMock()

        app.dependency_overrides[get_db] = no_db

        response = test_client.get(f"{ORDERS_URL}/{uuid4()}")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"


class TestAdminEndpoints:
    """Tests for administrative order endpoints."""

    def test_customer_cannot_list_all_orders(
        self, test_client, mock_order_service, as_user, customer
    ):
        as_user(customer)

        response = test_client.get(f"{ORDERS_URL}/admin")

        assert response.status_code == status.HTTP_403_FORBIDDEN
        mock_order_service.list_all_orders.assert_not_awaited()

    def test_admin_lists_orders(self, test_client, mock_order_service, as_user, admin_user):
        as_user(admin_user)
        mock_order_service.list_all_orders.return_value = {
            "orders": [build_order()],
            "pagination": {
                "current_page": 1,
                "total_pages": 1,
                "total_orders": 1,
                "has_next_page": False,
                "has_prev_page": False,
            },
        }

        response = test_client.get(f"{ORDERS_URL}/admin", params={"status": "pending"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["pagination"]["totalOrders"] == 1
        assert mock_order_service.list_all_orders.await_args.kwargs["status"] == "pending"

    def test_invalid_status_lists_allowed_values(
        self, test_client, mock_order_service, as_user, admin_user
    ):
        as_user(admin_user)
        mock_order_service.update_order_status.side_effect = InvalidOrderStatusError(
            "Invalid order status",
            status="teleported",
            allowed=[s.value for s in OrderStatus],
        )

        response = test_client.put(
            f"{ORDERS_URL}/{uuid4()}/status", json={"status": "teleported"}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["code"] == "INVALID_STATUS"
        assert "delivered" in detail["allowed"]

    def test_status_update_success(self, test_client, mock_order_service, as_user, admin_user):
        as_user(admin_user)
        order = build_order(status=OrderStatus.SHIPPED, tracking_number="1Z999")
        mock_order_service.update_order_status.return_value = order

        response = test_client.put(
            f"{ORDERS_URL}/{order.id}/status",
            json={"status": "shipped", "trackingNumber": "1Z999"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "orderNumber": order.order_number,
            "status": "shipped",
            "trackingNumber": "1Z999",
        }

    def test_fulfill_requires_tracking_number(
        self, test_client, mock_order_service, as_user, admin_user
    ):
        as_user(admin_user)
        mock_order_service.fulfill_order.side_effect = TrackingNumberRequiredError(
            "Tracking number is required when shipping an order"
        )

        response = test_client.put(
            f"{ORDERS_URL}/{uuid4()}/fulfill", json={"status": "shipped"}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "TRACKING_NUMBER_REQUIRED"


class TestAssociateOrder:
    """Tests for POST /orders/{order_id}/associate."""

    def test_already_associated(self, test_client, mock_order_service, as_user, customer):
        as_user(customer)
        mock_order_service.associate_order.side_effect = OrderAlreadyAssociatedError(
            "Order is already associated with an account"
        )

        response = test_client.post(f"{ORDERS_URL}/{uuid4()}/associate")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "ORDER_ALREADY_ASSOCIATED"

    def test_claim_success(self, test_client, mock_order_service, as_user, customer):
        as_user(customer)
        order = build_order(customer=customer)
        mock_order_service.associate_order.return_value = order

        response = test_client.post(f"{ORDERS_URL}/{order.id}/associate")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["customerId"] == str(customer.id)


@pytest.fixture
async def async_client(mock_session) -> AsyncGenerator[AsyncClient, None]:
    """Async client over the ASGI app with the database session mocked."""

    async def override_get_db():
        yield mock_session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestListMyOrders:
    """Tests for GET /orders over the async client."""

    @pytest.mark.asyncio
    async def test_lists_public_view_with_pagination(
        self, async_client, mock_order_service, as_user, customer
    ):
        """
        Verifies:
        - Listing is scoped to the caller
        - Pagination block is returned as computed by the service
        - Wholesaler contact data is stripped from every item
        """
        as_user(customer)
        order = build_order(customer=customer, items=[build_item(notified=True)])
        mock_order_service.list_customer_orders.return_value = {
            "orders": [order],
            "pagination": {
                "current_page": 1,
                "total_pages": 1,
                "total_orders": 1,
                "has_next_page": False,
                "has_prev_page": False,
            },
        }

        response = await async_client.get(ORDERS_URL, params={"page": 1, "limit": 5})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["pagination"]["totalOrders"] == 1
        assert "orders@acme-supply.com" not in response.text
        mock_order_service.list_customer_orders.assert_awaited_once_with(
            customer, page=1, limit=5
        )

    @pytest.mark.asyncio
    async def test_limit_is_bounded(self, async_client, mock_order_service, as_user, customer):
        as_user(customer)

        response = await async_client.get(ORDERS_URL, params={"limit": 500})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        mock_order_service.list_customer_orders.assert_not_awaited()
