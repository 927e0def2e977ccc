"""
Test suite for OrderRepository.

The session is mocked; statements handed to ``execute`` are captured and
compiled with the PostgreSQL dialect so the guards that make concurrent
webhooks and dispatch runs safe can be asserted on the SQL itself.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from src.database.models.order import OrderStatus, PaymentMethod, PaymentStatus
from src.services.orders.repository import (
    OrderCreationError,
    OrderNumberConflictError,
    OrderRepository,
    OrderRepositoryError,
    OrderUpdateError,
)
from tests.factories import SHIPPING_ADDRESS, build_order


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def repository(mock_session) -> OrderRepository:
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    mock_session.begin_nested = MagicMock(return_value=transaction)
    mock_session.add = MagicMock()
    mock_session.execute = AsyncMock(return_value=MagicMock(rowcount=1))
    return OrderRepository(mock_session)


def executed_statement(session):
    """Compile the last statement passed to ``session.execute``."""
    statement = session.execute.await_args.args[0]
    compiled = statement.compile(dialect=postgresql.dialect())
    return " ".join(str(compiled).split()), compiled.params


def item_snapshot(**overrides) -> dict:
    snapshot = {
        "product_id": uuid.uuid4(),
        "product_name": "Ceramic Mug",
        "quantity": 2,
        "price": Decimal("25.00"),
        "wholesaler_name": "Acme Supply",
        "wholesaler_email": "orders@acme-supply.com",
        "wholesaler_product_code": "ACME-MUG-01",
    }
    snapshot.update(overrides)
    return snapshot


async def create(repository: OrderRepository, **overrides):
    values = {
        "order_number": "ORD-20250114093512-9F3A61C2",
        "items": [item_snapshot()],
        "shipping_address": dict(SHIPPING_ADDRESS),
        "billing_address": dict(SHIPPING_ADDRESS),
        "subtotal": Decimal("50.00"),
        "tax": Decimal("4.00"),
        "shipping": Decimal("0.00"),
        "total": Decimal("54.00"),
        "currency": "USD",
        "guest_info": {"email": "guest@example.com", "first_name": "Sam", "last_name": "Guest"},
        "created_by": "guest",
    }
    values.update(overrides)
    return await repository.create_order_with_items(**values)


# ============================================================================
# Order Creation
# ============================================================================


class TestCreateOrderWithItems:
    @pytest.mark.asyncio
    async def test_items_start_unnotified(self, repository, mock_session):
        """
        Verifies:
        - Order starts pending/pending
        - Every item starts with notified=False and zero attempts
        - The insert is flushed inside a savepoint
        """
        order = await create(repository, items=[item_snapshot(), item_snapshot(quantity=1)])

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert [item.line_number for item in order.items] == [1, 2]
        assert all(item.wholesaler_notified is False for item in order.items)
        assert all(item.notification_attempts == 0 for item in order.items)
        assert order.status_history[0].to_status == OrderStatus.PENDING
        mock_session.begin_nested.assert_called_once()
        mock_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_order_number_collision(self, repository, mock_session):
        mock_session.flush.side_effect = IntegrityError(
            "INSERT INTO orders",
            {},
            Exception('duplicate key value violates unique constraint "uq_orders_order_number"'),
        )

        with pytest.raises(OrderNumberConflictError) as exc_info:
            await create(repository)

        assert exc_info.value.context["order_number"] == "ORD-20250114093512-9F3A61C2"

    @pytest.mark.asyncio
    async def test_other_integrity_errors_are_not_collisions(self, repository, mock_session):
        mock_session.flush.side_effect = IntegrityError(
            "INSERT INTO order_items",
            {},
            Exception('violates check constraint "ck_order_items_quantity_positive"'),
        )

        with pytest.raises(OrderCreationError) as exc_info:
            await create(repository)

        assert not isinstance(exc_info.value, OrderNumberConflictError)


# ============================================================================
# Payment Compare-And-Swap
# ============================================================================


class TestMarkPaymentPaid:
    @pytest.mark.asyncio
    async def test_only_unpaid_orders_match(self, repository, mock_session):
        order_id = uuid.uuid4()

        assert await repository.mark_payment_paid(order_id, transaction_id="ch_3Nf8") is True

        sql, params = executed_statement(mock_session)
        assert sql.startswith("UPDATE orders SET")
        assert "WHERE orders.id = %(id_1)s AND orders.payment_status != %(payment_status_1)s" in sql
        assert params["id_1"] == order_id
        assert params["payment_status_1"] == PaymentStatus.PAID
        assert params["payment_status"] == PaymentStatus.PAID
        assert params["status"] == OrderStatus.PROCESSING
        assert params["transaction_id"] == "ch_3Nf8"

    @pytest.mark.asyncio
    async def test_lost_race_returns_false(self, repository, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=0)

        assert await repository.mark_payment_paid(uuid.uuid4()) is False

    @pytest.mark.asyncio
    async def test_database_error(self, repository, mock_session):
        mock_session.execute.side_effect = OperationalError("UPDATE", {}, Exception("gone"))

        with pytest.raises(OrderUpdateError):
            await repository.mark_payment_paid(uuid.uuid4())


class TestUpdatePaymentState:
    @pytest.mark.asyncio
    async def test_paid_orders_are_never_regressed(self, repository, mock_session):
        matched = await repository.update_payment_state(
            uuid.uuid4(), PaymentStatus.FAILED, OrderStatus.CANCELLED
        )

        sql, params = executed_statement(mock_session)
        assert matched is True
        assert "orders.payment_status != %(payment_status_1)s" in sql
        assert params["payment_status_1"] == PaymentStatus.PAID
        assert params["payment_status"] == PaymentStatus.FAILED
        assert params["status"] == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_gateway_payment_on_paid_order_is_rejected(self, repository, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=0)

        with pytest.raises(OrderUpdateError):
            await repository.set_gateway_payment(uuid.uuid4(), "pi_3Nf8", PaymentMethod.CARD)


# ============================================================================
# Association
# ============================================================================


class TestAssociateCustomer:
    @pytest.mark.asyncio
    async def test_only_unowned_orders_match(self, repository, mock_session):
        customer_id = uuid.uuid4()

        assert await repository.associate_customer(uuid.uuid4(), customer_id) is True

        sql, params = executed_statement(mock_session)
        assert "orders.customer_id IS NULL" in sql
        assert params["customer_id"] == customer_id

    @pytest.mark.asyncio
    async def test_already_owned_returns_false(self, repository, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=0)

        assert await repository.associate_customer(uuid.uuid4(), uuid.uuid4()) is False


# ============================================================================
# Notification Bookkeeping
# ============================================================================


class TestItemNotificationBookkeeping:
    @pytest.mark.asyncio
    async def test_success_increments_and_keeps_first_timestamp(self, repository, mock_session):
        """
        Verifies:
        - Attempts are incremented in SQL, not from a loaded value
        - An existing notified_at is kept on re-delivery
        - Only the one item row is targeted
        """
        item_id = uuid.uuid4()

        await repository.record_item_notification_success(item_id)

        sql, params = executed_statement(mock_session)
        assert sql.startswith("UPDATE order_items SET")
        assert "notification_attempts=(order_items.notification_attempts +" in sql
        assert "wholesaler_notified_at=coalesce(order_items.wholesaler_notified_at," in sql
        assert "WHERE order_items.id = %(id_1)s" in sql
        assert params["wholesaler_notified"] is True
        assert params["id_1"] == item_id

    @pytest.mark.asyncio
    async def test_failure_never_touches_notified_flag(self, repository, mock_session):
        await repository.record_item_notification_failure(uuid.uuid4(), "SES error: MessageRejected")

        sql, params = executed_statement(mock_session)
        assert "notification_attempts=(order_items.notification_attempts +" in sql
        assert "wholesaler_notified" not in sql
        assert params["last_notification_error"] == "SES error: MessageRejected"

    @pytest.mark.asyncio
    async def test_long_errors_are_truncated(self, repository, mock_session):
        await repository.record_item_notification_failure(uuid.uuid4(), "x" * 5000)

        _, params = executed_statement(mock_session)
        assert len(params["last_notification_error"]) == 2000


# ============================================================================
# Pending Notifications
# ============================================================================


class TestFindPendingNotifications:
    @pytest.mark.asyncio
    async def test_pending_predicate_and_order(self, repository, mock_session):
        order = build_order(payment_status=PaymentStatus.PAID, status=OrderStatus.PROCESSING)
        mock_session.execute.return_value.scalars.return_value.all.return_value = [order]

        orders = await repository.find_pending_notifications(limit=25)

        sql, params = executed_statement(mock_session)
        assert orders == [order]
        assert "orders.payment_status = %(payment_status_1)s OR orders.status = %(status_1)s" in sql
        assert "order_items.wholesaler_notified IS false" in sql
        assert "order_items.wholesaler_email IS NOT NULL" in sql
        assert "ORDER BY orders.created_at, orders.id" in sql
        assert params["payment_status_1"] == PaymentStatus.PAID
        assert params["status_1"] == OrderStatus.PROCESSING
        assert 25 in params.values()

    @pytest.mark.asyncio
    async def test_next_page_starts_after_key(self, repository, mock_session):
        created_at = datetime(2025, 1, 14, 9, 35, 12, tzinfo=timezone.utc)
        order_id = uuid.uuid4()

        await repository.find_pending_notifications(limit=25, after=(created_at, order_id))

        sql, params = executed_statement(mock_session)
        assert "(orders.created_at, orders.id) >" in sql
        assert created_at in params.values()
        assert order_id in params.values()

    @pytest.mark.asyncio
    async def test_count_uses_same_predicate(self, repository, mock_session):
        mock_session.execute.return_value.scalar_one.return_value = 73

        total = await repository.count_pending_notifications()

        sql, _ = executed_statement(mock_session)
        assert total == 73
        assert sql.startswith("SELECT count(*)")
        assert "order_items.wholesaler_notified IS false" in sql

    @pytest.mark.asyncio
    async def test_database_error(self, repository, mock_session):
        mock_session.execute.side_effect = OperationalError("SELECT", {}, Exception("gone"))

        with pytest.raises(OrderRepositoryError):
            await repository.find_pending_notifications()
