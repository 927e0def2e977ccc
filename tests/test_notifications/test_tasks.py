"""
Tests for the wholesaler notification Celery tasks.

Tasks are called directly, so they run eagerly in the test process.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from src.services.notifications import tasks
from src.services.orders.repository import OrderNotFoundError
from src.services.wholesalers.dispatcher import DispatchResult

TASKS = "src.services.notifications.tasks"


@pytest.fixture
def dispatcher(mock_session):
    @asynccontextmanager
    async def fake_session():
        yield mock_session

    dispatcher = AsyncMock()
    with patch(f"{TASKS}.get_session", fake_session), patch(
        f"{TASKS}.WholesalerNotificationDispatcher", MagicMock(return_value=dispatcher)
    ), patch(f"{TASKS}.close_database_connections", AsyncMock()) as close:
        dispatcher.close = close
        yield dispatcher


class TestCeleryConfiguration:
    def test_sweep_is_scheduled(self):
        schedule = tasks.celery_app.conf.beat_schedule
        entry = schedule["process-pending-wholesaler-notifications"]
        assert entry["task"] == "wholesalers.process_pending_notifications"


class TestProcessPending:
    def test_sweep_returns_summary(self, dispatcher):
        dispatcher.process_pending.return_value = {
            "orders_processed": 2,
            "orders_completed": 2,
            "orders_failed": 0,
            "notifications_sent": 3,
            "notifications_failed": 0,
        }

        summary = tasks.process_pending_wholesaler_notifications(limit=20)

        assert summary["notifications_sent"] == 3
        dispatcher.process_pending.assert_awaited_once_with(limit=20)
        dispatcher.close.assert_awaited_once()

    def test_default_limit_defers_to_settings(self, dispatcher):
        dispatcher.process_pending.return_value = {}

        tasks.process_pending_wholesaler_notifications()

        dispatcher.process_pending.assert_awaited_once_with(limit=None)


class TestDispatchOrder:
    def test_dispatch_result(self, dispatcher):
        order_id = uuid4()
        dispatcher.dispatch_order.return_value = DispatchResult(
            order_id=order_id,
            order_number="ORD-20250114093512-9F3A61C2",
            all_notified=True,
        )

        result = tasks.dispatch_order_notifications(str(order_id))

        assert result["order_id"] == str(order_id)
        assert result["all_notified"] is True
        dispatcher.dispatch_order.assert_awaited_once_with(order_id)

    def test_missing_order_is_reported(self, dispatcher):
        order_id = str(uuid4())
        dispatcher.dispatch_order.side_effect = OrderNotFoundError("Order not found")

        result = tasks.dispatch_order_notifications(order_id)

        assert result == {
            "order_id": order_id,
            "dispatched": False,
            "reason": "Order not found",
        }
