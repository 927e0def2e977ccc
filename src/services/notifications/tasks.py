"""
Celery tasks for wholesaler notification retries.

The webhook path notifies wholesalers in-request. These tasks are the
durable backstop: a beat-scheduled sweep picks up every paid order that
still has unnotified items (after a crash, a timeout or an SES outage) and
a targeted task lets operators retry a single order.

Run a worker and the scheduler with::

    celery -A src.services.notifications.tasks worker --beat
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from celery import Celery, Task, shared_task

from src.core.config import get_settings
from src.core.logging import configure_logging, get_logger, set_request_id
from src.database.connection import close_database_connections, get_session
from src.services.orders.repository import OrderNotFoundError
from src.services.wholesalers.dispatcher import (
    OrderNotEligibleError,
    WholesalerDispatchError,
    WholesalerNotificationDispatcher,
)

logger = get_logger(__name__)
settings = get_settings()

T = TypeVar("T")

celery_app = Celery(
    "storefront",
    broker=settings.redis_url,
    backend=settings.redis_url,
)
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_hijack_root_logger=False,
    beat_schedule={
        "process-pending-wholesaler-notifications": {
            "task": "wholesalers.process_pending_notifications",
            "schedule": float(settings.notification_sweep_interval_seconds),
        },
    },
)
configure_logging()


def run_async(factory: Callable[[], Awaitable[T]]) -> T:
    """
    Run a coroutine to completion from a worker process.

    Every call gets a fresh event loop, so pooled connections are disposed
    before the loop closes.
    """

    async def runner() -> T:
        try:
            return await factory()
        finally:
            await close_database_connections()

    return asyncio.run(runner())


class NotificationTask(Task):
    """Base task class logging task lifecycle events."""

    autoretry_for = (WholesalerDispatchError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def before_start(self, task_id: str, args: tuple, kwargs: dict) -> None:
        set_request_id(task_id)

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Notification task failed",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            exc_info=einfo.exc_info if einfo else None,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Notification task retrying",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            retry_count=self.request.retries,
        )

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict) -> None:
        logger.info(
            "Notification task completed",
            task_id=task_id,
            task_name=self.name,
            result=retval,
        )


@shared_task(
    bind=True,
    base=NotificationTask,
    name="wholesalers.process_pending_notifications",
    time_limit=600,
    soft_time_limit=540,
)
def process_pending_wholesaler_notifications(
    self: Task, limit: int = 0
) -> dict[str, int]:
    """Sweep paid orders with unnotified wholesalers and dispatch them."""

    async def sweep() -> dict[str, int]:
        async with get_session() as session:
            dispatcher = WholesalerNotificationDispatcher(session)
            return await dispatcher.process_pending(limit=limit or None)

    return run_async(sweep)


@shared_task(
    bind=True,
    base=NotificationTask,
    name="wholesalers.dispatch_order_notifications",
    time_limit=300,
    soft_time_limit=240,
)
def dispatch_order_notifications(self: Task, order_id: str) -> dict[str, Any]:
    """
    Dispatch the pending wholesaler notifications of one order.

    Missing and ineligible orders are reported, not retried.
    """

    async def dispatch() -> dict[str, Any]:
        async with get_session() as session:
            dispatcher = WholesalerNotificationDispatcher(session)
            result = await dispatcher.dispatch_order(UUID(order_id))
            return result.to_dict()

    try:
        return run_async(dispatch)
    except (OrderNotFoundError, OrderNotEligibleError) as e:
        logger.warning(
            "Order cannot be dispatched",
            task_id=self.request.id,
            order_id=order_id,
            reason=str(e),
        )
        return {"order_id": order_id, "dispatched": False, "reason": str(e)}
