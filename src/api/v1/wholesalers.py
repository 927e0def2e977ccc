"""
Admin endpoints for wholesaler notification processing and inspection.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from src.api.deps import CurrentAdmin, DispatcherDep
from src.core.logging import get_logger
from src.schemas.wholesalers import (
    DispatchResultResponse,
    NotificationStatusResponse,
    PendingOrdersResponse,
    ProcessNotificationsResponse,
)
from src.services.orders.repository import OrderNotFoundError, OrderRepositoryError
from src.services.wholesalers.dispatcher import (
    OrderNotEligibleError,
    WholesalerDispatchError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/wholesalers", tags=["wholesalers"])


def _not_found(error: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "ORDER_NOT_FOUND", "message": str(error)},
    )


def _internal(error: Exception) -> HTTPException:
    logger.error(
        "Wholesaler notification processing failed",
        error=str(error),
        context=getattr(error, "context", {}),
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "Failed to process notifications"},
    )


@router.post(
    "/process-notifications",
    response_model=ProcessNotificationsResponse,
    summary="Run the pending notification sweep",
)
async def process_notifications(
    admin: CurrentAdmin,
    dispatcher: DispatcherDep,
    limit: int = Query(50, ge=1, le=500),
) -> ProcessNotificationsResponse:
    logger.info("Manual notification sweep", admin_id=str(admin.id), limit=limit)
    try:
        summary = await dispatcher.process_pending(limit=limit)
    except OrderRepositoryError as e:
        raise _internal(e) from e
    return ProcessNotificationsResponse(**summary)


@router.post(
    "/notify/{order_id}",
    response_model=DispatchResultResponse,
    summary="Notify the wholesalers of one order",
)
async def notify_order(
    order_id: UUID,
    admin: CurrentAdmin,
    dispatcher: DispatcherDep,
) -> DispatchResultResponse:
    """Retry the unnotified items of a paid order. Notified items are skipped."""
    logger.info("Manual wholesaler dispatch", admin_id=str(admin.id), order_id=str(order_id))
    try:
        result = await dispatcher.dispatch_order(order_id)
    except OrderNotFoundError as e:
        raise _not_found(e) from e
    except OrderNotEligibleError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "ORDER_NOT_PAID", "message": str(e)},
        ) from e
    except (WholesalerDispatchError, OrderRepositoryError) as e:
        raise _internal(e) from e

    return DispatchResultResponse(**result.to_dict())


@router.get(
    "/pending",
    response_model=PendingOrdersResponse,
    summary="List orders awaiting wholesaler notification",
)
async def list_pending(
    admin: CurrentAdmin,
    dispatcher: DispatcherDep,
    limit: int = Query(50, ge=1, le=500),
) -> PendingOrdersResponse:
    try:
        pending = await dispatcher.list_pending(limit=limit)
    except OrderRepositoryError as e:
        raise _internal(e) from e
    return PendingOrdersResponse(orders=pending["orders"], count=pending["total"])


@router.get(
    "/status/{order_id}",
    response_model=NotificationStatusResponse,
    summary="Per-item wholesaler notification status",
)
async def notification_status(
    order_id: UUID,
    admin: CurrentAdmin,
    dispatcher: DispatcherDep,
) -> NotificationStatusResponse:
    try:
        result = await dispatcher.get_notification_status(order_id)
    except OrderNotFoundError as e:
        raise _not_found(e) from e
    return NotificationStatusResponse(**result)
