"""
Order API endpoints: checkout, order views, association and status updates.

Every order representation returned here is the public view; wholesaler
contact data is only available through the admin wholesaler endpoints.
"""

from typing import NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from src.api.deps import CurrentActiveUser, CurrentAdmin, OrderServiceDep
from src.core.logging import get_logger
from src.database.models.order import Order
from src.schemas.orders import (
    GuestOrderCreateRequest,
    OrderAssociationResponse,
    OrderCreatedResponse,
    OrderFulfillmentRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
    OrderStatusUpdateResponse,
    RegisteredOrderCreateRequest,
)
from src.services.orders.repository import OrderNotFoundError
from src.services.orders.service import (
    InvalidOrderStatusError,
    InvalidProductError,
    InvalidStatusTransitionError,
    OrderAccessDeniedError,
    OrderAlreadyAssociatedError,
    OrderProcessingError,
    OrderServiceError,
    OrderValidationError,
    TrackingNumberRequiredError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

ERROR_RESPONSES = {
    OrderValidationError: (status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR"),
    InvalidProductError: (status.HTTP_400_BAD_REQUEST, "INVALID_PRODUCT"),
    InvalidOrderStatusError: (status.HTTP_400_BAD_REQUEST, "INVALID_STATUS"),
    InvalidStatusTransitionError: (status.HTTP_400_BAD_REQUEST, "INVALID_STATUS_TRANSITION"),
    TrackingNumberRequiredError: (status.HTTP_400_BAD_REQUEST, "TRACKING_NUMBER_REQUIRED"),
    OrderAlreadyAssociatedError: (status.HTTP_400_BAD_REQUEST, "ORDER_ALREADY_ASSOCIATED"),
    OrderAccessDeniedError: (status.HTTP_403_FORBIDDEN, "FORBIDDEN"),
}


def raise_order_http_error(error: Exception) -> NoReturn:
    """Translate a service or repository error into an HTTPException."""
    if isinstance(error, OrderNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "ORDER_NOT_FOUND", "message": "Order not found"},
        ) from error

    if isinstance(error, OrderProcessingError) or type(error) not in ERROR_RESPONSES:
        logger.error(
            "Order processing failed",
            error=str(error),
            error_type=type(error).__name__,
            context=getattr(error, "context", {}),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Failed to process order"},
        ) from error

    status_code, code = ERROR_RESPONSES[type(error)]
    detail = {"code": code, "message": str(error)}
    if isinstance(error, OrderValidationError):
        detail["errors"] = error.context.get("errors", [])
    elif isinstance(error, InvalidProductError):
        detail["product_ids"] = error.context.get("product_ids", [])
    elif isinstance(error, InvalidOrderStatusError):
        detail["allowed"] = error.context.get("allowed", [])
    raise HTTPException(status_code=status_code, detail=detail) from error


def _created(order: Order) -> OrderCreatedResponse:
    return OrderCreatedResponse(
        id=order.id,
        order_number=order.order_number,
        total=order.total,
        status=order.status.value,
        created_at=order.created_at,
    )


@router.post(
    "",
    response_model=OrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create guest order",
)
async def create_guest_order(
    request: GuestOrderCreateRequest,
    service: OrderServiceDep,
) -> OrderCreatedResponse:
    """
    Place an order without an account.

    Prices and wholesaler data are taken from the catalog, never from the
    request.
    """
    try:
        order = await service.create_order(
            items=[item.model_dump() for item in request.items],
            shipping_address=request.shipping_address.model_dump(),
            billing_address=request.billing_address.model_dump(),
            guest_info=request.guest_info.model_dump(),
            notes=request.notes,
            referral_source=request.referral_source,
        )
    except (OrderServiceError, OrderNotFoundError) as e:
        raise_order_http_error(e)

    return _created(order)


@router.post(
    "/registered",
    response_model=OrderCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create customer order",
)
async def create_registered_order(
    request: RegisteredOrderCreateRequest,
    current_user: CurrentActiveUser,
    service: OrderServiceDep,
) -> OrderCreatedResponse:
    """Place an order owned by the authenticated customer."""
    try:
        order = await service.create_order(
            items=[item.model_dump() for item in request.items],
            shipping_address=request.shipping_address.model_dump(),
            billing_address=request.billing_address.model_dump(),
            customer=current_user,
            notes=request.notes,
            referral_source=request.referral_source,
        )
    except (OrderServiceError, OrderNotFoundError) as e:
        raise_order_http_error(e)

    return _created(order)


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
)
async def list_my_orders(
    current_user: CurrentActiveUser,
    service: OrderServiceDep,
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(10, ge=1, le=100, description="Orders per page"),
) -> OrderListResponse:
    result = await service.list_customer_orders(current_user, page=page, limit=limit)
    return OrderListResponse(
        orders=[order.to_public_dict() for order in result["orders"]],
        pagination=result["pagination"],
    )


@router.get(
    "/admin",
    response_model=OrderListResponse,
    summary="List all orders",
)
async def list_all_orders(
    admin: CurrentAdmin,
    service: OrderServiceDep,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[str] = Query(None, alias="status", description="Status filter"),
) -> OrderListResponse:
    try:
        result = await service.list_all_orders(page=page, limit=limit, status=order_status)
    except OrderServiceError as e:
        raise_order_http_error(e)

    return OrderListResponse(
        orders=[order.to_public_dict() for order in result["orders"]],
        pagination=result["pagination"],
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    current_user: CurrentActiveUser,
    service: OrderServiceDep,
) -> OrderResponse:
    """Return the public view of an order to its owner or an administrator."""
    try:
        order = await service.get_order_for_viewer(order_id, current_user)
    except (OrderServiceError, OrderNotFoundError) as e:
        raise_order_http_error(e)

    return OrderResponse.model_validate(order.to_public_dict())


@router.post(
    "/{order_id}/associate",
    response_model=OrderAssociationResponse,
    summary="Claim a guest order",
)
async def associate_order(
    order_id: UUID,
    current_user: CurrentActiveUser,
    service: OrderServiceDep,
) -> OrderAssociationResponse:
    """Attach a guest order to the caller's account. One-time only."""
    try:
        order = await service.associate_order(order_id, current_user)
    except (OrderServiceError, OrderNotFoundError) as e:
        raise_order_http_error(e)

    return OrderAssociationResponse(
        order_number=order.order_number,
        customer_id=order.customer_id,
    )


@router.put(
    "/{order_id}/status",
    response_model=OrderStatusUpdateResponse,
    summary="Update order status",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdateRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderStatusUpdateResponse:
    """Set any known status. Unknown values are rejected with INVALID_STATUS."""
    try:
        order = await service.update_order_status(
            order_id,
            request.status,
            actor=admin,
            tracking_number=request.tracking_number,
        )
    except (OrderServiceError, OrderNotFoundError) as e:
        raise_order_http_error(e)

    return OrderStatusUpdateResponse(
        order_number=order.order_number,
        status=order.status.value,
        tracking_number=order.tracking_number,
    )


@router.put(
    "/{order_id}/fulfill",
    response_model=OrderResponse,
    summary="Advance order fulfillment",
)
async def fulfill_order(
    order_id: UUID,
    request: OrderFulfillmentRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    """Apply a fulfillment transition; shipping requires a tracking number."""
    try:
        order = await service.fulfill_order(
            order_id,
            request.status,
            actor=admin,
            tracking_number=request.tracking_number,
            shipping_carrier=request.shipping_carrier,
            estimated_delivery_date=request.estimated_delivery_date,
            reason=request.reason,
        )
    except (OrderServiceError, OrderNotFoundError) as e:
        raise_order_http_error(e)

    return OrderResponse.model_validate(order.to_public_dict())
