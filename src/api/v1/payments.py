"""
Payment API endpoints: payment creation and the gateway webhook.
"""

from fastapi import APIRouter, HTTPException, status

from src.api.deps import OptionalUser, PaymentServiceDep
from src.core.logging import get_logger
from src.schemas.payments import (
    PaymentCreateRequest,
    PaymentCreateResponse,
    WebhookRequest,
    WebhookResponse,
)
from src.services.orders.service import OrderAccessDeniedError
from src.services.payments.service import (
    OrderAlreadyPaidError,
    PaymentGatewayError,
    PaymentOrderNotFoundError,
    PaymentProcessingError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/create",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create payment for an order",
)
async def create_payment(
    request: PaymentCreateRequest,
    current_user: OptionalUser,
    service: PaymentServiceDep,
) -> PaymentCreateResponse:
    """
    Create a gateway payment for the order total and return its client
    secret. Guest orders can be paid anonymously.
    """
    try:
        result = await service.create_payment(
            request.order_id,
            requester=current_user,
            method=request.method,
        )
    except PaymentOrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "ORDER_NOT_FOUND", "message": str(e)},
        ) from e
    except OrderAccessDeniedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": str(e)},
        ) from e
    except OrderAlreadyPaidError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "ORDER_ALREADY_PAID", "message": str(e)},
        ) from e
    except PaymentGatewayError as e:
        logger.error("Payment creation failed at gateway", error=str(e), context=e.context)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "PAYMENT_GATEWAY_ERROR", "message": "Payment gateway unavailable"},
        ) from e
    except PaymentProcessingError as e:
        logger.error("Payment creation failed", error=str(e), context=e.context)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Failed to create payment"},
        ) from e

    return PaymentCreateResponse(**result)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Payment gateway webhook",
)
async def handle_webhook(
    request: WebhookRequest,
    service: PaymentServiceDep,
) -> WebhookResponse:
    """
    Reconcile an order with the gateway.

    Returns 200 once the payment state is stored, whatever happens to the
    receipt and wholesaler emails. Gateway and storage failures return 500
    so that the gateway redelivers.
    """
    logger.info("Payment webhook received", gateway_payment_id=request.id)

    try:
        result = await service.handle_webhook(request.id)
    except PaymentOrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "ORDER_NOT_FOUND", "message": str(e)},
        ) from e
    except PaymentGatewayError as e:
        logger.error("Webhook gateway lookup failed", error=str(e), context=e.context)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "PAYMENT_GATEWAY_ERROR", "message": "Payment lookup failed"},
        ) from e
    except PaymentProcessingError as e:
        logger.error("Webhook processing failed", error=str(e), context=e.context)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Failed to process webhook"},
        ) from e

    return WebhookResponse(
        received=True,
        order_number=result.order_number,
        payment_status=result.payment_status.value,
        status=result.order_status.value,
    )
