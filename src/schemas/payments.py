"""
Payment schemas for gateway payment creation and webhook delivery.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.database.models.order import PaymentMethod
from src.schemas.orders import ResponseModel


class PaymentCreateRequest(BaseModel):
    """Request schema for creating a gateway payment for an order."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(..., alias="orderId", description="Order to pay")
    method: PaymentMethod = Field(
        PaymentMethod.CARD,
        description="Payment method chosen by the customer",
    )


class PaymentCreateResponse(ResponseModel):
    order_id: UUID
    order_number: str
    gateway_payment_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    status: str


class WebhookRequest(BaseModel):
    """
    Gateway callback body.

    Only the payment ID is trusted; its status is always re-fetched from
    the gateway.
    """

    id: str = Field(..., min_length=1, max_length=255, description="Gateway payment ID")

    @field_validator("id")
    @classmethod
    def strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Payment ID must not be blank")
        return v


class WebhookResponse(ResponseModel):
    received: bool = True
    order_number: str
    payment_status: str
    status: str
