"""
Order Pydantic schemas for API request/response validation.

Request models accept both snake_case and camelCase field names; response
models are serialized with camelCase keys. Response models mirror
``Order.to_public_dict`` and have no place for wholesaler contact data, so
it cannot leak even if a dict carries it.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.services.orders.service import MAX_ITEM_QUANTITY


class RequestModel(BaseModel):
    """Base for request bodies."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ResponseModel(BaseModel):
    """Base for response bodies; serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddressRequest(RequestModel):
    """Postal address."""

    street: str = Field(..., min_length=1, max_length=255, description="Street address")
    city: str = Field(..., min_length=1, max_length=100, description="City")
    state: str = Field(..., min_length=1, max_length=100, description="State or region")
    zip_code: str = Field(..., min_length=3, max_length=20, description="Postal/ZIP code")
    country: str = Field(..., min_length=2, max_length=100, description="Country")


class GuestInfoRequest(RequestModel):
    """Contact details of a guest checkout."""

    email: str = Field(..., min_length=3, max_length=255, description="Guest email address")
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        """Validate email format."""
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()


class OrderItemRequest(RequestModel):
    """Line item; the price always comes from the catalog."""

    product_id: UUID = Field(..., description="Catalog product ID")
    quantity: int = Field(..., ge=1, le=MAX_ITEM_QUANTITY, description="Quantity ordered")


class RegisteredOrderCreateRequest(RequestModel):
    """Checkout by an authenticated customer."""

    items: list[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: AddressRequest
    billing_address: AddressRequest
    notes: Optional[str] = Field(None, max_length=2000)
    referral_source: Optional[str] = Field(None, max_length=100)


class GuestOrderCreateRequest(RegisteredOrderCreateRequest):
    """Checkout without an account."""

    guest_info: GuestInfoRequest


class OrderCreatedResponse(ResponseModel):
    id: UUID
    order_number: str
    total: Decimal
    status: str
    created_at: datetime


class OrderStatusUpdateRequest(RequestModel):
    """Administrative status update."""

    status: str = Field(..., min_length=1, max_length=20)
    tracking_number: Optional[str] = Field(None, max_length=100)


class OrderStatusUpdateResponse(ResponseModel):
    order_number: str
    status: str
    tracking_number: Optional[str] = None


class OrderFulfillmentRequest(RequestModel):
    """Status change following the fulfillment transition graph."""

    status: str = Field(..., min_length=1, max_length=20)
    tracking_number: Optional[str] = Field(None, max_length=100)
    shipping_carrier: Optional[str] = Field(None, max_length=100)
    estimated_delivery_date: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500)


class WholesalerStatusResponse(ResponseModel):
    """Fulfillment visibility of one item. No supplier contact data."""

    notified: bool
    notified_at: Optional[datetime] = None


class OrderItemResponse(ResponseModel):
    id: UUID
    product_id: UUID
    product_name: str
    quantity: int
    price: Decimal
    wholesaler: WholesalerStatusResponse


class PaymentInfoResponse(ResponseModel):
    method: str
    status: str
    paid_at: Optional[datetime] = None


class AddressResponse(ResponseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class GuestInfoResponse(ResponseModel):
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None


class OrderResponse(ResponseModel):
    """Public view of an order."""

    id: UUID
    order_number: str
    customer_id: Optional[UUID] = None
    guest_info: Optional[GuestInfoResponse] = None
    items: list[OrderItemResponse]
    shipping_address: AddressResponse
    billing_address: AddressResponse
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    payment: PaymentInfoResponse
    status: str
    tracking_number: Optional[str] = None
    shipping_carrier: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaginationResponse(ResponseModel):
    current_page: int
    total_pages: int
    total_orders: int
    has_next_page: bool
    has_prev_page: bool


class OrderListResponse(ResponseModel):
    orders: list[OrderResponse]
    pagination: PaginationResponse


class OrderAssociationResponse(ResponseModel):
    order_number: str
    customer_id: UUID
    message: str = "Order associated with your account"
