"""
Schemas for the wholesaler notification administration endpoints.
"""

from datetime import datetime
from typing import Optional

from src.schemas.orders import ResponseModel


class DispatchFailureResponse(ResponseModel):
    item_id: str
    error: Optional[str] = None


class DispatchResultResponse(ResponseModel):
    order_id: str
    order_number: str
    attempted: int
    sent: int
    failed: int
    skipped: int
    all_notified: bool
    failures: list[DispatchFailureResponse] = []


class ProcessNotificationsResponse(ResponseModel):
    orders_processed: int
    orders_completed: int
    orders_failed: int
    notifications_sent: int
    notifications_failed: int


class PendingOrderResponse(ResponseModel):
    order_id: str
    order_number: str
    created_at: datetime
    payment_status: str
    status: str
    pending_items: int


class PendingOrdersResponse(ResponseModel):
    orders: list[PendingOrderResponse]
    count: int


class ItemNotificationStatusResponse(ResponseModel):
    """Per-item bookkeeping, including wholesaler contact data (admin only)."""

    item_id: str
    product_name: str
    quantity: int
    wholesaler_name: Optional[str] = None
    wholesaler_email: Optional[str] = None
    wholesaler_product_code: Optional[str] = None
    notified: bool
    notified_at: Optional[datetime] = None
    notification_attempts: int
    last_notification_error: Optional[str] = None


class NotificationStatusResponse(ResponseModel):
    order_id: str
    order_number: str
    payment_status: str
    status: str
    all_notified: bool
    items: list[ItemNotificationStatusResponse]
