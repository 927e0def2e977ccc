"""
Database models package initialization.

This module exports all database models for SQLAlchemy and Alembic auto-generation.
Models are imported here to ensure they are registered with the Base metadata
for proper migration generation and relationship resolution.
"""

from src.database.base import (
    Base,
    BaseModel,
    AuditedModel,
    TimestampMixin,
    UUIDMixin,
    AuditMixin,
)
from src.database.models.user import User, UserRole
from src.database.models.product import Product
from src.database.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
)
from src.database.models.notification import (
    NotificationChannel,
    NotificationLog,
    NotificationPreference,
    NotificationStatus,
    NotificationType,
)

__all__ = [
    "Base",
    "BaseModel",
    "AuditedModel",
    "TimestampMixin",
    "UUIDMixin",
    "AuditMixin",
    "User",
    "UserRole",
    "Product",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStatusHistory",
    "PaymentMethod",
    "PaymentStatus",
    "NotificationChannel",
    "NotificationLog",
    "NotificationPreference",
    "NotificationStatus",
    "NotificationType",
]
