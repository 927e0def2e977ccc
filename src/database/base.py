"""
SQLAlchemy declarative base and shared column mixins.

Every table has a client-generated UUID key and database-managed
timestamps. Orders additionally record who created and last changed them;
the actor is a free-form string: a customer ID, ``guest``,
``payment_webhook`` or an administrator ID.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base with async attribute loading."""

    __abstract__ = True

    def __repr__(self) -> str:
        key = ", ".join(
            f"{column.name}={getattr(self, column.name, None)!r}"
            for column in self.__table__.primary_key.columns
        )
        return f"<{type(self).__name__}({key})>"


class UUIDMixin:
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique identifier for the record",
    )


class TimestampMixin:
    """created_at/updated_at columns filled in by PostgreSQL."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated",
    )


class AuditMixin(TimestampMixin):
    """Timestamps plus the actor that created and last changed the row."""

    created_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        comment="Actor that created the record",
    )
    updated_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        comment="Actor that last changed the record",
    )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """Abstract model with UUID key and timestamps."""

    __abstract__ = True


class AuditedModel(Base, UUIDMixin, AuditMixin):
    """Abstract model for rows changed by customers, admins and webhooks."""

    __abstract__ = True
