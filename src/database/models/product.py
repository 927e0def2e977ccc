"""
Product catalog model.

The catalog itself is maintained by the storefront admin tooling; the order
core only reads it at checkout to snapshot prices and wholesaler contact
data into order items.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import BaseModel


class Product(BaseModel):
    """
    Catalog product sold by the storefront and shipped by a wholesaler.

    Attributes:
        id: Unique product identifier (UUID)
        name: Display name
        slug: URL slug (unique)
        price: Current unit price
        is_active: Whether the product can be ordered
        wholesaler_name: Wholesaler that ships the product
        wholesaler_email: Address order notifications go to
        wholesaler_product_code: Wholesaler's own product code
        wholesaler_cost: Purchase cost from the wholesaler
    """

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Display name",
    )

    slug: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="URL slug",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        comment="Current unit price",
    )

    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        index=True,
        comment="Whether the product can be ordered",
    )

    wholesaler_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Wholesaler that ships the product",
    )

    wholesaler_email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Address order notifications go to",
    )

    wholesaler_product_code: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Wholesaler's product code",
    )

    wholesaler_cost: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=True,
        comment="Purchase cost from the wholesaler",
    )

    __table_args__ = (
        UniqueConstraint("slug", name="uq_products_slug"),
        Index("ix_products_wholesaler_email", "wholesaler_email"),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        {
            "comment": "Catalog products with wholesaler sourcing data",
        },
    )

    def __repr__(self) -> str:
        return (
            f"<Product(id={self.id}, name='{self.name}', price={self.price}, "
            f"is_active={self.is_active})>"
        )
