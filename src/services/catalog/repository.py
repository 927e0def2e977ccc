"""
Read-only access to the product catalog used at checkout.
"""

import uuid
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.product import Product

logger = get_logger(__name__)


class CatalogRepositoryError(Exception):
    """Raised when the catalog cannot be queried."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class ProductRepository:
    """Batch lookups of orderable products."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_products(
        self, product_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, Product]:
        """
        Fetch the active products among ``product_ids`` in one query.

        Missing and inactive products are simply absent from the result;
        the caller decides how to report them.

        Returns:
            Mapping of product ID to product
        """
        ids = set(product_ids)
        if not ids:
            return {}

        stmt = select(Product).where(
            Product.id.in_(ids),
            Product.is_active.is_(True),
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load products",
                product_count=len(ids),
                error=str(e),
            )
            raise CatalogRepositoryError(
                "Failed to load products",
                error=str(e),
            ) from e

        products = {product.id: product for product in result.scalars().all()}
        logger.debug(
            "Products loaded",
            requested=len(ids),
            found=len(products),
        )
        return products
