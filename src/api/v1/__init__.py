"""
API v1 package initialization.

This module initializes the v1 API package for the storefront order service.
"""

from src.api.v1.orders import router as orders_router
from src.api.v1.payments import router as payments_router
from src.api.v1.wholesalers import router as wholesalers_router

__all__ = ["orders_router", "payments_router", "wholesalers_router"]
