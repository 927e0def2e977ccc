"""
Order number generation.

Order numbers look like ``ORD-20250114093512-9F3A61C2``: the UTC creation
second followed by 32 random bits. Uniqueness is finally enforced by the
``uq_orders_order_number`` constraint; the order service regenerates the
number when an insert collides.
"""

import re
import secrets
from datetime import datetime, timezone
from typing import Optional

ORDER_NUMBER_PREFIX = "ORD"
ORDER_NUMBER_PATTERN = re.compile(r"^ORD-\d{14}-[0-9A-F]{8}$")


def generate_order_number(now: Optional[datetime] = None) -> str:
    """
    Generate a new human-readable order number.

    Args:
        now: Creation time, defaults to the current UTC time

    Returns:
        Order number string
    """
    now = now or datetime.now(timezone.utc)
    suffix = secrets.token_hex(4).upper()
    return f"{ORDER_NUMBER_PREFIX}-{now:%Y%m%d%H%M%S}-{suffix}"


def is_valid_order_number(value: str) -> bool:
    return bool(ORDER_NUMBER_PATTERN.match(value or ""))
