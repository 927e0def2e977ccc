"""
Tests for notification email templates and the Jinja2 engine.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.database.models.order import OrderStatus, PaymentStatus
from src.services.notifications.service import build_order_context, build_wholesaler_context
from src.services.notifications.templates import (
    TemplateEngine,
    TemplateNotFoundError,
    TemplateRenderError,
    format_currency,
    format_date,
)
from tests.factories import build_item, build_order


@pytest.fixture
def engine() -> TemplateEngine:
    return TemplateEngine()


class TestFilters:
    def test_format_currency(self):
        assert format_currency(Decimal("1234.5")) == "$1,234.50"
        assert format_currency(None) == ""

    def test_format_date(self):
        assert format_date(datetime(2025, 1, 14, tzinfo=timezone.utc)) == "January 14, 2025"
        assert format_date("2025-01-14T09:35:12Z") == "January 14, 2025"
        assert format_date("not a date") == "not a date"


class TestOrderTemplates:
    """Every order email renders from the shared order context."""

    def test_order_confirmation(self, engine):
        context = build_order_context(build_order())

        email = engine.render_email("order_confirmation", context)

        assert email.subject == "Order Confirmation - ORD-20250114093512-9F3A61C2"
        assert "Hi Sam Guest" in email.text_body
        assert "Ceramic Mug x 2: $50.00" in email.text_body
        assert "Total: $54.00 USD" in email.text_body
        assert "Portland, OR 97201" in email.text_body
        assert email.html_body is not None

    def test_payment_receipt(self, engine):
        order = build_order(
            payment_status=PaymentStatus.PAID,
            status=OrderStatus.PROCESSING,
            paid_at=datetime(2025, 1, 14, 10, 0, tzinfo=timezone.utc),
            transaction_id="ch_3Nf8Test",
        )

        email = engine.render_email("payment_receipt", build_order_context(order))

        assert email.subject == "Payment Receipt - ORD-20250114093512-9F3A61C2"
        assert "$54.00 USD" in email.text_body
        assert "Transaction: ch_3Nf8Test" in email.text_body

    def test_status_update_with_tracking(self, engine):
        order = build_order(
            status=OrderStatus.SHIPPED,
            tracking_number="1Z999AA1",
            shipping_carrier="UPS",
        )
        context = build_order_context(order)
        context.update({"previous_status": "processing", "new_status": "shipped"})

        email = engine.render_email("order_status_update", context)

        assert email.subject == "Order ORD-20250114093512-9F3A61C2 is shipped"
        assert "Tracking number: 1Z999AA1" in email.text_body
        assert "Carrier: UPS" in email.text_body

    def test_wholesaler_order(self, engine):
        item = build_item()
        order = build_order(items=[item], notes="Leave at loading dock")

        email = engine.render_email("wholesaler_order", build_wholesaler_context(order, item))

        assert email.subject == "New Order - ORD-20250114093512-9F3A61C2"
        assert "Hello Acme Supply" in email.text_body
        assert "Product code: ACME-MUG-01" in email.text_body
        assert "Quantity: 2" in email.text_body
        assert "Leave at loading dock" in email.text_body

    def test_html_is_escaped(self, engine):
        order = build_order(
            guest_info={
                "email": "guest@example.com",
                "first_name": "<script>",
                "last_name": "Guest",
            }
        )

        email = engine.render_email("order_confirmation", build_order_context(order))

        assert "<script>" not in email.html_body
        assert "&lt;script&gt;" in email.html_body


class TestTemplateErrors:
    def test_missing_template(self, engine):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            engine.render_email("gift_card", {})

        assert exc_info.value.template_name == "gift_card"

    def test_missing_variable_fails_loudly(self, engine):
        context = build_order_context(build_order())

        with pytest.raises(TemplateRenderError):
            engine.render_email("order_status_update", context)

    def test_custom_template_dir(self, tmp_path):
        (tmp_path / "ping_subject.txt").write_text("Ping {{ name }}\n\n")
        (tmp_path / "ping.txt").write_text("Hello {{ name }}")

        email = TemplateEngine(template_dir=tmp_path).render_email("ping", {"name": "Ada"})

        assert email.subject == "Ping Ada"
        assert email.text_body == "Hello Ada"
        assert email.html_body is None
