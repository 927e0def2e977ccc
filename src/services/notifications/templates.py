"""
Jinja2 rendering for notification emails.

Every email template is a triple of files in the template directory:
``<name>_subject.txt``, ``<name>.txt`` and ``<name>.html``. The HTML part is
optional.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional, Union

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    Template,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from src.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parents[3] / "templates" / "notifications"


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateNotFoundError(TemplateEngineError):
    """Raised when a template cannot be found."""

    pass


class TemplateRenderError(TemplateEngineError):
    """Raised when template rendering fails."""

    pass


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text_body: str
    html_body: Optional[str] = None


def format_currency(value: Union[Decimal, float, int, None]) -> str:
    """Format an amount as dollars, e.g. ``$1,234.50``."""
    if value is None:
        return ""
    return f"${Decimal(value):,.2f}"


def format_date(value: Union[datetime, date, str, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value.strftime("%B %d, %Y")


class TemplateEngine:
    """
    Template engine for rendering notification emails.

    Undefined variables raise instead of rendering as blanks, so a template
    that drifts from its context fails loudly and gets logged as a failed
    notification.
    """

    def __init__(
        self,
        template_dir: Optional[Union[str, Path]] = None,
        cache_size: int = 400,
    ):
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
            cache_size=cache_size,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = format_currency
        self.env.filters["date"] = format_date

    def _load_template(self, template_path: str) -> Template:
        return self.env.get_template(template_path)

    def render_email(self, template_name: str, context: dict[str, Any]) -> RenderedEmail:
        """
        Render the subject, text and HTML parts of an email template.

        Raises:
            TemplateNotFoundError: If the subject or text part is missing
            TemplateRenderError: If rendering fails
        """
        try:
            subject = self._load_template(f"{template_name}_subject.txt").render(**context)
            text_body = self._load_template(f"{template_name}.txt").render(**context)

            html_body = None
            try:
                html_body = self._load_template(f"{template_name}.html").render(**context)
            except TemplateNotFound:
                logger.debug("HTML template not found, sending text only", template_name=template_name)

        except TemplateNotFound as e:
            logger.error("Email template not found", template_name=template_name, error=str(e))
            raise TemplateNotFoundError(
                f"Email template not found: {template_name}",
                template_name=template_name,
            ) from e
        except TemplateError as e:
            logger.error(
                "Email template rendering failed",
                template_name=template_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TemplateRenderError(
                f"Failed to render email template: {e}",
                template_name=template_name,
            ) from e

        # Subjects are single-line SES headers.
        subject = " ".join(subject.split())
        return RenderedEmail(subject=subject, text_body=text_body, html_body=html_body)


def get_template_engine(template_dir: Optional[Union[str, Path]] = None) -> TemplateEngine:
    """Factory function to create a template engine instance."""
    return TemplateEngine(template_dir=template_dir)
