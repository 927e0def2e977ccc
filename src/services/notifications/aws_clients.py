"""
AWS SES client wrapper used for customer and wholesaler email.

The wrapper is synchronous, like boto3 itself. Callers on the event loop run
it through ``asyncio.to_thread`` and bound it with their own timeout.
"""

import time
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    EndpointConnectionError,
)

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

# Rejections that will fail the same way on every attempt.
NON_RETRYABLE_SES_ERRORS = frozenset(
    {
        "MessageRejected",
        "MailFromDomainNotVerified",
        "ConfigurationSetDoesNotExist",
        "AccountSendingPausedException",
        "InvalidParameterValue",
    }
)


class AWSClientError(Exception):
    """Base exception for AWS client errors."""

    def __init__(self, message: str, service: str, **context: Any) -> None:
        super().__init__(message)
        self.service = service
        self.context = context


class SESClientError(AWSClientError):
    """Exception for SES-specific errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, service="SES", **context)


class SESClient:
    """
    AWS SES client wrapper with retry logic.

    Throttling, transient service errors and connection failures are retried
    with exponential backoff. Rejections are raised on the first attempt.
    """

    def __init__(
        self,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        region_name: Optional[str] = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        client: Any = None,
    ) -> None:
        """
        Initialize SES client.

        Args:
            aws_access_key_id: AWS access key ID (defaults to settings)
            aws_secret_access_key: AWS secret access key (defaults to settings)
            region_name: AWS region name (defaults to settings)
            max_retries: Maximum number of send attempts
            retry_backoff: Initial backoff time in seconds for retries
            client: Preconfigured boto3 SES client
        """
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.region_name = region_name or settings.aws_region

        self._client = client or boto3.client(
            "ses",
            aws_access_key_id=aws_access_key_id or settings.aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key
            or settings.aws_secret_access_key,
            region_name=self.region_name,
            config=Config(
                connect_timeout=settings.notification_timeout_seconds,
                read_timeout=settings.notification_timeout_seconds,
                retries={"max_attempts": 0},
            ),
        )

    @staticmethod
    def _build_message(
        subject: str, body_text: str, body_html: Optional[str]
    ) -> dict[str, Any]:
        message: dict[str, Any] = {
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {"Text": {"Data": body_text, "Charset": "UTF-8"}},
        }
        if body_html:
            message["Body"]["Html"] = {"Data": body_html, "Charset": "UTF-8"}
        return message

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries - 1:
            backoff_time = self.retry_backoff * (2**attempt)
            logger.info(
                "Retrying SES send after backoff",
                backoff_seconds=backoff_time,
                attempt=attempt + 1,
            )
            time.sleep(backoff_time)

    def send_email(
        self,
        to_addresses: list[str],
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
        from_address: Optional[str] = None,
        reply_to_addresses: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """
        Send email via AWS SES with retry logic.

        Returns:
            Dictionary containing the SES message ID

        Raises:
            SESClientError: If the message is rejected or retries run out
        """
        from_address = from_address or settings.ses_from_email

        if not to_addresses:
            raise SESClientError(
                "At least one recipient email address is required",
                to_addresses=to_addresses,
            )

        send_params: dict[str, Any] = {
            "Source": from_address,
            "Destination": {"ToAddresses": to_addresses},
            "Message": self._build_message(subject, body_text, body_html),
        }
        if reply_to_addresses:
            send_params["ReplyToAddresses"] = reply_to_addresses

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = self._client.send_email(**send_params)
                message_id = response["MessageId"]
                logger.info(
                    "Email sent via SES",
                    message_id=message_id,
                    to_addresses=to_addresses,
                    attempt=attempt + 1,
                )
                return {"message_id": message_id, "status": "sent"}

            except ClientError as e:
                error = e.response.get("Error", {})
                error_code = error.get("Code", "Unknown")
                error_message = error.get("Message", str(e))
                last_exception = e

                logger.warning(
                    "SES client error",
                    attempt=attempt + 1,
                    error_code=error_code,
                    error_message=error_message,
                    to_addresses=to_addresses,
                )

                if error_code in NON_RETRYABLE_SES_ERRORS:
                    raise SESClientError(
                        f"SES error: {error_message}",
                        error_code=error_code,
                        to_addresses=to_addresses,
                    ) from e

                self._backoff(attempt)

            except (BotoConnectionError, EndpointConnectionError, BotoCoreError) as e:
                last_exception = e
                logger.warning(
                    "SES connection error",
                    attempt=attempt + 1,
                    error=str(e),
                    to_addresses=to_addresses,
                )
                self._backoff(attempt)

        raise SESClientError(
            f"Failed to send email after {self.max_retries} attempts",
            to_addresses=to_addresses,
            last_error=str(last_exception),
        ) from last_exception


def get_ses_client(max_retries: int = 3, retry_backoff: float = 1.0) -> SESClient:
    """Get SES client instance."""
    return SESClient(max_retries=max_retries, retry_backoff=retry_backoff)
