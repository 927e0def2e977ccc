"""
Stripe API client wrapper with error handling and retry logic.

The storefront uses Stripe PaymentIntents as its payment gateway. This
client creates intents at checkout and re-fetches them when a webhook
arrives, since webhook payloads are only treated as a trigger. Stripe's
own statuses are normalized to the gateway vocabulary the reconciliation
logic understands (``paid``, ``failed``, ``canceled``, ``expired``,
``pending``, ``open``).

Stripe's SDK is synchronous; the async helpers run calls in a worker thread
and bound them with a timeout.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional
from uuid import UUID

import stripe
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    CardError,
    RateLimitError,
    StripeError,
)

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

STRIPE_STATUS_MAP: dict[str, str] = {
    "succeeded": "paid",
    "canceled": "canceled",
    "processing": "pending",
    "requires_payment_method": "open",
    "requires_confirmation": "open",
    "requires_action": "open",
}


def normalize_status(stripe_status: Optional[str]) -> str:
    """
    Translate a PaymentIntent status to the gateway vocabulary.

    Unknown statuses (``requires_capture`` and anything Stripe adds later)
    are passed through unchanged.
    """
    if not stripe_status:
        return "unknown"
    return STRIPE_STATUS_MAP.get(stripe_status, stripe_status)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> Decimal:
    return (Decimal(amount or 0) / Decimal(100)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class GatewayPayment:
    """Payment record as reported by the gateway."""

    id: str
    status: str
    raw_status: str
    amount: Decimal
    currency: str
    transaction_id: Optional[str] = None
    client_secret: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payment_intent(cls, intent: Any) -> "GatewayPayment":
        latest_charge = getattr(intent, "latest_charge", None)
        if latest_charge is not None and not isinstance(latest_charge, str):
            latest_charge = getattr(latest_charge, "id", None)
        raw_status = getattr(intent, "status", None) or ""
        return cls(
            id=intent.id,
            status=normalize_status(raw_status),
            raw_status=raw_status,
            amount=from_minor_units(getattr(intent, "amount", 0)),
            currency=(getattr(intent, "currency", None) or "").upper(),
            transaction_id=latest_charge,
            client_secret=getattr(intent, "client_secret", None),
            metadata=dict(getattr(intent, "metadata", None) or {}),
        )


class StripeClientError(Exception):
    """Base exception for payment gateway failures."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        stripe_error: Optional[StripeError] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.code = code
        self.stripe_error = stripe_error
        self.context = context


class StripePaymentError(StripeClientError):
    """The card or payment method was declined."""


class StripeAuthenticationError(StripeClientError):
    pass


class StripeRateLimitError(StripeClientError):
    pass


class StripeConnectionError(StripeClientError):
    pass


class StripeTimeoutError(StripeConnectionError):
    """A gateway call did not finish within the configured timeout."""


RETRYABLE_ERRORS = (RateLimitError, APIConnectionError, APIError)

_ERROR_TRANSLATION: dict[type, type] = {
    AuthenticationError: StripeAuthenticationError,
    CardError: StripePaymentError,
    RateLimitError: StripeRateLimitError,
    APIConnectionError: StripeConnectionError,
}


def translate_stripe_error(error: StripeError, message: Optional[str] = None) -> StripeClientError:
    """Wrap an SDK error in the matching client exception."""
    error_class = next(
        (
            translated
            for sdk_class, translated in _ERROR_TRANSLATION.items()
            if isinstance(error, sdk_class)
        ),
        StripeClientError,
    )
    return error_class(
        message or (getattr(error, "user_message", None) or str(error)),
        code=getattr(error, "code", None),
        stripe_error=error,
    )


class StripeClient:
    """
    Thin PaymentIntent client.

    Rate limit, connection and 5xx errors are retried with exponential
    backoff; declines, bad requests and authentication failures are raised
    on the first attempt.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: int = 2,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
        backoff_multiplier: float = 2.0,
    ):
        """
        Args:
            api_key: Stripe secret key (defaults to settings)
            timeout_seconds: Upper bound for async calls, retries included
            max_retries: Retries after the first attempt
            initial_backoff: First retry delay in seconds
            max_backoff: Delay ceiling in seconds
            backoff_multiplier: Growth factor between retries
        """
        self.api_key = api_key or settings.stripe_secret_key
        self.timeout_seconds = timeout_seconds or settings.payment_gateway_timeout_seconds
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

        stripe.api_key = self.api_key
        # Retries are handled here so they can be logged per attempt.
        stripe.max_network_retries = 0

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _execute_with_retry(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Call the SDK, retrying transient failures.

        Raises:
            StripeClientError: On a non-retryable error or once retries
                are exhausted
        """
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Stripe call failed after retries",
                        operation=operation,
                        max_retries=self.max_retries,
                        error_type=type(e).__name__,
                    )
                    raise translate_stripe_error(
                        e, f"{operation} failed after {self.max_retries} retries"
                    ) from e

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Stripe call failed, retrying",
                    operation=operation,
                    error_type=type(e).__name__,
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                time.sleep(backoff)
                attempt += 1
            except StripeError as e:
                logger.error(
                    "Stripe rejected call",
                    operation=operation,
                    error_type=type(e).__name__,
                    code=getattr(e, "code", None),
                    decline_code=getattr(e, "decline_code", None),
                )
                raise translate_stripe_error(e) from e

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        order_id: Optional[UUID] = None,
        order_number: Optional[str] = None,
        customer_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Create a Stripe payment intent.

        Args:
            amount: Payment amount in cents
            currency: Three-letter ISO currency code
            order_id: Associated order ID for tracking
            order_number: Associated order number for the dashboard
            customer_email: Customer email for receipt
            idempotency_key: Idempotency key for safe retries

        Returns:
            Stripe PaymentIntent object

        Raises:
            StripeClientError: If payment intent creation fails
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_email:
            params["receipt_email"] = customer_email

        metadata = {}
        if order_id:
            metadata["order_id"] = str(order_id)
        if order_number:
            metadata["order_number"] = order_number
        if metadata:
            params["metadata"] = metadata
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        payment_intent = self._execute_with_retry(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            **params,
        )

        logger.info(
            "Payment intent created",
            payment_intent_id=payment_intent.id,
            amount=amount,
            currency=currency,
        )
        return payment_intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        """
        Retrieve a payment intent by ID.

        Raises:
            StripeClientError: If retrieval fails
        """
        return self._execute_with_retry(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
        )

    async def _run_bounded(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "Stripe call timed out",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise StripeTimeoutError(
                f"{operation} timed out after {self.timeout_seconds}s",
                code="timeout",
            ) from e

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """
        Fetch the current state of a payment from the gateway.

        Raises:
            StripeClientError: If the lookup fails or times out
        """
        intent = await self._run_bounded(
            "retrieve_payment_intent", self.retrieve_payment_intent, payment_id
        )
        payment = GatewayPayment.from_payment_intent(intent)
        logger.debug(
            "Gateway payment fetched",
            gateway_payment_id=payment.id,
            gateway_status=payment.status,
            stripe_status=payment.raw_status,
        )
        return payment

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        order_id: UUID,
        order_number: str,
        customer_email: Optional[str] = None,
    ) -> GatewayPayment:
        """
        Create a gateway payment for an order total.

        The idempotency key is derived from the order and amount, so a
        client retrying checkout gets the same intent back.
        """
        intent = await self._run_bounded(
            "create_payment_intent",
            self.create_payment_intent,
            amount=to_minor_units(amount),
            currency=currency,
            order_id=order_id,
            order_number=order_number,
            customer_email=customer_email,
            idempotency_key=f"order-{order_id}-{to_minor_units(amount)}",
        )
        return GatewayPayment.from_payment_intent(intent)


def get_stripe_client() -> StripeClient:
    """
    Get configured Stripe client instance.

    Returns:
        Configured StripeClient instance
    """
    return StripeClient()
