"""Stripe SDK wrapper implementing the payment gateway adapter."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Protocol

import stripe
from fastapi import HTTPException, status

from app.config import Settings, get_settings
from app.utils.errors import GatewayError, error_response

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def to_minor_units(amount: Decimal | int | str) -> int:
    """Convert a decimal amount to the smallest currency unit expected by Stripe."""

    normalized = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int((normalized * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert an integer amount in minor units back to a 2-decimal amount."""

    return (Decimal(int(amount)) / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class IntentHandle:
    intent_id: str
    client_secret: str | None


@dataclass(frozen=True)
class IntentState:
    intent_id: str
    status: str
    charge_id: str | None
    client_secret: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str | None = None


class PaymentGateway(Protocol):
    """Operations the payment engine needs from the external gateway."""

    def create_intent(
        self, amount_minor: int, currency: str, metadata: Dict[str, Any], *, idempotency_key: str | None = None
    ) -> IntentHandle: ...

    def update_intent_amount(self, intent_id: str, amount_minor: int) -> None: ...

    def retrieve_intent(self, intent_id: str) -> IntentState: ...

    def refund(
        self, charge_id: str, amount_minor: int, metadata: Dict[str, Any], *, idempotency_key: str | None = None
    ) -> RefundResult: ...


_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
)


def _translate(exc: stripe.StripeError, operation: str) -> GatewayError:
    retryable = isinstance(exc, _RETRYABLE_ERRORS)
    logger.warning(
        "Stripe call failed",
        extra={
            "operation": operation,
            "retryable": retryable,
            "stripe_code": getattr(exc, "code", None),
            "http_status": getattr(exc, "http_status", None),
        },
    )
    message = getattr(exc, "user_message", None) or str(exc) or "Payment gateway error."
    return GatewayError(
        message,
        retryable=retryable,
        code="GATEWAY_TIMEOUT" if retryable else "GATEWAY_ERROR",
        details={"operation": operation},
    )


class StripeGateway:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns."""

    def __init__(self, settings: Settings) -> None:
        """Initialise the client and set the API key when enabled."""

        self.settings = settings
        self._ensure_enabled()
        self._secret_key = settings.STRIPE_SECRET_KEY

        if not self._secret_key:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = self._secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)

    @classmethod
    def from_env(cls) -> "StripeGateway":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    def _ensure_enabled(self) -> None:
        if not self.settings.STRIPE_ENABLED:
            raise RuntimeError("Stripe integration is disabled; enable STRIPE_ENABLED to proceed.")

    def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> IntentHandle:
        """Create a PaymentIntent used to fund a milestone escrow."""

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency.lower(),
                metadata={key: str(value) for key, value in metadata.items()},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "create_intent") from exc
        return IntentHandle(intent_id=intent.id, client_secret=intent.client_secret)

    def update_intent_amount(self, intent_id: str, amount_minor: int) -> None:
        try:
            stripe.PaymentIntent.modify(intent_id, amount=amount_minor)
        except stripe.StripeError as exc:
            raise _translate(exc, "update_intent_amount") from exc

    def retrieve_intent(self, intent_id: str) -> IntentState:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise _translate(exc, "retrieve_intent") from exc
        charge = getattr(intent, "latest_charge", None)
        if charge is not None and not isinstance(charge, str):
            charge = getattr(charge, "id", None)
        last_error = getattr(intent, "last_payment_error", None)
        return IntentState(
            intent_id=intent.id,
            status=intent.status,
            charge_id=charge,
            client_secret=getattr(intent, "client_secret", None),
            last_error=getattr(last_error, "message", None) if last_error else None,
        )

    def refund(
        self,
        charge_id: str,
        amount_minor: int,
        metadata: Dict[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                charge=charge_id,
                amount=amount_minor,
                reason="requested_by_customer",
                metadata={key: str(value) for key, value in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "refund") from exc
        return RefundResult(refund_id=refund.id, status=getattr(refund, "status", None))


def construct_webhook_event(payload: bytes, sig_header: str, secret: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event."""

    return stripe.Webhook.construct_event(payload, sig_header, secret)


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway."""

    try:
        return StripeGateway(get_settings())
    except RuntimeError as exc:
        logger.error("Stripe gateway unavailable", extra={"error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_DISABLED", str(exc)),
        ) from exc


__all__ = [
    "IntentHandle",
    "IntentState",
    "PaymentGateway",
    "RefundResult",
    "StripeGateway",
    "construct_webhook_event",
    "from_minor_units",
    "get_payment_gateway",
    "to_minor_units",
]
