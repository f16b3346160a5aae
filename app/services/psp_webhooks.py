"""Services handling Stripe webhook callbacks.

Delivery is at-least-once: an event is recorded only after its handler has
committed, and every handler converges idempotently, so a redelivery of an
event that was processed but not yet recorded is harmless.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

import stripe
from fastapi import HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.psp_webhook import PSPWebhookEvent
from app.services import payments as payments_service
from app.services.psp_stripe import PaymentGateway, construct_webhook_event
from app.utils.errors import NotFound, error_response
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _on_intent_succeeded(db: Session, obj: dict[str, Any], gateway: PaymentGateway | None) -> None:
    payments_service.confirm_escrow(
        db,
        intent_id=obj["id"],
        charge_id=_object_id(obj.get("latest_charge")),
        gateway=gateway,
    )


def _on_intent_failed(db: Session, obj: dict[str, Any], gateway: PaymentGateway | None) -> None:
    last_error = obj.get("last_payment_error") or {}
    payments_service.mark_payment_failed(db, intent_id=obj["id"], message=last_error.get("message"))


def _on_charge_refunded(db: Session, obj: dict[str, Any], gateway: PaymentGateway | None) -> None:
    payments_service.converge_refunded(
        db,
        charge_id=obj["id"],
        fully_refunded=bool(obj.get("refunded")),
        amount_refunded_minor=obj.get("amount_refunded"),
    )


def _on_dispute_created(db: Session, obj: dict[str, Any], gateway: PaymentGateway | None) -> None:
    payments_service.open_chargeback(
        db,
        charge_id=_object_id(obj.get("charge")),
        gateway_dispute_id=obj["id"],
        reason=obj.get("reason"),
        amount_minor=obj.get("amount"),
    )


def _on_dispute_closed(db: Session, obj: dict[str, Any], gateway: PaymentGateway | None) -> None:
    payments_service.close_chargeback(
        db,
        gateway_dispute_id=obj["id"],
        gateway_status=obj.get("status") or "",
    )


HANDLERS: dict[str, Callable[[Session, dict[str, Any], PaymentGateway | None], None]] = {
    "payment_intent.succeeded": _on_intent_succeeded,
    "payment_intent.payment_failed": _on_intent_failed,
    "charge.refunded": _on_charge_refunded,
    "charge.dispute.created": _on_dispute_created,
    "charge.dispute.closed": _on_dispute_closed,
}


def _already_processed(db: Session, event_id: str) -> bool:
    stmt = select(PSPWebhookEvent.id).where(
        PSPWebhookEvent.provider == PROVIDER,
        PSPWebhookEvent.event_id == event_id,
        PSPWebhookEvent.processed_at.is_not(None),
    )
    return db.scalar(stmt) is not None


def _record_event(db: Session, event_id: str, kind: str, obj: dict[str, Any], payload: dict[str, Any]) -> bool:
    """Persist the processed event; False when another delivery recorded it first."""

    now = utcnow()
    db.add(
        PSPWebhookEvent(
            provider=PROVIDER,
            event_id=event_id,
            kind=kind,
            psp_ref=obj.get("id"),
            raw_json=payload,
            received_at=now,
            processed_at=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Stripe event recorded concurrently", extra={"event_id": event_id})
        return False
    return True


def process_stripe_event(db: Session, payload: dict[str, Any], gateway: PaymentGateway | None = None) -> dict[str, bool]:
    """Dispatch a verified Stripe event to its handler and record it."""

    event_id = payload.get("id")
    event_type = payload.get("type") or ""
    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("MISSING_EVENT_ID", "Stripe event id is missing."),
        )
    obj = (payload.get("data") or {}).get("object") or {}

    if _already_processed(db, event_id):
        logger.info("Duplicate Stripe event ignored", extra={"event_id": event_id, "event_type": event_type})
        return {"received": True, "duplicate": True}

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type", extra={"event_type": event_type, "event_id": event_id})
    else:
        try:
            handler(db, obj, gateway)
        except NotFound as exc:
            db.rollback()
            logger.info(
                "Stripe event references an unknown object; acknowledged",
                extra={"event_id": event_id, "event_type": event_type, "error": exc.message},
            )
        except Exception:
            db.rollback()
            logger.exception(
                "Stripe webhook processing failed",
                extra={"event_id": event_id, "event_type": event_type},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=error_response("WEBHOOK_PROCESSING_FAILED", "Stripe event could not be processed."),
            )

    if not _record_event(db, event_id, event_type, obj, payload):
        return {"received": True, "duplicate": True}
    logger.info("Stripe webhook processed", extra={"event_id": event_id, "event_type": event_type})
    return {"received": True}


async def handle_stripe_webhook(request: Request, db: Session, gateway: PaymentGateway | None = None) -> dict[str, bool]:
    """Verify a Stripe webhook call and process its event."""

    secret = get_settings().STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_NOT_CONFIGURED", "Stripe webhook secret is not configured."),
        )

    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_SIGNATURE_MISSING", "Stripe-Signature header is required."),
        )

    try:
        construct_webhook_event(payload, sig_header, secret)
        event = json.loads(payload)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_SIGNATURE_INVALID", "Invalid Stripe signature."),
        )
    except ValueError:
        logger.warning("Failed to parse Stripe webhook event", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_EVENT_INVALID", "Invalid Stripe webhook payload."),
        )

    logger.info(
        "Stripe webhook received",
        extra={"event_type": event.get("type"), "event_id": event.get("id")},
    )
    return process_stripe_event(db, event, gateway)


__all__ = ["HANDLERS", "handle_stripe_webhook", "process_stripe_event"]
