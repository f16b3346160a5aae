"""Background jobs run by the scheduler."""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import get_sessionmaker
from app.services.payments import reconcile_stale_intents
from app.services.psp_stripe import StripeGateway

logger = logging.getLogger(__name__)


def reconcile_stale_intents_once() -> dict[str, int] | None:
    """Converge payments stuck IN_PROGRESS because a webhook never arrived."""

    settings = get_settings()
    if not settings.STRIPE_ENABLED:
        logger.debug("Stripe disabled; skipping intent reconciliation")
        return None
    try:
        gateway = StripeGateway(settings)
    except RuntimeError:
        logger.warning("Stripe gateway unavailable; skipping intent reconciliation", exc_info=True)
        return None

    db: Session = get_sessionmaker()()
    try:
        return reconcile_stale_intents(
            db,
            gateway,
            stale_after_minutes=settings.RECONCILE_STALE_AFTER_MINUTES,
        )
    finally:
        db.close()


__all__ = ["reconcile_stale_intents_once"]
