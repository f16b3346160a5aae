"""Routes for PSP webhook handling."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.services import psp_webhooks
from app.services.psp_stripe import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/psp", tags=["psp"])


@router.post("/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> dict[str, bool]:
    """Verify and process a Stripe event; 2xx only once it is durably handled."""

    return await psp_webhooks.handle_stripe_webhook(request, db, gateway)


__all__ = ["router"]
