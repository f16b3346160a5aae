"""Payment endpoints: funding, payout queue, bank transfer and refunds."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.models.user import User
from app.schemas.payment import (
    BankTransferConfirm,
    PaymentInitiate,
    PaymentInitiateRead,
    PaymentRead,
    ProviderEarningsRead,
    RefundRequest,
)
from app.security import current_admin, require_scope, require_user
from app.services import payments as payments_service
from app.services.psp_stripe import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/initiate",
    response_model=PaymentInitiateRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_scope({ApiScope.company}))],
)
def initiate_payment(
    payload: PaymentInitiate,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Create (or reuse) the payment intent funding a locked milestone."""

    return payments_service.initiate_payment(
        db,
        gateway,
        milestone_id=payload.milestone_id,
        actor=user,
        amount=payload.amount,
    )


@router.get("/pending-payouts", response_model=list[PaymentRead])
def pending_payouts(
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return payments_service.get_pending_payouts(db)


@router.get(
    "/earnings",
    response_model=ProviderEarningsRead,
    dependencies=[Depends(require_scope({ApiScope.provider}))],
)
def provider_earnings(
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return payments_service.get_provider_earnings(db, user.id)


@router.get("/{payment_id}", response_model=PaymentRead)
def read_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return payments_service.get_payment(db, payment_id, user)


@router.post("/{payment_id}/confirm-transfer", response_model=PaymentRead)
def confirm_bank_transfer(
    payment_id: int,
    payload: BankTransferConfirm,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    """Record the manual bank transfer of a released payment."""

    return payments_service.confirm_bank_transfer(
        db, payment_id=payment_id, admin=admin, reference=payload.reference
    )


@router.post("/{payment_id}/refund", response_model=PaymentRead)
def refund_payment(
    payment_id: int,
    payload: RefundRequest,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return payments_service.refund_payment(
        db,
        gateway,
        payment_id=payment_id,
        actor=admin,
        reason=payload.reason,
        amount=payload.amount,
    )
