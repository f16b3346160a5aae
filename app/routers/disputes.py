"""Dispute endpoints for parties and admins."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.models.dispute import DisputeStatus
from app.models.user import User
from app.schemas.dispute import (
    DisputeCreate,
    DisputePayout,
    DisputeRead,
    DisputeRedo,
    DisputeResolve,
    DisputeStatsRead,
    PayoutSummaryRead,
    ReleaseRetry,
)
from app.schemas.payment import PaymentRead
from app.security import current_admin, require_scope, require_user
from app.services import disputes as disputes_service
from app.services.psp_stripe import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/disputes", tags=["disputes"])
admin_router = APIRouter(prefix="/admin/disputes", tags=["admin"])


@router.post(
    "",
    response_model=DisputeRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_scope({ApiScope.company, ApiScope.provider}))],
)
def raise_dispute(
    payload: DisputeCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return disputes_service.raise_dispute(
        db,
        project_id=payload.project_id,
        actor=user,
        reason=payload.reason,
        milestone_id=payload.milestone_id,
        payment_id=payload.payment_id,
        description=payload.description,
        contested_amount=payload.contested_amount,
    )


@router.get("/{dispute_id}", response_model=DisputeRead)
def read_dispute(
    dispute_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return disputes_service.get_dispute(db, dispute_id, user)


@admin_router.get("", response_model=list[DisputeRead])
def list_disputes(
    status_filter: DisputeStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return disputes_service.list_disputes(db, status=status_filter, limit=limit)


@admin_router.get("/stats", response_model=DisputeStatsRead)
def dispute_stats(
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return disputes_service.get_dispute_stats(db)


@admin_router.post("/{dispute_id}/resolve", response_model=DisputeRead)
def resolve_dispute(
    dispute_id: int,
    payload: DisputeResolve,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return disputes_service.resolve_dispute(
        db,
        dispute_id=dispute_id,
        status=payload.status,
        resolution_note=payload.resolution_note,
        admin=admin,
    )


@admin_router.post("/{dispute_id}/payout", response_model=PayoutSummaryRead)
def dispute_payout(
    dispute_id: int,
    payload: DisputePayout,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Split the escrowed payment between a refund and a release, then resolve."""

    return disputes_service.simulate_payout(
        db,
        gateway,
        dispute_id=dispute_id,
        refund_amount=payload.refund_amount,
        release_amount=payload.release_amount,
        resolution_note=payload.resolution_note,
        admin=admin,
        transfer_proof_url=payload.transfer_proof_url,
    )


@admin_router.post("/{dispute_id}/retry-release", response_model=PaymentRead)
def retry_release(
    dispute_id: int,
    payload: ReleaseRetry | None = None,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return disputes_service.retry_dispute_release(
        db,
        dispute_id=dispute_id,
        admin=admin,
        transfer_proof_url=payload.transfer_proof_url if payload else None,
    )


@admin_router.post("/{dispute_id}/redo", response_model=DisputeRead)
def redo_milestone(
    dispute_id: int,
    payload: DisputeRedo | None = None,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return disputes_service.redo_milestone(
        db,
        dispute_id=dispute_id,
        resolution_note=payload.resolution_note if payload else None,
        admin=admin,
    )
