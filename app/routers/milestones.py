"""Milestone work lifecycle endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.models.user import User
from app.schemas.milestone import MilestoneRead, RequestChangesPayload, StartWorkPayload, SubmitPayload
from app.schemas.payment import PaymentRead
from app.security import require_scope, require_user
from app.services import milestones as milestones_service
from app.services import payments as payments_service

router = APIRouter(prefix="/milestones", tags=["milestones"])

_provider_only = [Depends(require_scope({ApiScope.provider}))]
_company_only = [Depends(require_scope({ApiScope.company}))]


@router.post("/{milestone_id}/start", response_model=MilestoneRead, dependencies=_provider_only)
def start_work(
    milestone_id: int,
    payload: StartWorkPayload | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    deliverables = payload.deliverables if payload else None
    return milestones_service.start_work(db, milestone_id, user, deliverables)


@router.post("/{milestone_id}/submit", response_model=MilestoneRead, dependencies=_provider_only)
def submit_milestone(
    milestone_id: int,
    payload: SubmitPayload,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return milestones_service.submit_milestone(
        db,
        milestone_id,
        user,
        note=payload.note,
        attachment_url=payload.attachment_url,
        deliverables=payload.deliverables,
    )


@router.post("/{milestone_id}/request-changes", response_model=MilestoneRead, dependencies=_company_only)
def request_changes(
    milestone_id: int,
    payload: RequestChangesPayload,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return milestones_service.request_changes(db, milestone_id, user, payload.reason)


@router.post("/{milestone_id}/approve", response_model=MilestoneRead, dependencies=_company_only)
def approve_submission(
    milestone_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return milestones_service.approve_submission(db, milestone_id, user)


@router.post("/{milestone_id}/release", response_model=PaymentRead, dependencies=_company_only)
def release_payment(
    milestone_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    """Release the escrowed payment of an approved milestone for manual payout."""

    return payments_service.release_payment(db, milestone_id=milestone_id, actor=user)
