"""Notification inbox and audit trail endpoints."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.user import User
from app.schemas.notification import AuditLogRead, NotificationRead
from app.security import current_admin, require_user
from app.services import notifications as notifications_service
from app.utils.audit import audit_trail

router = APIRouter(prefix="/notifications", tags=["notifications"])
audit_router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return notifications_service.list_notifications(db, user.id, unread_only=unread_only, limit=limit)


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return notifications_service.mark_read(db, notification_id, user.id)


@audit_router.get("/{entity}/{entity_id}", response_model=list[AuditLogRead])
def read_audit_trail(
    entity: str,
    entity_id: int,
    db: Session = Depends(get_db),
    admin: User | None = Depends(current_admin),
):
    return audit_trail(db, entity, entity_id)
