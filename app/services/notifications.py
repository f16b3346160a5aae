"""Best-effort user notifications dispatched after a core transaction commits."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app.models.notification import Notification
from app.models.user import User, UserRole
from app.utils.audit import sanitize_payload_for_audit
from app.utils.errors import NotFound

logger = logging.getLogger(__name__)


@dataclass
class PendingNotification:
    user_id: int
    title: str
    type: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    # False pour les consignes de virement destinées aux admins (numéro de compte en clair).
    sanitize: bool = True


class Outbox:
    """Collects notifications during an operation; delivered by :meth:`dispatch`.

    Nothing is written until the caller has committed its own transaction, and
    a delivery failure never propagates back to the caller.
    """

    def __init__(self) -> None:
        self._items: list[PendingNotification] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def add(
        self,
        user_id: int | None,
        title: str,
        type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        sanitize: bool = True,
    ) -> None:
        if user_id is None:
            return
        self._items.append(
            PendingNotification(
                user_id=user_id,
                title=title,
                type=type,
                content=content,
                metadata=dict(metadata or {}),
                sanitize=sanitize,
            )
        )

    def add_admins(
        self,
        db: Session,
        title: str,
        type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        sanitize: bool = True,
    ) -> None:
        admin_ids = db.scalars(
            select(User.id).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
        ).all()
        for admin_id in admin_ids:
            self.add(admin_id, title, type, content, metadata, sanitize=sanitize)

    def dispatch(self, db: Session) -> int:
        """Deliver every queued notification, each in its own session."""

        delivered = 0
        items, self._items = self._items, []
        if not items:
            return 0
        factory = sessionmaker(bind=db.get_bind(), autoflush=False, expire_on_commit=False)
        for item in items:
            try:
                deliver(factory, item)
                delivered += 1
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Notification delivery failed",
                    extra={"user_id": item.user_id, "type": item.type},
                    exc_info=True,
                )
        return delivered


def deliver(factory: sessionmaker[Session], item: PendingNotification) -> None:
    session = factory()
    try:
        session.add(
            Notification(
                user_id=item.user_id,
                title=item.title,
                type=item.type,
                content=item.content,
                metadata_json=sanitize_payload_for_audit(item.metadata) if item.sanitize else item.metadata,
                is_read=False,
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def list_notifications(db: Session, user_id: int, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    return list(db.scalars(stmt))


def mark_read(db: Session, notification_id: int, user_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFound("Notification not found.", code="NOTIFICATION_NOT_FOUND")
    if not notification.is_read:
        db.execute(
            update(Notification).where(Notification.id == notification_id).values(is_read=True)
        )
        db.commit()
        db.refresh(notification)
    return notification


__all__ = ["Outbox", "PendingNotification", "deliver", "list_notifications", "mark_read"]
