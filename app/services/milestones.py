"""Milestone approval coordinator: dual-party locking and the work lifecycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import atomic
from app.models.milestone import Milestone, MilestoneStatus
from app.models.project import Project, ProjectStatus
from app.models.user import User
from app.services import payments as payments_service
from app.services.notifications import Outbox
from app.services.projects import (
    COMPANY,
    ensure_customer,
    ensure_party_or_admin,
    ensure_provider,
    get_project,
    party_role,
)
from app.services.transitions import apply_transition, lock_for_update, try_transition
from app.utils.audit import actor_from_user, log_audit
from app.utils.errors import InvalidState, ValidationFailed
from app.utils.time import utcnow, utctoday

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
DONE_STATUSES = frozenset({MilestoneStatus.APPROVED, MilestoneStatus.PAID})


@dataclass
class MilestoneDraft:
    sequence: int
    title: str
    amount: Decimal | str | int
    due_date: date
    description: str | None = None


def validate_milestone_plan(
    drafts: Sequence[MilestoneDraft],
    *,
    approved_price: Decimal | None = None,
    max_items: int | None = None,
    today: date | None = None,
) -> list[MilestoneDraft]:
    """Validate a proposed plan and return it normalised and sorted by sequence.

    Every problem is collected and reported at once in ``details.errors``.
    """

    limit = max_items or get_settings().MAX_MILESTONES_PER_PROJECT
    today = today or utctoday()

    if not drafts:
        raise ValidationFailed("At least one milestone is required.", details={"errors": ["empty plan"]})
    if len(drafts) > limit:
        raise ValidationFailed(
            f"Maximum {limit} milestones allowed.",
            details={"errors": [f"{len(drafts)} milestones submitted"], "max": limit},
        )

    errors: list[str] = []
    normalised: list[MilestoneDraft] = []
    total = Decimal("0.00")
    for index, draft in enumerate(drafts, start=1):
        prefix = f"Milestone {index}"
        title = (draft.title or "").strip()
        if not title:
            errors.append(f"{prefix}: title is required")
        try:
            amount = Decimal(str(draft.amount)).quantize(_CENT)
        except (InvalidOperation, ValueError):
            errors.append(f"{prefix}: amount must be a number")
            amount = Decimal("0.00")
        else:
            if amount <= 0:
                errors.append(f"{prefix}: amount must be positive")
            total += amount
        if draft.due_date is None:
            errors.append(f"{prefix}: due date is required")
        elif draft.due_date < today:
            errors.append(f"{prefix}: due date cannot be in the past")
        if not isinstance(draft.sequence, int) or draft.sequence < 1:
            errors.append(f"{prefix}: sequence must be a positive integer")
        description = (draft.description or "").strip() or None
        normalised.append(
            MilestoneDraft(
                sequence=draft.sequence,
                title=title,
                amount=amount,
                due_date=draft.due_date,
                description=description,
            )
        )

    sequences = sorted(d.sequence for d in drafts if isinstance(d.sequence, int))
    if sequences != list(range(1, len(drafts) + 1)):
        errors.append("sequence numbers must be unique and consecutive starting from 1")

    if approved_price is not None and total > approved_price:
        errors.append(f"milestone total {total} exceeds the approved price {approved_price}")

    if errors:
        raise ValidationFailed("Invalid milestone plan.", details={"errors": errors})

    return sorted(normalised, key=lambda d: d.sequence)


def _milestones_of(db: Session, project_id: int, *, for_update: bool = False) -> list[Milestone]:
    stmt = select(Milestone).where(Milestone.project_id == project_id).order_by(Milestone.sequence)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return list(db.scalars(stmt))


def _counterparty(project: Project, role: str) -> int:
    return project.provider_id if role == COMPANY else project.customer_id


def replace_milestones(
    db: Session,
    project_id: int,
    actor: User,
    drafts: Sequence[MilestoneDraft],
) -> list[Milestone]:
    """Replace the whole milestone plan of an unlocked project."""

    outbox = Outbox()
    with atomic(db):
        project = lock_for_update(db, Project, project_id)
        role = party_role(project, actor)
        if project.milestones_locked:
            raise InvalidState(
                "Milestones are locked and can no longer be edited.",
                code="MILESTONES_LOCKED",
                details={"project_id": project.id, "milestones_locked": True},
            )
        plan = validate_milestone_plan(drafts, approved_price=project.approved_price)

        db.execute(delete(Milestone).where(Milestone.project_id == project.id))
        db.expire(project, ["milestones"])
        created = [
            Milestone(
                project_id=project.id,
                sequence=draft.sequence,
                title=draft.title,
                description=draft.description,
                amount=draft.amount,
                due_date=draft.due_date,
                status=MilestoneStatus.DRAFT,
                submission_history=[],
            )
            for draft in plan
        ]
        db.add_all(created)
        project.company_approved = False
        project.provider_approved = False
        project.milestones_approved_at = None
        db.flush()

        log_audit(
            db,
            actor=actor_from_user(actor),
            action="MILESTONES_REPLACED",
            entity="Project",
            entity_id=project.id,
            data={"role": role, "count": len(created), "total": sum((m.amount for m in created), Decimal("0.00"))},
        )
        outbox.add(
            _counterparty(project, role),
            "Milestones Updated",
            "MILESTONE",
            f"The {role} updated the milestone plan of project \"{project.title}\". Please review and approve.",
            {"project_id": project.id},
        )
    outbox.dispatch(db)
    logger.info("Milestones replaced", extra={"project_id": project_id, "count": len(created)})
    return created


def approve_milestones(db: Session, project_id: int, actor: User) -> Project:
    """Record the caller's approval; lock the plan once both parties approved.

    The flag update and the lock run in one transaction on the locked project
    row, so the order of the two approvals does not matter.
    """

    outbox = Outbox()
    with atomic(db):
        project = lock_for_update(db, Project, project_id)
        role = party_role(project, actor)
        if project.milestones_locked:
            logger.info("Milestones already locked", extra={"project_id": project.id, "role": role})
            return project

        milestones = _milestones_of(db, project.id, for_update=True)
        if not milestones:
            raise ValidationFailed(
                "There are no milestones to approve.",
                code="NO_MILESTONES",
                details={"project_id": project.id},
            )

        already = project.company_approved if role == COMPANY else project.provider_approved
        if already:
            logger.info("Duplicate milestone approval ignored", extra={"project_id": project.id, "role": role})
            return project

        if role == COMPANY:
            project.company_approved = True
        else:
            project.provider_approved = True

        actor_name = actor_from_user(actor)
        if project.company_approved and project.provider_approved:
            now = utcnow()
            project.milestones_locked = True
            project.milestones_approved_at = now
            for milestone in milestones:
                apply_transition(milestone, MilestoneStatus.LOCKED)
            db.flush()
            payments = payments_service.create_pending_payments(db, project, milestones, actor=actor_name)
            log_audit(
                db,
                actor=actor_name,
                action="MILESTONES_LOCKED",
                entity="Project",
                entity_id=project.id,
                data={"milestones": [m.id for m in milestones], "payments": [p.id for p in payments]},
            )
            for user_id in (project.customer_id, project.provider_id):
                outbox.add(
                    user_id,
                    "Milestones Approved & Locked",
                    "MILESTONE",
                    f"Both parties approved the milestones of \"{project.title}\". The plan is now locked.",
                    {"project_id": project.id},
                )
        else:
            for milestone in milestones:
                if milestone.status == MilestoneStatus.DRAFT:
                    apply_transition(milestone, MilestoneStatus.PENDING)
            log_audit(
                db,
                actor=actor_name,
                action="MILESTONES_APPROVED",
                entity="Project",
                entity_id=project.id,
                data={"role": role},
            )
            outbox.add(
                _counterparty(project, role),
                f"Milestones Approved by {role.capitalize()}",
                "MILESTONE",
                f"The {role} approved the milestones of \"{project.title}\". Approve them to lock the plan.",
                {"project_id": project.id},
            )
    outbox.dispatch(db)
    logger.info(
        "Milestone approval recorded",
        extra={
            "project_id": project.id,
            "company_approved": project.company_approved,
            "provider_approved": project.provider_approved,
            "milestones_locked": project.milestones_locked,
        },
    )
    return project


def _load_milestone_and_project(db: Session, milestone_id: int) -> tuple[Milestone, Project]:
    milestone = lock_for_update(db, Milestone, milestone_id)
    project = lock_for_update(db, Project, milestone.project_id)
    return milestone, project


def start_work(
    db: Session,
    milestone_id: int,
    actor: User,
    deliverables: dict[str, Any] | None = None,
) -> Milestone:
    outbox = Outbox()
    with atomic(db):
        milestone, project = _load_milestone_and_project(db, milestone_id)
        ensure_provider(project, actor)
        previous = apply_transition(
            milestone,
            MilestoneStatus.IN_PROGRESS,
            started_at=utcnow(),
            start_deliverables=deliverables or None,
        )
        log_audit(
            db,
            actor=actor_from_user(actor),
            action="MILESTONE_STARTED",
            entity="Milestone",
            entity_id=milestone.id,
            data={"from": previous},
        )
        outbox.add(
            project.customer_id,
            "Milestone Started",
            "MILESTONE",
            f"The provider started work on \"{milestone.title}\".",
            {"project_id": project.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return milestone


def submit_milestone(
    db: Session,
    milestone_id: int,
    actor: User,
    *,
    note: str | None = None,
    attachment_url: str | None = None,
    deliverables: dict[str, Any] | None = None,
) -> Milestone:
    outbox = Outbox()
    with atomic(db):
        milestone, project = _load_milestone_and_project(db, milestone_id)
        ensure_provider(project, actor)
        apply_transition(
            milestone,
            MilestoneStatus.SUBMITTED,
            submitted_at=utcnow(),
            submission_note=(note or "").strip() or None,
            submission_attachment_url=attachment_url,
            submit_deliverables=deliverables or None,
        )
        log_audit(
            db,
            actor=actor_from_user(actor),
            action="MILESTONE_SUBMITTED",
            entity="Milestone",
            entity_id=milestone.id,
            data={"revision_number": milestone.revision_number},
        )
        outbox.add(
            project.customer_id,
            "Milestone Submitted",
            "MILESTONE",
            f"\"{milestone.title}\" was submitted for your review.",
            {"project_id": project.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return milestone


def request_changes(db: Session, milestone_id: int, actor: User, reason: str) -> Milestone:
    """Send a submitted milestone back to work, archiving the submission."""

    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A reason is required when requesting changes.", code="REASON_REQUIRED")

    outbox = Outbox()
    with atomic(db):
        milestone, project = _load_milestone_and_project(db, milestone_id)
        ensure_customer(project, actor)
        now = utcnow()
        entry = {
            "revision_number": milestone.revision_number + 1,
            "submit_deliverables": milestone.submit_deliverables,
            "submission_note": milestone.submission_note,
            "submission_attachment_url": milestone.submission_attachment_url,
            "submitted_at": milestone.submitted_at.isoformat() if milestone.submitted_at else None,
            "requested_changes_at": now.isoformat(),
            "requested_changes_by": actor.id,
            "requested_changes_reason": reason,
        }
        apply_transition(
            milestone,
            MilestoneStatus.IN_PROGRESS,
            submission_history=[*(milestone.submission_history or []), entry],
            revision_number=milestone.revision_number + 1,
            submitted_at=None,
            submission_note=None,
            submission_attachment_url=None,
            submit_deliverables=None,
        )
        log_audit(
            db,
            actor=actor_from_user(actor),
            action="MILESTONE_CHANGES_REQUESTED",
            entity="Milestone",
            entity_id=milestone.id,
            data={"reason": reason, "revision_number": milestone.revision_number},
        )
        outbox.add(
            project.provider_id,
            "Changes Requested",
            "MILESTONE",
            f"The company requested changes on \"{milestone.title}\": {reason}",
            {"project_id": project.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return milestone


def approve_submission(db: Session, milestone_id: int, actor: User) -> Milestone:
    outbox = Outbox()
    with atomic(db):
        milestone, project = _load_milestone_and_project(db, milestone_id)
        ensure_customer(project, actor)
        apply_transition(milestone, MilestoneStatus.APPROVED, approved_at=utcnow(), approved_by=actor.id)
        db.flush()
        log_audit(
            db,
            actor=actor_from_user(actor),
            action="MILESTONE_APPROVED",
            entity="Milestone",
            entity_id=milestone.id,
            data={"amount": milestone.amount},
        )

        siblings = _milestones_of(db, project.id)
        if all(m.status in DONE_STATUSES for m in siblings):
            if try_transition(project, ProjectStatus.COMPLETED):
                log_audit(
                    db,
                    actor=actor_from_user(actor),
                    action="PROJECT_COMPLETED",
                    entity="Project",
                    entity_id=project.id,
                    data={"milestones": len(siblings)},
                )
        outbox.add(
            project.provider_id,
            "Milestone Approved",
            "MILESTONE",
            f"\"{milestone.title}\" was approved by the company.",
            {"project_id": project.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return milestone


def get_project_milestones(db: Session, project_id: int, actor: User | None) -> tuple[Project, list[Milestone]]:
    project = get_project(db, project_id)
    ensure_party_or_admin(project, actor)
    return project, _milestones_of(db, project.id)


def all_milestones_paid(db: Session, project_id: int) -> bool:
    milestones = _milestones_of(db, project_id)
    return bool(milestones) and all(m.status == MilestoneStatus.PAID for m in milestones)


__all__ = [
    "MilestoneDraft",
    "validate_milestone_plan",
    "replace_milestones",
    "approve_milestones",
    "start_work",
    "submit_milestone",
    "request_changes",
    "approve_submission",
    "get_project_milestones",
    "all_milestones_paid",
]
