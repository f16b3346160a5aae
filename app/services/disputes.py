"""Dispute resolution engine: claims, admin verdicts, payout splits and redo."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db import atomic
from app.models.dispute import Dispute, DisputeResolutionNote, DisputeStatus
from app.models.milestone import Milestone, MilestoneStatus
from app.models.payment import Payment, PaymentStatus
from app.models.project import Project, ProjectStatus
from app.models.user import User
from app.services import payments as payments_service
from app.services.milestones import all_milestones_paid
from app.services.notifications import Outbox
from app.services.payments import format_money, to_money
from app.services.projects import ensure_party_or_admin, get_project, party_role
from app.services.psp_stripe import PaymentGateway
from app.services.transitions import (
    TERMINAL_DISPUTE_STATUSES,
    apply_transition,
    lock_for_update,
    require_status,
    try_transition,
)
from app.utils.audit import actor_from_user, log_audit
from app.utils.errors import Conflict, InvalidState, NotFound, ValidationFailed
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})
RESOLUTION_STATUSES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED, DisputeStatus.REJECTED})
# Un jalon payé a quitté le séquestre : un verdict ne le rejette plus.
SETTLED_MILESTONE_STATUSES = frozenset({MilestoneStatus.PAID, MilestoneStatus.REJECTED})

REDO_NOTE = (
    "Milestone returned to IN_PROGRESS for resubmission. Provider can now edit and resubmit. "
    "Payment remains in escrow."
)
AUTO_RESOLVE_NOTE = "Project completed peacefully. Dispute automatically resolved."

COMPLETED = "completed"
FAILED = "failed"
ALREADY_RELEASED = "already_released"


@dataclass
class PayoutSummary:
    """Outcome of a payout split, one status per leg (``None`` when not requested)."""

    dispute_id: int
    payment_id: int
    refund_amount: Decimal
    release_amount: Decimal
    released_amount: Optional[Decimal] = None
    refund_status: Optional[str] = None
    release_status: Optional[str] = None
    release_error: Optional[str] = None
    note: str = ""


def _admin_name(admin: User | None) -> str:
    return admin.username if admin is not None else "Admin"


def _with_admin_note(text: str, note: str | None) -> str:
    note = (note or "").strip()
    if not note:
        return text
    return f"{text}\n\n--- Admin Note ---\n{note}"


def _append_note(db: Session, dispute: Dispute, note: str, admin: User | None, *, admin_name: str | None = None) -> None:
    dispute.notes.append(
        DisputeResolutionNote(
            note=note,
            admin_id=admin.id if admin is not None else None,
            admin_name=admin_name or _admin_name(admin),
        )
    )


def _lock_dispute(db: Session, dispute_id: int) -> Dispute:
    return lock_for_update(db, Dispute, dispute_id)


def _project_milestones(db: Session, project_id: int) -> list[Milestone]:
    stmt = (
        select(Milestone)
        .where(Milestone.project_id == project_id)
        .order_by(Milestone.sequence)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt))


def _reject_open_milestones(db: Session, project_id: int) -> list[int]:
    rejected: list[int] = []
    for milestone in _project_milestones(db, project_id):
        if milestone.status in SETTLED_MILESTONE_STATUSES:
            continue
        if try_transition(milestone, MilestoneStatus.REJECTED):
            rejected.append(milestone.id)
    return rejected


def _pin_project_disputed(db: Session, project_id: int) -> Project:
    project = lock_for_update(db, Project, project_id)
    try_transition(project, ProjectStatus.DISPUTED)
    return project


def _latest_payment(db: Session, milestone_id: int, statuses: set[PaymentStatus] | None = None) -> Payment | None:
    stmt = select(Payment).where(Payment.milestone_id == milestone_id).order_by(Payment.id.desc())
    if statuses:
        stmt = stmt.where(Payment.status.in_(list(statuses)))
    else:
        stmt = stmt.where(Payment.status != PaymentStatus.FAILED)
    return db.scalars(stmt).first()


def _resolve_payment_id(db: Session, dispute: Dispute) -> int | None:
    if dispute.payment_id:
        return dispute.payment_id
    if dispute.milestone_id:
        payment = _latest_payment(db, dispute.milestone_id, {PaymentStatus.ESCROWED, PaymentStatus.RELEASED})
        if payment is not None:
            return payment.id
    return None


def _dispute_milestone_id(dispute: Dispute) -> int | None:
    if dispute.milestone_id is not None:
        return dispute.milestone_id
    if dispute.payment is not None:
        return dispute.payment.milestone_id
    return None


def _notify_parties(outbox: Outbox, project: Project, title: str, content: str, metadata: dict[str, Any]) -> None:
    outbox.add(project.customer_id, title, "DISPUTE", content, metadata)
    outbox.add(project.provider_id, title, "DISPUTE", content, metadata)


def raise_dispute(
    db: Session,
    *,
    project_id: int,
    actor: User,
    reason: str,
    milestone_id: int | None = None,
    payment_id: int | None = None,
    description: str | None = None,
    contested_amount: Decimal | None = None,
) -> Dispute:
    """Open a claim on a project (optionally on one milestone) and freeze it."""

    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A dispute reason is required.", code="REASON_REQUIRED")
    if contested_amount is not None and to_money(contested_amount) <= 0:
        raise ValidationFailed("contested_amount must be positive.", details={"contested_amount": str(contested_amount)})

    outbox = Outbox()
    with atomic(db):
        project = lock_for_update(db, Project, project_id)
        role = party_role(project, actor)

        milestone: Milestone | None = None
        payment: Payment | None = None
        if milestone_id is not None:
            milestone = lock_for_update(db, Milestone, milestone_id)
            if milestone.project_id != project.id:
                raise ValidationFailed(
                    "Milestone does not belong to this project.",
                    details={"milestone_id": milestone_id, "project_id": project_id},
                )
            payment = _latest_payment(db, milestone.id)
        if payment_id is not None:
            payment = db.get(Payment, payment_id)
            if payment is None or payment.project_id != project.id:
                raise ValidationFailed(
                    "Payment does not belong to this project.",
                    details={"payment_id": payment_id, "project_id": project_id},
                )

        stmt = (
            select(Dispute)
            .where(Dispute.project_id == project.id, Dispute.gateway_dispute_id.is_(None))
            .order_by(Dispute.id.desc())
        )
        stmt = stmt.where(
            Dispute.milestone_id == milestone_id if milestone_id is not None else Dispute.milestone_id.is_(None)
        )
        existing = db.scalars(stmt.with_for_update().execution_options(populate_existing=True)).first()

        if existing is not None and existing.status in TERMINAL_DISPUTE_STATUSES:
            raise Conflict(
                f"A dispute for this work was already {existing.status.value.lower()}.",
                code="DISPUTE_ALREADY_RESOLVED",
                details={"dispute_id": existing.id, "status": existing.status.value},
            )

        claim = {
            "reason": reason,
            "description": description,
            "contested_amount": to_money(contested_amount) if contested_amount is not None else None,
            "raised_by": actor.id,
        }
        if existing is None:
            dispute = Dispute(
                project_id=project.id,
                milestone_id=milestone.id if milestone else None,
                payment_id=payment.id if payment else None,
                status=DisputeStatus.OPEN,
                **claim,
            )
            db.add(dispute)
            action = "DISPUTE_RAISED"
        else:
            dispute = existing
            reopened = existing.status == DisputeStatus.REJECTED
            target = existing.status if existing.status in ACTIVE_STATUSES else DisputeStatus.OPEN
            apply_transition(dispute, target, **claim)
            if payment is not None and dispute.payment_id is None:
                dispute.payment_id = payment.id
            action = "DISPUTE_REOPENED" if reopened else "DISPUTE_UPDATED"

        if milestone is not None:
            try_transition(milestone, MilestoneStatus.DISPUTED)
        try_transition(project, ProjectStatus.DISPUTED)
        db.flush()
        log_audit(
            db,
            actor=actor_from_user(actor),
            action=action,
            entity="Dispute",
            entity_id=dispute.id,
            data={
                "project_id": project.id,
                "milestone_id": dispute.milestone_id,
                "payment_id": dispute.payment_id,
                "reason": reason,
                "raised_by_role": role,
            },
        )
        counterparty = project.provider_id if actor.id == project.customer_id else project.customer_id
        outbox.add(
            counterparty,
            "Dispute Raised",
            "DISPUTE",
            f"A dispute was raised on \"{project.title}\": {reason}",
            {"dispute_id": dispute.id, "project_id": project.id},
        )
        outbox.add_admins(
            db,
            "New Dispute",
            "DISPUTE",
            f"Dispute #{dispute.id} raised on project \"{project.title}\".",
            {"dispute_id": dispute.id},
        )
    outbox.dispatch(db)
    logger.info("Dispute raised", extra={"dispute_id": dispute.id, "project_id": project_id})
    return dispute


def get_dispute(db: Session, dispute_id: int, actor: User | None) -> Dispute:
    dispute = db.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFound("Dispute not found.", code="DISPUTE_NOT_FOUND", details={"id": dispute_id})
    ensure_party_or_admin(get_project(db, dispute.project_id), actor)
    return dispute


def list_disputes(db: Session, *, status: DisputeStatus | None = None, limit: int = 100) -> list[Dispute]:
    stmt = select(Dispute).order_by(Dispute.created_at.desc(), Dispute.id.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    return list(db.scalars(stmt))


def resolve_dispute(
    db: Session,
    *,
    dispute_id: int,
    status: DisputeStatus,
    resolution_note: str,
    admin: User | None,
) -> Dispute:
    """Record an admin verdict and apply its effect on the project and milestones."""

    if status not in RESOLUTION_STATUSES:
        raise ValidationFailed(
            "Resolution status must be RESOLVED, CLOSED or REJECTED.",
            details={"status": getattr(status, "value", status)},
        )
    resolution_note = (resolution_note or "").strip()
    if not resolution_note:
        raise ValidationFailed("A resolution note is required.", code="NOTE_REQUIRED")

    outbox = Outbox()
    with atomic(db):
        dispute = _lock_dispute(db, dispute_id)
        require_status(dispute, ACTIVE_STATUSES, action="resolution")
        project = lock_for_update(db, Project, dispute.project_id)
        milestone_id = _dispute_milestone_id(dispute)
        milestone = lock_for_update(db, Milestone, milestone_id) if milestone_id else None
        effects: dict[str, Any] = {}

        if status == DisputeStatus.RESOLVED:
            try_transition(project, ProjectStatus.DISPUTED)
            effects["rejected_milestones"] = _reject_open_milestones(db, project.id)
        elif status == DisputeStatus.CLOSED:
            try_transition(project, ProjectStatus.DISPUTED)
            if milestone is not None:
                try_transition(milestone, MilestoneStatus.DISPUTED)
        else:
            if milestone is not None:
                try_transition(milestone, MilestoneStatus.IN_PROGRESS)
            if project.status == ProjectStatus.DISPUTED:
                apply_transition(project, ProjectStatus.IN_PROGRESS)
            if dispute.payment_id:
                log_audit(
                    db,
                    actor=actor_from_user(admin, fallback="admin"),
                    action="PAYMENT_DISPUTE_REJECTED",
                    entity="Payment",
                    entity_id=dispute.payment_id,
                    data={"dispute_id": dispute.id},
                )

        resolved_at = utcnow() if status != DisputeStatus.REJECTED else None
        apply_transition(dispute, status, resolved_at=resolved_at)
        _append_note(db, dispute, resolution_note, admin)
        log_audit(
            db,
            actor=actor_from_user(admin, fallback="admin"),
            action=f"DISPUTE_{status.value}",
            entity="Dispute",
            entity_id=dispute.id,
            data={"note": resolution_note, **effects},
        )
        _notify_parties(
            outbox,
            project,
            f"Dispute {status.value.title()}",
            f"Dispute #{dispute.id} on \"{project.title}\" was marked {status.value}: {resolution_note}",
            {"dispute_id": dispute.id, "status": status.value},
        )
    outbox.dispatch(db)
    return dispute


def _validate_split(payment: Payment, refund_amount: Decimal, release_amount: Decimal) -> None:
    if refund_amount < 0 or release_amount < 0:
        raise ValidationFailed(
            "Refund and release amounts must not be negative.",
            details={"refund_amount": str(refund_amount), "release_amount": str(release_amount)},
        )
    total = refund_amount + release_amount
    if total > payment.amount:
        raise ValidationFailed(
            "Refund and release amounts exceed the escrowed amount.",
            code="SPLIT_EXCEEDS_AMOUNT",
            details={"total": str(total), "escrowed": str(payment.amount)},
        )


def _split_note(refund_amount: Decimal, release_amount: Decimal, currency: str) -> str:
    refunded = format_money(refund_amount, currency)
    released = format_money(release_amount, currency)
    if refund_amount > 0 and release_amount > 0:
        return f"Partial Split: Refunded {refunded} to customer, Released {released} to provider."
    if refund_amount > 0:
        return f"Full Refund: {refunded} refunded to customer."
    if release_amount > 0:
        return f"Full Release: {released} released to provider."
    return "Dispute resolved with no payment changes."


def simulate_payout(
    db: Session,
    gateway: PaymentGateway,
    *,
    dispute_id: int,
    refund_amount: Decimal,
    release_amount: Decimal,
    resolution_note: str | None,
    admin: User | None,
    transfer_proof_url: str | None = None,
) -> PayoutSummary:
    """Split an escrowed payment between refund and release, then resolve the dispute.

    The refund leg runs first. A gateway failure there aborts the whole call
    before anything changed, so it can simply be retried. The release leg runs
    only once the refund is durable; its failure is reported in the summary
    and does not undo the refund, the dispute still ends RESOLVED.

    The release leg settles whatever remains in escrow after the refund, which
    may differ from ``release_amount``; ``released_amount`` reports what was
    actually paid out.
    """

    refund_amount = to_money(refund_amount)
    release_amount = to_money(release_amount)

    with atomic(db):
        dispute = _lock_dispute(db, dispute_id)
        require_status(dispute, ACTIVE_STATUSES, action="payout")
        payment_id = _resolve_payment_id(db, dispute)
        if payment_id is None:
            raise InvalidState(
                "No escrowed payment can be resolved for this dispute.",
                required=PaymentStatus.ESCROWED,
                code="NO_ESCROWED_PAYMENT",
                details={"dispute_id": dispute.id},
            )
        payment = lock_for_update(db, Payment, payment_id)
        require_status(payment, {PaymentStatus.ESCROWED}, action="dispute payout")
        _validate_split(payment, refund_amount, release_amount)
        if dispute.payment_id is None:
            dispute.payment_id = payment.id
        currency = payment.currency
        reason = dispute.reason

    summary = PayoutSummary(
        dispute_id=dispute_id,
        payment_id=payment_id,
        refund_amount=refund_amount,
        release_amount=release_amount,
    )

    if refund_amount > 0:
        payments_service.refund_payment(
            db,
            gateway,
            payment_id=payment_id,
            actor=admin,
            reason=f"Dispute #{dispute_id}: {reason}",
            amount=refund_amount,
        )
        summary.refund_status = COMPLETED

    if release_amount > 0:
        current = db.get(Payment, payment_id)
        db.refresh(current)
        if current.status in {PaymentStatus.RELEASED, PaymentStatus.TRANSFERRED}:
            summary.release_status = ALREADY_RELEASED
        else:
            try:
                released = payments_service.release_for_dispute(
                    db,
                    payment_id=payment_id,
                    admin=admin,
                    dispute_id=dispute_id,
                    transfer_proof_url=transfer_proof_url,
                )
                summary.release_status = COMPLETED
                summary.released_amount = to_money(released.amount)
                if summary.released_amount != release_amount:
                    logger.warning(
                        "Dispute release settled the remaining escrow balance",
                        extra={
                            "dispute_id": dispute_id,
                            "requested": str(release_amount),
                            "released": str(summary.released_amount),
                        },
                    )
            except Exception as exc:
                db.rollback()
                summary.release_status = FAILED
                summary.release_error = str(exc)
                logger.exception(
                    "Dispute release leg failed",
                    extra={"dispute_id": dispute_id, "payment_id": payment_id},
                )

    split = _split_note(
        refund_amount,
        summary.released_amount if summary.released_amount is not None else release_amount,
        currency,
    )
    note = _with_admin_note(split, resolution_note)
    if summary.release_status == FAILED:
        note = f"{note}\n\nRelease leg failed and must be retried: {summary.release_error}"
    summary.note = note

    outbox = Outbox()
    with atomic(db):
        dispute = _lock_dispute(db, dispute_id)
        project = _pin_project_disputed(db, dispute.project_id)
        rejected = _reject_open_milestones(db, project.id)
        apply_transition(dispute, DisputeStatus.RESOLVED, resolved_at=utcnow())
        _append_note(db, dispute, note, admin)
        log_audit(
            db,
            actor=actor_from_user(admin, fallback="admin"),
            action="DISPUTE_PAYOUT",
            entity="Dispute",
            entity_id=dispute.id,
            data={
                "payment_id": payment_id,
                "refund_amount": refund_amount,
                "release_amount": release_amount,
                "released_amount": summary.released_amount,
                "refund_status": summary.refund_status,
                "release_status": summary.release_status,
                "rejected_milestones": rejected,
                "transfer_proof_url": transfer_proof_url,
            },
        )
        _notify_parties(
            outbox,
            project,
            "Dispute Resolved",
            f"Dispute #{dispute.id} on \"{project.title}\" was resolved. {split}",
            {"dispute_id": dispute.id, "payment_id": payment_id},
        )
    outbox.dispatch(db)
    logger.info(
        "Dispute payout completed",
        extra={
            "dispute_id": dispute_id,
            "refund_status": summary.refund_status,
            "release_status": summary.release_status,
        },
    )
    return summary


def retry_dispute_release(
    db: Session,
    *,
    dispute_id: int,
    admin: User | None,
    transfer_proof_url: str | None = None,
) -> Payment:
    """Re-run the release leg of a resolved dispute whose payment is still escrowed."""

    dispute = db.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFound("Dispute not found.", code="DISPUTE_NOT_FOUND", details={"id": dispute_id})
    require_status(dispute, {DisputeStatus.RESOLVED}, action="release retry")
    payment_id = _resolve_payment_id(db, dispute)
    if payment_id is None:
        raise InvalidState(
            "No escrowed payment can be resolved for this dispute.",
            required=PaymentStatus.ESCROWED,
            code="NO_ESCROWED_PAYMENT",
            details={"dispute_id": dispute.id},
        )
    payment = payments_service.release_for_dispute(
        db,
        payment_id=payment_id,
        admin=admin,
        dispute_id=dispute_id,
        transfer_proof_url=transfer_proof_url,
    )
    with atomic(db):
        dispute = _lock_dispute(db, dispute_id)
        _append_note(
            db,
            dispute,
            f"Release retried: {format_money(payment.provider_amount, payment.currency)} released to provider.",
            admin,
        )
    return payment


def redo_milestone(
    db: Session,
    *,
    dispute_id: int,
    resolution_note: str | None,
    admin: User | None,
) -> Dispute:
    """Send the disputed milestone back to the provider while funds stay escrowed."""

    outbox = Outbox()
    with atomic(db):
        dispute = _lock_dispute(db, dispute_id)
        require_status(dispute, ACTIVE_STATUSES, action="redo")
        milestone_id = _dispute_milestone_id(dispute)
        if milestone_id is None:
            raise InvalidState(
                "This dispute is not attached to a milestone.",
                code="NO_MILESTONE",
                details={"dispute_id": dispute.id},
            )
        milestone = lock_for_update(db, Milestone, milestone_id)
        previous = milestone.status
        if previous != MilestoneStatus.IN_PROGRESS:
            apply_transition(milestone, MilestoneStatus.IN_PROGRESS)

        payment_id = _resolve_payment_id(db, dispute)
        if payment_id is not None:
            payment = lock_for_update(db, Payment, payment_id)
            payment.redo_count = (payment.redo_count or 0) + 1
            log_audit(
                db,
                actor=actor_from_user(admin, fallback="admin"),
                action="PAYMENT_REDO_REQUESTED",
                entity="Payment",
                entity_id=payment.id,
                data={"dispute_id": dispute.id, "redo_count": payment.redo_count},
            )

        project = lock_for_update(db, Project, dispute.project_id)
        if project.status == ProjectStatus.DISPUTED:
            apply_transition(project, ProjectStatus.IN_PROGRESS)

        apply_transition(dispute, DisputeStatus.UNDER_REVIEW)
        _append_note(db, dispute, _with_admin_note(REDO_NOTE, resolution_note), admin)
        log_audit(
            db,
            actor=actor_from_user(admin, fallback="admin"),
            action="DISPUTE_REDO",
            entity="Dispute",
            entity_id=dispute.id,
            data={"milestone_id": milestone.id, "from": previous},
        )
        outbox.add(
            project.provider_id,
            "Milestone Returned for Rework",
            "DISPUTE",
            f"\"{milestone.title}\" was returned to you for resubmission. The payment remains in escrow.",
            {"dispute_id": dispute.id, "milestone_id": milestone.id},
        )
        outbox.add(
            project.customer_id,
            "Dispute Under Review",
            "DISPUTE",
            f"The provider was asked to redo \"{milestone.title}\".",
            {"dispute_id": dispute.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return dispute


def auto_resolve_on_completion(db: Session, project_id: int) -> int:
    """Close out disputes under review once every milestone of the project is PAID.

    Never raises: the caller already committed the payment that triggered it.
    """

    try:
        if not all_milestones_paid(db, project_id):
            return 0
        resolved = 0
        with atomic(db):
            project = lock_for_update(db, Project, project_id)
            disputes = db.scalars(
                select(Dispute)
                .where(Dispute.project_id == project_id, Dispute.status == DisputeStatus.UNDER_REVIEW)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).all()
            for dispute in disputes:
                apply_transition(dispute, DisputeStatus.RESOLVED, resolved_at=utcnow())
                _append_note(db, dispute, AUTO_RESOLVE_NOTE, None, admin_name="System")
                log_audit(
                    db,
                    actor="system",
                    action="DISPUTE_AUTO_RESOLVED",
                    entity="Dispute",
                    entity_id=dispute.id,
                    data={"project_id": project_id},
                )
                resolved += 1
            try_transition(project, ProjectStatus.COMPLETED)
        if resolved:
            logger.info("Disputes auto-resolved", extra={"project_id": project_id, "count": resolved})
        return resolved
    except Exception:
        db.rollback()
        logger.exception("Automatic dispute resolution failed", extra={"project_id": project_id})
        return 0


def _dispute_amount(dispute: Dispute) -> Decimal:
    if dispute.payment is not None:
        return to_money(dispute.payment.amount)
    if dispute.contested_amount is not None:
        return to_money(dispute.contested_amount)
    if dispute.milestone is not None:
        return to_money(dispute.milestone.amount)
    return Decimal("0.00")


def get_dispute_stats(db: Session) -> dict[str, Any]:
    counts = {status.value: 0 for status in DisputeStatus}
    for status, count in db.execute(select(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status)):
        counts[status.value] = count
    total_amount = sum((_dispute_amount(d) for d in db.scalars(select(Dispute))), Decimal("0.00"))
    return {"total": sum(counts.values()), "by_status": counts, "total_amount": total_amount}


__all__ = [
    "AUTO_RESOLVE_NOTE",
    "PayoutSummary",
    "REDO_NOTE",
    "auto_resolve_on_completion",
    "get_dispute",
    "get_dispute_stats",
    "list_disputes",
    "raise_dispute",
    "redo_milestone",
    "resolve_dispute",
    "retry_dispute_release",
    "simulate_payout",
]
