"""Escrow payment engine: intent, escrow, release, bank transfer and refunds."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import atomic
from app.models.dispute import Dispute, DisputeResolutionNote, DisputeStatus
from app.models.milestone import Milestone, MilestoneStatus
from app.models.payment import BankTransferStatus, Payment, PaymentStatus
from app.models.project import Project, ProjectStatus
from app.models.user import User
from app.services.notifications import Outbox
from app.services.projects import ensure_customer, ensure_party_or_admin, is_admin
from app.services.psp_stripe import PaymentGateway, from_minor_units, to_minor_units
from app.services.transitions import (
    TERMINAL_DISPUTE_STATUSES,
    apply_transition,
    lock_for_update,
    require_status,
    try_transition,
)
from app.utils.audit import actor_from_user, log_audit
from app.utils.errors import (
    Conflict,
    GatewayError,
    InvalidState,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

# Un jalon ne peut être financé qu'une seule fois.
FINALIZED_STATUSES = frozenset(
    {
        PaymentStatus.ESCROWED,
        PaymentStatus.RELEASED,
        PaymentStatus.TRANSFERRED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
        PaymentStatus.DISPUTED,
    }
)
REUSABLE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.IN_PROGRESS})
CONVERGED_ESCROW_STATUSES = frozenset(
    {
        PaymentStatus.ESCROWED,
        PaymentStatus.RELEASED,
        PaymentStatus.TRANSFERRED,
        PaymentStatus.REFUNDED,
        PaymentStatus.DISPUTED,
    }
)
FUNDABLE_MILESTONE_STATUSES = frozenset({MilestoneStatus.LOCKED, MilestoneStatus.IN_PROGRESS})
NON_COMMITTED_STATUSES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.FAILED})
CURRENCY_SYMBOLS = {"MYR": "RM"}


def to_money(value: Decimal | int | str) -> Decimal:
    """Normalise an amount to two decimals, rounding half-up."""

    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def format_money(amount: Decimal, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol:
        return f"{symbol}{to_money(amount)}"
    return f"{to_money(amount)} {currency.upper()}"


def compute_fees(amount: Decimal, rate: Decimal | None = None) -> tuple[Decimal, Decimal]:
    """Split ``amount`` into (platform fee, provider amount).

    The fee is rounded half-up to cents and the provider amount absorbs the
    rounding difference, so the two always add up to ``amount`` exactly.
    """

    fee_rate = get_settings().PLATFORM_FEE_RATE if rate is None else Decimal(str(rate))
    total = to_money(amount)
    fee = (total * fee_rate).quantize(_CENT, rounding=ROUND_HALF_UP)
    return fee, total - fee


def _set_amount(payment: Payment, amount: Decimal) -> None:
    fee, provider_amount = compute_fees(amount)
    payment.amount = to_money(amount)
    payment.platform_fee_amount = fee
    payment.provider_amount = provider_amount


def _payment_snapshot(payment: Payment) -> dict:
    return {
        "amount": payment.amount,
        "platform_fee_amount": payment.platform_fee_amount,
        "provider_amount": payment.provider_amount,
        "status": payment.status,
    }


def _payments_for_milestone(db: Session, milestone_id: int, *, for_update: bool = False) -> list[Payment]:
    stmt = select(Payment).where(Payment.milestone_id == milestone_id).order_by(Payment.id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return list(db.scalars(stmt))


def _lock_payment_by(db: Session, *criteria) -> Optional[Payment]:
    stmt = (
        select(Payment)
        .where(*criteria)
        .order_by(Payment.id.desc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def committed_amount(db: Session, project_id: int, *, exclude_payment_id: int | None = None) -> Decimal:
    """Sum of payment amounts of a project that still count against its price."""

    stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
        Payment.project_id == project_id,
        Payment.status.not_in(list(NON_COMMITTED_STATUSES)),
    )
    if exclude_payment_id is not None:
        stmt = stmt.where(Payment.id != exclude_payment_id)
    return to_money(db.scalar(stmt) or 0)


def create_pending_payments(
    db: Session,
    project: Project,
    milestones: Iterable[Milestone],
    *,
    actor: str = "system",
) -> list[Payment]:
    """Materialise one PENDING payment per locked milestone (caller's transaction)."""

    created: list[Payment] = []
    for milestone in milestones:
        existing = [p for p in _payments_for_milestone(db, milestone.id) if p.status in REUSABLE_STATUSES]
        if existing:
            continue
        payment = Payment(
            milestone_id=milestone.id,
            project_id=project.id,
            customer_id=project.customer_id,
            provider_id=project.provider_id,
            currency=project.currency,
            status=PaymentStatus.PENDING,
            original_amount=to_money(milestone.amount),
            refunded_amount=Decimal("0.00"),
        )
        _set_amount(payment, milestone.amount)
        db.add(payment)
        created.append(payment)
    db.flush()
    for payment in created:
        log_audit(
            db,
            actor=actor,
            action="PAYMENT_CREATED",
            entity="Payment",
            entity_id=payment.id,
            data=_payment_snapshot(payment),
        )
    return created


@dataclass
class PaymentHandle:
    """What a customer needs to complete a payment on the client side."""

    payment_id: int
    client_secret: str | None
    amount: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    currency: str
    status: PaymentStatus


def initiate_payment(
    db: Session,
    gateway: PaymentGateway,
    *,
    milestone_id: int,
    actor: User,
    amount: Decimal | None = None,
) -> PaymentHandle:
    """Create or reuse the payment of a locked milestone and its gateway intent."""

    with atomic(db):
        milestone = lock_for_update(db, Milestone, milestone_id)
        project = lock_for_update(db, Project, milestone.project_id)
        ensure_customer(project, actor)

        if milestone.status not in FUNDABLE_MILESTONE_STATUSES or milestone.is_paid:
            raise InvalidState(
                f"Milestone is {milestone.status.value}; payment can only be initiated for a LOCKED milestone.",
                current=milestone.status,
                required=MilestoneStatus.LOCKED,
                code="MILESTONE_NOT_LOCKED",
                details={"milestone_id": milestone.id, "is_paid": milestone.is_paid},
            )

        payments = _payments_for_milestone(db, milestone.id, for_update=True)
        finalized = [p for p in payments if p.status in FINALIZED_STATUSES]
        if finalized:
            latest = finalized[-1]
            raise Conflict(
                f"Milestone already has a {latest.status.value} payment; a milestone can be funded only once.",
                code="PAYMENT_ALREADY_FINALIZED",
                details={"payment_id": latest.id, "status": latest.status.value},
            )

        value = to_money(milestone.amount if amount is None else amount)
        if value <= 0:
            raise ValidationFailed("Payment amount must be positive.", details={"amount": str(value)})

        reusable = next((p for p in reversed(payments) if p.status in REUSABLE_STATUSES), None)
        already = committed_amount(db, project.id, exclude_payment_id=reusable.id if reusable else None)
        if already + value > project.approved_price:
            raise ValidationFailed(
                "Payment would exceed the project's approved price.",
                code="APPROVED_PRICE_EXCEEDED",
                details={
                    "approved_price": str(project.approved_price),
                    "committed": str(already),
                    "amount": str(value),
                },
            )

        actor_name = actor_from_user(actor)
        client_secret: str | None = None
        if reusable is not None:
            payment = reusable
            changed = payment.amount != value
            if changed:
                _set_amount(payment, value)
                payment.original_amount = value
            if payment.gateway_intent_id:
                if changed:
                    gateway.update_intent_amount(payment.gateway_intent_id, to_minor_units(value))
                state = gateway.retrieve_intent(payment.gateway_intent_id)
                client_secret = state.client_secret
            else:
                client_secret = _create_intent(gateway, payment, milestone)
            action = "PAYMENT_INTENT_REUSED"
        else:
            payment = Payment(
                milestone_id=milestone.id,
                project_id=project.id,
                customer_id=project.customer_id,
                provider_id=project.provider_id,
                currency=project.currency,
                status=PaymentStatus.PENDING,
                original_amount=value,
                refunded_amount=Decimal("0.00"),
            )
            _set_amount(payment, value)
            db.add(payment)
            db.flush()
            client_secret = _create_intent(gateway, payment, milestone)
            action = "PAYMENT_INTENT_CREATED"

        log_audit(
            db,
            actor=actor_name,
            action=action,
            entity="Payment",
            entity_id=payment.id,
            data={**_payment_snapshot(payment), "gateway_reference": payment.gateway_intent_id},
        )

    logger.info(
        "Payment initiated",
        extra={"payment_id": payment.id, "milestone_id": milestone_id, "amount": str(payment.amount)},
    )
    return PaymentHandle(
        payment_id=payment.id,
        client_secret=client_secret,
        amount=payment.amount,
        platform_fee=payment.platform_fee_amount,
        provider_amount=payment.provider_amount,
        currency=payment.currency,
        status=payment.status,
    )


def _create_intent(gateway: PaymentGateway, payment: Payment, milestone: Milestone) -> str | None:
    handle = gateway.create_intent(
        to_minor_units(payment.amount),
        payment.currency,
        {
            "payment_id": payment.id,
            "milestone_id": milestone.id,
            "project_id": payment.project_id,
            "platform_fee": payment.platform_fee_amount,
            "provider_amount": payment.provider_amount,
        },
        idempotency_key=f"payment-{payment.id}-intent",
    )
    apply_transition(payment, PaymentStatus.IN_PROGRESS, gateway_intent_id=handle.intent_id)
    return handle.client_secret


def confirm_escrow(
    db: Session,
    *,
    intent_id: str,
    charge_id: str | None = None,
    gateway: PaymentGateway | None = None,
) -> Payment:
    """Mark the payment of ``intent_id`` as escrowed; a no-op once converged."""

    outbox = Outbox()
    with atomic(db):
        payment = _lock_payment_by(db, Payment.gateway_intent_id == intent_id)
        if payment is None:
            raise NotFound("No payment for this intent.", code="PAYMENT_NOT_FOUND", details={"intent_id": intent_id})

        if payment.status in CONVERGED_ESCROW_STATUSES:
            logger.info(
                "Escrow confirmation ignored; payment already converged",
                extra={"payment_id": payment.id, "status": payment.status.value},
            )
            return payment

        if charge_id is None and gateway is not None:
            charge_id = gateway.retrieve_intent(intent_id).charge_id

        now = utcnow()
        previous = apply_transition(
            payment,
            PaymentStatus.ESCROWED,
            escrowed_at=now,
            gateway_charge_id=charge_id,
            failure_reason=None,
        )
        milestone = lock_for_update(db, Milestone, payment.milestone_id)
        milestone.is_paid = True
        milestone.paid_at = now
        if milestone.status == MilestoneStatus.LOCKED:
            apply_transition(milestone, MilestoneStatus.IN_PROGRESS, started_at=milestone.started_at or now)
        elif milestone.status != MilestoneStatus.IN_PROGRESS:
            logger.warning(
                "Escrowed payment for a milestone outside the work flow",
                extra={"payment_id": payment.id, "milestone_id": milestone.id, "status": milestone.status.value},
            )

        log_audit(
            db,
            actor="gateway",
            action="PAYMENT_ESCROWED",
            entity="Payment",
            entity_id=payment.id,
            data={"from": previous, "gateway_reference": charge_id, "amount": payment.amount},
        )
        outbox.add(
            payment.provider_id,
            "Payment Received",
            "PAYMENT",
            f"{format_money(payment.amount, payment.currency)} for \"{milestone.title}\" is held in escrow. "
            "You can start working on this milestone.",
            {"payment_id": payment.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return payment


def mark_payment_failed(db: Session, *, intent_id: str, message: str | None = None) -> Payment:
    """Record a failed charge attempt; ignored when the payment moved on."""

    outbox = Outbox()
    with atomic(db):
        payment = _lock_payment_by(db, Payment.gateway_intent_id == intent_id)
        if payment is None:
            raise NotFound("No payment for this intent.", code="PAYMENT_NOT_FOUND", details={"intent_id": intent_id})
        if payment.status != PaymentStatus.IN_PROGRESS:
            logger.info(
                "Payment failure ignored; payment not awaiting capture",
                extra={"payment_id": payment.id, "status": payment.status.value},
            )
            return payment

        reason = message or "Payment failed"
        apply_transition(payment, PaymentStatus.FAILED, failure_reason=reason)
        log_audit(
            db,
            actor="gateway",
            action="PAYMENT_FAILED",
            entity="Payment",
            entity_id=payment.id,
            data={"failure_reason": reason},
        )
        outbox.add(
            payment.customer_id,
            "Payment Failed",
            "PAYMENT",
            f"Your payment of {format_money(payment.amount, payment.currency)} failed: {reason}",
            {"payment_id": payment.id, "milestone_id": payment.milestone_id},
        )
    outbox.dispatch(db)
    return payment


def _escrowed_payment_for(db: Session, milestone_id: int) -> Payment:
    payments = [
        p
        for p in _payments_for_milestone(db, milestone_id, for_update=True)
        if p.status not in {PaymentStatus.FAILED, PaymentStatus.PENDING, PaymentStatus.IN_PROGRESS}
    ]
    if not payments:
        raise InvalidState(
            "No escrowed payment found for this milestone.",
            required=PaymentStatus.ESCROWED,
            code="NO_ESCROWED_PAYMENT",
            details={"milestone_id": milestone_id},
        )
    return payments[-1]


def _require_payout_destination(db: Session, provider_id: int) -> User:
    provider = db.get(User, provider_id)
    if provider is None or not provider.has_payout_destination:
        raise PreconditionFailed(
            "Provider must add bank details before payment can be released.",
            code="PAYOUT_DESTINATION_MISSING",
            details={"provider_id": provider_id},
        )
    return provider


def _payout_required_content(payment: Payment, provider: User) -> str:
    return (
        f"Transfer {format_money(payment.provider_amount, payment.currency)} to "
        f"{provider.bank_account_name or provider.username} ({provider.bank_name}) for payment #{payment.id}."
    )


def release_payment(db: Session, *, milestone_id: int, actor: User) -> Payment:
    """Mark the escrowed payment of an approved milestone as ready for payout."""

    outbox = Outbox()
    with atomic(db):
        milestone = lock_for_update(db, Milestone, milestone_id)
        project = lock_for_update(db, Project, milestone.project_id)
        if not is_admin(actor):
            ensure_customer(project, actor)
        require_status(milestone, {MilestoneStatus.APPROVED}, action="release")
        payment = _escrowed_payment_for(db, milestone.id)
        require_status(payment, {PaymentStatus.ESCROWED}, action="release")
        provider = _require_payout_destination(db, payment.provider_id)

        apply_transition(
            payment,
            PaymentStatus.RELEASED,
            released_at=utcnow(),
            released_by=actor.id,
            bank_transfer_status=BankTransferStatus.PENDING,
        )
        log_audit(
            db,
            actor=actor_from_user(actor),
            action="PAYMENT_RELEASED",
            entity="Payment",
            entity_id=payment.id,
            data={"provider_amount": payment.provider_amount, "milestone_id": milestone.id},
        )
        outbox.add_admins(
            db,
            "Manual Payout Required",
            "PAYOUT_REQUIRED",
            _payout_required_content(payment, provider),
            {
                "payment_id": payment.id,
                "provider_id": provider.id,
                "bank_account_number": provider.bank_account_number,
            },
            sanitize=False,
        )
        outbox.add(
            payment.provider_id,
            "Payment Released!",
            "PAYMENT",
            f"{format_money(payment.provider_amount, payment.currency)} for \"{milestone.title}\" was released. "
            "The bank transfer will be processed shortly.",
            {"payment_id": payment.id, "milestone_id": milestone.id},
        )
    outbox.dispatch(db)
    return payment


def release_for_dispute(
    db: Session,
    *,
    payment_id: int,
    admin: User | None,
    dispute_id: int,
    transfer_proof_url: str | None = None,
) -> Payment:
    """Release an escrowed payment to the provider and settle it in one step.

    Used by dispute payouts: the milestone is not required to be APPROVED and
    is not marked PAID, since the dispute outcome decides its final state.
    """

    outbox = Outbox()
    with atomic(db):
        payment = lock_for_update(db, Payment, payment_id)
        require_status(payment, {PaymentStatus.ESCROWED}, action="dispute release")
        provider = _require_payout_destination(db, payment.provider_id)
        now = utcnow()
        apply_transition(
            payment,
            PaymentStatus.RELEASED,
            released_at=now,
            released_by=admin.id if admin else None,
            bank_transfer_status=BankTransferStatus.PENDING,
        )
        apply_transition(
            payment,
            PaymentStatus.TRANSFERRED,
            bank_transfer_status=BankTransferStatus.COMPLETED,
            bank_transfer_ref=transfer_proof_url or f"DISPUTE-{dispute_id}",
            bank_transfer_date=now,
        )
        log_audit(
            db,
            actor=actor_from_user(admin, fallback="admin"),
            action="PAYMENT_RELEASED_FOR_DISPUTE",
            entity="Payment",
            entity_id=payment.id,
            data={
                "dispute_id": dispute_id,
                "provider_amount": payment.provider_amount,
                "transfer_proof_url": transfer_proof_url,
            },
        )
        outbox.add(
            provider.id,
            "Dispute Payout Released",
            "PAYMENT",
            f"{format_money(payment.provider_amount, payment.currency)} was released to you "
            f"following the resolution of dispute #{dispute_id}.",
            {"payment_id": payment.id, "dispute_id": dispute_id},
        )
    outbox.dispatch(db)
    return payment


def confirm_bank_transfer(db: Session, *, payment_id: int, admin: User | None, reference: str) -> Payment:
    """Record the manual bank transfer of a released payment; milestone becomes PAID."""

    reference = (reference or "").strip()
    if not reference:
        raise ValidationFailed("A bank transfer reference is required.", code="REFERENCE_REQUIRED")

    outbox = Outbox()
    with atomic(db):
        payment = lock_for_update(db, Payment, payment_id)
        require_status(payment, {PaymentStatus.RELEASED}, action="bank transfer confirmation")
        milestone = lock_for_update(db, Milestone, payment.milestone_id)
        now = utcnow()
        apply_transition(
            payment,
            PaymentStatus.TRANSFERRED,
            bank_transfer_status=BankTransferStatus.COMPLETED,
            bank_transfer_ref=reference,
            bank_transfer_date=now,
        )
        apply_transition(milestone, MilestoneStatus.PAID, is_paid=True)
        log_audit(
            db,
            actor=actor_from_user(admin, fallback="admin"),
            action="BANK_TRANSFER_CONFIRMED",
            entity="Payment",
            entity_id=payment.id,
            data={"bank_transfer_ref": reference, "provider_amount": payment.provider_amount},
        )
        outbox.add(
            payment.provider_id,
            "Bank Transfer Completed",
            "PAYMENT",
            f"{format_money(payment.provider_amount, payment.currency)} for \"{milestone.title}\" "
            f"has been transferred to your bank account (ref {reference}).",
            {"payment_id": payment.id, "milestone_id": milestone.id},
        )
        project_id = payment.project_id
    outbox.dispatch(db)
    _after_milestone_paid(db, project_id)
    return payment


def _after_milestone_paid(db: Session, project_id: int) -> None:
    from app.services import disputes as disputes_service

    stmt = select(Milestone.status).where(Milestone.project_id == project_id)
    statuses = list(db.scalars(stmt))
    if statuses and all(s == MilestoneStatus.PAID for s in statuses):
        disputes_service.auto_resolve_on_completion(db, project_id)


def refund_payment(
    db: Session,
    gateway: PaymentGateway,
    *,
    payment_id: int,
    actor: User | None,
    reason: str,
    amount: Decimal | None = None,
) -> Payment:
    """Refund all or part of an escrowed payment through the gateway."""

    outbox = Outbox()
    with atomic(db):
        payment = lock_for_update(db, Payment, payment_id)
        require_status(payment, {PaymentStatus.ESCROWED}, action="refund")
        if not payment.gateway_charge_id:
            raise PreconditionFailed(
                "The payment has no captured charge to refund.",
                code="CHARGE_NOT_CAPTURED",
                details={"payment_id": payment.id},
            )

        current = to_money(payment.amount)
        if amount is None:
            refund_amount = current
        else:
            refund_amount = to_money(amount)
            if refund_amount <= 0:
                raise ValidationFailed("Refund amount must be positive.", details={"amount": str(refund_amount)})
            if refund_amount > current:
                raise ValidationFailed(
                    "Refund amount cannot exceed the escrowed amount.",
                    code="REFUND_EXCEEDS_AMOUNT",
                    details={"amount": str(refund_amount), "escrowed": str(current)},
                )
        is_full = refund_amount >= current
        refunded_before = to_money(payment.refunded_amount or 0)
        minor = to_minor_units(refund_amount)

        result = gateway.refund(
            payment.gateway_charge_id,
            minor,
            {"payment_id": payment.id, "milestone_id": payment.milestone_id, "reason": reason},
            idempotency_key=f"payment-{payment.id}-refund-{to_minor_units(refunded_before)}-{minor}",
        )

        now = utcnow()
        refunded_total = refunded_before + refund_amount
        milestone = lock_for_update(db, Milestone, payment.milestone_id)
        if is_full:
            apply_transition(
                payment,
                PaymentStatus.REFUNDED,
                refunded_amount=refunded_total,
                gateway_refund_id=result.refund_id,
                refunded_at=now,
            )
            milestone.is_paid = False
            try_transition(milestone, MilestoneStatus.CANCELLED)
        else:
            apply_transition(
                payment,
                PaymentStatus.ESCROWED,
                refunded_amount=refunded_total,
                gateway_refund_id=result.refund_id,
            )
            _set_amount(payment, current - refund_amount)

        log_audit(
            db,
            actor=actor_from_user(actor, fallback="admin"),
            action="PAYMENT_REFUNDED" if is_full else "PAYMENT_PARTIALLY_REFUNDED",
            entity="Payment",
            entity_id=payment.id,
            data={
                "reason": reason,
                "refund_amount": refund_amount,
                "original_amount": payment.original_amount,
                "refunded_total": refunded_total,
                "remaining": payment.amount if not is_full else Decimal("0.00"),
                "refund_id": result.refund_id,
            },
        )
        money = format_money(refund_amount, payment.currency)
        if is_full:
            outbox.add(
                payment.customer_id,
                "Payment Refunded",
                "PAYMENT",
                f"{money} for \"{milestone.title}\" has been refunded. Reason: {reason}",
                {"payment_id": payment.id},
            )
            outbox.add(
                payment.provider_id,
                "Payment Refunded",
                "PAYMENT",
                f"The escrowed payment for \"{milestone.title}\" has been refunded to the company.",
                {"payment_id": payment.id},
            )
        else:
            outbox.add(
                payment.customer_id,
                "Partial Refund Processed",
                "PAYMENT",
                f"{money} of your payment for \"{milestone.title}\" has been refunded. "
                f"{format_money(payment.amount, payment.currency)} remains in escrow.",
                {"payment_id": payment.id},
            )
    outbox.dispatch(db)
    logger.info(
        "Payment refunded",
        extra={"payment_id": payment_id, "full": is_full, "refund_amount": str(refund_amount)},
    )
    return payment


def converge_refunded(
    db: Session,
    *,
    charge_id: str,
    fully_refunded: bool,
    amount_refunded_minor: int | None = None,
) -> Payment | None:
    """Bring a payment to REFUNDED when the gateway reports a full refund."""

    with atomic(db):
        payment = _lock_payment_by(db, Payment.gateway_charge_id == charge_id)
        if payment is None:
            logger.info("charge.refunded for unknown charge", extra={"charge_id": charge_id})
            return None
        if payment.status == PaymentStatus.REFUNDED or not fully_refunded:
            logger.info(
                "charge.refunded converged or partial; nothing to do",
                extra={"payment_id": payment.id, "status": payment.status.value, "full": fully_refunded},
            )
            return payment
        if payment.status not in {PaymentStatus.ESCROWED, PaymentStatus.DISPUTED}:
            logger.warning(
                "Gateway refund reported for a payment outside escrow",
                extra={"payment_id": payment.id, "status": payment.status.value},
            )
            return payment

        refunded_total = (
            from_minor_units(amount_refunded_minor)
            if amount_refunded_minor is not None
            else to_money(payment.refunded_amount or 0) + to_money(payment.amount)
        )
        apply_transition(payment, PaymentStatus.REFUNDED, refunded_amount=refunded_total, refunded_at=utcnow())
        milestone = lock_for_update(db, Milestone, payment.milestone_id)
        milestone.is_paid = False
        try_transition(milestone, MilestoneStatus.CANCELLED)
        log_audit(
            db,
            actor="gateway",
            action="PAYMENT_REFUND_CONVERGED",
            entity="Payment",
            entity_id=payment.id,
            data={"refunded_total": refunded_total},
        )
    return payment


def open_chargeback(
    db: Session,
    *,
    charge_id: str,
    gateway_dispute_id: str,
    reason: str | None = None,
    amount_minor: int | None = None,
) -> Dispute | None:
    """Record a gateway chargeback as a dispute and freeze the payment."""

    outbox = Outbox()
    with atomic(db):
        existing = db.scalars(select(Dispute).where(Dispute.gateway_dispute_id == gateway_dispute_id)).first()
        if existing is not None:
            logger.info("Chargeback already recorded", extra={"dispute_id": existing.id})
            return existing
        payment = _lock_payment_by(db, Payment.gateway_charge_id == charge_id)
        if payment is None:
            logger.info("charge.dispute.created for unknown charge", extra={"charge_id": charge_id})
            return None

        contested = from_minor_units(amount_minor) if amount_minor is not None else payment.amount
        dispute = Dispute(
            project_id=payment.project_id,
            milestone_id=payment.milestone_id,
            payment_id=payment.id,
            raised_by=payment.customer_id,
            reason=f"Chargeback: {reason or 'unspecified'}",
            contested_amount=contested,
            status=DisputeStatus.OPEN,
            gateway_dispute_id=gateway_dispute_id,
        )
        db.add(dispute)
        try_transition(payment, PaymentStatus.DISPUTED)
        milestone = lock_for_update(db, Milestone, payment.milestone_id)
        try_transition(milestone, MilestoneStatus.DISPUTED)
        project = lock_for_update(db, Project, payment.project_id)
        try_transition(project, ProjectStatus.DISPUTED)
        db.flush()
        log_audit(
            db,
            actor="gateway",
            action="CHARGEBACK_OPENED",
            entity="Dispute",
            entity_id=dispute.id,
            data={"payment_id": payment.id, "contested_amount": contested, "gateway_reference": gateway_dispute_id},
        )
        for user_id in (payment.customer_id, payment.provider_id):
            outbox.add(
                user_id,
                "Payment Disputed",
                "DISPUTE",
                f"A chargeback was opened on payment #{payment.id}; the milestone is frozen until it is resolved.",
                {"dispute_id": dispute.id, "payment_id": payment.id},
            )
        outbox.add_admins(
            db,
            "Chargeback Opened",
            "DISPUTE",
            f"Chargeback on payment #{payment.id} ({format_money(contested, payment.currency)}).",
            {"dispute_id": dispute.id},
        )
    outbox.dispatch(db)
    return dispute


def close_chargeback(db: Session, *, gateway_dispute_id: str, gateway_status: str) -> Dispute | None:
    """Apply the gateway's verdict on a chargeback."""

    won = gateway_status in {"won", "warning_closed"}
    with atomic(db):
        dispute = db.scalars(
            select(Dispute)
            .where(Dispute.gateway_dispute_id == gateway_dispute_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if dispute is None:
            logger.info("charge.dispute.closed for unknown dispute", extra={"gateway_dispute_id": gateway_dispute_id})
            return None
        if dispute.status in TERMINAL_DISPUTE_STATUSES:
            logger.info("Chargeback already closed", extra={"dispute_id": dispute.id})
            return dispute

        payment = lock_for_update(db, Payment, dispute.payment_id) if dispute.payment_id else None
        if payment is not None and payment.status == PaymentStatus.DISPUTED:
            if won:
                apply_transition(payment, PaymentStatus.ESCROWED)
            else:
                apply_transition(
                    payment,
                    PaymentStatus.REFUNDED,
                    refunded_amount=to_money(payment.refunded_amount or 0) + to_money(payment.amount),
                    refunded_at=utcnow(),
                )
        if dispute.milestone_id:
            milestone = lock_for_update(db, Milestone, dispute.milestone_id)
            try_transition(milestone, MilestoneStatus.IN_PROGRESS if won else MilestoneStatus.CANCELLED)
            if not won:
                milestone.is_paid = False
        if won:
            project = lock_for_update(db, Project, dispute.project_id)
            try_transition(project, ProjectStatus.IN_PROGRESS)

        apply_transition(dispute, DisputeStatus.RESOLVED, resolved_at=utcnow())
        dispute.notes.append(
            DisputeResolutionNote(
                note=f"Gateway dispute closed: {gateway_status}.",
                admin_id=None,
                admin_name="Payment Gateway",
            )
        )
        log_audit(
            db,
            actor="gateway",
            action="CHARGEBACK_CLOSED",
            entity="Dispute",
            entity_id=dispute.id,
            data={"gateway_status": gateway_status, "payment_id": dispute.payment_id},
        )
    return dispute


def get_payment(db: Session, payment_id: int, actor: User | None) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found.", code="PAYMENT_NOT_FOUND", details={"id": payment_id})
    project = db.get(Project, payment.project_id)
    ensure_party_or_admin(project, actor)
    return payment


def get_pending_payouts(db: Session) -> list[Payment]:
    """Released payments waiting for a manual bank transfer, oldest first."""

    stmt = (
        select(Payment)
        .where(
            Payment.status == PaymentStatus.RELEASED,
            Payment.bank_transfer_status == BankTransferStatus.PENDING,
        )
        .order_by(Payment.released_at.asc(), Payment.id.asc())
    )
    return list(db.scalars(stmt))


def get_provider_earnings(db: Session, provider_id: int) -> dict[str, Decimal]:
    stmt = (
        select(Payment.status, func.coalesce(func.sum(Payment.provider_amount), 0))
        .where(
            Payment.provider_id == provider_id,
            Payment.status.in_([PaymentStatus.ESCROWED, PaymentStatus.RELEASED, PaymentStatus.TRANSFERRED]),
        )
        .group_by(Payment.status)
    )
    totals = {status: to_money(value) for status, value in db.execute(stmt)}
    escrowed = totals.get(PaymentStatus.ESCROWED, Decimal("0.00"))
    released = totals.get(PaymentStatus.RELEASED, Decimal("0.00"))
    transferred = totals.get(PaymentStatus.TRANSFERRED, Decimal("0.00"))
    return {
        "escrowed": escrowed,
        "released": released,
        "transferred": transferred,
        "total": escrowed + released + transferred,
    }


def reconcile_stale_intents(
    db: Session,
    gateway: PaymentGateway,
    *,
    stale_after_minutes: int | None = None,
) -> dict[str, int]:
    """Converge IN_PROGRESS payments whose webhook never arrived."""

    minutes = get_settings().RECONCILE_STALE_AFTER_MINUTES if stale_after_minutes is None else stale_after_minutes
    cutoff = utcnow() - timedelta(minutes=minutes)
    stmt = select(Payment.id, Payment.gateway_intent_id).where(
        Payment.status == PaymentStatus.IN_PROGRESS,
        Payment.gateway_intent_id.is_not(None),
        Payment.updated_at <= cutoff,
    )
    candidates = list(db.execute(stmt))
    stats = {"checked": 0, "escrowed": 0, "failed": 0, "errors": 0}
    for payment_id, intent_id in candidates:
        stats["checked"] += 1
        try:
            state = gateway.retrieve_intent(intent_id)
            if state.status == "succeeded":
                confirm_escrow(db, intent_id=intent_id, charge_id=state.charge_id)
                stats["escrowed"] += 1
            elif state.status == "canceled" or (state.status == "requires_payment_method" and state.last_error):
                mark_payment_failed(db, intent_id=intent_id, message=state.last_error or "Payment intent canceled")
                stats["failed"] += 1
        except (GatewayError, InvalidState) as exc:
            stats["errors"] += 1
            logger.warning(
                "Intent reconciliation failed",
                extra={"payment_id": payment_id, "error": str(exc)},
            )
    logger.info("Intent reconciliation finished", extra=stats)
    return stats


__all__ = [
    "FINALIZED_STATUSES",
    "PaymentHandle",
    "committed_amount",
    "compute_fees",
    "confirm_bank_transfer",
    "confirm_escrow",
    "converge_refunded",
    "create_pending_payments",
    "format_money",
    "get_payment",
    "get_pending_payouts",
    "get_provider_earnings",
    "initiate_payment",
    "mark_payment_failed",
    "open_chargeback",
    "close_chargeback",
    "reconcile_stale_intents",
    "refund_payment",
    "release_for_dispute",
    "release_payment",
    "to_money",
]
