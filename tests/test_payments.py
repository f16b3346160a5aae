"""Escrow payment engine: funding, escrow convergence, release, transfer and refunds."""
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import BankTransferStatus, MilestoneStatus, Payment, PaymentStatus, UserRole
from app.models.audit import AuditLog
from app.models.notification import Notification
from app.services import milestones as milestones_service
from app.services import payments as payments_service
from app.utils.errors import (
    AuthorizationFailed,
    Conflict,
    GatewayError,
    InvalidState,
    NotFound,
    PreconditionFailed,
    ValidationFailed,
)


def _approve(db_session, parties, milestone):
    milestones_service.submit_milestone(db_session, milestone.id, parties.provider, note="done")
    return milestones_service.approve_submission(db_session, milestone.id, parties.company)


def test_locked_milestone_is_escrowed_after_gateway_success(db_session, parties, lock_plan, gateway):
    (milestone,) = lock_plan("500.00")

    handle = payments_service.initiate_payment(db_session, gateway, milestone_id=milestone.id, actor=parties.company)
    assert handle.amount == Decimal("500.00")
    assert handle.platform_fee == Decimal("50.00")
    assert handle.provider_amount == Decimal("450.00")
    assert handle.status == PaymentStatus.IN_PROGRESS
    assert handle.client_secret == "pi_test_1_secret"
    assert gateway.calls[0] == ("create_intent", f"payment-{handle.payment_id}-intent")
    assert gateway.intents["pi_test_1"]["amount"] == 50000

    charge_id = gateway.succeed("pi_test_1")
    payment = payments_service.confirm_escrow(db_session, intent_id="pi_test_1", charge_id=charge_id)

    assert payment.status == PaymentStatus.ESCROWED
    assert payment.gateway_charge_id == "ch_test_1"
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.IN_PROGRESS
    assert milestone.is_paid is True


def test_confirm_escrow_is_idempotent(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("500.00")
    payment = escrow_milestone(milestone)
    escrowed_at = payment.escrowed_at

    again = payments_service.confirm_escrow(db_session, intent_id=payment.gateway_intent_id, charge_id="ch_other")

    assert again.id == payment.id
    assert again.status == PaymentStatus.ESCROWED
    assert again.gateway_charge_id == "ch_test_1"
    assert again.escrowed_at == escrowed_at
    escrows = db_session.scalars(select(AuditLog).where(AuditLog.action == "PAYMENT_ESCROWED")).all()
    assert len(escrows) == 1
    received = db_session.scalars(
        select(Notification).where(Notification.user_id == parties.provider.id, Notification.title == "Payment Received")
    ).all()
    assert len(received) == 1


def test_confirm_escrow_unknown_intent(db_session):
    with pytest.raises(NotFound) as excinfo:
        payments_service.confirm_escrow(db_session, intent_id="pi_missing")
    assert excinfo.value.code == "PAYMENT_NOT_FOUND"


def test_reinitiate_reuses_pending_intent(db_session, parties, lock_plan, gateway):
    (milestone,) = lock_plan("500.00")
    first = payments_service.initiate_payment(db_session, gateway, milestone_id=milestone.id, actor=parties.company)
    second = payments_service.initiate_payment(
        db_session, gateway, milestone_id=milestone.id, actor=parties.company, amount=Decimal("400.00")
    )

    assert second.payment_id == first.payment_id
    assert second.amount == Decimal("400.00")
    assert second.platform_fee + second.provider_amount == Decimal("400.00")
    assert [call[0] for call in gateway.calls].count("create_intent") == 1
    assert ("update_intent_amount", "pi_test_1") in gateway.calls
    assert gateway.intents["pi_test_1"]["amount"] == 40000


def test_initiate_rejects_amount_over_approved_price(db_session, parties, lock_plan, gateway):
    first, second = lock_plan("600.00", "400.00")
    payments_service.initiate_payment(db_session, gateway, milestone_id=first.id, actor=parties.company)
    with pytest.raises(ValidationFailed) as excinfo:
        payments_service.initiate_payment(
            db_session, gateway, milestone_id=second.id, actor=parties.company, amount=Decimal("450.00")
        )
    assert excinfo.value.code == "APPROVED_PRICE_EXCEEDED"


def test_initiate_requires_locked_milestone(db_session, parties, make_draft, gateway):
    created = milestones_service.replace_milestones(
        db_session, parties.project.id, parties.company, [make_draft(1, "100.00")]
    )
    with pytest.raises(InvalidState) as excinfo:
        payments_service.initiate_payment(db_session, gateway, milestone_id=created[0].id, actor=parties.company)
    assert excinfo.value.code == "MILESTONE_NOT_LOCKED"


def test_gateway_failure_on_initiate_leaves_payment_pending(db_session, parties, lock_plan, gateway):
    (milestone,) = lock_plan("100.00")
    gateway.fail_on.add("create_intent")
    with pytest.raises(GatewayError) as excinfo:
        payments_service.initiate_payment(db_session, gateway, milestone_id=milestone.id, actor=parties.company)
    assert excinfo.value.retryable is True
    payment = db_session.scalars(select(Payment).where(Payment.milestone_id == milestone.id)).one()
    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway_intent_id is None


def test_payment_failure_then_late_success(db_session, parties, lock_plan, gateway):
    (milestone,) = lock_plan("100.00")
    payments_service.initiate_payment(db_session, gateway, milestone_id=milestone.id, actor=parties.company)

    failed = payments_service.mark_payment_failed(db_session, intent_id="pi_test_1", message="card_declined")
    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "card_declined"

    escrowed = payments_service.confirm_escrow(db_session, intent_id="pi_test_1", charge_id="ch_late")
    assert escrowed.status == PaymentStatus.ESCROWED
    assert escrowed.failure_reason is None


def test_release_and_bank_transfer(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("500.00")
    payment = escrow_milestone(milestone)
    _approve(db_session, parties, milestone)

    released = payments_service.release_payment(db_session, milestone_id=milestone.id, actor=parties.company)
    assert released.status == PaymentStatus.RELEASED
    assert released.bank_transfer_status == BankTransferStatus.PENDING
    assert [p.id for p in payments_service.get_pending_payouts(db_session)] == [payment.id]

    admin_alert = db_session.scalars(
        select(Notification).where(
            Notification.user_id == parties.admin.id, Notification.title == "Manual Payout Required"
        )
    ).one()
    assert admin_alert.metadata_json["bank_account_number"] == "5140 1234 5678"
    provider_alert = db_session.scalars(
        select(Notification).where(
            Notification.user_id == parties.provider.id, Notification.title == "Payment Released!"
        )
    ).one()
    assert "bank_account_number" not in provider_alert.metadata_json

    with pytest.raises(ValidationFailed):
        payments_service.confirm_bank_transfer(db_session, payment_id=payment.id, admin=parties.admin, reference=" ")

    transferred = payments_service.confirm_bank_transfer(
        db_session, payment_id=payment.id, admin=parties.admin, reference="MBB-2026-0001"
    )
    assert transferred.status == PaymentStatus.TRANSFERRED
    assert transferred.bank_transfer_status == BankTransferStatus.COMPLETED
    assert transferred.bank_transfer_ref == "MBB-2026-0001"
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.PAID
    assert payments_service.get_pending_payouts(db_session) == []

    earnings = payments_service.get_provider_earnings(db_session, parties.provider.id)
    assert earnings["transferred"] == Decimal("450.00")
    assert earnings["total"] == Decimal("450.00")


def test_transferred_milestone_cannot_be_funded_again(db_session, parties, lock_plan, escrow_milestone, gateway):
    (milestone,) = lock_plan("500.00")
    payment = escrow_milestone(milestone)
    _approve(db_session, parties, milestone)
    payments_service.release_payment(db_session, milestone_id=milestone.id, actor=parties.company)
    payments_service.confirm_bank_transfer(db_session, payment_id=payment.id, admin=parties.admin, reference="REF-1")

    with pytest.raises((Conflict, InvalidState)):
        payments_service.initiate_payment(db_session, gateway, milestone_id=milestone.id, actor=parties.company)


def test_escrowed_milestone_cannot_be_funded_twice(db_session, parties, lock_plan, escrow_milestone, gateway):
    (milestone,) = lock_plan("500.00")
    payment = escrow_milestone(milestone)
    db_session.refresh(milestone)
    milestone.is_paid = False
    db_session.commit()

    with pytest.raises(Conflict) as excinfo:
        payments_service.initiate_payment(db_session, gateway, milestone_id=milestone.id, actor=parties.company)
    assert excinfo.value.details["payment_id"] == payment.id


def test_release_requires_payout_destination(db_session, parties, lock_plan, escrow_milestone):
    parties.provider.bank_account_number = None
    db_session.commit()
    (milestone,) = lock_plan("500.00")
    escrow_milestone(milestone)
    _approve(db_session, parties, milestone)

    with pytest.raises(PreconditionFailed) as excinfo:
        payments_service.release_payment(db_session, milestone_id=milestone.id, actor=parties.company)
    assert excinfo.value.code == "PAYOUT_DESTINATION_MISSING"
    assert excinfo.value.status_code == 412


def test_release_requires_approved_milestone(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("500.00")
    escrow_milestone(milestone)
    with pytest.raises(InvalidState) as excinfo:
        payments_service.release_payment(db_session, milestone_id=milestone.id, actor=parties.company)
    assert excinfo.value.details["current"] == "IN_PROGRESS"
    assert excinfo.value.details["required"] == ["APPROVED"]


def test_partial_refund_recomputes_fees(db_session, parties, lock_plan, escrow_milestone, gateway):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)

    refunded = payments_service.refund_payment(
        db_session, gateway, payment_id=payment.id, actor=parties.admin, reason="scope reduced", amount=Decimal("30")
    )

    assert refunded.status == PaymentStatus.ESCROWED
    assert refunded.amount == Decimal("70.00")
    assert refunded.platform_fee_amount == Decimal("7.00")
    assert refunded.provider_amount == Decimal("63.00")
    assert refunded.refunded_amount == Decimal("30.00")
    assert refunded.original_amount == Decimal("100.00")
    assert gateway.refunds[0]["amount"] == 3000
    assert gateway.refunds[0]["idempotency_key"] == f"payment-{payment.id}-refund-0-3000"


def test_full_refund_cancels_milestone(db_session, parties, lock_plan, escrow_milestone, gateway):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)

    refunded = payments_service.refund_payment(
        db_session, gateway, payment_id=payment.id, actor=parties.admin, reason="cancelled"
    )

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refunded_amount == Decimal("100.00")
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.CANCELLED
    assert milestone.is_paid is False


def test_refund_cannot_exceed_escrow(db_session, parties, lock_plan, escrow_milestone, gateway):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)
    with pytest.raises(ValidationFailed) as excinfo:
        payments_service.refund_payment(
            db_session, gateway, payment_id=payment.id, actor=parties.admin, reason="x", amount=Decimal("100.01")
        )
    assert excinfo.value.code == "REFUND_EXCEEDS_AMOUNT"
    assert gateway.refunds == []


def test_refund_gateway_failure_changes_nothing(db_session, parties, lock_plan, escrow_milestone, gateway):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)
    gateway.fail_on.add("refund")

    with pytest.raises(GatewayError):
        payments_service.refund_payment(
            db_session, gateway, payment_id=payment.id, actor=parties.admin, reason="x", amount=Decimal("10")
        )

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.ESCROWED
    assert payment.amount == Decimal("100.00")


def test_refund_of_pending_payment_is_invalid(db_session, parties, lock_plan, gateway):
    (milestone,) = lock_plan("100.00")
    payment = db_session.scalars(select(Payment).where(Payment.milestone_id == milestone.id)).one()
    with pytest.raises(InvalidState):
        payments_service.refund_payment(db_session, gateway, payment_id=payment.id, actor=parties.admin, reason="x")


def test_gateway_full_refund_converges(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)

    payments_service.converge_refunded(db_session, charge_id="ch_test_1", fully_refunded=False)
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.ESCROWED

    payments_service.converge_refunded(db_session, charge_id="ch_test_1", fully_refunded=True, amount_refunded_minor=10000)
    payments_service.converge_refunded(db_session, charge_id="ch_test_1", fully_refunded=True, amount_refunded_minor=10000)
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded_amount == Decimal("100.00")
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.CANCELLED
    assert milestone.is_paid is False


def test_chargeback_lost_refunds_payment(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)

    dispute = payments_service.open_chargeback(
        db_session, charge_id="ch_test_1", gateway_dispute_id="dp_1", reason="fraudulent", amount_minor=10000
    )
    duplicate = payments_service.open_chargeback(db_session, charge_id="ch_test_1", gateway_dispute_id="dp_1")
    assert duplicate.id == dispute.id
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.DISPUTED
    assert dispute.reason == "Chargeback: fraudulent"

    closed = payments_service.close_chargeback(db_session, gateway_dispute_id="dp_1", gateway_status="lost")
    db_session.refresh(payment)
    db_session.refresh(milestone)
    assert payment.status == PaymentStatus.REFUNDED
    assert milestone.status == MilestoneStatus.CANCELLED
    assert milestone.is_paid is False
    assert closed.notes[-1].note == "Gateway dispute closed: lost."
    assert closed.notes[-1].admin_name == "Payment Gateway"


def test_chargeback_won_restores_escrow(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)
    payments_service.open_chargeback(db_session, charge_id="ch_test_1", gateway_dispute_id="dp_2")
    payments_service.close_chargeback(db_session, gateway_dispute_id="dp_2", gateway_status="won")

    db_session.refresh(payment)
    db_session.refresh(milestone)
    assert payment.status == PaymentStatus.ESCROWED
    assert milestone.status == MilestoneStatus.IN_PROGRESS
    assert milestone.is_paid is True


def test_reconcile_converges_stale_intents(db_session, parties, lock_plan, gateway):
    first, second = lock_plan("100.00", "50.00")
    payments_service.initiate_payment(db_session, gateway, milestone_id=first.id, actor=parties.company)
    payments_service.initiate_payment(db_session, gateway, milestone_id=second.id, actor=parties.company)
    gateway.succeed("pi_test_1")
    gateway.intents["pi_test_2"].update(status="canceled")

    stats = payments_service.reconcile_stale_intents(db_session, gateway, stale_after_minutes=0)

    assert stats == {"checked": 2, "escrowed": 1, "failed": 1, "errors": 0}
    statuses = {
        p.gateway_intent_id: p.status for p in db_session.scalars(select(Payment).where(Payment.project_id == parties.project.id))
    }
    assert statuses == {"pi_test_1": PaymentStatus.ESCROWED, "pi_test_2": PaymentStatus.FAILED}


def test_outsider_cannot_read_payment(db_session, parties, lock_plan, make_user):
    (milestone,) = lock_plan("100.00")
    payment = db_session.scalars(select(Payment).where(Payment.milestone_id == milestone.id)).one()
    stranger = make_user(UserRole.PROVIDER)
    with pytest.raises(AuthorizationFailed):
        payments_service.get_payment(db_session, payment.id, stranger)
    assert payments_service.get_payment(db_session, payment.id, parties.admin).id == payment.id
