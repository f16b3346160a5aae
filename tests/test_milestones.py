"""Milestone plan validation, dual approval and the work lifecycle."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import MilestoneStatus, Payment, PaymentStatus, ProjectStatus, UserRole
from app.models.audit import AuditLog
from app.services import milestones as milestones_service
from app.utils.errors import AuthorizationFailed, InvalidState, ValidationFailed
from app.utils.time import utctoday


def test_plan_with_too_many_milestones_is_rejected(make_draft):
    drafts = [make_draft(i, "10.00") for i in range(1, 22)]
    with pytest.raises(ValidationFailed) as excinfo:
        milestones_service.validate_milestone_plan(drafts, approved_price=Decimal("1000.00"))
    assert excinfo.value.details["max"] == 20


def test_plan_with_gap_in_sequence_is_rejected(make_draft):
    drafts = [make_draft(1, "10.00"), make_draft(2, "10.00"), make_draft(4, "10.00")]
    with pytest.raises(ValidationFailed) as excinfo:
        milestones_service.validate_milestone_plan(drafts)
    assert any("consecutive" in error for error in excinfo.value.details["errors"])


def test_plan_with_past_due_date_is_rejected(make_draft):
    yesterday = make_draft(1, "10.00")
    yesterday.due_date = utctoday() - timedelta(days=1)
    with pytest.raises(ValidationFailed) as excinfo:
        milestones_service.validate_milestone_plan([yesterday])
    assert excinfo.value.details["errors"] == ["Milestone 1: due date cannot be in the past"]


def test_plan_reports_every_error_at_once(make_draft):
    bad_amount = make_draft(1, "0")
    no_title = make_draft(2, "5.00")
    no_title.title = "   "
    with pytest.raises(ValidationFailed) as excinfo:
        milestones_service.validate_milestone_plan([bad_amount, no_title])
    errors = excinfo.value.details["errors"]
    assert "Milestone 1: amount must be positive" in errors
    assert "Milestone 2: title is required" in errors


def test_plan_total_cannot_exceed_approved_price(make_draft):
    with pytest.raises(ValidationFailed):
        milestones_service.validate_milestone_plan(
            [make_draft(1, "600.00"), make_draft(2, "500.00")], approved_price=Decimal("1000.00")
        )


def test_plan_is_returned_sorted(make_draft):
    plan = milestones_service.validate_milestone_plan([make_draft(2, "1.00"), make_draft(1, "2.00")])
    assert [d.sequence for d in plan] == [1, 2]


def test_replace_resets_approvals(db_session, parties, make_draft):
    project = parties.project
    milestones_service.replace_milestones(db_session, project.id, parties.company, [make_draft(1, "100.00")])
    milestones_service.approve_milestones(db_session, project.id, parties.company)
    assert project.company_approved is True

    created = milestones_service.replace_milestones(
        db_session, project.id, parties.provider, [make_draft(1, "80.00"), make_draft(2, "20.00")]
    )
    assert [m.status for m in created] == [MilestoneStatus.DRAFT, MilestoneStatus.DRAFT]
    db_session.refresh(project)
    assert project.company_approved is False
    assert project.provider_approved is False


def test_outsider_cannot_edit_plan(db_session, parties, make_user, make_draft):
    stranger = make_user(UserRole.COMPANY)
    with pytest.raises(AuthorizationFailed):
        milestones_service.replace_milestones(db_session, parties.project.id, stranger, [make_draft(1, "1.00")])


@pytest.mark.parametrize("first, second", [("company", "provider"), ("provider", "company")])
def test_approval_order_does_not_matter(db_session, parties, make_draft, first, second):
    project = parties.project
    milestones_service.replace_milestones(
        db_session, project.id, parties.company, [make_draft(1, "300.00"), make_draft(2, "200.00")]
    )
    milestones_service.approve_milestones(db_session, project.id, getattr(parties, first))
    assert project.milestones_locked is False
    milestones_service.approve_milestones(db_session, project.id, getattr(parties, second))

    db_session.refresh(project)
    assert project.milestones_locked is True
    assert project.milestones_approved_at is not None
    _, milestones = milestones_service.get_project_milestones(db_session, project.id, parties.company)
    assert {m.status for m in milestones} == {MilestoneStatus.LOCKED}

    payments = db_session.scalars(select(Payment).where(Payment.project_id == project.id).order_by(Payment.id)).all()
    assert [(p.amount, p.status) for p in payments] == [
        (Decimal("300.00"), PaymentStatus.PENDING),
        (Decimal("200.00"), PaymentStatus.PENDING),
    ]
    for payment in payments:
        assert payment.platform_fee_amount + payment.provider_amount == payment.amount


def test_duplicate_approval_is_a_no_op(db_session, parties, make_draft):
    project = parties.project
    milestones_service.replace_milestones(db_session, project.id, parties.company, [make_draft(1, "100.00")])
    milestones_service.approve_milestones(db_session, project.id, parties.company)
    milestones_service.approve_milestones(db_session, project.id, parties.company)
    db_session.refresh(project)
    assert project.milestones_locked is False
    approvals = db_session.scalars(select(AuditLog).where(AuditLog.action == "MILESTONES_APPROVED")).all()
    assert len(approvals) == 1


def test_locked_plan_cannot_be_replaced(db_session, parties, lock_plan, make_draft):
    lock_plan("100.00")
    with pytest.raises(InvalidState) as excinfo:
        milestones_service.replace_milestones(db_session, parties.project.id, parties.company, [make_draft(1, "5.00")])
    assert excinfo.value.code == "MILESTONES_LOCKED"


def test_approving_without_milestones_fails(db_session, parties):
    with pytest.raises(ValidationFailed) as excinfo:
        milestones_service.approve_milestones(db_session, parties.project.id, parties.company)
    assert excinfo.value.code == "NO_MILESTONES"


def test_request_changes_archives_submission(db_session, parties, lock_plan):
    (milestone,) = lock_plan("250.00")
    milestones_service.start_work(db_session, milestone.id, parties.provider, {"repo": "git@example.com:app"})
    milestones_service.submit_milestone(
        db_session,
        milestone.id,
        parties.provider,
        note="first draft",
        attachment_url="https://files.example.com/draft.pdf",
        deliverables={"screens": 4},
    )

    updated = milestones_service.request_changes(db_session, milestone.id, parties.company, "needs more detail")

    assert updated.status == MilestoneStatus.IN_PROGRESS
    assert updated.revision_number == 1
    assert len(updated.submission_history) == 1
    entry = updated.submission_history[0]
    assert entry["revision_number"] == 1
    assert entry["submission_note"] == "first draft"
    assert entry["requested_changes_reason"] == "needs more detail"
    assert updated.submitted_at is None
    assert updated.submission_note is None
    assert updated.submission_attachment_url is None
    assert updated.submit_deliverables is None


def test_request_changes_requires_reason(db_session, parties, lock_plan):
    (milestone,) = lock_plan("250.00")
    with pytest.raises(ValidationFailed):
        milestones_service.request_changes(db_session, milestone.id, parties.company, "  ")


def test_only_provider_submits(db_session, parties, lock_plan):
    (milestone,) = lock_plan("250.00")
    milestones_service.start_work(db_session, milestone.id, parties.provider)
    with pytest.raises(AuthorizationFailed):
        milestones_service.submit_milestone(db_session, milestone.id, parties.company)


def test_approving_last_milestone_completes_project(db_session, parties, lock_plan):
    first, second = lock_plan("100.00", "50.00")
    for milestone in (first, second):
        milestones_service.start_work(db_session, milestone.id, parties.provider)
        milestones_service.submit_milestone(db_session, milestone.id, parties.provider, note="done")

    milestones_service.approve_submission(db_session, first.id, parties.company)
    db_session.refresh(parties.project)
    assert parties.project.status == ProjectStatus.IN_PROGRESS

    approved = milestones_service.approve_submission(db_session, second.id, parties.company)
    assert approved.status == MilestoneStatus.APPROVED
    assert approved.approved_at is not None
    db_session.refresh(parties.project)
    assert parties.project.status == ProjectStatus.COMPLETED


def test_cannot_approve_unsubmitted_milestone(db_session, parties, lock_plan):
    (milestone,) = lock_plan("100.00")
    with pytest.raises(InvalidState) as excinfo:
        milestones_service.approve_submission(db_session, milestone.id, parties.company)
    assert excinfo.value.details["current"] == "LOCKED"
