import pytest

from app.models import DisputeStatus, MilestoneStatus, PaymentStatus, ProjectStatus
from app.services.transitions import (
    TERMINAL_MILESTONE_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    apply_transition,
    is_valid_transition,
    try_transition,
)
from app.utils.errors import InvalidState


class _Row:
    def __init__(self, status, id=1):
        self.status = status
        self.id = id


def test_milestone_happy_path_is_allowed():
    path = [
        MilestoneStatus.DRAFT,
        MilestoneStatus.PENDING,
        MilestoneStatus.LOCKED,
        MilestoneStatus.IN_PROGRESS,
        MilestoneStatus.SUBMITTED,
        MilestoneStatus.APPROVED,
        MilestoneStatus.PAID,
    ]
    for current, target in zip(path, path[1:]):
        assert is_valid_transition(current, target), (current, target)


def test_payment_cannot_skip_escrow():
    assert not is_valid_transition(PaymentStatus.PENDING, PaymentStatus.ESCROWED)
    assert not is_valid_transition(PaymentStatus.IN_PROGRESS, PaymentStatus.RELEASED)
    assert is_valid_transition(PaymentStatus.ESCROWED, PaymentStatus.ESCROWED)


def test_terminal_states_have_no_exit():
    assert {MilestoneStatus.PAID, MilestoneStatus.CANCELLED, MilestoneStatus.REJECTED} == TERMINAL_MILESTONE_STATUSES
    assert {PaymentStatus.TRANSFERRED, PaymentStatus.REFUNDED} == TERMINAL_PAYMENT_STATUSES
    for status in TERMINAL_PAYMENT_STATUSES:
        for target in PaymentStatus:
            assert not is_valid_transition(status, target)


def test_mixed_enum_types_never_match():
    assert not is_valid_transition(PaymentStatus.PENDING, MilestoneStatus.PENDING)


def test_apply_transition_reports_current_and_required():
    row = _Row(PaymentStatus.TRANSFERRED)
    with pytest.raises(InvalidState) as excinfo:
        apply_transition(row, PaymentStatus.REFUNDED)
    details = excinfo.value.details
    assert details["current"] == "TRANSFERRED"
    assert "ESCROWED" in details["required"]
    assert excinfo.value.status_code == 409
    assert row.status == PaymentStatus.TRANSFERRED


def test_apply_transition_sets_values_and_returns_previous():
    row = _Row(DisputeStatus.OPEN)
    previous = apply_transition(row, DisputeStatus.UNDER_REVIEW, reason="updated")
    assert previous == DisputeStatus.OPEN
    assert row.status == DisputeStatus.UNDER_REVIEW
    assert row.reason == "updated"


def test_try_transition_leaves_row_untouched_when_disallowed():
    row = _Row(ProjectStatus.CANCELLED)
    assert try_transition(row, ProjectStatus.DISPUTED) is False
    assert row.status == ProjectStatus.CANCELLED


def test_dispute_verdict_can_reject_a_cancelled_milestone_but_not_a_paid_one():
    assert is_valid_transition(MilestoneStatus.CANCELLED, MilestoneStatus.REJECTED)
    assert not is_valid_transition(MilestoneStatus.CANCELLED, MilestoneStatus.IN_PROGRESS)
    assert not is_valid_transition(MilestoneStatus.PAID, MilestoneStatus.REJECTED)
