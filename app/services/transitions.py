"""Central transition tables for every status column of the ledger.

Services never mutate ``status`` directly: they call :func:`apply_transition`,
which validates the move against the table below and raises ``InvalidState``
with the current and allowed states when it is not permitted.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.dispute import DisputeStatus
from app.models.milestone import MilestoneStatus
from app.models.payment import PaymentStatus
from app.models.project import ProjectStatus
from app.utils.errors import InvalidState, NotFound

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)
M = TypeVar("M")

_M = MilestoneStatus
_P = PaymentStatus
_D = DisputeStatus
_PR = ProjectStatus

MILESTONE_TRANSITIONS: Mapping[MilestoneStatus, frozenset[MilestoneStatus]] = {
    _M.DRAFT: frozenset({_M.PENDING, _M.LOCKED, _M.CANCELLED, _M.REJECTED}),
    _M.PENDING: frozenset({_M.LOCKED, _M.CANCELLED, _M.REJECTED}),
    _M.LOCKED: frozenset({_M.IN_PROGRESS, _M.CANCELLED, _M.DISPUTED, _M.REJECTED}),
    _M.IN_PROGRESS: frozenset({_M.SUBMITTED, _M.DISPUTED, _M.CANCELLED, _M.REJECTED}),
    _M.SUBMITTED: frozenset({_M.APPROVED, _M.IN_PROGRESS, _M.DISPUTED, _M.REJECTED}),
    # APPROVED -> IN_PROGRESS: reprise demandée par un admin (redo).
    _M.APPROVED: frozenset({_M.PAID, _M.DISPUTED, _M.REJECTED, _M.CANCELLED, _M.IN_PROGRESS}),
    _M.DISPUTED: frozenset({_M.IN_PROGRESS, _M.REJECTED, _M.CANCELLED, _M.DISPUTED}),
    _M.PAID: frozenset(),
    # CANCELLED -> REJECTED: le verdict d'un litige remplace l'annulation due au remboursement.
    _M.CANCELLED: frozenset({_M.REJECTED}),
    _M.REJECTED: frozenset(),
}

PAYMENT_TRANSITIONS: Mapping[PaymentStatus, frozenset[PaymentStatus]] = {
    _P.PENDING: frozenset({_P.IN_PROGRESS}),
    _P.IN_PROGRESS: frozenset({_P.ESCROWED, _P.FAILED}),
    # ESCROWED -> ESCROWED: remboursement partiel, le montant diminue.
    _P.ESCROWED: frozenset({_P.ESCROWED, _P.RELEASED, _P.REFUNDED, _P.DISPUTED}),
    _P.RELEASED: frozenset({_P.TRANSFERRED}),
    _P.DISPUTED: frozenset({_P.ESCROWED, _P.REFUNDED}),
    # Un succès tardif l'emporte sur un échec antérieur du même intent.
    _P.FAILED: frozenset({_P.ESCROWED}),
    _P.TRANSFERRED: frozenset(),
    _P.REFUNDED: frozenset(),
}

DISPUTE_TRANSITIONS: Mapping[DisputeStatus, frozenset[DisputeStatus]] = {
    _D.OPEN: frozenset({_D.OPEN, _D.UNDER_REVIEW, _D.RESOLVED, _D.CLOSED, _D.REJECTED}),
    _D.UNDER_REVIEW: frozenset({_D.UNDER_REVIEW, _D.RESOLVED, _D.CLOSED, _D.REJECTED}),
    # Un litige rejeté peut être rouvert par une nouvelle réclamation.
    _D.REJECTED: frozenset({_D.OPEN}),
    _D.RESOLVED: frozenset(),
    _D.CLOSED: frozenset(),
}

PROJECT_TRANSITIONS: Mapping[ProjectStatus, frozenset[ProjectStatus]] = {
    _PR.IN_PROGRESS: frozenset({_PR.COMPLETED, _PR.DISPUTED, _PR.CANCELLED}),
    _PR.DISPUTED: frozenset({_PR.IN_PROGRESS, _PR.DISPUTED, _PR.COMPLETED}),
    _PR.COMPLETED: frozenset({_PR.DISPUTED}),
    _PR.CANCELLED: frozenset(),
}

_TABLES: dict[type[Enum], Mapping[Any, frozenset[Any]]] = {
    MilestoneStatus: MILESTONE_TRANSITIONS,
    PaymentStatus: PAYMENT_TRANSITIONS,
    DisputeStatus: DISPUTE_TRANSITIONS,
    ProjectStatus: PROJECT_TRANSITIONS,
}

TERMINAL_MILESTONE_STATUSES = frozenset({_M.PAID, _M.CANCELLED, _M.REJECTED})
TERMINAL_PAYMENT_STATUSES = frozenset(s for s, targets in PAYMENT_TRANSITIONS.items() if not targets)
TERMINAL_DISPUTE_STATUSES = frozenset({_D.RESOLVED, _D.CLOSED})


def allowed_targets(current: S) -> frozenset[S]:
    table = _TABLES.get(type(current))
    if table is None:
        raise TypeError(f"No transition table for {type(current).__name__}")
    return table.get(current, frozenset())


def is_valid_transition(current: S, target: S) -> bool:
    """Return True when ``current -> target`` is allowed by the status table."""

    if type(current) is not type(target):
        return False
    return target in allowed_targets(current)


def ensure_transition(current: S, target: S, *, entity: str, entity_id: int | None = None) -> None:
    if not is_valid_transition(current, target):
        raise InvalidState(
            f"{entity} cannot move from {current.value} to {target.value}.",
            current=current,
            required=_sources_of(target),
            details={"entity": entity, "entity_id": entity_id, "target": target.value},
        )


def _sources_of(target: S) -> list[S]:
    table = _TABLES[type(target)]
    return [source for source, targets in table.items() if target in targets]


def apply_transition(obj: Any, target: S, **values: Any) -> S:
    """Validate and apply a status change on an ORM row, returning the old status.

    The row is expected to have been read with :func:`lock_for_update` inside
    the current transaction; the mapper's version column turns any concurrent
    write into a failed flush.
    """

    previous = obj.status
    entity = type(obj).__name__
    ensure_transition(previous, target, entity=entity, entity_id=getattr(obj, "id", None))
    obj.status = target
    for key, value in values.items():
        setattr(obj, key, value)
    logger.info(
        "%s status transition",
        entity,
        extra={
            "entity": entity,
            "entity_id": getattr(obj, "id", None),
            "from_status": previous.value,
            "to_status": target.value,
        },
    )
    return previous


def try_transition(obj: Any, target: S, **values: Any) -> bool:
    """Apply the transition when it is allowed, otherwise leave the row untouched."""

    if not is_valid_transition(obj.status, target):
        logger.info(
            "Skipping disallowed transition",
            extra={
                "entity": type(obj).__name__,
                "entity_id": getattr(obj, "id", None),
                "from_status": obj.status.value,
                "to_status": target.value,
            },
        )
        return False
    apply_transition(obj, target, **values)
    return True


def require_status(obj: Any, allowed: set[S] | frozenset[S], *, action: str) -> None:
    if obj.status not in allowed:
        entity = type(obj).__name__
        raise InvalidState(
            f"{entity} {getattr(obj, 'id', '')} is {obj.status.value}; {action} is not allowed in this state.",
            current=obj.status,
            required=allowed,
            details={"entity": entity, "entity_id": getattr(obj, "id", None)},
        )


def lock_for_update(db: Session, model: type[M], entity_id: int, *, entity: str | None = None) -> M:
    """Re-read one row with a row-level lock, refreshing any cached state."""

    stmt = (
        select(model)
        .where(model.id == entity_id)  # type: ignore[attr-defined]
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = db.execute(stmt).scalar_one_or_none()
    if row is None:
        name = entity or model.__name__
        raise NotFound(f"{name} not found.", code=f"{name.upper()}_NOT_FOUND", details={"id": entity_id})
    return row


__all__ = [
    "MILESTONE_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "DISPUTE_TRANSITIONS",
    "PROJECT_TRANSITIONS",
    "TERMINAL_MILESTONE_STATUSES",
    "TERMINAL_PAYMENT_STATUSES",
    "TERMINAL_DISPUTE_STATUSES",
    "allowed_targets",
    "is_valid_transition",
    "ensure_transition",
    "apply_transition",
    "try_transition",
    "require_status",
    "lock_for_update",
]
