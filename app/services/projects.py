"""Project bootstrap and party/ownership helpers shared by the engines."""
from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import atomic
from app.models.project import Project, ProjectStatus
from app.models.user import User, UserRole
from app.utils.audit import actor_from_user, log_audit
from app.utils.errors import AuthorizationFailed, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

COMPANY = "company"
PROVIDER = "provider"


def get_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFound("Project not found.", code="PROJECT_NOT_FOUND", details={"id": project_id})
    return project


def party_role(project: Project, actor: User | None) -> str:
    """Return ``company`` or ``provider`` for a project party, else raise."""

    if actor is not None:
        if actor.id == project.customer_id:
            return COMPANY
        if actor.id == project.provider_id:
            return PROVIDER
    raise AuthorizationFailed(
        "You are not a party to this project.",
        code="NOT_PROJECT_PARTY",
        details={"project_id": project.id},
    )


def ensure_customer(project: Project, actor: User | None) -> None:
    if actor is None or actor.id != project.customer_id:
        raise AuthorizationFailed(
            "Only the project's company can perform this action.",
            code="NOT_PROJECT_CUSTOMER",
            details={"project_id": project.id},
        )


def ensure_provider(project: Project, actor: User | None) -> None:
    if actor is None or actor.id != project.provider_id:
        raise AuthorizationFailed(
            "Only the project's provider can perform this action.",
            code="NOT_PROJECT_PROVIDER",
            details={"project_id": project.id},
        )


def is_admin(actor: User | None) -> bool:
    return actor is not None and actor.role == UserRole.ADMIN


def ensure_party_or_admin(project: Project, actor: User | None) -> None:
    if is_admin(actor):
        return
    party_role(project, actor)


def create_project(
    db: Session,
    *,
    title: str,
    customer_id: int,
    provider_id: int,
    approved_price: Decimal,
    currency: str | None = None,
    actor: str = "system",
) -> Project:
    """Create the project record of an accepted proposal."""

    customer = db.get(User, customer_id)
    provider = db.get(User, provider_id)
    if customer is None or customer.role != UserRole.COMPANY:
        raise ValidationFailed("customer_id must reference a company user.", details={"customer_id": customer_id})
    if provider is None or provider.role != UserRole.PROVIDER:
        raise ValidationFailed("provider_id must reference a provider user.", details={"provider_id": provider_id})
    price = Decimal(str(approved_price)).quantize(Decimal("0.01"))
    if price <= 0:
        raise ValidationFailed("approved_price must be positive.", details={"approved_price": str(price)})

    with atomic(db):
        project = Project(
            title=title.strip(),
            customer_id=customer.id,
            provider_id=provider.id,
            approved_price=price,
            currency=(currency or get_settings().PAYMENT_CURRENCY).upper(),
            status=ProjectStatus.IN_PROGRESS,
        )
        db.add(project)
        db.flush()
        log_audit(
            db,
            actor=actor,
            action="PROJECT_CREATED",
            entity="Project",
            entity_id=project.id,
            data={"approved_price": price, "customer_id": customer.id, "provider_id": provider.id},
        )
    logger.info("Project created", extra={"project_id": project.id, "approved_price": str(price)})
    return project


def set_payout_destination(
    db: Session,
    user_id: int,
    *,
    bank_name: str,
    bank_account_number: str,
    bank_account_name: str | None,
    actor: User | None,
    admin: bool = False,
) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found.", code="USER_NOT_FOUND")
    if not (admin or is_admin(actor)) and (actor is None or actor.id != user.id):
        raise AuthorizationFailed("You can only update your own payout destination.")
    if user.role != UserRole.PROVIDER:
        raise ValidationFailed("Only providers have a payout destination.", details={"role": user.role.value})
    if not bank_name.strip() or not bank_account_number.strip():
        raise ValidationFailed("Bank name and account number are required.")

    with atomic(db):
        user.bank_name = bank_name.strip()
        user.bank_account_number = bank_account_number.strip()
        user.bank_account_name = (bank_account_name or "").strip() or None
        log_audit(
            db,
            actor=actor_from_user(actor, fallback="admin"),
            action="PAYOUT_DESTINATION_UPDATED",
            entity="User",
            entity_id=user.id,
            data={"bank_name": user.bank_name, "bank_account_number": user.bank_account_number},
        )
    return user


__all__ = [
    "COMPANY",
    "PROVIDER",
    "create_project",
    "ensure_customer",
    "ensure_party_or_admin",
    "ensure_provider",
    "get_project",
    "is_admin",
    "party_role",
    "set_payout_destination",
]
