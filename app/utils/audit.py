"""Audit logging helper utilities."""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.audit import AuditLog
from app.utils.time import utcnow


SENSITIVE_KEYS = {
    "bank_account_number",
    "account_number",
    "card_number",
    "email",
    "client_secret",
    "gateway_reference",
    "bank_transfer_ref",
    "transfer_proof_url",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in {"bank_account_number", "account_number", "card_number"}:
        stripped = str(value).replace(" ", "")
        if len(stripped) <= 4:
            return f"***{stripped}"
        return f"***{stripped[-4:]}"

    if key == "client_secret":
        return "***"

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "transfer_proof_url":
        text = str(value)
        base = text.split("?", 1)[0]
        if "/" in base:
            prefix = base.rsplit("/", 1)[0]
            return f"{prefix}/***"
        return "***/***"

    if key in {"gateway_reference", "bank_transfer_ref"}:
        text = str(value)
        if len(text) <= 6:
            return "***"
        return f"***{text[-4:]}"

    return value


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, (list, tuple)):
        return [sanitize_payload_for_audit(item) for item in data]

    return _to_jsonable(data)


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Persist an audit entry in the shared AuditLog table."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


def audit_trail(db: Session, entity: str, entity_id: int) -> list[AuditLog]:
    """Return the audit entries of one entity, oldest first."""

    stmt = (
        select(AuditLog)
        .where(AuditLog.entity == entity, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.at.asc(), AuditLog.id.asc())
    )
    return list(db.scalars(stmt))


def actor_from_api_key(api_key: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for a given API key object."""

    user_id = getattr(api_key, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    prefix = getattr(api_key, "prefix", None)
    if prefix:
        return f"apikey:{prefix}"
    return fallback


def actor_from_user(user: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for a user, or ``fallback``."""

    user_id = getattr(user, "id", None)
    if user_id:
        return f"user:{user_id}"
    return fallback


__all__ = [
    "SENSITIVE_KEYS",
    "sanitize_payload_for_audit",
    "log_audit",
    "audit_trail",
    "actor_from_api_key",
    "actor_from_user",
]
