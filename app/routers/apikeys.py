# app/routers/apikeys.py
from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.user import User, UserRole
from app.schemas.apikey import ApiKeyCreateOut, ApiKeyRead, CreateKeyIn
from app.security import require_scope
from app.utils.apikey import gen_key
from app.utils.audit import actor_from_api_key, log_audit
from app.utils.errors import error_response
from app.utils.time import utcnow

router = APIRouter(prefix="/apikeys", tags=["apikeys"])

# Le scope d'une clé doit correspondre au rôle de l'utilisateur lié.
_SCOPE_FOR_ROLE = {
    UserRole.COMPANY: ApiScope.company,
    UserRole.PROVIDER: ApiScope.provider,
    UserRole.ADMIN: ApiScope.admin,
}


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_response("APIKEY_NOT_FOUND", "API key not found."),
    )


@router.post(
    "",
    response_model=ApiKeyCreateOut,
    status_code=status.HTTP_201_CREATED,
)
def create_api_key(
    payload: CreateKeyIn,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> ApiKeyCreateOut:
    """Crée une clé API côté serveur et renvoie la valeur brute une seule fois."""
    if payload.user_id is not None:
        user = db.get(User, payload.user_id)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=error_response("USER_NOT_FOUND", "User not found."),
            )
        if _SCOPE_FOR_ROLE[user.role] != payload.scope:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=error_response(
                    "SCOPE_ROLE_MISMATCH",
                    f"A {user.role.value} user can only hold a {_SCOPE_FOR_ROLE[user.role].value} key.",
                ),
            )

    raw, prefix, key_hash = gen_key()
    now = utcnow()
    expires_at = now + timedelta(days=payload.days_valid) if payload.days_valid else None

    row = ApiKey(
        name=payload.name,
        prefix=prefix,
        key_hash=key_hash,
        scope=payload.scope,
        user_id=payload.user_id,
        expires_at=expires_at,
        is_active=True,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("APIKEY_EXISTS", "Key name already exists."),
        ) from exc

    log_audit(
        db,
        actor=actor_from_api_key(api_key, fallback="admin"),
        action="CREATE_API_KEY",
        entity="ApiKey",
        entity_id=row.id,
        data={"name": row.name, "scope": row.scope, "user_id": row.user_id},
    )
    db.commit()

    return ApiKeyCreateOut(
        id=row.id,
        name=row.name,
        scope=row.scope,
        user_id=row.user_id,
        key=raw,  # ne sera plus jamais renvoyée
        expires_at=row.expires_at,
    )


@router.get(
    "/{api_key_id}",
    response_model=ApiKeyRead,
    dependencies=[Depends(require_scope({ApiScope.admin}))],
)
def get_apikey(api_key_id: int, db: Session = Depends(get_db)) -> ApiKey:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise _not_found()
    return row


@router.delete(
    "/{api_key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def revoke_apikey(
    api_key_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> Response:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise _not_found()

    actor = actor_from_api_key(api_key, fallback="admin")
    if row.is_active:
        row.is_active = False
        log_audit(db, actor=actor, action="REVOKE_API_KEY", entity="ApiKey", entity_id=row.id, data={"name": row.name})
    else:
        log_audit(db, actor=actor, action="REVOKE_API_KEY_NOOP", entity="ApiKey", entity_id=row.id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
