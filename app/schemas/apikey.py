"""API key schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from app.models.api_key import ApiScope


class CreateKeyIn(BaseModel):
    """Payload d'entrée pour créer une nouvelle clé (pas de champ 'key' ici)."""

    name: str
    scope: ApiScope
    user_id: int | None = None
    days_valid: int | None = 90

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()


class ApiKeyCreateOut(BaseModel):
    """Réponse du POST /apikeys : on renvoie la clé brute UNE SEULE fois."""

    id: int
    name: str
    scope: ApiScope
    user_id: int | None
    key: str
    expires_at: datetime | None


class ApiKeyRead(BaseModel):
    """Réponse des GET (jamais la clé)."""

    id: int
    name: str
    scope: ApiScope
    user_id: int | None
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
