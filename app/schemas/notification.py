"""Notification and audit read schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationRead(BaseModel):
    id: int
    title: str
    type: str
    content: str
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogRead(BaseModel):
    id: int
    actor: str
    action: str
    entity: str
    entity_id: int
    data: dict[str, Any] = Field(validation_alias="data_json")
    at: datetime

    model_config = ConfigDict(from_attributes=True)
