"""Schemas for project entities."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.models.project import ProjectStatus


class ProjectCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    customer_id: int
    provider_id: int
    approved_price: Decimal = Field(gt=Decimal("0"))
    currency: str | None = Field(default=None, pattern="^[A-Za-z]{3}$")


class ProjectRead(BaseModel):
    id: int
    title: str
    customer_id: int
    provider_id: int
    approved_price: Decimal
    currency: str
    status: ProjectStatus
    milestones_locked: bool
    company_approved: bool
    provider_approved: bool
    milestones_approved_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
