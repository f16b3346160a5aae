"""Schemas for milestone entities."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.milestone import MilestoneStatus
from app.schemas.project import ProjectRead


class MilestoneCreate(BaseModel):
    sequence: int
    title: str = Field(max_length=200)
    description: str | None = None
    amount: Decimal
    due_date: date


class MilestonePlan(BaseModel):
    milestones: list[MilestoneCreate]


class MilestoneRead(BaseModel):
    id: int
    project_id: int
    sequence: int
    title: str
    description: str | None
    amount: Decimal
    due_date: date
    status: MilestoneStatus
    is_paid: bool
    paid_at: datetime | None
    started_at: datetime | None
    start_deliverables: dict[str, Any] | None
    submitted_at: datetime | None
    submit_deliverables: dict[str, Any] | None
    submission_note: str | None
    submission_attachment_url: str | None
    revision_number: int
    submission_history: list[dict[str, Any]]
    approved_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProjectMilestonesRead(BaseModel):
    project: ProjectRead
    milestones: list[MilestoneRead]


class StartWorkPayload(BaseModel):
    deliverables: dict[str, Any] | None = None


class SubmitPayload(BaseModel):
    note: str | None = Field(default=None, max_length=5000)
    attachment_url: str | None = Field(default=None, max_length=500)
    deliverables: dict[str, Any] | None = None


class RequestChangesPayload(BaseModel):
    reason: str = Field(min_length=1, max_length=5000)
