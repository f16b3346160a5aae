"""Schemas for disputes and payout splits."""
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.models.dispute import DisputeStatus


class DisputeCreate(BaseModel):
    project_id: int
    milestone_id: int | None = None
    payment_id: int | None = None
    reason: str = Field(min_length=1, max_length=255)
    description: str | None = None
    contested_amount: Decimal | None = Field(default=None, gt=Decimal("0"))


class ResolutionNoteRead(BaseModel):
    id: int
    note: str
    admin_id: int | None
    admin_name: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DisputeRead(BaseModel):
    id: int
    project_id: int
    milestone_id: int | None
    payment_id: int | None
    raised_by: int
    reason: str
    description: str | None
    contested_amount: Decimal | None
    status: DisputeStatus
    resolved_at: datetime | None
    notes: list[ResolutionNoteRead] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DisputeResolve(BaseModel):
    status: DisputeStatus
    resolution_note: str = Field(min_length=1)


class DisputePayout(BaseModel):
    refund_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    release_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    resolution_note: str | None = None
    transfer_proof_url: str | None = Field(default=None, max_length=500)


class DisputeRedo(BaseModel):
    resolution_note: str | None = None


class ReleaseRetry(BaseModel):
    transfer_proof_url: str | None = Field(default=None, max_length=500)


class PayoutSummaryRead(BaseModel):
    dispute_id: int
    payment_id: int
    refund_amount: Decimal
    release_amount: Decimal
    released_amount: Decimal | None = None
    refund_status: Literal["completed", "failed", "already_released"] | None
    release_status: Literal["completed", "failed", "already_released"] | None
    release_error: str | None
    note: str

    model_config = ConfigDict(from_attributes=True)


class DisputeStatsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    total_amount: Decimal
