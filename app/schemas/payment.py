"""Schemas for payment entities."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import BankTransferStatus, PaymentStatus


class PaymentRead(BaseModel):
    """Read model; gateway identifiers and secrets are never exposed."""

    id: int
    milestone_id: int
    project_id: int
    amount: Decimal
    platform_fee_amount: Decimal
    provider_amount: Decimal
    original_amount: Decimal
    refunded_amount: Decimal
    currency: str
    status: PaymentStatus
    failure_reason: str | None
    escrowed_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    bank_transfer_status: BankTransferStatus | None
    bank_transfer_date: datetime | None
    redo_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentInitiate(BaseModel):
    milestone_id: int
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))


class PaymentInitiateRead(BaseModel):
    payment_id: int
    client_secret: str | None
    amount: Decimal
    platform_fee: Decimal
    provider_amount: Decimal
    currency: str
    status: PaymentStatus

    model_config = ConfigDict(from_attributes=True)


class BankTransferConfirm(BaseModel):
    reference: str = Field(min_length=1, max_length=128)


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))


class ProviderEarningsRead(BaseModel):
    escrowed: Decimal
    released: Decimal
    transferred: Decimal
    total: Decimal
