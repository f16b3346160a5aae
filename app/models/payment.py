"""Payment model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    ESCROWED = "ESCROWED"
    RELEASED = "RELEASED"
    TRANSFERRED = "TRANSFERRED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"
    DISPUTED = "DISPUTED"


class BankTransferStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class Payment(Base):
    """The settlement instrument of one milestone."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_non_negative_amount"),
        CheckConstraint("refunded_amount >= 0", name="ck_payment_non_negative_refund"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_milestone_status", "milestone_id", "status"),
    )

    milestone_id: Mapped[int] = mapped_column(ForeignKey("milestones.id"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)
    platform_fee_amount: Mapped[Decimal] = mapped_column(nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MYR")
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus, name="paymentstatus"), nullable=False, default=PaymentStatus.PENDING
    )

    gateway_intent_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    gateway_charge_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    escrowed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bank_transfer_status: Mapped[BankTransferStatus | None] = mapped_column(
        SqlEnum(BankTransferStatus, name="banktransferstatus"), nullable=True
    )
    bank_transfer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bank_transfer_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    redo_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    milestone = relationship("Milestone", back_populates="payments")
    project = relationship("Project")
    provider = relationship("User", foreign_keys=[provider_id])

    __mapper_args__ = {"version_id_col": version}
