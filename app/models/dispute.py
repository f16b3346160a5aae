"""Dispute model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class DisputeStatus(str, enum.Enum):
    """Possible statuses for a dispute."""

    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REJECTED = "REJECTED"


class Dispute(Base):
    """A claim raised against a project, milestone and payment triple."""

    __tablename__ = "disputes"

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    milestone_id: Mapped[int | None] = mapped_column(ForeignKey("milestones.id"), nullable=True, index=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True, index=True)
    raised_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    contested_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[DisputeStatus] = mapped_column(
        SqlEnum(DisputeStatus, name="disputestatus"), nullable=False, default=DisputeStatus.OPEN
    )
    gateway_dispute_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    project = relationship("Project")
    milestone = relationship("Milestone")
    payment = relationship("Payment")
    notes = relationship(
        "DisputeResolutionNote",
        back_populates="dispute",
        order_by="DisputeResolutionNote.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}


class DisputeResolutionNote(Base):
    """One entry of a dispute's append-only resolution journal."""

    __tablename__ = "dispute_resolution_notes"

    dispute_id: Mapped[int] = mapped_column(ForeignKey("disputes.id"), nullable=False, index=True)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    admin_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    admin_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Admin")

    dispute = relationship("Dispute", back_populates="notes")
