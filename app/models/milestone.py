"""Milestone model definitions."""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class MilestoneStatus(str, PyEnum):
    """Possible statuses for a milestone."""

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    DISPUTED = "DISPUTED"


class Milestone(Base):
    """A payable unit of work belonging to exactly one project."""

    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "sequence", name="uq_milestone_project_sequence"),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        CheckConstraint("sequence > 0", name="ck_milestone_positive_sequence"),
        CheckConstraint("revision_number >= 0", name="ck_milestone_revision_non_negative"),
    )

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[MilestoneStatus] = mapped_column(
        SqlEnum(MilestoneStatus, name="milestonestatus"), nullable=False, default=MilestoneStatus.DRAFT
    )

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_deliverables: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submit_deliverables: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    submission_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    submission_attachment_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Journal append-only: toujours réassigner une nouvelle liste.
    submission_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    project = relationship("Project", back_populates="milestones")
    payments = relationship("Payment", back_populates="milestone", order_by="Payment.id")

    __mapper_args__ = {"version_id_col": version}
