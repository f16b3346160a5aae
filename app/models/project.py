"""Project model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class ProjectStatus(str, enum.Enum):
    """Possible statuses for a project."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


class Project(Base):
    """An engagement between one customer company and one provider."""

    __tablename__ = "projects"
    __table_args__ = (
        CheckConstraint("approved_price > 0", name="ck_project_positive_price"),
        CheckConstraint(
            "NOT milestones_locked OR (company_approved AND provider_approved)",
            name="ck_project_lock_requires_both_approvals",
        ),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    approved_price: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MYR")
    status: Mapped[ProjectStatus] = mapped_column(
        SqlEnum(ProjectStatus, name="projectstatus"), nullable=False, default=ProjectStatus.IN_PROGRESS
    )
    milestones_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    company_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    provider_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    milestones_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    customer = relationship("User", foreign_keys=[customer_id])
    provider = relationship("User", foreign_keys=[provider_id])
    milestones = relationship(
        "Milestone",
        back_populates="project",
        order_by="Milestone.sequence",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def is_party(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in (self.customer_id, self.provider_id)
