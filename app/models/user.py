"""User model."""
import enum

from sqlalchemy import Boolean, Enum as SqlEnum, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class UserRole(str, enum.Enum):
    COMPANY = "company"
    PROVIDER = "provider"
    ADMIN = "admin"


class User(Base):
    """A marketplace participant: customer company, service provider or admin."""

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(SqlEnum(UserRole, name="userrole"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Destination de virement (prestataires uniquement)
    bank_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    bank_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bank_account_name: Mapped[str | None] = mapped_column(String(120), nullable=True)

    @property
    def has_payout_destination(self) -> bool:
        return bool(self.bank_name and self.bank_account_number)
