"""User schemas."""
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.user import UserRole


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    email: EmailStr
    role: UserRole
    is_active: bool = True


class UserRead(BaseModel):
    id: int
    username: str
    email: EmailStr
    role: UserRole
    is_active: bool
    has_payout_destination: bool = False

    model_config = ConfigDict(from_attributes=True)


class PayoutDestinationUpdate(BaseModel):
    bank_name: str = Field(min_length=1, max_length=120)
    bank_account_number: str = Field(min_length=4, max_length=64)
    bank_account_name: str | None = Field(default=None, max_length=120)
