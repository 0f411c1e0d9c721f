"""User schemas."""
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from marketpay.models.user import UserRole


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    email: EmailStr
    role: UserRole = UserRole.CLIENT
    country: str | None = Field(default=None, min_length=2, max_length=2)
    is_active: bool = True


class UserRead(BaseModel):
    id: int
    username: str
    email: EmailStr
    role: UserRole
    is_active: bool
    country: str | None
    rating_average: Decimal
    rating_count: int

    model_config = ConfigDict(from_attributes=True)
