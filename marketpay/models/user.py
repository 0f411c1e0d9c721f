"""User model."""
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Enum as SqlEnum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class UserRole(str, PyEnum):
    """Marketplace role of a user."""

    CLIENT = "CLIENT"
    FREELANCER = "FREELANCER"
    ADMIN = "ADMIN"


class User(Base):
    """Represents a marketplace user (client, freelancer or admin)."""

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(SqlEnum(UserRole), nullable=False, default=UserRole.CLIENT)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    # Denormalised from published reviews; recomputed by the consistency checker.
    rating_average: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False, default=Decimal("0"))
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
