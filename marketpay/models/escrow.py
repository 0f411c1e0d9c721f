"""Escrow account and payout method models."""
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class EscrowAccountType(str, PyEnum):
    CLIENT = "CLIENT"
    FREELANCER = "FREELANCER"


class EscrowAccountStatus(str, PyEnum):
    """``PENDING`` until processor onboarding completes."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    RESTRICTED = "RESTRICTED"
    SUSPENDED = "SUSPENDED"


class PayoutMethodType(str, PyEnum):
    BANK_ACCOUNT = "BANK_ACCOUNT"
    DEBIT_CARD = "DEBIT_CARD"


class PayoutMethodStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    VERIFICATION_REQUIRED = "VERIFICATION_REQUIRED"


class EscrowAccount(Base):
    """Platform-held balance owed to one user, backed by a processor connected account.

    ``balance`` is only changed through the conditional updates in
    ``marketpay.services.ledger``.
    """

    __tablename__ = "escrow_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_escrow_account_balance_non_negative"),
        Index("ix_escrow_accounts_status", "status"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    external_account_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    account_type: Mapped[EscrowAccountType] = mapped_column(SqlEnum(EscrowAccountType), nullable=False)
    status: Mapped[EscrowAccountStatus] = mapped_column(
        SqlEnum(EscrowAccountStatus), nullable=False, default=EscrowAccountStatus.PENDING
    )
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    payout_methods = relationship(
        "PayoutMethod", back_populates="escrow_account", order_by="PayoutMethod.id"
    )


class PayoutMethod(Base):
    """Masked description of an external bank account or debit card."""

    __tablename__ = "payout_methods"
    __table_args__ = (
        UniqueConstraint("escrow_account_id", "external_method_id", name="uq_payout_method_account_external"),
        Index(
            "uq_payout_methods_one_default",
            "escrow_account_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    escrow_account_id: Mapped[int] = mapped_column(ForeignKey("escrow_accounts.id"), nullable=False, index=True)
    type: Mapped[PayoutMethodType] = mapped_column(SqlEnum(PayoutMethodType), nullable=False)
    external_method_id: Mapped[str] = mapped_column(String(128), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    brand: Mapped[str | None] = mapped_column(String(50), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    status: Mapped[PayoutMethodStatus] = mapped_column(
        SqlEnum(PayoutMethodStatus), nullable=False, default=PayoutMethodStatus.ACTIVE
    )

    escrow_account = relationship("EscrowAccount", back_populates="payout_methods")
