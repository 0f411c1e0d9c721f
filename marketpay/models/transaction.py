"""Ledger transaction model."""
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    CheckConstraint,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class TransactionType(str, PyEnum):
    CHARGE = "CHARGE"
    TRANSFER = "TRANSFER"
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"


class TransactionStatus(str, PyEnum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Transaction(Base):
    """Append-only ledger entry for one monetary event of a payment.

    ``(payment_id, type)`` is unique: a payment is charged, released, paid out
    and refunded at most once each.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_positive_amount"),
        UniqueConstraint("payment_id", "type", name="uq_transactions_payment_type"),
        Index("ix_transactions_created_at", "created_at"),
        Index("ix_transactions_type", "type"),
    )

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    type: Mapped[TransactionType] = mapped_column(SqlEnum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SqlEnum(TransactionStatus), nullable=False, default=TransactionStatus.SUCCEEDED
    )
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    payment = relationship("Payment", back_populates="transactions")
