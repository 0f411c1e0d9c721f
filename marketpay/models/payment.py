"""Payment model definitions."""
import enum
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Lifecycle of a payment.

    ``PENDING -> PROCESSING -> COMPLETED | FAILED`` and ``COMPLETED -> REFUNDED``.
    ``FAILED`` and ``REFUNDED`` are terminal.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentType(str, enum.Enum):
    MILESTONE_PAYMENT = "MILESTONE_PAYMENT"
    WITHDRAWAL = "WITHDRAWAL"
    BONUS = "BONUS"


ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED)

_ACTIVE_SQL = text("status IN ('PENDING', 'PROCESSING', 'COMPLETED')")


class Payment(Base):
    """A charge attempt for one milestone, or a withdrawal from an escrow balance."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        CheckConstraint("platform_fee >= 0", name="ck_payment_fee_non_negative"),
        CheckConstraint("freelancer_amount >= 0", name="ck_payment_freelancer_amount_non_negative"),
        Index("ix_payments_created_at", "created_at"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_client_id", "client_id"),
        Index("ix_payments_freelancer_id", "freelancer_id"),
        # One live charge per milestone; FAILED and REFUNDED rows do not count.
        Index(
            "uq_payments_active_milestone",
            "contract_id",
            "milestone_id",
            unique=True,
            sqlite_where=_ACTIVE_SQL,
            postgresql_where=_ACTIVE_SQL,
        ),
    )

    contract_id: Mapped[int | None] = mapped_column(ForeignKey("contracts.id"), nullable=True)
    milestone_id: Mapped[int | None] = mapped_column(ForeignKey("milestones.id"), nullable=True)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    freelancer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    payout_method_id: Mapped[int | None] = mapped_column(ForeignKey("payout_methods.id"), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    freelancer_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    type: Mapped[PaymentType] = mapped_column(
        SqlEnum(PaymentType), nullable=False, default=PaymentType.MILESTONE_PAYMENT
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )

    external_intent_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    external_transfer_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_release_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    transactions = relationship("Transaction", back_populates="payment", order_by="Transaction.id")
    milestone = relationship("Milestone")

    def can_be_refunded(self, now: datetime, window_days: int) -> bool:
        """Return True for a completed milestone payment still inside the refund window."""

        if self.type != PaymentType.MILESTONE_PAYMENT:
            return False
        if self.status != PaymentStatus.COMPLETED:
            return False
        completed_at = self.completed_at or self.created_at
        if completed_at.tzinfo is None:
            completed_at = completed_at.replace(tzinfo=now.tzinfo)
        return now - completed_at <= timedelta(days=window_days)
