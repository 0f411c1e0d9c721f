"""Atomic ledger primitives.

Balance and status changes go through conditional UPDATE statements whose
row count tells the caller whether it won. None of these functions commit;
the caller owns the transaction boundary.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketpay.models import (
    EscrowAccount,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from marketpay.services.fees import to_money

logger = logging.getLogger(__name__)


def credit_balance(db: Session, account_id: int, amount: Decimal) -> None:
    """Add ``amount`` to an escrow account balance."""

    amount = to_money(amount)
    result = db.execute(
        update(EscrowAccount)
        .where(EscrowAccount.id == account_id)
        .values(balance=EscrowAccount.balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LookupError(f"escrow account {account_id} not found")


def debit_balance(db: Session, account_id: int, amount: Decimal) -> bool:
    """Subtract ``amount`` only if the balance covers it; return whether it did."""

    amount = to_money(amount)
    result = db.execute(
        update(EscrowAccount)
        .where(EscrowAccount.id == account_id, EscrowAccount.balance >= amount)
        .values(balance=EscrowAccount.balance - amount)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def current_balance(db: Session, account_id: int) -> Decimal:
    value = db.scalar(select(EscrowAccount.balance).where(EscrowAccount.id == account_id))
    return to_money(value or 0)


def transition_payment(
    db: Session,
    payment_id: int,
    expected: PaymentStatus,
    new: PaymentStatus,
    *,
    conditions: tuple = (),
    **values: Any,
) -> bool:
    """Move a payment from ``expected`` to ``new``; False if another writer got there first."""

    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == expected, *conditions)
        .values(status=new, **values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if won:
        logger.info(
            "Payment status changed",
            extra={"payment_id": payment_id, "from": expected.value, "to": new.value},
        )
    return won


def append_transaction(
    db: Session,
    payment: Payment,
    tx_type: TransactionType,
    amount: Decimal,
    *,
    status: TransactionStatus = TransactionStatus.SUCCEEDED,
    external_id: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    """Insert a ledger entry and flush so a duplicate surfaces as IntegrityError here."""

    tx = Transaction(
        payment_id=payment.id,
        type=tx_type,
        amount=to_money(amount),
        currency=payment.currency,
        status=status,
        external_id=external_id,
        description=description,
        metadata_json=metadata or {},
    )
    db.add(tx)
    db.flush()
    return tx


def get_transaction(db: Session, payment_id: int, tx_type: TransactionType) -> Transaction | None:
    return db.scalars(
        select(Transaction).where(Transaction.payment_id == payment_id, Transaction.type == tx_type)
    ).first()


def sum_transactions(db: Session, *conditions: Any) -> Decimal:
    stmt = (
        select(func.coalesce(func.sum(Transaction.amount), 0))
        .select_from(Transaction)
        .join(Payment, Payment.id == Transaction.payment_id)
        .where(*conditions)
    )
    return to_money(db.scalar(stmt) or 0)


def sum_payments(db: Session, *conditions: Any, column=None) -> Decimal:
    column = column if column is not None else Payment.amount
    stmt = select(func.coalesce(func.sum(column), 0)).where(*conditions)
    return to_money(db.scalar(stmt) or 0)


def transferred_payment_ids():
    """Subquery of payments that already carry a TRANSFER entry."""

    return select(Transaction.payment_id).where(Transaction.type == TransactionType.TRANSFER)


def mark_released(db: Session, payment_id: int, when) -> bool:
    """Claim a completed payment for release; refunds can no longer start once this wins."""

    result = db.execute(
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.released_at.is_(None),
            Payment.refund_requested_at.is_(None),
        )
        .values(released_at=when)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def clear_release(db: Session, payment_id: int) -> bool:
    """Drop a release claim whose transfer never happened."""

    result = db.execute(
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.released_at.is_not(None),
            Payment.id.not_in(transferred_payment_ids()),
        )
        .values(released_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_refund_requested(db: Session, payment_id: int, when, metadata: dict[str, Any]) -> bool:
    """Claim a completed, unreleased payment for a refund before the processor is called."""

    result = db.execute(
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.released_at.is_(None),
            Payment.refund_requested_at.is_(None),
        )
        .values(refund_requested_at=when, metadata_json=metadata)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def clear_refund_request(db: Session, payment_id: int, metadata: dict[str, Any]) -> bool:
    result = db.execute(
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.refund_requested_at.is_not(None),
        )
        .values(refund_requested_at=None, metadata_json=metadata)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


__all__ = [
    "credit_balance",
    "debit_balance",
    "current_balance",
    "transition_payment",
    "append_transaction",
    "get_transaction",
    "sum_transactions",
    "sum_payments",
    "transferred_payment_ids",
    "mark_released",
    "clear_release",
    "mark_refund_requested",
    "clear_refund_request",
]
