"""Release completed milestone payments: transfer to the freelancer and credit the escrow balance."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketpay.core.cache import invalidate_users
from marketpay.models import EscrowAccount, Payment, PaymentStatus, PaymentType, TransactionType, User
from marketpay.services import ledger, psp_stripe
from marketpay.services.escrow_accounts import get_account_for_user
from marketpay.services.milestones import finalize_contract_if_paid
from marketpay.utils.audit import actor_for_user, log_audit
from marketpay.utils.errors import AuthorizationError, NotFoundError, ProcessorError, ValidationError
from marketpay.utils.time import utcnow

logger = logging.getLogger(__name__)


def release_payment(db: Session, *, requester: User, payment_id: int) -> tuple[Payment, Decimal]:
    """Credit the freelancer with a completed payment's net amount, at most once.

    Returns the payment and the freelancer's balance after the call. Releasing
    an already released payment returns the current state unchanged.
    """

    payment = db.get(Payment, payment_id, populate_existing=True)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")
    if not requester.is_admin and requester.id != payment.client_id:
        raise AuthorizationError("Only the contract's client or an admin can release funds.", code="NOT_PAYMENT_CLIENT")
    return _release(db, payment, actor=actor_for_user(requester))


def _release(db: Session, payment: Payment, *, actor: str) -> tuple[Payment, Decimal]:
    if payment.type != PaymentType.MILESTONE_PAYMENT:
        raise ValidationError("Only milestone payments can be released.", code="PAYMENT_NOT_RELEASABLE")

    account = get_account_for_user(db, payment.freelancer_id)
    if account is None:
        raise NotFoundError("Freelancer has no escrow account.", code="ESCROW_ACCOUNT_NOT_FOUND")

    if ledger.get_transaction(db, payment.id, TransactionType.TRANSFER) is not None:
        logger.info("Payment already released", extra={"payment_id": payment.id})
        return payment, ledger.current_balance(db, account.id)

    if payment.status != PaymentStatus.COMPLETED:
        raise ValidationError(
            "Only completed payments can be released.",
            code="PAYMENT_NOT_COMPLETED",
            details={"status": payment.status.value},
        )
    if payment.refund_requested_at is not None:
        raise ValidationError("A refund of this payment is in progress.", code="REFUND_IN_PROGRESS")

    if payment.released_at is None:
        # Claim first: the transfer below cannot be taken back by a refund.
        if not ledger.mark_released(db, payment.id, utcnow()):
            db.rollback()
            db.refresh(payment)
            if payment.refund_requested_at is not None:
                raise ValidationError("A refund of this payment is in progress.", code="REFUND_IN_PROGRESS")
            if payment.released_at is None:
                raise ValidationError(
                    "Only completed payments can be released.",
                    code="PAYMENT_NOT_COMPLETED",
                    details={"status": payment.status.value},
                )
        else:
            db.commit()
            db.refresh(payment)

    transfer = _transfer_to_freelancer(db, payment, account)

    try:
        # The unique (payment_id, type) row and the credit commit together.
        ledger.append_transaction(
            db,
            payment,
            TransactionType.TRANSFER,
            payment.freelancer_amount,
            external_id=transfer.id,
            description="Escrow release to freelancer",
            metadata={"escrow_account_id": account.id},
        )
        ledger.credit_balance(db, account.id, payment.freelancer_amount)
        log_audit(
            db,
            actor=actor,
            action="ESCROW_RELEASED",
            entity="Payment",
            entity_id=payment.id,
            data={
                "escrow_account_id": account.id,
                "amount": str(payment.freelancer_amount),
                "external_transfer_id": transfer.id,
            },
        )
        finalize_contract_if_paid(db, payment.contract_id, actor=actor)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Concurrent release detected; credit skipped", extra={"payment_id": payment.id})
        db.refresh(payment)
        return payment, ledger.current_balance(db, account.id)

    db.refresh(payment)
    invalidate_users(payment.freelancer_id, payment.client_id)
    balance = ledger.current_balance(db, account.id)
    logger.info(
        "Escrow released",
        extra={"payment_id": payment.id, "account_id": account.id, "amount": str(payment.freelancer_amount)},
    )
    return payment, balance


def _transfer_to_freelancer(db: Session, payment: Payment, account: EscrowAccount) -> Any:
    """Send the net amount to the connected account; the idempotency key makes retries safe."""

    try:
        return psp_stripe.get_stripe_client().create_transfer(payment, account=account)
    except ProcessorError as exc:
        if exc.retryable:
            # Outcome unknown: keep the claim so reconciliation can finish the transfer.
            raise exc.bind_payment(payment.id, payment.status.value)
        ledger.clear_release(db, payment.id)
        log_audit(
            db,
            actor="system",
            action="ESCROW_RELEASE_FAILED",
            entity="Payment",
            entity_id=payment.id,
            data={"code": exc.code},
        )
        db.commit()
        db.refresh(payment)
        logger.error(
            "Transfer to freelancer rejected; release undone",
            extra={"payment_id": payment.id, "account_id": account.id, "code": exc.code},
        )
        raise exc.bind_payment(payment.id, payment.status.value)


def resume_release(db: Session, payment: Payment) -> Payment:
    """Finish a claimed release whose transfer outcome was never recorded."""

    released, _ = _release(db, payment, actor="system:reconciliation")
    return released


def release_due_payments(db: Session, *, limit: int = 100) -> int:
    """Release completed payments whose escrow hold period has elapsed."""

    now = utcnow()
    due = db.scalars(
        select(Payment)
        .where(
            Payment.type == PaymentType.MILESTONE_PAYMENT,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.released_at.is_(None),
            Payment.refund_requested_at.is_(None),
            Payment.escrow_release_date.is_not(None),
            Payment.escrow_release_date <= now,
        )
        .order_by(Payment.escrow_release_date)
        .limit(limit)
        .execution_options(populate_existing=True)
    ).all()
    released = 0
    for payment in due:
        try:
            _release(db, payment, actor="system:auto-release")
        except (NotFoundError, ValidationError, ProcessorError) as exc:
            logger.warning(
                "Auto-release skipped",
                extra={"payment_id": payment.id, "code": exc.code, "reason": exc.message},
            )
            continue
        released += 1
    return released


__all__ = ["release_payment", "resume_release", "release_due_payments"]
