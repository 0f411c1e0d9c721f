"""Freelancer withdrawals from the escrow balance."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from marketpay.core.cache import invalidate_users
from marketpay.models import (
    EscrowAccount,
    EscrowAccountStatus,
    EscrowAccountType,
    Payment,
    PaymentStatus,
    PaymentType,
    PayoutMethod,
    PayoutMethodStatus,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
)
from marketpay.services import ledger, psp_stripe
from marketpay.services.escrow_accounts import get_account_for_user
from marketpay.services.fees import to_money
from marketpay.utils.audit import actor_for_user, log_audit
from marketpay.utils.errors import AuthorizationError, NotFoundError, ProcessorError, ValidationError
from marketpay.utils.time import utcnow

logger = logging.getLogger(__name__)

PAYOUT_PAID = "paid"
PAYOUT_FAILED_STATUSES = {"failed", "canceled"}


def request_payout(
    db: Session,
    *,
    requester: User,
    amount: Decimal,
    payout_method_id: int,
) -> tuple[Payment, Any]:
    """Debit the balance, then ask the processor to pay it out.

    The debit and the ``PROCESSING`` withdrawal are committed together before
    the processor call, so concurrent requests cannot spend the same balance.
    A definitive processor failure credits the amount back.
    """

    if requester.role != UserRole.FREELANCER:
        raise AuthorizationError("Only freelancers can request payouts.", code="NOT_FREELANCER")
    account = get_account_for_user(db, requester.id)
    if account is None:
        raise NotFoundError("Escrow account not found.", code="ESCROW_ACCOUNT_NOT_FOUND")
    if account.account_type != EscrowAccountType.FREELANCER:
        raise AuthorizationError("Only freelancer accounts can be paid out.", code="NOT_FREELANCER_ACCOUNT")
    if account.status != EscrowAccountStatus.ACTIVE:
        raise ValidationError(
            "Escrow account is not active.",
            code="ESCROW_ACCOUNT_NOT_ACTIVE",
            details={"status": account.status.value},
        )

    method = db.get(PayoutMethod, payout_method_id)
    if method is None or method.escrow_account_id != account.id:
        raise NotFoundError("Payout method not found.", code="PAYOUT_METHOD_NOT_FOUND")
    if method.status != PayoutMethodStatus.ACTIVE:
        raise ValidationError("Payout method is not active.", code="PAYOUT_METHOD_NOT_ACTIVE")

    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Payout amount must be positive.", code="INVALID_AMOUNT")

    if not ledger.debit_balance(db, account.id, amount):
        db.rollback()
        balance = ledger.current_balance(db, account.id)
        logger.warning(
            "Payout rejected for insufficient balance",
            extra={"account_id": account.id, "requested": str(amount), "balance": str(balance)},
        )
        raise ValidationError(
            "Insufficient balance.",
            code="INSUFFICIENT_BALANCE",
            details={"balance": str(balance), "requested": str(amount)},
        )

    payment = Payment(
        freelancer_id=requester.id,
        payout_method_id=method.id,
        amount=amount,
        platform_fee=Decimal("0"),
        freelancer_amount=amount,
        currency=account.currency,
        type=PaymentType.WITHDRAWAL,
        status=PaymentStatus.PROCESSING,
        metadata_json={"description": "Withdrawal to payout method", "escrow_account_id": account.id},
    )
    db.add(payment)
    db.flush()
    log_audit(
        db,
        actor=actor_for_user(requester),
        action="PAYOUT_REQUESTED",
        entity="Payment",
        entity_id=payment.id,
        data={"amount": str(amount), "payout_method_id": method.id, "escrow_account_id": account.id},
    )
    db.commit()
    invalidate_users(requester.id)
    logger.info(
        "Payout debited",
        extra={"payment_id": payment.id, "account_id": account.id, "amount": str(amount)},
    )

    payout = _issue_payout(db, payment, account, method)
    db.refresh(payment)
    return payment, payout


def _issue_payout(db: Session, payment: Payment, account: EscrowAccount, method: PayoutMethod) -> Any:
    try:
        payout = psp_stripe.get_stripe_client().create_payout(payment, account=account, payout_method=method)
    except ProcessorError as exc:
        if exc.retryable:
            raise exc.bind_payment(payment.id, PaymentStatus.PROCESSING.value)
        _reverse_payout(db, payment, account, reason=exc.message)
        raise exc.bind_payment(payment.id, PaymentStatus.FAILED.value)

    db.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(external_transfer_id=payout.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(payment)
    apply_payout_status(db, payment, account, payout)
    return payout


def apply_payout_status(db: Session, payment: Payment, account: EscrowAccount, payout: Any) -> Payment:
    """Map the processor's payout status onto the local withdrawal."""

    status = getattr(payout, "status", None)
    if status == PAYOUT_PAID:
        if ledger.transition_payment(
            db, payment.id, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, completed_at=utcnow()
        ):
            ledger.append_transaction(
                db,
                payment,
                TransactionType.PAYOUT,
                payment.amount,
                external_id=payout.id,
                description="Payout to external account",
            )
            log_audit(
                db,
                actor="system",
                action="PAYOUT_COMPLETED",
                entity="Payment",
                entity_id=payment.id,
                data={"amount": str(payment.amount)},
            )
            db.commit()
            invalidate_users(payment.freelancer_id)
        else:
            db.rollback()
    elif status in PAYOUT_FAILED_STATUSES:
        reason = getattr(payout, "failure_message", None) or f"payout {status}"
        _reverse_payout(db, payment, account, reason=reason)
    db.refresh(payment)
    return payment


def _reverse_payout(db: Session, payment: Payment, account: EscrowAccount, *, reason: str) -> None:
    """Mark the withdrawal failed and give the debited amount back, once."""

    if not ledger.transition_payment(
        db, payment.id, PaymentStatus.PROCESSING, PaymentStatus.FAILED, failure_reason=reason[:255]
    ):
        db.rollback()
        return
    ledger.credit_balance(db, account.id, payment.amount)
    ledger.append_transaction(
        db,
        payment,
        TransactionType.PAYOUT,
        payment.amount,
        status=TransactionStatus.FAILED,
        external_id=payment.external_transfer_id,
        description="Payout failed; amount returned to balance",
        metadata={"reason": reason[:255]},
    )
    log_audit(
        db,
        actor="system",
        action="PAYOUT_REVERSED",
        entity="Payment",
        entity_id=payment.id,
        data={"amount": str(payment.amount), "reason": reason[:255]},
    )
    db.commit()
    invalidate_users(payment.freelancer_id)
    logger.warning(
        "Payout failed and was reversed",
        extra={"payment_id": payment.id, "account_id": account.id, "reason": reason},
    )


def sync_payout(db: Session, payment: Payment, *, requester: User | None = None) -> tuple[Payment, Any]:
    """Re-query (or re-issue) the processor payout of a withdrawal still in PROCESSING."""

    if payment.type != PaymentType.WITHDRAWAL:
        raise ValidationError("Payment is not a withdrawal.", code="NOT_A_WITHDRAWAL")
    if requester is not None and not requester.is_admin and requester.id != payment.freelancer_id:
        raise AuthorizationError("Not allowed to view this payout.", code="NOT_PAYOUT_OWNER")
    account = get_account_for_user(db, payment.freelancer_id)
    if account is None:
        raise NotFoundError("Escrow account not found.", code="ESCROW_ACCOUNT_NOT_FOUND")
    if payment.status != PaymentStatus.PROCESSING:
        return payment, None

    if payment.external_transfer_id is None:
        method = db.get(PayoutMethod, payment.payout_method_id)
        if method is None:
            raise NotFoundError("Payout method not found.", code="PAYOUT_METHOD_NOT_FOUND")
        payout = _issue_payout(db, payment, account, method)
    else:
        payout = psp_stripe.get_stripe_client().retrieve_payout(payment.external_transfer_id, account=account)
        apply_payout_status(db, payment, account, payout)
    db.refresh(payment)
    return payment, payout


def get_withdrawal(db: Session, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id, populate_existing=True)
    if payment is None or payment.type != PaymentType.WITHDRAWAL:
        raise NotFoundError("Payout not found.", code="PAYOUT_NOT_FOUND")
    return payment


__all__ = ["request_payout", "apply_payout_status", "sync_payout", "get_withdrawal"]
