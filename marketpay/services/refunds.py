"""Refunds of completed milestone payments back to the client.

A refund is claimed on the payment (``refund_requested_at`` plus the pending
amount in ``metadata_json``) and committed before the processor is called.
While the claim stands the payment cannot be released, so a refund whose
outcome is unknown never races a transfer to the freelancer. Reconciliation
re-issues the call with the same idempotency key to settle it.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from marketpay.config import get_settings
from marketpay.core.cache import invalidate_users
from marketpay.models import MilestoneStatus, Payment, PaymentStatus, TransactionType, User
from marketpay.services import ledger, psp_stripe
from marketpay.services.fees import to_money
from marketpay.services.milestones import move_milestone
from marketpay.utils.audit import actor_for_user, log_audit
from marketpay.utils.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProcessorError,
    ValidationError,
)
from marketpay.utils.time import utcnow

logger = logging.getLogger(__name__)

REFUND_FAILED_STATUSES = {"failed", "canceled"}
PENDING_REFUND_KEY = "pending_refund"
REFUND_PENDING_STATUS = "refund_pending"


def _pending_refund(payment: Payment) -> tuple[Decimal, str]:
    pending = (payment.metadata_json or {}).get(PENDING_REFUND_KEY) or {}
    return to_money(pending.get("amount", payment.amount)), pending.get("reason", "")


def refund_payment(
    db: Session,
    *,
    requester: User,
    payment_id: int,
    reason: str,
    amount: Decimal | None = None,
) -> tuple[Payment, Any]:
    """Refund a completed payment fully or partially; a payment is refunded at most once.

    Calling again while an earlier refund is unresolved re-issues that refund.
    """

    payment = db.get(Payment, payment_id, populate_existing=True)
    if payment is None:
        raise NotFoundError("Payment not found.", code="PAYMENT_NOT_FOUND")
    if not requester.is_admin and requester.id != payment.client_id:
        raise AuthorizationError("Only the contract's client or an admin can refund.", code="NOT_PAYMENT_CLIENT")
    if payment.status == PaymentStatus.REFUNDED:
        raise ConflictError("Payment has already been refunded.", code="ALREADY_REFUNDED")

    actor = actor_for_user(requester)
    if payment.status == PaymentStatus.COMPLETED and payment.refund_requested_at is not None:
        pending_amount, _ = _pending_refund(payment)
        if amount is not None and to_money(amount) != pending_amount:
            raise ConflictError(
                "A different refund of this payment is in progress.",
                code="REFUND_IN_PROGRESS",
                details={"pending_amount": str(pending_amount)},
            )
        return _issue_refund(db, payment, actor=actor)

    settings = get_settings()
    now = utcnow()
    if not payment.can_be_refunded(now, settings.REFUND_WINDOW_DAYS):
        raise ValidationError(
            f"Only completed milestone payments can be refunded, within {settings.REFUND_WINDOW_DAYS} days.",
            code="PAYMENT_NOT_REFUNDABLE",
            details={"status": payment.status.value},
        )
    if payment.released_at is not None:
        raise ValidationError(
            "Funds were already released to the freelancer.",
            code="PAYMENT_ALREADY_RELEASED",
        )

    refund_amount = payment.amount if amount is None else to_money(amount)
    if refund_amount <= 0 or refund_amount > payment.amount:
        raise ValidationError(
            "Refund amount must be positive and not exceed the payment amount.",
            code="INVALID_REFUND_AMOUNT",
            details={"payment_amount": str(payment.amount), "requested": str(refund_amount)},
        )

    metadata = dict(payment.metadata_json or {})
    metadata[PENDING_REFUND_KEY] = {"amount": str(refund_amount), "reason": reason}
    if not ledger.mark_refund_requested(db, payment.id, now, metadata):
        db.rollback()
        db.refresh(payment)
        if payment.status == PaymentStatus.REFUNDED:
            raise ConflictError("Payment has already been refunded.", code="ALREADY_REFUNDED")
        if payment.released_at is not None:
            raise ValidationError("Funds were already released to the freelancer.", code="PAYMENT_ALREADY_RELEASED")
        if payment.refund_requested_at is not None:
            raise ConflictError("A refund of this payment is in progress.", code="REFUND_IN_PROGRESS")
        raise ValidationError(
            "Payment can no longer be refunded.",
            code="PAYMENT_NOT_REFUNDABLE",
            details={"status": payment.status.value},
        )
    log_audit(
        db,
        actor=actor,
        action="REFUND_REQUESTED",
        entity="Payment",
        entity_id=payment.id,
        data={"amount": str(refund_amount), "reason": reason},
    )
    db.commit()
    db.refresh(payment)
    return _issue_refund(db, payment, actor=actor)


def _issue_refund(db: Session, payment: Payment, *, actor: str) -> tuple[Payment, Any]:
    refund_amount, reason = _pending_refund(payment)
    try:
        refund = psp_stripe.get_stripe_client().create_refund(payment, amount=refund_amount, reason=reason)
    except ProcessorError as exc:
        if exc.retryable:
            logger.warning(
                "Refund outcome unknown; left for reconciliation",
                extra={"payment_id": payment.id, "amount": str(refund_amount)},
            )
            raise exc.bind_payment(payment.id, REFUND_PENDING_STATUS)
        _drop_refund_request(db, payment, error=exc.code)
        raise exc.bind_payment(payment.id, payment.status.value)

    if getattr(refund, "status", None) in REFUND_FAILED_STATUSES:
        logger.error("Processor rejected refund", extra={"payment_id": payment.id, "refund_status": refund.status})
        _drop_refund_request(db, payment, error=f"refund {refund.status}")
        raise ProcessorError("Refund was rejected by the processor.", retryable=False, code="REFUND_FAILED")

    return _settle_refund(db, payment, refund, refund_amount, reason, actor=actor)


def _drop_refund_request(db: Session, payment: Payment, *, error: str) -> None:
    """Release the claim after a definitive rejection so the payment can move on."""

    metadata = dict(payment.metadata_json or {})
    metadata.pop(PENDING_REFUND_KEY, None)
    ledger.clear_refund_request(db, payment.id, metadata)
    log_audit(
        db,
        actor="system",
        action="REFUND_FAILED",
        entity="Payment",
        entity_id=payment.id,
        data={"error": error},
    )
    db.commit()
    db.refresh(payment)


def _settle_refund(
    db: Session,
    payment: Payment,
    refund: Any,
    refund_amount: Decimal,
    reason: str,
    *,
    actor: str,
) -> tuple[Payment, Any]:
    metadata = dict(payment.metadata_json or {})
    metadata.pop(PENDING_REFUND_KEY, None)
    metadata["refund_reason"] = reason
    won = ledger.transition_payment(
        db,
        payment.id,
        PaymentStatus.COMPLETED,
        PaymentStatus.REFUNDED,
        conditions=(Payment.released_at.is_(None),),
        refunded_at=utcnow(),
        metadata_json=metadata,
    )
    if not won:
        db.rollback()
        db.refresh(payment)
        if payment.status == PaymentStatus.REFUNDED:
            raise ConflictError("Payment has already been refunded.", code="ALREADY_REFUNDED")
        raise ValidationError(
            "Payment can no longer be refunded.",
            code="PAYMENT_NOT_REFUNDABLE",
            details={"status": payment.status.value},
        )

    ledger.append_transaction(
        db,
        payment,
        TransactionType.REFUND,
        refund_amount,
        external_id=refund.id,
        description=f"Refund: {reason}"[:255],
        metadata={"partial": refund_amount < payment.amount},
    )
    move_milestone(db, payment.milestone_id, MilestoneStatus.PAID, MilestoneStatus.REFUNDED)
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_REFUNDED",
        entity="Payment",
        entity_id=payment.id,
        data={"amount": str(refund_amount), "reason": reason},
    )
    db.commit()
    db.refresh(payment)
    invalidate_users(payment.client_id, payment.freelancer_id)
    logger.info(
        "Payment refunded",
        extra={"payment_id": payment.id, "amount": str(refund_amount)},
    )
    return payment, refund


def resume_refund(db: Session, payment: Payment) -> Payment:
    """Re-issue a claimed refund whose processor outcome was never recorded."""

    if payment.status != PaymentStatus.COMPLETED or payment.refund_requested_at is None:
        return payment
    refunded, _ = _issue_refund(db, payment, actor="system:reconciliation")
    return refunded


__all__ = ["refund_payment", "resume_refund"]
