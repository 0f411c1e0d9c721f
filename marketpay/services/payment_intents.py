"""Milestone payment intents: authorize a charge and confirm it with the processor."""
from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketpay.config import get_settings
from marketpay.core.cache import invalidate_users
from marketpay.models import (
    ACTIVE_PAYMENT_STATUSES,
    Contract,
    Milestone,
    MilestoneStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    TransactionType,
    User,
)
from marketpay.services import ledger, psp_stripe
from marketpay.services.fees import compute_platform_fee, to_money
from marketpay.services.idempotency import get_existing_by_key
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

INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
INTENT_PAYMENT_FAILED = "payment_failed"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"


def _active_payment_for(db: Session, contract_id: int, milestone_id: int) -> Payment | None:
    stmt = select(Payment).where(
        Payment.contract_id == contract_id,
        Payment.milestone_id == milestone_id,
        Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
    )
    return db.scalars(stmt).first()


def _intent_failed(intent: Any) -> bool:
    status = getattr(intent, "status", None)
    if status in (INTENT_CANCELED, INTENT_PAYMENT_FAILED):
        return True
    # A declined confirmation sends the intent back to requires_payment_method.
    return status == INTENT_REQUIRES_PAYMENT_METHOD and bool(getattr(intent, "last_payment_error", None))


def _failure_message(intent: Any) -> str:
    error = getattr(intent, "last_payment_error", None)
    message = getattr(error, "message", None) if error is not None else None
    return (message or f"payment intent {getattr(intent, 'status', 'failed')}")[:255]


def create_payment_intent(
    db: Session,
    *,
    requester: User,
    contract_id: int,
    milestone_id: int,
    amount: Decimal,
    payment_method_id: str,
) -> tuple[Payment, Any]:
    """Authorize a charge for an approved milestone.

    The payment row is committed as ``PENDING`` before the processor is called
    so that a crash or timeout always leaves a record to reconcile.
    """

    contract = db.get(Contract, contract_id)
    if contract is None:
        raise NotFoundError("Contract not found.", code="CONTRACT_NOT_FOUND")
    if contract.client_id != requester.id:
        raise AuthorizationError("Only the contract's client can pay its milestones.", code="NOT_CONTRACT_CLIENT")

    # Status moves are Core updates; reload past the identity map.
    milestone = db.get(Milestone, milestone_id, populate_existing=True)
    if milestone is None or milestone.contract_id != contract.id:
        raise NotFoundError("Milestone not found.", code="MILESTONE_NOT_FOUND")
    if milestone.status != MilestoneStatus.APPROVED:
        raise ValidationError(
            "Milestone must be approved before it can be paid.",
            code="MILESTONE_NOT_APPROVED",
            details={"milestone_status": milestone.status.value},
        )

    amount = to_money(amount)
    if amount != to_money(milestone.amount):
        raise ValidationError(
            "Amount does not match the milestone amount.",
            code="AMOUNT_MISMATCH",
            details={"expected": str(to_money(milestone.amount)), "received": str(amount)},
        )

    existing = _active_payment_for(db, contract.id, milestone.id)
    if existing is not None:
        raise ConflictError(
            "A payment for this milestone already exists.",
            code="PAYMENT_ALREADY_EXISTS",
            details={"payment_id": existing.id, "status": existing.status.value},
        )

    fee, freelancer_amount = compute_platform_fee(amount)
    payment = Payment(
        contract_id=contract.id,
        milestone_id=milestone.id,
        client_id=requester.id,
        freelancer_id=contract.freelancer_id,
        amount=amount,
        platform_fee=fee,
        freelancer_amount=freelancer_amount,
        currency=contract.currency,
        type=PaymentType.MILESTONE_PAYMENT,
        status=PaymentStatus.PENDING,
        metadata_json={
            "description": f"Payment for milestone: {milestone.title}",
            "payment_method_id": payment_method_id,
            "customer_id": requester.external_customer_id,
        },
    )
    db.add(payment)
    try:
        db.flush()
        log_audit(
            db,
            actor=actor_for_user(requester),
            action="PAYMENT_INTENT_REQUESTED",
            entity="Payment",
            entity_id=payment.id,
            data={
                "contract_id": contract.id,
                "milestone_id": milestone.id,
                "amount": str(amount),
                "platform_fee": str(fee),
            },
        )
        db.commit()
    except IntegrityError as exc:
        # Lost a race against a concurrent request for the same milestone.
        db.rollback()
        raise ConflictError(
            "A payment for this milestone already exists.", code="PAYMENT_ALREADY_EXISTS"
        ) from exc

    logger.info(
        "Payment created",
        extra={"payment_id": payment.id, "milestone_id": milestone.id, "amount": str(amount)},
    )
    intent = _request_intent(db, payment)
    return payment, intent


def _request_intent(db: Session, payment: Payment) -> Any:
    """Call the processor for a PENDING payment, or re-issue it for one stuck in PROCESSING."""

    metadata = payment.metadata_json or {}
    expected = payment.status
    try:
        intent = psp_stripe.get_stripe_client().create_payment_intent(
            payment,
            payment_method_id=metadata.get("payment_method_id"),
            customer_id=metadata.get("customer_id"),
        )
    except ProcessorError as exc:
        if exc.retryable:
            if expected == PaymentStatus.PENDING:
                ledger.transition_payment(db, payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING)
                move_milestone(db, payment.milestone_id, MilestoneStatus.APPROVED, MilestoneStatus.PAYMENT_PENDING)
                db.commit()
            db.refresh(payment)
            raise exc.bind_payment(payment.id, payment.status.value)
        if expected == PaymentStatus.PENDING:
            # The call was issued; a payment only reaches FAILED from PROCESSING.
            ledger.transition_payment(db, payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING)
        ledger.transition_payment(
            db, payment.id, PaymentStatus.PROCESSING, PaymentStatus.FAILED, failure_reason=exc.message[:255]
        )
        move_milestone(db, payment.milestone_id, MilestoneStatus.PAYMENT_PENDING, MilestoneStatus.APPROVED)
        log_audit(
            db,
            actor="system",
            action="PAYMENT_INTENT_FAILED",
            entity="Payment",
            entity_id=payment.id,
            data={"code": exc.code},
        )
        db.commit()
        db.refresh(payment)
        raise exc.bind_payment(payment.id, payment.status.value)

    if expected == PaymentStatus.PENDING:
        ledger.transition_payment(
            db,
            payment.id,
            PaymentStatus.PENDING,
            PaymentStatus.PROCESSING,
            external_intent_id=intent.id,
        )
        move_milestone(db, payment.milestone_id, MilestoneStatus.APPROVED, MilestoneStatus.PAYMENT_PENDING)
    else:
        db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.external_intent_id.is_(None))
            .values(external_intent_id=intent.id)
            .execution_options(synchronize_session=False)
        )
    log_audit(
        db,
        actor="system",
        action="PAYMENT_INTENT_CREATED",
        entity="Payment",
        entity_id=payment.id,
        data={"external_intent_id": intent.id, "intent_status": getattr(intent, "status", None)},
    )
    db.commit()
    db.refresh(payment)
    return intent


def confirm_payment_intent(
    db: Session,
    *,
    external_intent_id: str,
    requester: User | None = None,
) -> tuple[Payment, Any]:
    """Re-query the processor and settle the payment; safe to call any number of times."""

    payment = get_existing_by_key(db, Payment, external_intent_id, key_field="external_intent_id")
    if payment is None:
        raise NotFoundError("Payment not found for this intent.", code="PAYMENT_NOT_FOUND")
    if requester is not None and not requester.is_admin and requester.id != payment.client_id:
        raise AuthorizationError("Not allowed to confirm this payment.", code="NOT_PAYMENT_CLIENT")

    intent = psp_stripe.get_stripe_client().retrieve_payment_intent(external_intent_id)
    apply_intent_status(db, payment, intent)
    return payment, intent


def apply_intent_status(db: Session, payment: Payment, intent: Any) -> Payment:
    """Map the processor's intent status onto the local payment."""

    status = getattr(intent, "status", None)
    if status == INTENT_SUCCEEDED:
        _complete_payment(db, payment, intent)
    elif _intent_failed(intent):
        _fail_payment(db, payment, _failure_message(intent))
    else:
        logger.info(
            "Payment intent not settled yet",
            extra={"payment_id": payment.id, "intent_status": status},
        )
    db.refresh(payment)
    return payment


def _complete_payment(db: Session, payment: Payment, intent: Any) -> None:
    now = utcnow()
    hold = timedelta(days=get_settings().ESCROW_HOLD_DAYS)
    won = ledger.transition_payment(
        db,
        payment.id,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        completed_at=now,
        escrow_release_date=now + hold,
    )
    if not won:
        db.rollback()
        logger.info(
            "Payment already settled; confirm is a no-op",
            extra={"payment_id": payment.id, "status": payment.status.value},
        )
        return

    ledger.append_transaction(
        db,
        payment,
        TransactionType.CHARGE,
        payment.amount,
        external_id=getattr(intent, "latest_charge", None) or intent.id,
        description=(payment.metadata_json or {}).get("description"),
        metadata={"platform_fee": str(payment.platform_fee)},
    )
    move_milestone(db, payment.milestone_id, MilestoneStatus.PAYMENT_PENDING, MilestoneStatus.PAID)
    log_audit(
        db,
        actor="system",
        action="PAYMENT_COMPLETED",
        entity="Payment",
        entity_id=payment.id,
        data={"amount": str(payment.amount), "external_intent_id": intent.id},
    )
    db.commit()
    invalidate_users(payment.client_id, payment.freelancer_id)


def _fail_payment(db: Session, payment: Payment, reason: str) -> None:
    won = ledger.transition_payment(
        db, payment.id, PaymentStatus.PROCESSING, PaymentStatus.FAILED, failure_reason=reason
    )
    if not won:
        db.rollback()
        return
    move_milestone(db, payment.milestone_id, MilestoneStatus.PAYMENT_PENDING, MilestoneStatus.APPROVED)
    log_audit(
        db,
        actor="system",
        action="PAYMENT_FAILED",
        entity="Payment",
        entity_id=payment.id,
        data={"reason": reason},
    )
    db.commit()
    invalidate_users(payment.client_id, payment.freelancer_id)
    logger.warning("Payment failed", extra={"payment_id": payment.id, "reason": reason})


def retry_pending_intent(db: Session, payment: Payment) -> Payment:
    """Recover the processor handle of a payment whose create call timed out or never ran."""

    if payment.external_intent_id is not None:
        return payment
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return payment
    intent = _request_intent(db, payment)
    return apply_intent_status(db, payment, intent)


__all__ = [
    "create_payment_intent",
    "confirm_payment_intent",
    "apply_intent_status",
    "retry_pending_intent",
]
