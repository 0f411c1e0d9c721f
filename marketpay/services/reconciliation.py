"""Bring payments whose processor outcome was never recorded back in line with the processor.

That covers payments left PENDING or PROCESSING, refunds claimed but not
settled, and releases claimed before their transfer was recorded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from marketpay.config import get_settings
from marketpay.models import Payment, PaymentStatus, PaymentType
from marketpay.services import escrow_release, ledger, payment_intents, payouts, refunds
from marketpay.utils.errors import DomainError, ProcessorError
from marketpay.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    checked: int = 0
    settled: int = 0
    still_processing: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "settled": self.settled,
            "still_processing": self.still_processing,
            "errors": self.errors,
        }


def sync_payment(db: Session, payment: Payment) -> Payment:
    """Re-query the processor for one unresolved payment and apply the outcome."""

    if payment.type == PaymentType.WITHDRAWAL:
        if payment.status != PaymentStatus.PROCESSING:
            return payment
        synced, _ = payouts.sync_payout(db, payment)
        return synced
    if payment.status == PaymentStatus.COMPLETED:
        if payment.refund_requested_at is not None:
            return refunds.resume_refund(db, payment)
        if payment.released_at is not None:
            return escrow_release.resume_release(db, payment)
        return payment
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return payment
    if payment.status == PaymentStatus.PENDING or payment.external_intent_id is None:
        return payment_intents.retry_pending_intent(db, payment)
    synced, _ = payment_intents.confirm_payment_intent(db, external_intent_id=payment.external_intent_id)
    return synced


def stale_payments(db: Session, *, older_than: timedelta | None = None, limit: int = 200) -> list[Payment]:
    """Payments whose last processor call has gone unanswered for longer than ``older_than``."""

    if older_than is None:
        older_than = timedelta(minutes=get_settings().STALE_PROCESSING_MINUTES)
    cutoff = utcnow() - older_than
    return list(
        db.scalars(
            select(Payment)
            .where(
                or_(
                    and_(
                        Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)),
                        Payment.updated_at <= cutoff,
                    ),
                    and_(
                        Payment.status == PaymentStatus.COMPLETED,
                        Payment.refund_requested_at <= cutoff,
                    ),
                    and_(
                        Payment.status == PaymentStatus.COMPLETED,
                        Payment.released_at <= cutoff,
                        Payment.id.not_in(ledger.transferred_payment_ids()),
                    ),
                )
            )
            .order_by(Payment.updated_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).all()
    )


def sync_processing_payments(db: Session, *, older_than: timedelta | None = None) -> SyncResult:
    """Sync every payment left unresolved longer than ``older_than``."""

    result = SyncResult()
    for payment in stale_payments(db, older_than=older_than):
        result.checked += 1
        try:
            synced = sync_payment(db, payment)
        except ProcessorError as exc:
            result.errors.append({"payment_id": payment.id, "code": exc.code})
            if exc.retryable:
                # Still unreachable; the payment stays unresolved for the next run.
                result.still_processing += 1
            else:
                result.settled += 1
            continue
        except DomainError as exc:
            logger.error(
                "Payment sync failed",
                extra={"payment_id": payment.id, "code": exc.code, "reason": exc.message},
            )
            result.errors.append({"payment_id": payment.id, "code": exc.code})
            continue
        if synced.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            result.still_processing += 1
        else:
            result.settled += 1
    if result.checked:
        logger.info("Stale payments synced", extra=result.to_dict())
    return result


__all__ = ["SyncResult", "sync_payment", "stale_payments", "sync_processing_payments"]
