"""Payment history and earnings views for the caller."""
from __future__ import annotations

import math
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from marketpay.core.cache import cache, earnings_key
from marketpay.models import Payment, PaymentStatus, PaymentType, User
from marketpay.services import ledger
from marketpay.services.escrow_accounts import get_account_for_user

MAX_PAGE_SIZE = 100


def list_payment_history(
    db: Session,
    *,
    user: User,
    page: int = 1,
    limit: int = 10,
    status: PaymentStatus | None = None,
    payment_type: PaymentType | None = None,
) -> dict[str, Any]:
    """Return the caller's payments, as client or freelancer, newest first."""

    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    conditions = [or_(Payment.client_id == user.id, Payment.freelancer_id == user.id)]
    if status is not None:
        conditions.append(Payment.status == status)
    if payment_type is not None:
        conditions.append(Payment.type == payment_type)

    total = int(db.scalar(select(func.count()).select_from(Payment).where(*conditions)) or 0)
    items = db.scalars(
        select(Payment)
        .where(*conditions)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .execution_options(populate_existing=True)
    ).all()
    return {
        "items": list(items),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def get_earnings(db: Session, *, user: User) -> dict[str, Decimal | str]:
    """Summarise a freelancer's money: withdrawable, held, in flight and paid out."""

    key = earnings_key(user.id)
    cached = cache.get(key)
    if cached is not None:
        return cached

    account = get_account_for_user(db, user.id)
    available = ledger.current_balance(db, account.id) if account is not None else Decimal("0.00")
    in_escrow = ledger.sum_payments(
        db,
        Payment.freelancer_id == user.id,
        Payment.type == PaymentType.MILESTONE_PAYMENT,
        Payment.status == PaymentStatus.COMPLETED,
        Payment.released_at.is_(None),
        column=Payment.freelancer_amount,
    )
    pending = ledger.sum_payments(
        db,
        Payment.freelancer_id == user.id,
        Payment.type == PaymentType.MILESTONE_PAYMENT,
        Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)),
        column=Payment.freelancer_amount,
    )
    withdrawn = ledger.sum_payments(
        db,
        Payment.freelancer_id == user.id,
        Payment.type == PaymentType.WITHDRAWAL,
        Payment.status == PaymentStatus.COMPLETED,
    )
    earnings = {
        "available": available,
        "in_escrow": in_escrow,
        "pending": pending,
        "withdrawn": withdrawn,
        "currency": account.currency if account is not None else "usd",
    }
    cache.set(key, earnings)
    return earnings


__all__ = ["list_payment_history", "get_earnings"]
