"""Escrow accounts and their payout methods."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketpay.config import get_settings
from marketpay.core.cache import cache, processor_account_key
from marketpay.models import (
    EscrowAccount,
    EscrowAccountStatus,
    EscrowAccountType,
    PayoutMethod,
    PayoutMethodStatus,
    PayoutMethodType,
    User,
    UserRole,
)
from marketpay.services import psp_stripe
from marketpay.utils.audit import actor_for_user, log_audit
from marketpay.utils.errors import ConflictError, NotFoundError, ValidationError
from marketpay.utils.masking import last4

logger = logging.getLogger(__name__)

_ROLE_FOR_ACCOUNT_TYPE = {
    EscrowAccountType.CLIENT: UserRole.CLIENT,
    EscrowAccountType.FREELANCER: UserRole.FREELANCER,
}
_PROCESSOR_OBJECT_FOR_METHOD = {
    PayoutMethodType.BANK_ACCOUNT: "bank_account",
    PayoutMethodType.DEBIT_CARD: "card",
}
_BANK_STATUS_NEEDS_VERIFICATION = {"verification_failed", "errored"}


def get_account_for_user(db: Session, user_id: int) -> EscrowAccount | None:
    return db.scalars(select(EscrowAccount).where(EscrowAccount.user_id == user_id)).first()


def require_account(db: Session, user: User) -> EscrowAccount:
    account = get_account_for_user(db, user.id)
    if account is None:
        raise NotFoundError("Escrow account not found.", code="ESCROW_ACCOUNT_NOT_FOUND")
    return account


def create_escrow_account(
    db: Session, *, user: User, account_type: EscrowAccountType
) -> tuple[EscrowAccount, str]:
    """Open the user's escrow account and return it with a processor onboarding link."""

    if _ROLE_FOR_ACCOUNT_TYPE[account_type] != user.role:
        raise ValidationError(
            "Account type does not match the user's role.",
            code="ACCOUNT_TYPE_MISMATCH",
            details={"account_type": account_type.value, "role": user.role.value},
        )
    if get_account_for_user(db, user.id) is not None:
        raise ConflictError("Escrow account already exists.", code="ESCROW_ACCOUNT_EXISTS")

    client = psp_stripe.get_stripe_client()
    processor_account = client.create_connected_account(user)
    link = client.create_account_link(processor_account.id)

    account = EscrowAccount(
        user_id=user.id,
        external_account_id=processor_account.id,
        account_type=account_type,
        status=EscrowAccountStatus.PENDING,
        currency=get_settings().DEFAULT_CURRENCY,
    )
    db.add(account)
    try:
        db.flush()
        log_audit(
            db,
            actor=actor_for_user(user),
            action="ESCROW_ACCOUNT_CREATED",
            entity="EscrowAccount",
            entity_id=account.id,
            data={"account_type": account_type.value, "external_account_id": processor_account.id},
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Escrow account already exists.", code="ESCROW_ACCOUNT_EXISTS") from exc

    db.refresh(account)
    logger.info("Escrow account created", extra={"account_id": account.id, "user_id": user.id})
    return account, link.url


def _processor_flags(account: EscrowAccount) -> dict[str, bool]:
    key = processor_account_key(account.external_account_id)
    flags = cache.get(key)
    if flags is not None:
        return flags
    processor_account = psp_stripe.get_stripe_client().retrieve_account(account.external_account_id)
    flags = {
        "charges_enabled": bool(getattr(processor_account, "charges_enabled", False)),
        "payouts_enabled": bool(getattr(processor_account, "payouts_enabled", False)),
        "details_submitted": bool(getattr(processor_account, "details_submitted", False)),
    }
    # Only a fully onboarded account is stable enough to serve from cache.
    if flags["details_submitted"] and flags["payouts_enabled"]:
        cache.set(key, flags)
    return flags


def _status_from_flags(current: EscrowAccountStatus, flags: dict[str, bool]) -> EscrowAccountStatus:
    if current == EscrowAccountStatus.SUSPENDED:
        return current
    ready = flags["details_submitted"] and flags["payouts_enabled"]
    if ready:
        return EscrowAccountStatus.ACTIVE
    if current == EscrowAccountStatus.ACTIVE:
        return EscrowAccountStatus.RESTRICTED
    return current


def get_escrow_account(db: Session, *, user: User) -> tuple[EscrowAccount, dict[str, bool]]:
    """Return the account with live processor flags, promoting it once onboarding completes."""

    account = require_account(db, user)
    flags = _processor_flags(account)
    new_status = _status_from_flags(account.status, flags)
    if new_status != account.status:
        result = db.execute(
            update(EscrowAccount)
            .where(EscrowAccount.id == account.id, EscrowAccount.status == account.status)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            log_audit(
                db,
                actor="system",
                action="ESCROW_ACCOUNT_STATUS_CHANGED",
                entity="EscrowAccount",
                entity_id=account.id,
                data={"from": account.status.value, "to": new_status.value, **flags},
            )
            logger.info(
                "Escrow account status changed",
                extra={"account_id": account.id, "from": account.status.value, "to": new_status.value},
            )
        db.commit()
        db.refresh(account)
    return account, flags


def refresh_onboarding_link(db: Session, *, user: User) -> str:
    account = require_account(db, user)
    link = psp_stripe.get_stripe_client().create_account_link(account.external_account_id)
    return link.url


def _method_status(instrument: Any) -> PayoutMethodStatus:
    status = getattr(instrument, "status", None)
    if status in _BANK_STATUS_NEEDS_VERIFICATION:
        return PayoutMethodStatus.VERIFICATION_REQUIRED
    return PayoutMethodStatus.ACTIVE


def _clear_default(db: Session, account_id: int) -> None:
    db.execute(
        update(PayoutMethod)
        .where(PayoutMethod.escrow_account_id == account_id, PayoutMethod.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session=False)
    )


def add_payout_method(
    db: Session,
    *,
    user: User,
    method_type: PayoutMethodType,
    external_method_id: str,
    is_default: bool = False,
) -> PayoutMethod:
    """Validate an instrument with the processor and store its masked details."""

    account = require_account(db, user)
    if account.status == EscrowAccountStatus.SUSPENDED:
        raise ValidationError("Escrow account is suspended.", code="ESCROW_ACCOUNT_SUSPENDED")
    duplicate = db.scalars(
        select(PayoutMethod).where(
            PayoutMethod.escrow_account_id == account.id,
            PayoutMethod.external_method_id == external_method_id,
        )
    ).first()
    if duplicate is not None:
        raise ConflictError("Payout method already added.", code="PAYOUT_METHOD_EXISTS")

    instrument = psp_stripe.get_stripe_client().retrieve_external_account(
        account.external_account_id, external_method_id
    )
    if getattr(instrument, "object", None) != _PROCESSOR_OBJECT_FOR_METHOD[method_type]:
        raise ValidationError(
            "Payout instrument does not match the requested type.",
            code="PAYOUT_METHOD_TYPE_MISMATCH",
            details={"type": method_type.value},
        )
    funding = getattr(instrument, "funding", None)
    if method_type == PayoutMethodType.DEBIT_CARD and funding not in (None, "debit"):
        raise ValidationError("Only debit cards can receive payouts.", code="CARD_NOT_DEBIT")

    existing_count = int(
        db.scalar(select(func.count()).select_from(PayoutMethod).where(PayoutMethod.escrow_account_id == account.id))
        or 0
    )
    make_default = is_default or existing_count == 0
    if make_default:
        _clear_default(db, account.id)

    method = PayoutMethod(
        escrow_account_id=account.id,
        type=method_type,
        external_method_id=external_method_id,
        is_default=make_default,
        last4=last4(getattr(instrument, "last4", None)),
        brand=getattr(instrument, "brand", None),
        bank_name=getattr(instrument, "bank_name", None),
        country=getattr(instrument, "country", None),
        status=_method_status(instrument),
    )
    db.add(method)
    try:
        db.flush()
        log_audit(
            db,
            actor=actor_for_user(user),
            action="PAYOUT_METHOD_ADDED",
            entity="PayoutMethod",
            entity_id=method.id,
            data={
                "type": method_type.value,
                "external_method_id": external_method_id,
                "is_default": make_default,
                "last4": method.last4,
            },
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Payout method already added.", code="PAYOUT_METHOD_EXISTS") from exc

    db.refresh(method)
    logger.info(
        "Payout method added",
        extra={"account_id": account.id, "payout_method_id": method.id, "is_default": make_default},
    )
    return method


def set_default_payout_method(db: Session, *, user: User, method_id: int) -> PayoutMethod:
    account = require_account(db, user)
    method = db.get(PayoutMethod, method_id)
    if method is None or method.escrow_account_id != account.id:
        raise NotFoundError("Payout method not found.", code="PAYOUT_METHOD_NOT_FOUND")
    if method.status != PayoutMethodStatus.ACTIVE:
        raise ValidationError("Payout method is not active.", code="PAYOUT_METHOD_NOT_ACTIVE")
    if not method.is_default:
        _clear_default(db, account.id)
        db.execute(
            update(PayoutMethod)
            .where(PayoutMethod.id == method.id)
            .values(is_default=True)
            .execution_options(synchronize_session=False)
        )
        log_audit(
            db,
            actor=actor_for_user(user),
            action="PAYOUT_METHOD_DEFAULT_SET",
            entity="PayoutMethod",
            entity_id=method.id,
        )
        db.commit()
        db.refresh(method)
    return method


__all__ = [
    "get_account_for_user",
    "require_account",
    "create_escrow_account",
    "get_escrow_account",
    "refresh_onboarding_link",
    "add_payout_method",
    "set_default_payout_method",
]
