"""Payment, escrow account, payout and refund endpoints."""
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from marketpay.db import get_db
from marketpay.models.payment import Payment, PaymentStatus, PaymentType
from marketpay.models.user import User, UserRole
from marketpay.schemas.escrow_account import (
    EscrowAccountCreate,
    EscrowAccountCreated,
    EscrowAccountStatusRead,
    OnboardingLinkRead,
    PayoutMethodCreate,
    PayoutMethodResponse,
)
from marketpay.schemas.payment import (
    EarningsRead,
    PaymentHistoryPage,
    PaymentIntentCreate,
    PaymentIntentResponse,
    PaymentReleaseResponse,
    PayoutCreate,
    PayoutResponse,
    RefundCreate,
    RefundResponse,
    TransferRead,
)
from marketpay.security import get_current_user, require_role
from marketpay.services import escrow_accounts, escrow_release, history, notifications
from marketpay.services import payment_intents, payouts, refunds
from marketpay.services.psp_stripe import from_cents

router = APIRouter(prefix="/payments", tags=["payments"])


def _transfer(payment: Payment, payout: Any | None) -> TransferRead:
    return TransferRead(
        id=getattr(payout, "id", None) or payment.external_transfer_id,
        amount=payment.amount,
        status=getattr(payout, "status", None) or payment.status.value.lower(),
    )


@router.post("/intent", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
def create_payment_intent(
    payload: PaymentIntentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.CLIENT)),
) -> PaymentIntentResponse:
    """Charge the client for an approved milestone; funds are then held in escrow."""

    payment, intent = payment_intents.create_payment_intent(
        db,
        requester=user,
        contract_id=payload.contract_id,
        milestone_id=payload.milestone_id,
        amount=payload.amount,
        payment_method_id=payload.payment_method_id,
    )
    return PaymentIntentResponse(payment=payment, payment_intent=intent)


@router.get("/intent/{external_intent_id}/confirm", response_model=PaymentIntentResponse)
def confirm_payment_intent(
    external_intent_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PaymentIntentResponse:
    payment, intent = payment_intents.confirm_payment_intent(
        db, external_intent_id=external_intent_id, requester=user
    )
    if payment.status == PaymentStatus.COMPLETED:
        background_tasks.add_task(
            notifications.notify_user,
            payment.freelancer_id,
            notifications.PAYMENT_RECEIVED,
            {"payment_id": payment.id, "amount": str(payment.freelancer_amount)},
        )
    elif payment.status == PaymentStatus.FAILED:
        background_tasks.add_task(
            notifications.notify_user,
            payment.client_id,
            notifications.PAYMENT_FAILED,
            {"payment_id": payment.id, "reason": payment.failure_reason},
        )
    return PaymentIntentResponse(payment=payment, payment_intent=intent)


@router.get("/history", response_model=PaymentHistoryPage)
def payment_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=history.MAX_PAGE_SIZE),
    payment_status: PaymentStatus | None = Query(default=None, alias="status"),
    payment_type: PaymentType | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    return history.list_payment_history(
        db, user=user, page=page, limit=limit, status=payment_status, payment_type=payment_type
    )


@router.get("/earnings", response_model=EarningsRead)
def earnings(
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.FREELANCER)),
) -> dict:
    return history.get_earnings(db, user=user)


@router.post("/escrow-account", response_model=EscrowAccountCreated, status_code=status.HTTP_201_CREATED)
def create_escrow_account(
    payload: EscrowAccountCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> EscrowAccountCreated:
    account, onboarding_url = escrow_accounts.create_escrow_account(
        db, user=user, account_type=payload.account_type
    )
    return EscrowAccountCreated(escrow_account=account, onboarding_url=onboarding_url)


@router.get("/escrow-account", response_model=EscrowAccountStatusRead)
def get_escrow_account(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> EscrowAccountStatusRead:
    account, flags = escrow_accounts.get_escrow_account(db, user=user)
    return EscrowAccountStatusRead(escrow_account=account, processor_account=flags)


@router.post("/escrow-account/onboarding-link", response_model=OnboardingLinkRead)
def refresh_onboarding_link(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> OnboardingLinkRead:
    return OnboardingLinkRead(onboarding_url=escrow_accounts.refresh_onboarding_link(db, user=user))


@router.post(
    "/escrow-account/payout-methods",
    response_model=PayoutMethodResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_payout_method(
    payload: PayoutMethodCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.FREELANCER)),
) -> PayoutMethodResponse:
    method = escrow_accounts.add_payout_method(
        db,
        user=user,
        method_type=payload.type,
        external_method_id=payload.external_payment_method_id,
        is_default=payload.is_default,
    )
    return PayoutMethodResponse(payout_method=method)


@router.post("/escrow-account/payout-methods/{method_id}/default", response_model=PayoutMethodResponse)
def set_default_payout_method(
    method_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.FREELANCER)),
) -> PayoutMethodResponse:
    method = escrow_accounts.set_default_payout_method(db, user=user, method_id=method_id)
    return PayoutMethodResponse(payout_method=method)


@router.post("/payout", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
def request_payout(
    payload: PayoutCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(UserRole.FREELANCER)),
) -> PayoutResponse:
    """Withdraw from the escrow balance to a payout method."""

    payment, payout = payouts.request_payout(
        db, requester=user, amount=payload.amount, payout_method_id=payload.payout_method_id
    )
    background_tasks.add_task(
        notifications.notify_user,
        user.id,
        notifications.PAYOUT_REQUESTED,
        {"payment_id": payment.id, "amount": str(payment.amount)},
    )
    return PayoutResponse(payment=payment, transfer=_transfer(payment, payout))


@router.get("/payout/{payment_id}/status", response_model=PayoutResponse)
def payout_status(
    payment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PayoutResponse:
    payment = payouts.get_withdrawal(db, payment_id)
    payment, payout = payouts.sync_payout(db, payment, requester=user)
    return PayoutResponse(payment=payment, transfer=_transfer(payment, payout))


@router.post("/{payment_id}/release", response_model=PaymentReleaseResponse)
def release_payment(
    payment_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PaymentReleaseResponse:
    """Move a completed payment's freelancer share into the freelancer's balance."""

    payment, balance = escrow_release.release_payment(db, requester=user, payment_id=payment_id)
    background_tasks.add_task(
        notifications.notify_user,
        payment.freelancer_id,
        notifications.ESCROW_RELEASED,
        {"payment_id": payment.id, "amount": str(payment.freelancer_amount)},
    )
    return PaymentReleaseResponse(payment=payment, freelancer_balance=balance)


@router.post("/{payment_id}/refund", response_model=RefundResponse)
def refund_payment(
    payment_id: int,
    payload: RefundCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> RefundResponse:
    payment, refund = refunds.refund_payment(
        db, requester=user, payment_id=payment_id, reason=payload.reason, amount=payload.amount
    )
    for recipient in (payment.client_id, payment.freelancer_id):
        background_tasks.add_task(
            notifications.notify_user,
            recipient,
            notifications.PAYMENT_REFUNDED,
            {"payment_id": payment.id, "reason": payload.reason},
        )
    return RefundResponse(
        payment=payment,
        refund={"id": refund.id, "amount": from_cents(getattr(refund, "amount", None)), "status": refund.status},
    )
