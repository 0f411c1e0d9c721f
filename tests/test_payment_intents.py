import logging
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from marketpay.models import (
    Milestone,
    MilestoneStatus,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from marketpay.services import payment_intents
from marketpay.utils.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProcessorError,
    ValidationError,
)


def _create(db_session, client, contract, amount=None):
    milestone = contract.milestones[0]
    return payment_intents.create_payment_intent(
        db_session,
        requester=client,
        contract_id=contract.id,
        milestone_id=milestone.id,
        amount=Decimal(amount) if amount is not None else milestone.amount,
        payment_method_id="pm_card_visa",
    )


def _payment_count(db_session) -> int:
    return db_session.scalar(select(func.count()).select_from(Payment))


def test_create_intent_holds_payment_in_processing(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer, ("500.00",))

    payment, intent = _create(db_session, client_user, contract)

    assert payment.status == PaymentStatus.PROCESSING
    assert payment.external_intent_id == intent.id
    assert intent.client_secret
    assert payment.platform_fee == Decimal("25.00")
    assert payment.freelancer_amount == Decimal("475.00")
    assert payment.freelancer_id == freelancer.id
    milestone = db_session.get(Milestone, contract.milestones[0].id)
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.PAYMENT_PENDING


def test_amount_must_match_milestone(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer, ("150.00",))

    with pytest.raises(ValidationError) as exc_info:
        _create(db_session, client_user, contract, amount="200.00")

    assert exc_info.value.code == "AMOUNT_MISMATCH"
    assert _payment_count(db_session) == 0
    assert fake_stripe.calls == []


def test_only_contract_client_can_pay(db_session, fake_stripe, client_user, freelancer, make_user, make_contract):
    contract = make_contract(client_user, freelancer)
    stranger = make_user()

    with pytest.raises(AuthorizationError):
        _create(db_session, stranger, contract)


def test_unknown_contract_is_not_found(db_session, fake_stripe, client_user):
    with pytest.raises(NotFoundError) as exc_info:
        payment_intents.create_payment_intent(
            db_session,
            requester=client_user,
            contract_id=9999,
            milestone_id=1,
            amount=Decimal("10"),
            payment_method_id="pm_card_visa",
        )
    assert exc_info.value.code == "CONTRACT_NOT_FOUND"


def test_milestone_must_be_approved(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer, milestone_status=MilestoneStatus.SUBMITTED)

    with pytest.raises(ValidationError) as exc_info:
        _create(db_session, client_user, contract)
    assert exc_info.value.code == "MILESTONE_NOT_APPROVED"


def test_second_payment_for_same_milestone_conflicts(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    _create(db_session, client_user, contract)
    # Put the milestone back so only the duplicate check can reject the call.
    milestone = db_session.get(Milestone, contract.milestones[0].id)
    db_session.refresh(milestone)
    milestone.status = MilestoneStatus.APPROVED
    db_session.commit()

    with pytest.raises(ConflictError) as exc_info:
        _create(db_session, client_user, contract)

    assert exc_info.value.status_code == 409
    assert _payment_count(db_session) == 1


def test_confirm_twice_completes_once(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    payment, intent = _create(db_session, client_user, contract)

    fake_stripe.intent_status = "succeeded"
    first, _ = payment_intents.confirm_payment_intent(db_session, external_intent_id=intent.id)
    second, _ = payment_intents.confirm_payment_intent(db_session, external_intent_id=intent.id)

    assert first.status == PaymentStatus.COMPLETED
    assert second.status == PaymentStatus.COMPLETED
    assert first.completed_at is not None
    assert first.escrow_release_date is not None
    charges = db_session.scalars(
        select(Transaction).where(Transaction.payment_id == payment.id, Transaction.type == TransactionType.CHARGE)
    ).all()
    assert len(charges) == 1
    assert charges[0].amount == Decimal("500.00")
    milestone = db_session.get(Milestone, contract.milestones[0].id)
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.PAID


def test_confirm_with_pending_intent_is_noop(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    payment, intent = _create(db_session, client_user, contract)

    fake_stripe.intent_status = "requires_action"
    confirmed, _ = payment_intents.confirm_payment_intent(db_session, external_intent_id=intent.id)

    assert confirmed.status == PaymentStatus.PROCESSING


def test_declined_confirmation_fails_payment_and_reopens_milestone(
    db_session, fake_stripe, client_user, freelancer, make_contract
):
    contract = make_contract(client_user, freelancer)
    payment, intent = _create(db_session, client_user, contract)

    fake_stripe.intent_status = "requires_payment_method"
    failed, _ = payment_intents.confirm_payment_intent(db_session, external_intent_id=intent.id)

    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "Your card was declined."
    milestone = db_session.get(Milestone, contract.milestones[0].id)
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.APPROVED

    # A failed payment no longer blocks a new attempt.
    retry, _ = _create(db_session, client_user, contract)
    assert retry.id != failed.id


def test_processor_timeout_leaves_payment_processing(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    fake_stripe.intent_error = ProcessorError("Payment processor unavailable.", retryable=True)

    with pytest.raises(ProcessorError) as exc_info:
        _create(db_session, client_user, contract)

    error = exc_info.value
    assert error.retryable is True
    assert error.status_code == 503
    assert error.headers == {"Retry-After": "30"}
    assert error.details["status"] == "processing"
    payment = db_session.get(Payment, error.payment_id)
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.external_intent_id is None

    # Once the processor answers again the handle is recovered with the same key.
    fake_stripe.intent_error = None
    recovered = payment_intents.retry_pending_intent(db_session, payment)
    assert recovered.external_intent_id == f"pi_{payment.id}"
    assert recovered.status == PaymentStatus.PROCESSING

    confirmed, _ = payment_intents.confirm_payment_intent(db_session, external_intent_id=f"pi_{payment.id}")
    assert confirmed.status == PaymentStatus.COMPLETED


def test_definitive_decline_on_create_fails_payment(
    db_session, fake_stripe, client_user, freelancer, make_contract, caplog
):
    contract = make_contract(client_user, freelancer)
    fake_stripe.intent_error = ProcessorError(
        "Your card was declined.", retryable=False, code="PAYMENT_DECLINED", status_code=402
    )

    with caplog.at_level(logging.INFO, logger="marketpay.services.ledger"):
        with pytest.raises(ProcessorError) as exc_info:
            _create(db_session, client_user, contract)

    assert exc_info.value.status_code == 402
    transitions = [
        (getattr(record, "from"), record.to)
        for record in caplog.records
        if record.getMessage() == "Payment status changed"
    ]
    assert transitions == [("PENDING", "PROCESSING"), ("PROCESSING", "FAILED")]
    payment = db_session.get(Payment, exc_info.value.payment_id)
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    milestone = db_session.get(Milestone, contract.milestones[0].id)
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.APPROVED
