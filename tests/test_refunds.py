from decimal import Decimal

import pytest
from sqlalchemy import select

from marketpay.models import (
    Milestone,
    MilestoneStatus,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from marketpay.services import escrow_release, payment_intents, refunds
from marketpay.utils.errors import (
    AuthorizationError,
    ConflictError,
    ProcessorError,
    ValidationError,
)


@pytest.fixture
def paid(client_user, freelancer, make_contract, completed_payment):
    contract = make_contract(client_user, freelancer, ("500.00",))
    return contract, completed_payment(client_user, contract)


def test_full_refund(db_session, client_user, paid):
    contract, payment = paid

    refunded, refund = refunds.refund_payment(
        db_session, requester=client_user, payment_id=payment.id, reason="Work not delivered"
    )

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refunded_at is not None
    assert refunded.metadata_json["refund_reason"] == "Work not delivered"
    assert refund.id == f"re_{payment.id}"
    tx = db_session.scalars(
        select(Transaction).where(Transaction.payment_id == payment.id, Transaction.type == TransactionType.REFUND)
    ).one()
    assert tx.amount == Decimal("500.00")
    assert tx.metadata_json["partial"] is False
    milestone = db_session.get(Milestone, contract.milestones[0].id, populate_existing=True)
    assert milestone.status == MilestoneStatus.REFUNDED


def test_partial_refund(db_session, client_user, paid):
    _, payment = paid

    refunds.refund_payment(
        db_session, requester=client_user, payment_id=payment.id, reason="Partial delivery", amount=Decimal("120.00")
    )

    tx = db_session.scalars(
        select(Transaction).where(Transaction.payment_id == payment.id, Transaction.type == TransactionType.REFUND)
    ).one()
    assert tx.amount == Decimal("120.00")
    assert tx.metadata_json["partial"] is True


def test_refund_amount_cannot_exceed_payment(db_session, fake_stripe, client_user, paid):
    _, payment = paid

    with pytest.raises(ValidationError) as exc_info:
        refunds.refund_payment(
            db_session, requester=client_user, payment_id=payment.id, reason="x", amount=Decimal("600.00")
        )
    assert exc_info.value.code == "INVALID_REFUND_AMOUNT"
    assert not [c for c in fake_stripe.calls if c[0] == "create_refund"]


def test_second_refund_conflicts(db_session, client_user, paid):
    _, payment = paid
    refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="first")

    with pytest.raises(ConflictError) as exc_info:
        refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="second")

    assert exc_info.value.code == "ALREADY_REFUNDED"
    refund_rows = db_session.scalars(
        select(Transaction).where(Transaction.payment_id == payment.id, Transaction.type == TransactionType.REFUND)
    ).all()
    assert len(refund_rows) == 1


def test_processing_payment_cannot_be_refunded(db_session, fake_stripe, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    milestone = contract.milestones[0]
    payment, _ = payment_intents.create_payment_intent(
        db_session,
        requester=client_user,
        contract_id=contract.id,
        milestone_id=milestone.id,
        amount=milestone.amount,
        payment_method_id="pm_card_visa",
    )

    with pytest.raises(ValidationError) as exc_info:
        refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="changed mind")
    assert exc_info.value.code == "PAYMENT_NOT_REFUNDABLE"


def test_released_payment_cannot_be_refunded(db_session, client_user, freelancer, make_escrow_account, paid):
    _, payment = paid
    make_escrow_account(freelancer)
    escrow_release.release_payment(db_session, requester=client_user, payment_id=payment.id)

    with pytest.raises(ValidationError) as exc_info:
        refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="too late")
    assert exc_info.value.code == "PAYMENT_ALREADY_RELEASED"


def test_freelancer_cannot_refund(db_session, freelancer, paid):
    _, payment = paid

    with pytest.raises(AuthorizationError):
        refunds.refund_payment(db_session, requester=freelancer, payment_id=payment.id, reason="nope")


def test_processor_rejection_leaves_payment_completed(db_session, fake_stripe, client_user, paid):
    _, payment = paid
    fake_stripe.refund_status = "failed"

    with pytest.raises(ProcessorError) as exc_info:
        refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="x")

    assert exc_info.value.code == "REFUND_FAILED"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.refund_requested_at is None
    assert "pending_refund" not in payment.metadata_json


def test_unanswered_refund_blocks_release_until_settled(
    db_session, fake_stripe, client_user, freelancer, make_escrow_account, paid
):
    _, payment = paid
    account = make_escrow_account(freelancer)
    fake_stripe.refund_error = ProcessorError("Payment processor unavailable.", retryable=True)

    with pytest.raises(ProcessorError) as exc_info:
        refunds.refund_payment(
            db_session, requester=client_user, payment_id=payment.id, reason="Work not delivered"
        )
    error = exc_info.value
    assert error.retryable is True
    assert error.status_code == 503
    assert error.details["status"] == "refund_pending"

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.refund_requested_at is not None
    assert payment.metadata_json["pending_refund"] == {"amount": "500.00", "reason": "Work not delivered"}

    # The money may already be back with the client.
    with pytest.raises(ValidationError) as release_exc:
        escrow_release.release_payment(db_session, requester=client_user, payment_id=payment.id)
    assert release_exc.value.code == "REFUND_IN_PROGRESS"
    assert not [c for c in fake_stripe.calls if c[0] == "create_transfer"]
    db_session.refresh(account)
    assert account.balance == Decimal("0.00")

    # Asking again re-issues the same refund once the processor answers.
    fake_stripe.refund_error = None
    refunded, _ = refunds.refund_payment(
        db_session, requester=client_user, payment_id=payment.id, reason="Work not delivered"
    )
    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refund_requested_at is not None
    assert "pending_refund" not in refunded.metadata_json
    refund_rows = db_session.scalars(
        select(Transaction).where(Transaction.payment_id == payment.id, Transaction.type == TransactionType.REFUND)
    ).all()
    assert [row.amount for row in refund_rows] == [Decimal("500.00")]


def test_different_amount_while_refund_pending_conflicts(db_session, fake_stripe, client_user, paid):
    _, payment = paid
    fake_stripe.refund_error = ProcessorError("Payment processor unavailable.", retryable=True)
    with pytest.raises(ProcessorError):
        refunds.refund_payment(
            db_session, requester=client_user, payment_id=payment.id, reason="partial", amount=Decimal("100.00")
        )

    with pytest.raises(ConflictError) as exc_info:
        refunds.refund_payment(
            db_session, requester=client_user, payment_id=payment.id, reason="full", amount=Decimal("500.00")
        )
    assert exc_info.value.code == "REFUND_IN_PROGRESS"


def test_declined_refund_call_releases_claim(db_session, fake_stripe, client_user, freelancer, make_escrow_account, paid):
    _, payment = paid
    make_escrow_account(freelancer)
    fake_stripe.refund_error = ProcessorError("Charge already disputed.", retryable=False, code="PROCESSOR_REJECTED")

    with pytest.raises(ProcessorError) as exc_info:
        refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="x")
    assert exc_info.value.code == "PROCESSOR_REJECTED"

    db_session.refresh(payment)
    assert payment.refund_requested_at is None
    # With the claim gone the funds can be released as usual.
    _, balance = escrow_release.release_payment(db_session, requester=client_user, payment_id=payment.id)
    assert balance == Decimal("475.00")
