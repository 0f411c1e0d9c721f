from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from marketpay.models import Payment, PaymentStatus, Proposal, Review, ReviewStatus, User, UserRole
from marketpay.services import consistency, escrow_release, payment_intents, payouts, refunds
from marketpay.services.alerts import list_alerts
from marketpay.services.consistency import IssueType, Severity
from marketpay.utils.errors import ProcessorError
from marketpay.utils.time import utcnow


def _types(report):
    return sorted(issue.type for issue in report.issues)


def test_full_money_flow_is_consistent(
    db_session, client_user, freelancer, make_contract, make_escrow_account, make_payout_method, completed_payment
):
    contract = make_contract(client_user, freelancer, ("500.00",))
    account = make_escrow_account(freelancer)
    method = make_payout_method(account)
    payment = completed_payment(client_user, contract)
    escrow_release.release_payment(db_session, requester=client_user, payment_id=payment.id)
    payouts.request_payout(db_session, requester=freelancer, amount=Decimal("475.00"), payout_method_id=method.id)

    report = consistency.run_full_check(db_session)

    assert report.issues == []
    assert report.total_checked > 0


def test_rating_drift_is_detected_and_fixed(db_session, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    db_session.add(
        Review(
            contract_id=contract.id,
            reviewer_id=client_user.id,
            reviewee_id=freelancer.id,
            rating=4,
            status=ReviewStatus.PUBLISHED,
        )
    )
    db_session.commit()

    report = consistency.run_full_check(db_session)
    assert _types(report) == [IssueType.RATING_MISMATCH, IssueType.REVIEW_COUNT_MISMATCH]
    assert all(issue.entity_id == freelancer.id for issue in report.issues)

    fixes = consistency.fix_inconsistencies(db_session, report, auto_fix=True)

    assert fixes.issues_fixed == 2
    assert fixes.issues_failed == 0
    db_session.refresh(freelancer)
    assert freelancer.rating_average == Decimal("4.00")
    assert freelancer.rating_count == 1
    assert consistency.run_full_check(db_session).issues == []


def test_hidden_reviews_do_not_count(db_session, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer)
    db_session.add(
        Review(
            contract_id=contract.id,
            reviewer_id=client_user.id,
            reviewee_id=freelancer.id,
            rating=1,
            status=ReviewStatus.HIDDEN,
        )
    )
    db_session.commit()

    assert consistency.run_full_check(db_session).issues == []


def test_fixes_need_explicit_opt_in(db_session, freelancer):
    db_session.execute(update(User).where(User.id == freelancer.id).values(rating_count=3))
    db_session.commit()
    report = consistency.run_full_check(db_session)

    fixes = consistency.fix_inconsistencies(db_session, report)

    assert fixes.issues_fixed == 0
    assert fixes.issues_failed == 0
    assert {detail.error for detail in fixes.details} == {"Auto-fix not enabled"}


def test_contract_total_drift_is_never_auto_fixed(db_session, client_user, freelancer, make_contract):
    contract = make_contract(client_user, freelancer, ("500.00",), total="900.00")

    report = consistency.run_full_check(db_session)
    [issue] = [i for i in report.issues if i.type == IssueType.CONTRACT_AMOUNT]
    assert issue.entity_id == contract.id
    assert issue.severity == Severity.CRITICAL
    assert issue.expected == Decimal("900.00")
    assert issue.actual == Decimal("500.00")

    fixes = consistency.fix_inconsistencies(db_session, report, auto_fix=True)
    assert fixes.issues_fixed == 0
    assert fixes.details[0].error == "Cannot auto-fix this issue"


def test_proposal_from_other_freelancer_is_flagged(db_session, client_user, freelancer, make_user, make_contract):
    contract = make_contract(client_user, freelancer)
    other = make_user(UserRole.FREELANCER)
    db_session.execute(update(Proposal).where(Proposal.id == contract.proposal_id).values(freelancer_id=other.id))
    db_session.commit()

    report = consistency.run_full_check(db_session)

    [issue] = report.issues
    assert issue.type == IssueType.MISSING_REFERENCE
    assert issue.severity == Severity.CRITICAL
    assert str(other.id) in issue.description


def test_ledger_drift_raises_alert(db_session, freelancer, make_escrow_account):
    account = make_escrow_account(freelancer, balance="10.00")

    report = consistency.run_full_check(db_session)
    [issue] = report.issues
    assert issue.type == IssueType.LEDGER_BALANCE_MISMATCH
    assert issue.entity_id == account.id
    assert issue.expected == Decimal("0.00")

    assert consistency.report_issues(db_session, report) == 1
    [alert] = list_alerts(db_session, alert_type="CONSISTENCY_LEDGER_BALANCE_MISMATCH")
    assert alert.severity == "critical"
    assert alert.payload_json["actual"] == "10.00"


def test_fee_split_drift_is_flagged(db_session, client_user, freelancer, make_contract, completed_payment):
    contract = make_contract(client_user, freelancer)
    payment = completed_payment(client_user, contract)
    db_session.execute(update(Payment).where(Payment.id == payment.id).values(platform_fee=Decimal("30.00")))
    db_session.commit()

    report = consistency.run_full_check(db_session)

    [issue] = report.issues
    assert issue.type == IssueType.FEE_SPLIT_MISMATCH
    assert issue.actual == Decimal("505.00")


def test_stale_processing_payment_is_resynced(db_session, fake_stripe, client_user, freelancer, make_contract):
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
    db_session.execute(
        update(Payment).where(Payment.id == payment.id).values(updated_at=utcnow() - timedelta(hours=2))
    )
    db_session.commit()

    report = consistency.run_full_check(db_session)
    [issue] = report.issues
    assert issue.type == IssueType.STALE_PROCESSING

    fake_stripe.intent_status = "succeeded"
    fixes = consistency.fix_inconsistencies(db_session, report, auto_fix=True)

    assert fixes.issues_fixed == 1
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED


def test_failing_fix_is_counted_and_does_not_stop_the_pass(db_session, fake_stripe, client_user, freelancer, make_contract):
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
    db_session.execute(
        update(Payment).where(Payment.id == payment.id).values(updated_at=utcnow() - timedelta(hours=2))
    )
    db_session.execute(update(User).where(User.id == freelancer.id).values(rating_count=2))
    db_session.commit()
    fake_stripe.retrieve_intent_error = ProcessorError("timeout", retryable=True)

    report = consistency.run_full_check(db_session)
    fixes = consistency.fix_inconsistencies(db_session, report, auto_fix=True)

    assert fixes.issues_failed == 1
    assert fixes.issues_fixed == 1
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PROCESSING


def test_unsettled_refund_is_flagged_and_fixed(db_session, fake_stripe, client_user, freelancer, make_contract, completed_payment):
    contract = make_contract(client_user, freelancer)
    payment = completed_payment(client_user, contract)
    fake_stripe.refund_error = ProcessorError("timeout", retryable=True)
    with pytest.raises(ProcessorError):
        refunds.refund_payment(db_session, requester=client_user, payment_id=payment.id, reason="Not delivered")
    db_session.execute(
        update(Payment).where(Payment.id == payment.id).values(refund_requested_at=utcnow() - timedelta(hours=2))
    )
    db_session.commit()

    report = consistency.run_full_check(db_session)
    [issue] = report.issues
    assert issue.type == IssueType.STALE_PROCESSING
    assert issue.description.startswith("Refund requested at")

    fake_stripe.refund_error = None
    fixes = consistency.fix_inconsistencies(db_session, report, auto_fix=True)

    assert fixes.issues_fixed == 1
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.REFUNDED
