"""Out-of-band consistency checks over marketplace and ledger data.

Each check yields :class:`ConsistencyIssue` records. ``fix_inconsistencies``
only touches issue types with a registered handler and only when the issue is
flagged ``can_auto_fix``: recomputing denormalised ratings and re-syncing
payments stuck in PROCESSING. Money drift (ledger balances, fee splits,
contract totals) is reported for manual resolution.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, aliased

from marketpay.models import (
    Contract,
    EscrowAccount,
    Milestone,
    Payment,
    PaymentStatus,
    PaymentType,
    Project,
    Proposal,
    Review,
    ReviewStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from marketpay.services import ledger, reconciliation
from marketpay.services.alerts import create_alert
from marketpay.services.fees import to_money
from marketpay.utils.errors import ConsistencyError
from marketpay.utils.time import utcnow

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
RATING_TOLERANCE = Decimal("0.01")


class IssueType(str, Enum):
    RATING_MISMATCH = "RATING_MISMATCH"
    REVIEW_COUNT_MISMATCH = "REVIEW_COUNT_MISMATCH"
    CONTRACT_AMOUNT = "CONTRACT_AMOUNT"
    MISSING_REFERENCE = "MISSING_REFERENCE"
    LEDGER_BALANCE_MISMATCH = "LEDGER_BALANCE_MISMATCH"
    FEE_SPLIT_MISMATCH = "FEE_SPLIT_MISMATCH"
    STALE_PROCESSING = "STALE_PROCESSING"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ConsistencyIssue:
    type: IssueType
    severity: Severity
    entity: str
    entity_id: int
    description: str
    expected: Any = None
    actual: Any = None
    can_auto_fix: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        for key in ("expected", "actual"):
            if isinstance(data[key], Decimal):
                data[key] = str(data[key])
        return data


@dataclass
class ConsistencyReport:
    timestamp: datetime
    total_checked: int = 0
    issues: list[ConsistencyIssue] = field(default_factory=list)

    @property
    def issues_found(self) -> int:
        return len(self.issues)


@dataclass
class FixDetail:
    issue: ConsistencyIssue
    fixed: bool
    error: str | None = None


@dataclass
class FixReport:
    issues_fixed: int = 0
    issues_failed: int = 0
    details: list[FixDetail] = field(default_factory=list)


# --- Checks -----------------------------------------------------------------


def _published_review_stats(db: Session) -> dict[int, tuple[int, Decimal]]:
    rows = db.execute(
        select(Review.reviewee_id, func.count(Review.id), func.avg(Review.rating))
        .where(Review.status == ReviewStatus.PUBLISHED)
        .group_by(Review.reviewee_id)
    ).all()
    return {
        user_id: (int(count), Decimal(str(avg or 0)).quantize(RATING_TOLERANCE))
        for user_id, count, avg in rows
    }


def check_user_ratings(db: Session) -> tuple[int, list[ConsistencyIssue]]:
    """Stored rating and review count vs. what published reviews give."""

    stats = _published_review_stats(db)
    users = db.scalars(select(User).execution_options(populate_existing=True)).all()
    issues: list[ConsistencyIssue] = []
    for user in users:
        count, average = stats.get(user.id, (0, Decimal("0.00")))
        stored_average = Decimal(str(user.rating_average or 0)).quantize(RATING_TOLERANCE)
        if abs(stored_average - average) > RATING_TOLERANCE:
            issues.append(
                ConsistencyIssue(
                    type=IssueType.RATING_MISMATCH,
                    severity=Severity.WARNING,
                    entity="User",
                    entity_id=user.id,
                    description=f"Stored rating {stored_average} differs from computed {average}",
                    expected=average,
                    actual=stored_average,
                    can_auto_fix=True,
                )
            )
        if (user.rating_count or 0) != count:
            issues.append(
                ConsistencyIssue(
                    type=IssueType.REVIEW_COUNT_MISMATCH,
                    severity=Severity.WARNING,
                    entity="User",
                    entity_id=user.id,
                    description=f"Stored review count {user.rating_count} differs from {count} published reviews",
                    expected=count,
                    actual=user.rating_count,
                    can_auto_fix=True,
                )
            )
    return len(users), issues


def check_contract_amounts(db: Session) -> tuple[int, list[ConsistencyIssue]]:
    """Milestone amounts must add up to the contract total. Never auto-fixed."""

    rows = db.execute(
        select(Contract.id, Contract.total_amount, func.coalesce(func.sum(Milestone.amount), 0))
        .join(Milestone, Milestone.contract_id == Contract.id)
        .group_by(Contract.id, Contract.total_amount)
    ).all()
    issues: list[ConsistencyIssue] = []
    for contract_id, total_amount, milestone_sum in rows:
        total = to_money(total_amount)
        summed = to_money(milestone_sum)
        if abs(total - summed) > AMOUNT_TOLERANCE:
            issues.append(
                ConsistencyIssue(
                    type=IssueType.CONTRACT_AMOUNT,
                    severity=Severity.CRITICAL,
                    entity="Contract",
                    entity_id=contract_id,
                    description=f"Milestones sum to {summed} but contract total is {total}",
                    expected=total,
                    actual=summed,
                    can_auto_fix=False,
                )
            )
    return len(rows), issues


def check_references(db: Session) -> tuple[int, list[ConsistencyIssue]]:
    """Contract -> proposal -> project chains must point at the same parties."""

    proposal = aliased(Proposal)
    project = aliased(Project)
    rows = db.execute(
        select(Contract, proposal, project)
        .outerjoin(proposal, proposal.id == Contract.proposal_id)
        .outerjoin(project, project.id == Contract.project_id)
    ).all()
    issues: list[ConsistencyIssue] = []

    def _issue(contract_id: int, severity: Severity, description: str) -> None:
        issues.append(
            ConsistencyIssue(
                type=IssueType.MISSING_REFERENCE,
                severity=severity,
                entity="Contract",
                entity_id=contract_id,
                description=description,
                can_auto_fix=False,
            )
        )

    for contract, contract_proposal, contract_project in rows:
        if contract_project is None:
            _issue(contract.id, Severity.CRITICAL, f"Project {contract.project_id} not found")
        elif contract_project.client_id != contract.client_id:
            _issue(
                contract.id,
                Severity.WARNING,
                f"Contract client {contract.client_id} differs from project client {contract_project.client_id}",
            )
        if contract.proposal_id is None:
            continue
        if contract_proposal is None:
            _issue(contract.id, Severity.CRITICAL, f"Proposal {contract.proposal_id} not found")
            continue
        if contract_proposal.project_id != contract.project_id:
            _issue(
                contract.id,
                Severity.CRITICAL,
                f"Proposal {contract_proposal.id} belongs to project {contract_proposal.project_id}",
            )
        if contract_proposal.freelancer_id != contract.freelancer_id:
            _issue(
                contract.id,
                Severity.CRITICAL,
                f"Proposal {contract_proposal.id} was made by user {contract_proposal.freelancer_id}, "
                f"not contract freelancer {contract.freelancer_id}",
            )
    return len(rows), issues


def check_ledger_balances(db: Session) -> tuple[int, list[ConsistencyIssue]]:
    """Each balance must equal released transfers minus live withdrawals."""

    accounts = db.scalars(select(EscrowAccount).execution_options(populate_existing=True)).all()
    issues: list[ConsistencyIssue] = []
    for account in accounts:
        credited = ledger.sum_transactions(
            db,
            Transaction.type == TransactionType.TRANSFER,
            Transaction.status == TransactionStatus.SUCCEEDED,
            Payment.freelancer_id == account.user_id,
        )
        withdrawn = ledger.sum_payments(
            db,
            Payment.freelancer_id == account.user_id,
            Payment.type == PaymentType.WITHDRAWAL,
            Payment.status.in_((PaymentStatus.PROCESSING, PaymentStatus.COMPLETED)),
        )
        expected = credited - withdrawn
        actual = to_money(account.balance)
        if expected != actual:
            issues.append(
                ConsistencyIssue(
                    type=IssueType.LEDGER_BALANCE_MISMATCH,
                    severity=Severity.CRITICAL,
                    entity="EscrowAccount",
                    entity_id=account.id,
                    description=f"Balance {actual} but ledger gives {expected} ({credited} released, {withdrawn} withdrawn)",
                    expected=expected,
                    actual=actual,
                    can_auto_fix=False,
                )
            )
    return len(accounts), issues


def check_fee_splits(db: Session) -> tuple[int, list[ConsistencyIssue]]:
    payments = db.scalars(select(Payment).execution_options(populate_existing=True)).all()
    issues: list[ConsistencyIssue] = []
    for payment in payments:
        split = to_money(payment.freelancer_amount) + to_money(payment.platform_fee)
        if split != to_money(payment.amount):
            issues.append(
                ConsistencyIssue(
                    type=IssueType.FEE_SPLIT_MISMATCH,
                    severity=Severity.CRITICAL,
                    entity="Payment",
                    entity_id=payment.id,
                    description=f"Fee split {split} does not equal amount {payment.amount}",
                    expected=to_money(payment.amount),
                    actual=split,
                    can_auto_fix=False,
                )
            )
    return len(payments), issues


def _stale_description(payment: Payment) -> str:
    if payment.status == PaymentStatus.COMPLETED and payment.refund_requested_at is not None:
        return f"Refund requested at {payment.refund_requested_at.isoformat()} never settled"
    if payment.status == PaymentStatus.COMPLETED:
        return f"Release claimed at {payment.released_at.isoformat()} has no recorded transfer"
    return (
        f"{payment.type.value} payment still {payment.status.value.lower()} "
        f"since {payment.updated_at.isoformat()}"
    )


def check_stale_processing(db: Session) -> tuple[int, list[ConsistencyIssue]]:
    stale = reconciliation.stale_payments(db)
    issues = [
        ConsistencyIssue(
            type=IssueType.STALE_PROCESSING,
            severity=Severity.WARNING,
            entity="Payment",
            entity_id=payment.id,
            description=_stale_description(payment),
            can_auto_fix=True,
        )
        for payment in stale
    ]
    return len(stale), issues


CHECKS: tuple[Callable[[Session], tuple[int, list[ConsistencyIssue]]], ...] = (
    check_user_ratings,
    check_contract_amounts,
    check_references,
    check_ledger_balances,
    check_fee_splits,
    check_stale_processing,
)


def run_full_check(db: Session) -> ConsistencyReport:
    report = ConsistencyReport(timestamp=utcnow())
    for check in CHECKS:
        checked, issues = check(db)
        report.total_checked += checked
        report.issues.extend(issues)
    logger.info(
        "Consistency check finished",
        extra={"total_checked": report.total_checked, "issues_found": report.issues_found},
    )
    return report


# --- Fixes ------------------------------------------------------------------


def _fix_user_rating(db: Session, issue: ConsistencyIssue) -> None:
    count, average = _published_review_stats(db).get(issue.entity_id, (0, Decimal("0.00")))
    db.execute(
        update(User)
        .where(User.id == issue.entity_id)
        .values(rating_average=average, rating_count=count)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def _fix_stale_processing(db: Session, issue: ConsistencyIssue) -> None:
    payment = db.get(Payment, issue.entity_id, populate_existing=True)
    if payment is None:
        raise ConsistencyError(f"Payment {issue.entity_id} no longer exists.", code="PAYMENT_NOT_FOUND")
    reconciliation.sync_payment(db, payment)


FIX_HANDLERS: dict[IssueType, Callable[[Session, ConsistencyIssue], None]] = {
    IssueType.RATING_MISMATCH: _fix_user_rating,
    IssueType.REVIEW_COUNT_MISMATCH: _fix_user_rating,
    IssueType.STALE_PROCESSING: _fix_stale_processing,
}


def fix_inconsistencies(db: Session, report: ConsistencyReport, *, auto_fix: bool = False) -> FixReport:
    """Apply registered fixes to auto-fixable issues and report each outcome."""

    result = FixReport()
    for issue in report.issues:
        if not issue.can_auto_fix:
            result.details.append(FixDetail(issue=issue, fixed=False, error="Cannot auto-fix this issue"))
            continue
        if not auto_fix:
            result.details.append(FixDetail(issue=issue, fixed=False, error="Auto-fix not enabled"))
            continue
        handler = FIX_HANDLERS.get(issue.type)
        if handler is None:
            result.details.append(FixDetail(issue=issue, fixed=False, error="No auto-fix handler for this issue type"))
            result.issues_failed += 1
            continue
        try:
            handler(db, issue)
        except Exception as exc:  # noqa: BLE001 - one failing fix must not stop the pass
            db.rollback()
            logger.exception(
                "Auto-fix failed",
                extra={"issue_type": issue.type.value, "entity_id": issue.entity_id},
            )
            result.details.append(FixDetail(issue=issue, fixed=False, error=str(exc)))
            result.issues_failed += 1
            continue
        result.details.append(FixDetail(issue=issue, fixed=True))
        result.issues_fixed += 1
    logger.info(
        "Consistency fix pass finished",
        extra={"issues_fixed": result.issues_fixed, "issues_failed": result.issues_failed},
    )
    return result


def report_issues(db: Session, report: ConsistencyReport) -> int:
    """Raise an alert for each critical issue; return how many were raised."""

    raised = 0
    for issue in report.issues:
        if issue.severity != Severity.CRITICAL:
            continue
        create_alert(
            db,
            alert_type=f"CONSISTENCY_{issue.type.value}",
            severity=issue.severity.value,
            message=issue.description[:255],
            actor_user_id=None,
            payload=issue.to_dict(),
        )
        raised += 1
    return raised


__all__ = [
    "IssueType",
    "Severity",
    "ConsistencyIssue",
    "ConsistencyReport",
    "FixDetail",
    "FixReport",
    "run_full_check",
    "fix_inconsistencies",
    "report_issues",
]
