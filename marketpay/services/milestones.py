"""Milestone and contract status moves driven by the payment lifecycle."""
import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketpay.models import (
    Contract,
    ContractStatus,
    Milestone,
    MilestoneStatus,
    Payment,
    PaymentStatus,
    PaymentType,
)
from marketpay.utils.audit import log_audit

logger = logging.getLogger(__name__)


def move_milestone(
    db: Session,
    milestone_id: int | None,
    expected: MilestoneStatus,
    new: MilestoneStatus,
) -> bool:
    """Conditionally move a milestone; a milestone in any other state is left alone."""

    if milestone_id is None:
        return False
    result = db.execute(
        update(Milestone)
        .where(Milestone.id == milestone_id, Milestone.status == expected)
        .values(status=new)
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount == 1
    if moved:
        logger.info(
            "Milestone status changed",
            extra={"milestone_id": milestone_id, "from": expected.value, "to": new.value},
        )
    return moved


def all_milestones_paid(db: Session, contract_id: int) -> bool:
    """Return True when the contract has milestones and every one of them is paid."""

    total = int(db.scalar(select(func.count()).select_from(Milestone).where(Milestone.contract_id == contract_id)) or 0)
    if total == 0:
        return False
    unpaid = int(
        db.scalar(
            select(func.count())
            .select_from(Milestone)
            .where(Milestone.contract_id == contract_id, Milestone.status != MilestoneStatus.PAID)
        )
        or 0
    )
    return unpaid == 0


def finalize_contract_if_paid(db: Session, contract_id: int | None, *, actor: str) -> bool:
    """Complete the contract once all milestones are paid and released to the freelancer."""

    if contract_id is None or not all_milestones_paid(db, contract_id):
        return False
    unreleased = int(
        db.scalar(
            select(func.count())
            .select_from(Payment)
            .where(
                Payment.contract_id == contract_id,
                Payment.type == PaymentType.MILESTONE_PAYMENT,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.released_at.is_(None),
            )
        )
        or 0
    )
    if unreleased:
        return False
    result = db.execute(
        update(Contract)
        .where(Contract.id == contract_id, Contract.status == ContractStatus.ACTIVE)
        .values(status=ContractStatus.COMPLETED)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    log_audit(
        db,
        actor=actor,
        action="CONTRACT_COMPLETED",
        entity="Contract",
        entity_id=contract_id,
        data={"reason": "all_milestones_paid_and_released"},
    )
    logger.info("Contract completed", extra={"contract_id": contract_id})
    return True


__all__ = ["move_milestone", "all_milestones_paid", "finalize_contract_if_paid"]
