"""Background jobs run by the scheduler on the lock-holding process."""
from __future__ import annotations

import logging

from marketpay.config import get_settings
from marketpay.core.runtime_state import record_job_run
from marketpay.db import session_scope
from marketpay.services import consistency, escrow_release, reconciliation

logger = logging.getLogger(__name__)


def sync_processing_payments_once() -> dict:
    """Settle payments left in PROCESSING by an unreachable processor."""

    with session_scope() as db:
        result = reconciliation.sync_processing_payments(db)
    record_job_run("sync-processing-payments")
    return result.to_dict()


def consistency_check_once() -> dict:
    """Run the consistency checks and raise alerts for critical drift."""

    with session_scope() as db:
        report = consistency.run_full_check(db)
        alerts = consistency.report_issues(db, report)
    record_job_run("consistency-check")
    if alerts:
        logger.warning("Consistency issues need attention", extra={"alerts_raised": alerts})
    return {"issues_found": report.issues_found, "alerts_raised": alerts}


def release_due_payments_once() -> int:
    """Release escrow whose hold period has passed, when auto-release is on."""

    if not get_settings().AUTO_RELEASE_ENABLED:
        return 0
    with session_scope() as db:
        released = escrow_release.release_due_payments(db)
    record_job_run("auto-release")
    return released


__all__ = ["sync_processing_payments_once", "consistency_check_once", "release_due_payments_once"]
