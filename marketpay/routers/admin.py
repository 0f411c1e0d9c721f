"""Admin endpoints for consistency checks and processor reconciliation."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketpay.db import get_db
from marketpay.models.api_key import ApiScope
from marketpay.schemas.consistency import (
    ConsistencyReportRead,
    FixReportRead,
    FixRequest,
    SyncResultRead,
)
from marketpay.security import require_scope
from marketpay.services import consistency, reconciliation

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_scope({ApiScope.admin}))],
)


@router.post("/consistency/check", response_model=ConsistencyReportRead)
def check_consistency(db: Session = Depends(get_db)) -> consistency.ConsistencyReport:
    return consistency.run_full_check(db)


@router.post("/consistency/fix", response_model=FixReportRead)
def fix_consistency(payload: FixRequest | None = None, db: Session = Depends(get_db)) -> consistency.FixReport:
    """Re-run the checks and apply the auto-fixable repairs when ``autoFix`` is set."""

    report = consistency.run_full_check(db)
    return consistency.fix_inconsistencies(db, report, auto_fix=bool(payload and payload.auto_fix))


@router.post("/payments/sync", response_model=SyncResultRead)
def sync_payments(db: Session = Depends(get_db)) -> reconciliation.SyncResult:
    """Re-query the processor for every payment still in PROCESSING."""

    return reconciliation.sync_processing_payments(db)
