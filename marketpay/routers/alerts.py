"""Alerts endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketpay.db import get_db
from marketpay.models.alert import Alert
from marketpay.models.api_key import ApiScope
from marketpay.schemas.alert import AlertRead
from marketpay.security import require_scope
from marketpay.services import alerts as alerts_service

router = APIRouter(
    prefix="/alerts",
    tags=["alerts"],
    dependencies=[Depends(require_scope({ApiScope.admin}))],
)


@router.get("", response_model=list[AlertRead], status_code=status.HTTP_200_OK)
def list_alerts(
    alert_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[Alert]:
    return alerts_service.list_alerts(db, alert_type=alert_type, limit=limit)
