"""Alert service helpers."""
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketpay.models.alert import Alert

logger = logging.getLogger(__name__)


def create_alert(
    db: Session,
    *,
    alert_type: str,
    message: str,
    actor_user_id: int | None,
    payload: dict[str, Any],
    severity: str = "warning",
) -> Alert:
    """Persist an alert in the database."""

    alert = Alert(
        type=alert_type,
        severity=severity,
        message=message,
        actor_user_id=actor_user_id,
        payload_json=payload,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    logger.warning("Alert created", extra={"type": alert_type, "severity": severity})
    return alert


def list_alerts(db: Session, *, alert_type: str | None = None, limit: int = 50) -> list[Alert]:
    stmt = select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    if alert_type:
        stmt = stmt.where(Alert.type == alert_type)
    return list(db.scalars(stmt).all())
