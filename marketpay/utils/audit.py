"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from marketpay.models.audit import AuditLog
from marketpay.utils.masking import mask_account_number
from marketpay.utils.time import utcnow


SENSITIVE_KEYS = {
    "account_number",
    "card_number",
    "email",
    "client_secret",
    "external_account_id",
    "external_method_id",
    "external_intent_id",
    "external_transfer_id",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in {"account_number", "card_number"}:
        return mask_account_number(value)

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "client_secret":
        return "***"

    # Processor handles: keep a short tail for correlation with the dashboard.
    text = str(value)
    if len(text) <= 6:
        return "***"
    return f"***{text[-6:]}"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Add an audit entry to the session; the caller's commit persists it."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


def actor_for_user(user: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for a user."""

    user_id = getattr(user, "id", None)
    if user_id is None:
        return fallback
    return f"user:{user_id}"


def actor_from_api_key(api_key: Any, fallback: str = "system") -> str:
    """Return the canonical actor string for an API key."""

    key_id = getattr(api_key, "id", None)
    if key_id is None:
        return fallback
    return f"apikey:{key_id}"
