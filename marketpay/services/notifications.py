"""Fire-and-forget user notifications.

Delivery (email, in-app) belongs to the messaging service; the payment core
only hands events over. Handlers run as FastAPI background tasks, after the
response is sent, so a failing notifier never affects a money operation.
"""
from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = "payment.received"
PAYMENT_FAILED = "payment.failed"
ESCROW_RELEASED = "escrow.released"
PAYOUT_REQUESTED = "payout.requested"
PAYMENT_REFUNDED = "payment.refunded"


def notify_user(user_id: int | None, event: str, payload: dict[str, Any] | None = None) -> None:
    """Hand a notification to the messaging service."""

    if user_id is None:
        return
    logger.info(
        "Notification dispatched",
        extra={"user_id": user_id, "event": event, "payload": payload or {}},
    )


__all__ = [
    "notify_user",
    "PAYMENT_RECEIVED",
    "PAYMENT_FAILED",
    "ESCROW_RELEASED",
    "PAYOUT_REQUESTED",
    "PAYMENT_REFUNDED",
]
