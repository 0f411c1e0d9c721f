"""Helpers for masking payout instrument details before they are stored or shown."""
from __future__ import annotations

from typing import Any


def last4(value: Any) -> str | None:
    """Return the last four alphanumeric characters of an instrument number."""

    if value is None:
        return None
    normalized = "".join(ch for ch in str(value) if ch.isalnum())
    if not normalized:
        return None
    return normalized[-4:]


def mask_account_number(value: Any) -> str:
    tail = last4(value)
    if tail is None:
        return "***"
    return f"****{tail}"


__all__ = ["last4", "mask_account_number"]
