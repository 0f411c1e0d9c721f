"""Platform fee policy."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from marketpay.config import Settings, get_settings

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce ``value`` to a Decimal quantized to cents."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_platform_fee(amount: Decimal, settings: Settings | None = None) -> tuple[Decimal, Decimal]:
    """Split a gross amount into ``(platform_fee, freelancer_amount)``.

    The fee is a percentage of the gross amount, optionally clamped by
    ``PLATFORM_FEE_MIN``/``PLATFORM_FEE_MAX`` (0 disables a clamp) and never
    larger than the amount itself. The two parts always sum to ``amount``.
    """

    settings = settings or get_settings()
    amount = to_money(amount)
    fee = to_money(amount * Decimal(settings.PLATFORM_FEE_PERCENT) / Decimal(100))
    if settings.PLATFORM_FEE_MIN > 0:
        fee = max(fee, to_money(settings.PLATFORM_FEE_MIN))
    if settings.PLATFORM_FEE_MAX > 0:
        fee = min(fee, to_money(settings.PLATFORM_FEE_MAX))
    fee = min(fee, amount)
    return fee, amount - fee


__all__ = ["CENT", "to_money", "compute_platform_fee"]
