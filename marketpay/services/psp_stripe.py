"""Stripe SDK wrapper for charges, connected accounts, transfers, payouts and refunds."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict

import stripe

from marketpay.config import Settings, get_settings
from marketpay.utils.errors import ProcessorError

if TYPE_CHECKING:  # pragma: no cover - hints only
    from marketpay.models import EscrowAccount, Payment, PayoutMethod, User

logger = logging.getLogger(__name__)

# Network trouble and Stripe-side outages: the request may or may not have
# been applied, so the caller keeps the local record in PROCESSING.
_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _to_cents(amount: Decimal) -> int:
    """Convert a decimal amount to the smallest currency unit expected by Stripe."""

    normalized = Decimal(str(amount)).quantize(Decimal("0.01"))
    return int((normalized * 100).to_integral_value())


def from_cents(value: int | None) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(Decimal("0.01"))


def _translate_error(exc: stripe.StripeError, operation: str, **context: Any) -> ProcessorError:
    log_context = {"operation": operation, "stripe_code": getattr(exc, "code", None), **context}
    if isinstance(exc, _RETRYABLE_ERRORS):
        logger.error("Stripe call failed, outcome unknown", extra=log_context, exc_info=True)
        return ProcessorError("Payment processor unavailable; check back later.", retryable=True)
    if isinstance(exc, stripe.CardError):
        logger.warning(
            "Stripe declined the charge",
            extra={**log_context, "decline_code": getattr(exc, "decline_code", None)},
        )
        return ProcessorError(
            str(getattr(exc, "user_message", None) or exc),
            retryable=False,
            code="PAYMENT_DECLINED",
            status_code=402,
        )
    if isinstance(exc, stripe.InvalidRequestError):
        logger.error("Invalid request to Stripe", extra=log_context)
        return ProcessorError(str(exc), retryable=False, code="PROCESSOR_REJECTED")
    logger.critical("Unexpected Stripe error", extra=log_context, exc_info=True)
    return ProcessorError("Payment processor error.", retryable=False)


class StripeClient:
    """Wrapper around the Stripe Python SDK to isolate processor concerns.

    Every mutating call carries an idempotency key derived from a local id, so
    repeating a call after a timeout returns the original object instead of
    creating a second one.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret_key = settings.STRIPE_SECRET_KEY
        if not self._secret_key:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = self._secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)

    @classmethod
    def from_env(cls) -> "StripeClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    # --- Charges -------------------------------------------------------------

    def create_payment_intent(
        self,
        payment: "Payment",
        *,
        payment_method_id: str,
        customer_id: str | None = None,
    ) -> stripe.PaymentIntent:
        """Create and confirm a PaymentIntent for a milestone payment."""

        metadata: Dict[str, Any] = {
            "payment_id": str(payment.id),
            "contract_id": str(payment.contract_id),
            "milestone_id": str(payment.milestone_id),
            "platform_fee": str(payment.platform_fee),
        }
        params: Dict[str, Any] = {
            "amount": _to_cents(payment.amount),
            "currency": payment.currency,
            "payment_method": payment_method_id,
            "confirm": True,
            "return_url": self.settings.client_url(self.settings.PAYMENT_RETURN_PATH),
            "transfer_group": f"contract_{payment.contract_id}",
            "metadata": metadata,
            "idempotency_key": f"payment-intent:{payment.id}",
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            return stripe.PaymentIntent.create(**params)
        except stripe.StripeError as exc:
            raise _translate_error(exc, "create_payment_intent", payment_id=payment.id) from exc

    def retrieve_payment_intent(self, intent_id: str) -> stripe.PaymentIntent:
        try:
            return stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise _translate_error(exc, "retrieve_payment_intent", intent_id=intent_id) from exc

    # --- Connected accounts --------------------------------------------------

    def create_connected_account(self, user: "User") -> stripe.Account:
        """Create a Stripe Connect Express account able to receive transfers."""

        try:
            return stripe.Account.create(
                type="express",
                country=getattr(user, "country", None) or self.settings.STRIPE_CONNECT_COUNTRY,
                email=user.email,
                capabilities={"transfers": {"requested": True}},
                metadata={"user_id": str(user.id)},
                idempotency_key=f"connect-account:{user.id}",
            )
        except stripe.StripeError as exc:
            raise _translate_error(exc, "create_connected_account", user_id=user.id) from exc

    def create_account_link(self, account_id: str) -> stripe.AccountLink:
        """Create an onboarding link that sends the user back to the client app."""

        try:
            return stripe.AccountLink.create(
                account=account_id,
                refresh_url=self.settings.client_url(self.settings.ONBOARDING_REFRESH_PATH),
                return_url=self.settings.client_url(self.settings.ONBOARDING_RETURN_PATH),
                type="account_onboarding",
            )
        except stripe.StripeError as exc:
            raise _translate_error(exc, "create_account_link") from exc

    def retrieve_account(self, account_id: str) -> stripe.Account:
        try:
            return stripe.Account.retrieve(account_id)
        except stripe.StripeError as exc:
            raise _translate_error(exc, "retrieve_account") from exc

    def retrieve_external_account(self, account_id: str, external_method_id: str) -> Any:
        """Fetch a bank account or debit card attached to a connected account."""

        try:
            return stripe.Account.retrieve_external_account(account_id, external_method_id)
        except stripe.StripeError as exc:
            raise _translate_error(exc, "retrieve_external_account") from exc

    # --- Transfers -----------------------------------------------------------

    def create_transfer(self, payment: "Payment", *, account: "EscrowAccount") -> stripe.Transfer:
        """Move a released payment's net amount from the platform to the freelancer's account."""

        try:
            return stripe.Transfer.create(
                amount=_to_cents(payment.freelancer_amount),
                currency=payment.currency,
                destination=account.external_account_id,
                transfer_group=f"contract_{payment.contract_id}",
                metadata={
                    "payment_id": str(payment.id),
                    "contract_id": str(payment.contract_id),
                    "milestone_id": str(payment.milestone_id),
                },
                idempotency_key=f"transfer:{payment.id}",
            )
        except stripe.StripeError as exc:
            raise _translate_error(exc, "create_transfer", payment_id=payment.id) from exc

    # --- Payouts -------------------------------------------------------------

    def create_payout(
        self,
        payment: "Payment",
        *,
        account: "EscrowAccount",
        payout_method: "PayoutMethod",
    ) -> stripe.Payout:
        """Pay a withdrawal out of the connected account to the chosen instrument."""

        try:
            return stripe.Payout.create(
                amount=_to_cents(payment.amount),
                currency=payment.currency,
                destination=payout_method.external_method_id,
                metadata={"payment_id": str(payment.id), "user_id": str(payment.freelancer_id)},
                stripe_account=account.external_account_id,
                idempotency_key=f"payout:{payment.id}",
            )
        except stripe.StripeError as exc:
            raise _translate_error(exc, "create_payout", payment_id=payment.id) from exc

    def retrieve_payout(self, payout_id: str, *, account: "EscrowAccount") -> stripe.Payout:
        try:
            return stripe.Payout.retrieve(payout_id, stripe_account=account.external_account_id)
        except stripe.StripeError as exc:
            raise _translate_error(exc, "retrieve_payout", payout_id=payout_id) from exc

    # --- Refunds -------------------------------------------------------------

    def create_refund(self, payment: "Payment", *, amount: Decimal, reason: str) -> stripe.Refund:
        """Refund all or part of a completed charge back to the client."""

        try:
            return stripe.Refund.create(
                payment_intent=payment.external_intent_id,
                amount=_to_cents(amount),
                reason="requested_by_customer",
                metadata={"payment_id": str(payment.id), "reason": reason[:500]},
                idempotency_key=f"refund:{payment.id}",
            )
        except stripe.StripeError as exc:
            raise _translate_error(exc, "create_refund", payment_id=payment.id) from exc


def get_stripe_client() -> StripeClient:
    """Return a client configured from the current settings."""

    return StripeClient.from_env()


__all__ = ["StripeClient", "get_stripe_client", "from_cents"]
