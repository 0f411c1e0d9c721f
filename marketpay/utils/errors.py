"""Domain errors and the standardized error payload."""
from typing import Any

from fastapi import status


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class DomainError(Exception):
    """Base class for errors surfaced to API callers with an HTTP status."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    @property
    def headers(self) -> dict[str, str] | None:
        return None

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class ValidationError(DomainError):
    """Bad input or a precondition that does not hold; nothing was changed."""

    default_code = "VALIDATION_ERROR"


class ConflictError(ValidationError):
    """The request collides with existing state (duplicate payment, second refund)."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class AuthorizationError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"


class ProcessorError(DomainError):
    """The payment processor call failed or timed out.

    Retryable failures leave the local record in ``PROCESSING`` and map to 503
    with ``Retry-After``; definitive ones (declines, invalid requests) keep
    their own status code.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "PROCESSOR_ERROR"
    retry_after_seconds = 30

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        code: str | None = None,
        payment_id: int | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        if retryable and status_code is None:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        super().__init__(
            message,
            code=code or ("PROCESSOR_UNAVAILABLE" if retryable else None),
            details=details,
            status_code=status_code,
        )
        self.retryable = retryable
        self.payment_id = payment_id
        self.details["retryable"] = retryable

    def bind_payment(self, payment_id: int, payment_status: str) -> "ProcessorError":
        """Attach the local payment that holds the recoverable state."""

        self.payment_id = payment_id
        self.details["payment_id"] = payment_id
        self.details["status"] = payment_status.lower()
        return self

    @property
    def headers(self) -> dict[str, str] | None:
        if self.retryable:
            return {"Retry-After": str(self.retry_after_seconds)}
        return None


class ConsistencyError(DomainError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "CONSISTENCY_ERROR"


__all__ = [
    "error_response",
    "DomainError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "AuthorizationError",
    "ProcessorError",
    "ConsistencyError",
]
