"""Security dependencies for API key validation, scopes and the calling user."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable, Set

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from marketpay.db import get_db
from marketpay.models.api_key import ApiKey, ApiScope
from marketpay.models.audit import AuditLog
from marketpay.models.user import User, UserRole
from marketpay.utils.apikey import find_valid_key
from marketpay.utils.audit import sanitize_payload_for_audit
from marketpay.utils.errors import AuthorizationError, error_response


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> ApiKey:
    """Validate API key tokens and return the corresponding row."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    key = find_valid_key(db, token)
    if key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid or expired API key"),
        )

    now = datetime.now(UTC)
    key.last_used_at = now
    db.add(
        AuditLog(
            actor=f"apikey:{key.id}",
            action="API_KEY_USED",
            entity="ApiKey",
            entity_id=key.id,
            data_json=sanitize_payload_for_audit({"scope": key.scope.value, "prefix": key.prefix}),
            at=now,
        )
    )
    db.commit()
    return key


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Require a key with one of the allowed scopes; admin keys pass everywhere."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(key: ApiKey = Depends(require_api_key)) -> ApiKey:
        if key.scope == ApiScope.admin or key.scope in allowed:
            return key
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_SCOPE",
                f"Requires one of: {[scope.value for scope in allowed]}",
            ),
        )

    return _dep


def get_current_user(
    api_key: ApiKey = Depends(require_api_key),
    db: Session = Depends(get_db),
) -> User:
    """Return the active user the API key was issued to."""

    user = db.get(User, api_key.user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response("USER_INACTIVE", "User for this API key is missing or inactive."),
        )
    return user


def require_role(*roles: UserRole) -> Callable:
    """Restrict an endpoint to users holding one of ``roles`` (admins always pass)."""

    def _dep(user: User = Depends(get_current_user)) -> User:
        if user.is_admin or user.role in roles:
            return user
        raise AuthorizationError(
            f"Requires role: {', '.join(role.value for role in roles)}",
            code="INSUFFICIENT_ROLE",
        )

    return _dep


__all__ = ["require_api_key", "require_scope", "get_current_user", "require_role"]
