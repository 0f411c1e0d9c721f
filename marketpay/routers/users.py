"""User endpoints."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketpay.db import get_db
from marketpay.models.api_key import ApiKey, ApiScope
from marketpay.models.user import User
from marketpay.schemas.user import UserCreate, UserRead
from marketpay.security import get_current_user, require_scope
from marketpay.utils.audit import actor_from_api_key, log_audit
from marketpay.utils.errors import error_response

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> User:
    """Create a new user."""

    user = User(**payload.model_dump())
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("USER_CREATE_FAILED", "Could not create user."),
        ) from exc

    log_audit(
        db,
        actor=actor_from_api_key(api_key),
        action="CREATE_USER",
        entity="User",
        entity_id=user.id,
        data={"username": user.username, "email": user.email, "role": user.role.value},
    )
    db.commit()
    db.refresh(user)
    return user


@router.get("/me", response_model=UserRead)
def read_me(user: User = Depends(get_current_user)) -> User:
    return user


@router.get(
    "/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_scope({ApiScope.admin}))],
)
def get_user(user_id: int, db: Session = Depends(get_db)) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error_response("USER_NOT_FOUND", "User not found."))
    return user
