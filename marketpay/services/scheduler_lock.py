"""DB-backed lease so that a single process runs the reconciliation jobs."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketpay import db
from marketpay.models.scheduler_lock import SchedulerLock
from marketpay.utils.time import ensure_aware, utcnow

LOCK_NAME = "reconciliation"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _current(session: Session, name: str, *, for_update: bool = False) -> SchedulerLock | None:
    stmt = select(SchedulerLock).where(SchedulerLock.name == name)
    if for_update:
        stmt = stmt.with_for_update()
    return session.scalars(stmt).one_or_none()


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
) -> bool:
    """Take the lease if it is free, expired or already ours."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)
    try:
        lock = _current(session, name, for_update=True)
        if lock is None:
            session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
            session.commit()
            return True
        if lock.owner != owner and lock.expires_at is not None and ensure_aware(lock.expires_at) > now:
            session.rollback()
            return False
        if lock.owner != owner:
            lock.owner = owner
            lock.acquired_at = now
        lock.expires_at = expires
        session.commit()
        return True
    except IntegrityError:
        # Another runner inserted the row first.
        session.rollback()
        return False
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> bool:
    """Extend the lease while this runner still owns it."""

    session, should_close = _session(db_session)
    try:
        lock = _current(session, name, for_update=True)
        if lock is None or lock.owner != _owner_id():
            session.rollback()
            return False
        lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        session.commit()
        return True
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    session, should_close = _session(db_session)
    try:
        lock = _current(session, name, for_update=True)
        if lock is not None and lock.owner == _owner_id():
            session.delete(lock)
        session.commit()
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Lease state for the health endpoint."""

    session, should_close = _session(db_session)
    try:
        lock = _current(session, name)
        if lock is None:
            return {"status": "none", "owner": None, "present": False}
        now = utcnow()
        expires_in = (ensure_aware(lock.expires_at) - now).total_seconds() if lock.expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - ensure_aware(lock.acquired_at)).total_seconds(),
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < 0,
        }
    finally:
        if should_close:
            session.close()


__all__ = [
    "LOCK_NAME",
    "try_acquire_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "describe_scheduler_lock",
]
