"""Process-wide scheduler state shared between the lifespan, jobs and health."""
from __future__ import annotations

from datetime import datetime, timezone

_scheduler_active = False
_last_runs: dict[str, datetime] = {}


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_job_run(job: str) -> None:
    _last_runs[job] = datetime.now(timezone.utc)


def last_job_runs() -> dict[str, str]:
    return {job: ran_at.isoformat() for job, ran_at in _last_runs.items()}


def reset() -> None:
    global _scheduler_active
    _scheduler_active = False
    _last_runs.clear()
