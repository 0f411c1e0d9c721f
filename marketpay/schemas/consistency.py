"""Schemas for the admin consistency endpoints."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marketpay.services.consistency import IssueType, Severity


class ConsistencyIssueRead(BaseModel):
    type: IssueType
    severity: Severity
    entity: str
    entity_id: int
    description: str
    expected: Any = None
    actual: Any = None
    can_auto_fix: bool

    model_config = ConfigDict(from_attributes=True)


class ConsistencyReportRead(BaseModel):
    timestamp: datetime
    total_checked: int
    issues_found: int
    issues: list[ConsistencyIssueRead]

    model_config = ConfigDict(from_attributes=True)


class FixRequest(BaseModel):
    auto_fix: bool = Field(default=False, alias="autoFix")

    model_config = ConfigDict(populate_by_name=True)


class FixDetailRead(BaseModel):
    issue: ConsistencyIssueRead
    fixed: bool
    error: str | None

    model_config = ConfigDict(from_attributes=True)


class FixReportRead(BaseModel):
    issues_fixed: int
    issues_failed: int
    details: list[FixDetailRead]

    model_config = ConfigDict(from_attributes=True)


class SyncResultRead(BaseModel):
    checked: int
    settled: int
    still_processing: int
    errors: list[dict[str, Any]]

    model_config = ConfigDict(from_attributes=True)
