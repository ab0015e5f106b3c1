"""Domain models for branch reports as served by the remote report store."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for payloads exchanged with the backend in camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReportStatus(str, Enum):
    """Lifecycle status for a report."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    FORWARDED = "forwarded"


# Metric fields a branch user edits; merge resolution keeps local values for these.
USER_EDITABLE_FIELDS = (
    "loans_disbursed",
    "loans_value_disbursed",
    "savings_collected",
    "repayments_collected",
)

# Fields owned by the backend; merge resolution always keeps server values.
SYSTEM_MANAGED_FIELDS = ("status", "approved_by", "approved_at", "updated_at")


class Report(WireModel):
    """A branch/credit-officer report record."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    id: str
    title: str = ""
    description: Optional[str] = None
    report_type: Optional[str] = None
    status: ReportStatus = ReportStatus.PENDING
    branch_id: Optional[str] = None
    branch: Optional[str] = None
    credit_officer_id: Optional[str] = None
    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    remarks: Optional[str] = None
    loans_disbursed: int = 0
    loans_value_disbursed: float = 0.0
    savings_collected: float = 0.0
    repayments_collected: float = 0.0
    total_loans_processed: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _lower_status(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, ReportStatus):
            return value.strip().lower() or ReportStatus.PENDING.value
        return value

    @field_validator("approved_at", "created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


_FIELD_BY_ALIAS = {to_camel(name): name for name in Report.model_fields}


def normalize_report_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase wire keys onto Report attribute names; unknown keys pass through."""
    return {_FIELD_BY_ALIAS.get(key, key): value for key, value in (fields or {}).items()}


class ReportFilters(WireModel):
    """Filter and paging parameters for the report list."""

    branch_id: Optional[str] = None
    status: Optional[ReportStatus] = None
    report_type: Optional[str] = None
    credit_officer_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=1000)

    def statistics_filters(self) -> "StatisticsFilters":
        return StatisticsFilters(
            branch_id=self.branch_id,
            date_from=self.date_from,
            date_to=self.date_to,
        )

    def for_branch(self, branch_id: str) -> "ReportFilters":
        return self.model_copy(update={"branch_id": branch_id})

    def cache_key(self) -> str:
        return "&".join(f"{key}={value}" for key, value in sorted(self.to_wire().items()))


class StatisticsFilters(WireModel):
    """Narrower filter subset used for aggregate statistics."""

    branch_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    def cache_key(self) -> str:
        return "&".join(f"{key}={value}" for key, value in sorted(self.to_wire().items()))


class Pagination(WireModel):
    page: int = 1
    limit: int = 10
    total: int = 0
    total_pages: int = 1


class ReportPage(WireModel):
    """One page of the report list."""

    data: List[Report] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)

    def ids(self) -> List[str]:
        return [report.id for report in self.data]

    def find(self, report_id: str) -> Optional[Report]:
        for report in self.data:
            if report.id == report_id:
                return report
        return None


class ReportStatistics(WireModel):
    """Aggregate report counters for dashboards."""

    total_reports: int = 0
    pending_reports: int = 0
    approved_reports: int = 0
    declined_reports: int = 0
    overdue_reports: int = 0


class ReportApprovalData(WireModel):
    """Payload for approve/decline review actions."""

    approved_by: str
    reason: Optional[str] = None
