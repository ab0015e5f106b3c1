"""Models for optimistic updates, the update queue, conflicts, and polling state."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from reportsync.models.report import Report, ReportFilters, ReportPage, ReportStatistics


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UpdateKind(str, Enum):
    """Supported mutation kinds."""

    APPROVE = "approve"
    DECLINE = "decline"
    UPDATE = "update"
    DELETE = "delete"


class UpdateStatus(str, Enum):
    """Lifecycle state for one queued mutation."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConflictType(str, Enum):
    STATUS = "status"
    VERSION = "version"
    DATA = "data"


class ConflictResolution(str, Enum):
    """Per-conflict resolution chosen by a strategy or a user."""

    USE_SERVER = "use_server"
    USE_LOCAL = "use_local"
    MERGE = "merge"
    PROMPT_USER = "prompt_user"


class ConflictStrategy(str, Enum):
    """Coordinator-wide conflict policy."""

    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE = "merge"
    PROMPT_USER = "prompt_user"

    def resolution(self) -> ConflictResolution:
        return {
            ConflictStrategy.SERVER_WINS: ConflictResolution.USE_SERVER,
            ConflictStrategy.CLIENT_WINS: ConflictResolution.USE_LOCAL,
            ConflictStrategy.MERGE: ConflictResolution.MERGE,
            ConflictStrategy.PROMPT_USER: ConflictResolution.PROMPT_USER,
        }[self]


class OptimisticUpdate(BaseModel):
    """A local mutation applied ahead of server confirmation."""

    id: str
    report_id: str
    kind: UpdateKind
    timestamp: datetime = Field(default_factory=_utcnow)
    original_data: Optional[Report] = None
    optimistic_data: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    confirmed_version: Optional[datetime] = None
    reconciled_version: Optional[datetime] = None


class UpdateQueueItem(BaseModel):
    """A queued mutation tracked through admission, execution, and settlement."""

    id: str
    kind: UpdateKind
    report_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    retry_count: int = 0
    status: UpdateStatus = UpdateStatus.PENDING


class Conflict(BaseModel):
    """Disagreement between an optimistic update and a newer server copy."""

    id: str
    update: OptimisticUpdate
    server_data: Report
    conflict_type: ConflictType
    detected_at: datetime = Field(default_factory=_utcnow)


class PollingSnapshot(BaseModel):
    """Latest completed poll of the report list and statistics."""

    filters: ReportFilters
    reports: Optional[ReportPage] = None
    statistics: Optional[ReportStatistics] = None
    last_update: Optional[datetime] = None
    fetched_at: datetime = Field(default_factory=_utcnow)


class RefreshStatus(BaseModel):
    """Background refresh state of the poller."""

    is_refreshing: bool = False
    last_refresh: Optional[datetime] = None
    is_enabled: bool = True


class ConflictResolveRequest(BaseModel):
    resolution: ConflictResolution = ConflictResolution.USE_SERVER


class QueuedUpdateResponse(BaseModel):
    update_id: str
    status: UpdateStatus = UpdateStatus.PENDING


class SyncStateResponse(BaseModel):
    """Read-only view of the coordinator for UI callers."""

    reports: List[Report] = Field(default_factory=list)
    statistics: Optional[ReportStatistics] = None
    is_polling: bool = False
    last_update: Optional[datetime] = None
    reports_error: Optional[str] = None
    statistics_error: Optional[str] = None
    reports_loading: bool = False
    statistics_loading: bool = False
    refresh_status: RefreshStatus = Field(default_factory=RefreshStatus)
    update_queue: List[UpdateQueueItem] = Field(default_factory=list)
    processing_updates: List[str] = Field(default_factory=list)
    update_errors: Dict[str, str] = Field(default_factory=dict)
    pending_optimistic_updates: List[OptimisticUpdate] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)
    has_pending_updates: bool = False
    has_failed_updates: bool = False
    has_conflicts: bool = False
