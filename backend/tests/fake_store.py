"""In-memory report store used by the sync tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from reportsync.models.report import (
    Pagination,
    Report,
    ReportApprovalData,
    ReportFilters,
    ReportPage,
    ReportStatistics,
    ReportStatus,
    StatisticsFilters,
    normalize_report_fields,
)
from reportsync.services.report_store import ReportNotFoundError, ReportStoreError

BASE_TIME = datetime(2020, 1, 1, tzinfo=timezone.utc)


def make_report(report_id: str, **fields: Any) -> Report:
    payload = {
        "id": report_id,
        "title": f"Branch report {report_id}",
        "status": ReportStatus.PENDING,
        "branch_id": "BR-1",
        "loans_disbursed": 10,
        "savings_collected": 1500.0,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }
    payload.update(fields)
    return Report.model_validate(payload)


def later(seconds: float = 1.0) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class FakeReportStore:
    """Implements the report store protocol over a dict.

    ``failures[op]`` is how many upcoming calls of ``op`` raise; ``gates[op]``
    is an ``asyncio.Event`` the call waits on; ``delays[op]`` sleeps first.
    """

    def __init__(self, reports: Optional[List[Report]] = None) -> None:
        self.reports: Dict[str, Report] = {}
        for report in reports or [make_report("1"), make_report("2"), make_report("3")]:
            self.reports[report.id] = report
        self.calls: List[tuple] = []
        self.failures: Dict[str, int] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.delays: Dict[str, float] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def server_edit(self, report_id: str, **fields: Any) -> Report:
        """Simulate another user changing a report on the server."""
        fields.setdefault("updated_at", later())
        current = self.reports[report_id]
        self.reports[report_id] = Report.model_validate({**current.model_dump(), **fields})
        return self.reports[report_id]

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op,) + args)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delays.get(op):
                await asyncio.sleep(self.delays[op])
            gate = self.gates.get(op)
            if gate is not None:
                await gate.wait()
        finally:
            self.in_flight -= 1
        if self.failures.get(op, 0) > 0:
            self.failures[op] -= 1
            raise ReportStoreError(f"{op} unavailable")

    def _get(self, report_id: str) -> Report:
        try:
            return self.reports[report_id]
        except KeyError:
            raise ReportNotFoundError(f"Report {report_id} not found")

    async def list_reports(self, filters: ReportFilters) -> ReportPage:
        await self._enter("list")
        rows = [
            report for report in self.reports.values()
            if (not filters.branch_id or report.branch_id == filters.branch_id)
            and (filters.status is None or report.status == filters.status)
        ]
        start = (filters.page - 1) * filters.limit
        total_pages = max(1, -(-len(rows) // filters.limit))
        return ReportPage(
            data=rows[start:start + filters.limit],
            pagination=Pagination(page=filters.page, limit=filters.limit, total=len(rows), total_pages=total_pages),
        )

    async def get_report(self, report_id: str) -> Report:
        await self._enter("get", report_id)
        return self._get(report_id)

    async def get_report_statistics(self, filters: StatisticsFilters) -> ReportStatistics:
        await self._enter("statistics", filters.cache_key())
        statuses = [report.status for report in self.reports.values()]
        return ReportStatistics(
            total_reports=len(statuses),
            pending_reports=statuses.count(ReportStatus.PENDING),
            approved_reports=statuses.count(ReportStatus.APPROVED),
            declined_reports=statuses.count(ReportStatus.DECLINED),
        )

    async def approve_report(self, report_id: str, data: ReportApprovalData) -> Report:
        await self._enter("approve", report_id)
        now = datetime.now(timezone.utc)
        return self.server_edit(
            report_id,
            status=ReportStatus.APPROVED,
            approved_by=data.approved_by,
            approved_at=now,
            updated_at=now,
        )

    async def decline_report(self, report_id: str, data: ReportApprovalData) -> Report:
        await self._enter("decline", report_id)
        now = datetime.now(timezone.utc)
        return self.server_edit(
            report_id,
            status=ReportStatus.DECLINED,
            approved_by=data.approved_by,
            decline_reason=data.reason,
            approved_at=now,
            updated_at=now,
        )

    async def update_report(self, report_id: str, fields: Dict[str, Any]) -> Report:
        await self._enter("update", report_id)
        self._get(report_id)
        return self.server_edit(report_id, **normalize_report_fields(fields), updated_at=datetime.now(timezone.utc))

    async def delete_report(self, report_id: str) -> None:
        await self._enter("delete", report_id)
        self._get(report_id)
        del self.reports[report_id]
