"""HTTP client for the remote report store."""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from reportsync.core.config import get_settings
from reportsync.core.logging import logger
from reportsync.models.report import (
    Pagination,
    Report,
    ReportApprovalData,
    ReportFilters,
    ReportPage,
    ReportStatistics,
    StatisticsFilters,
)


class ReportStoreError(Exception):
    """Raised when a report store request fails."""


class ReportNotFoundError(ReportStoreError, KeyError):
    """Raised when a report does not exist (remotely or in the local cache)."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class ReportStore(Protocol):
    """Operations the sync engine needs from the backend."""

    async def list_reports(self, filters: ReportFilters) -> ReportPage: ...

    async def get_report(self, report_id: str) -> Report: ...

    async def get_report_statistics(self, filters: StatisticsFilters) -> ReportStatistics: ...

    async def approve_report(self, report_id: str, data: ReportApprovalData) -> Report: ...

    async def decline_report(self, report_id: str, data: ReportApprovalData) -> Report: ...

    async def update_report(self, report_id: str, fields: Dict[str, Any]) -> Report: ...

    async def delete_report(self, report_id: str) -> None: ...


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], dict):
        return payload["data"]
    return payload


def _count(value: Any) -> int:
    if isinstance(value, dict):
        value = value.get("count", 0)
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class ReportStoreClient:
    """Async REST client for report CRUD, review actions, and statistics."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.reports_api_base_url).rstrip("/")
        self._token = token if token is not None else settings.reports_api_token
        self._timeout = timeout or settings.reports_api_timeout_seconds
        self._transport = transport
        if not self._token and not settings.is_local_backend():
            logger.warning("Report store token is empty for a remote backend", base_url=self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    method=method, url=url, headers=self._headers(), params=params, json=json
                )
        except httpx.HTTPError as exc:
            raise ReportStoreError(f"Report store request failed {method} {path}: {exc}") from exc

        if response.status_code == 404:
            raise ReportNotFoundError(f"Report store returned 404 for {method} {path}")
        if response.status_code >= 400:
            raise ReportStoreError(
                f"Report store request failed ({response.status_code}) {method} {path}: {response.text[:400]}"
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def list_reports(self, filters: ReportFilters) -> ReportPage:
        payload = await self._request("GET", "/reports", params=filters.to_wire())
        payload = payload or {}
        if isinstance(payload.get("reports"), list):
            return ReportPage(
                data=[Report.model_validate(row) for row in payload["reports"]],
                pagination=Pagination(
                    page=payload.get("page") or filters.page,
                    limit=filters.limit,
                    total=payload.get("total") or 0,
                    total_pages=payload.get("totalPages") or 1,
                ),
            )
        return ReportPage.model_validate(payload)

    async def get_report(self, report_id: str) -> Report:
        payload = await self._request("GET", f"/reports/{report_id}")
        return Report.model_validate(_unwrap(payload))

    async def get_report_statistics(self, filters: StatisticsFilters) -> ReportStatistics:
        payload = _unwrap(await self._request("GET", "/reports/statistics", params=filters.to_wire())) or {}
        return ReportStatistics(
            total_reports=_count(payload.get("totalReports")),
            pending_reports=_count(payload.get("pendingReports")),
            approved_reports=_count(payload.get("approvedReports")),
            declined_reports=_count(payload.get("declinedReports")),
            overdue_reports=_count(payload.get("overdueReports")),
        )

    async def approve_report(self, report_id: str, data: ReportApprovalData) -> Report:
        payload = await self._request("POST", f"/reports/{report_id}/approve", json=data.to_wire())
        return Report.model_validate(_unwrap(payload))

    async def decline_report(self, report_id: str, data: ReportApprovalData) -> Report:
        payload = await self._request("POST", f"/reports/{report_id}/decline", json=data.to_wire())
        return Report.model_validate(_unwrap(payload))

    async def update_report(self, report_id: str, fields: Dict[str, Any]) -> Report:
        body = {to_camel(key): value for key, value in fields.items()}
        payload = await self._request("PUT", f"/reports/{report_id}", json=to_jsonable_python(body))
        return Report.model_validate(_unwrap(payload))

    async def delete_report(self, report_id: str) -> None:
        await self._request("DELETE", f"/reports/{report_id}")
