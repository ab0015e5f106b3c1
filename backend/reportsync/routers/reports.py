"""API routes for reading reports and queueing review actions."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException

from reportsync.core.dependencies import get_coordinator
from reportsync.core.logging import logger
from reportsync.models.report import ReportApprovalData
from reportsync.models.sync import QueuedUpdateResponse, UpdateKind
from reportsync.services.coordinator import ReportsUpdateCoordinator


router = APIRouter(prefix="/reports", tags=["reports"])


def _queued(coordinator: ReportsUpdateCoordinator, update_id: str) -> Dict[str, Any]:
    item = coordinator.get_item(update_id)
    response = QueuedUpdateResponse(update_id=update_id)
    if item is not None:
        response.status = item.status
    return response.model_dump(mode="json")


@router.get("")
async def list_reports(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    page = coordinator.report_page
    return {
        "data": [report.to_wire() for report in coordinator.reports],
        "pagination": page.pagination.to_wire() if page else None,
        "last_update": coordinator.last_update.isoformat() if coordinator.last_update else None,
        "error": coordinator.poller.reports_error,
        "loading": coordinator.reports_loading,
    }


@router.get("/statistics")
async def get_statistics(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    statistics = coordinator.statistics
    return {
        "statistics": statistics.to_wire() if statistics else None,
        "error": coordinator.poller.statistics_error,
        "loading": coordinator.statistics_loading,
    }


@router.get("/{report_id}")
async def get_report(report_id: str, coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    report = coordinator.engine.find_cached_report(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return report.to_wire()


@router.post("/{report_id}/approve", status_code=202)
async def approve_report(
    report_id: str,
    request: ReportApprovalData,
    coordinator: ReportsUpdateCoordinator = Depends(get_coordinator),
):
    update_id = coordinator.queue_update(report_id, UpdateKind.APPROVE, request)
    logger.info("Approve queued", report_id=report_id, update_id=update_id)
    return _queued(coordinator, update_id)


@router.post("/{report_id}/decline", status_code=202)
async def decline_report(
    report_id: str,
    request: ReportApprovalData,
    coordinator: ReportsUpdateCoordinator = Depends(get_coordinator),
):
    update_id = coordinator.queue_update(report_id, UpdateKind.DECLINE, request)
    logger.info("Decline queued", report_id=report_id, update_id=update_id)
    return _queued(coordinator, update_id)


@router.patch("/{report_id}", status_code=202)
async def update_report(
    report_id: str,
    fields: Dict[str, Any] = Body(...),
    coordinator: ReportsUpdateCoordinator = Depends(get_coordinator),
):
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    update_id = coordinator.queue_update(report_id, UpdateKind.UPDATE, fields)
    return _queued(coordinator, update_id)


@router.delete("/{report_id}", status_code=202)
async def delete_report(report_id: str, coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    update_id = coordinator.queue_update(report_id, UpdateKind.DELETE)
    return _queued(coordinator, update_id)
