"""API routes exposing the update queue, conflicts, and polling controls."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from reportsync.core.dependencies import get_coordinator
from reportsync.core.logging import logger
from reportsync.models.sync import ConflictResolveRequest
from reportsync.services.coordinator import ReportsUpdateCoordinator


router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/state")
async def get_state(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    return coordinator.state().model_dump(mode="json")


@router.get("/queue")
async def get_queue(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    errors = {key: str(value) for key, value in coordinator.update_errors.items()}
    return {
        "items": [item.model_dump(mode="json") for item in coordinator.update_queue],
        "processing": coordinator.processing_updates,
        "errors": errors,
    }


@router.post("/queue/clear")
async def clear_queue(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    coordinator.clear_queue()
    return {"cleared": True}


@router.post("/queue/{update_id}/retry")
async def retry_update(update_id: str, coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    if not coordinator.retry_failed_update(update_id):
        raise HTTPException(status_code=404, detail="Failed update not found")
    return {"update_id": update_id, "retried": True}


@router.get("/conflicts")
async def list_conflicts(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    return {"items": [conflict.model_dump(mode="json") for conflict in coordinator.conflicts]}


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    request: ConflictResolveRequest,
    coordinator: ReportsUpdateCoordinator = Depends(get_coordinator),
):
    try:
        key = int(conflict_id) if conflict_id.isdigit() else conflict_id
        report = coordinator.resolve_conflict(key, request.resolution)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return report.to_wire()


@router.post("/refresh")
async def refresh(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    try:
        await coordinator.refresh()
    except Exception as exc:
        logger.error("Manual report refresh failed", error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc))
    return {
        "refreshed": True,
        "last_update": coordinator.last_update.isoformat() if coordinator.last_update else None,
    }


@router.post("/refresh/statistics")
async def refresh_statistics(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    try:
        statistics = await coordinator.refresh_statistics()
    except Exception as exc:
        logger.error("Statistics refresh failed", error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc))
    return {"statistics": statistics.to_wire(), "refresh_status": coordinator.refresh_status.model_dump(mode="json")}


@router.post("/events/focus")
async def focus_event(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    return {"refetching": coordinator.notify_focus()}


@router.post("/events/reconnect")
async def reconnect_event(coordinator: ReportsUpdateCoordinator = Depends(get_coordinator)):
    return {"refetching": coordinator.notify_reconnect()}
