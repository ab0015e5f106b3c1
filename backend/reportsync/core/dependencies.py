"""FastAPI dependencies shared by the API routers."""
from __future__ import annotations

from fastapi import HTTPException, Request, status

from reportsync.services.coordinator import ReportsUpdateCoordinator


def get_coordinator(request: Request) -> ReportsUpdateCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Report sync coordinator is not running",
        )
    return coordinator
