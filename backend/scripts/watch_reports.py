#!/usr/bin/env python3
"""Poll a report backend and print sync state; optionally queue review actions."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
import time
from typing import Optional

# Ensure `reportsync` package is importable when script is run directly.
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from reportsync.core.config import get_settings
from reportsync.core.logging import configure_logging
from reportsync.models.report import ReportApprovalData, ReportFilters
from reportsync.services.coordinator import ReportsUpdateCoordinator
from reportsync.services.query_cache import QueryCache
from reportsync.services.report_store import ReportStoreClient


def print_state(coordinator: ReportsUpdateCoordinator) -> None:
    stats = coordinator.statistics
    last = coordinator.last_update.isoformat() if coordinator.last_update else "-"
    print(
        f"reports={len(coordinator.reports)} last_update={last} "
        f"queue={len(coordinator.update_queue)} processing={len(coordinator.processing_updates)} "
        f"failed={coordinator.has_failed_updates} conflicts={len(coordinator.conflicts)}"
    )
    if stats is not None:
        print(
            f"  total={stats.total_reports} pending={stats.pending_reports} "
            f"approved={stats.approved_reports} declined={stats.declined_reports}"
        )
    if coordinator.poller.reports_error:
        print(f"  reports error: {coordinator.poller.reports_error}")
    for update_id, error in coordinator.update_errors.items():
        print(f"  {update_id}: {error}")


async def drain(coordinator: ReportsUpdateCoordinator, timeout: float) -> bool:
    """Wait for queued updates to settle; False if some are still running after ``timeout``."""
    try:
        await coordinator.wait_idle(timeout=timeout)
    except asyncio.TimeoutError:
        print(f"Updates still in flight after {timeout:.1f}s")
        return False
    return True


async def run(
    filters: ReportFilters,
    interval: float,
    duration: float,
    approve: Optional[str],
    decline: Optional[str],
    delete: Optional[str],
    reviewer: str,
    reason: Optional[str],
) -> None:
    coordinator = ReportsUpdateCoordinator(
        ReportStoreClient(),
        QueryCache(),
        filters=filters,
        polling_interval=interval,
        enable_polling=True,
    )
    await coordinator.start()
    try:
        review = ReportApprovalData(approved_by=reviewer, reason=reason)
        if approve:
            print(f"Queued {coordinator.queue_update(approve, 'approve', review)}")
        if decline:
            print(f"Queued {coordinator.queue_update(decline, 'decline', review)}")
        if delete:
            print(f"Queued {coordinator.queue_update(delete, 'delete')}")

        started = time.time()
        while duration <= 0 or time.time() - started < duration:
            print_state(coordinator)
            await asyncio.sleep(interval)
        await drain(coordinator, coordinator.update_timeout)
        print_state(coordinator)
    finally:
        await coordinator.stop()


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Watch branch reports and queue review actions")
    parser.add_argument("--branch-id", type=str, default=settings.default_branch_id, help="Branch filter")
    parser.add_argument("--status", type=str, default="", help="Status filter (pending, approved, ...)")
    parser.add_argument("--limit", type=int, default=settings.default_page_size, help="Page size")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.polling_interval_seconds,
        help="Seconds between polls and state prints",
    )
    parser.add_argument("--duration", type=float, default=0.0, help="Seconds to run (0 = until interrupted)")
    parser.add_argument("--approve", type=str, default=None, help="Report ID to approve")
    parser.add_argument("--decline", type=str, default=None, help="Report ID to decline")
    parser.add_argument("--delete", type=str, default=None, help="Report ID to delete")
    parser.add_argument("--reviewer", type=str, default="cli", help="Reviewer recorded as approvedBy")
    parser.add_argument("--reason", type=str, default=None, help="Decline reason")
    args = parser.parse_args()

    configure_logging(settings.log_level)
    filters = ReportFilters(status=args.status.strip().lower() or None, limit=max(1, args.limit))
    if args.branch_id.strip():
        filters = filters.for_branch(args.branch_id.strip())
    try:
        asyncio.run(
            run(
                filters=filters,
                interval=max(0.5, args.interval),
                duration=max(0.0, args.duration),
                approve=args.approve,
                decline=args.decline,
                delete=args.delete,
                reviewer=args.reviewer.strip() or "cli",
                reason=args.reason,
            )
        )
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()
