"""CLI helpers for the report watcher script."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND))
sys.path.insert(0, str(BACKEND / "scripts"))

from fake_store import FakeReportStore  # noqa: E402
from reportsync.models.report import ReportFilters  # noqa: E402
from reportsync.services.coordinator import ReportsUpdateCoordinator  # noqa: E402
from reportsync.services.query_cache import QueryCache  # noqa: E402
from watch_reports import drain, print_state  # noqa: E402


def _coordinator(store: FakeReportStore) -> ReportsUpdateCoordinator:
    return ReportsUpdateCoordinator(
        store,
        QueryCache(),
        filters=ReportFilters(limit=10),
        enable_polling=False,
        update_timeout=5.0,
        max_retries=0,
        retry_delay=0,
    )


def test_drain_reports_updates_still_in_flight(capsys):
    store = FakeReportStore()

    async def scenario():
        store.gates["approve"] = asyncio.Event()
        coordinator = _coordinator(store)
        await coordinator.poller.poll_once()
        coordinator.queue_update("1", "approve", {"approved_by": "cli"})
        settled = await drain(coordinator, 0.2)
        print_state(coordinator)
        await coordinator.stop()
        return settled

    settled = asyncio.run(scenario())

    output = capsys.readouterr().out
    assert settled is False
    assert "Updates still in flight after 0.2s" in output
    assert "reports=3" in output
    assert "processing=1" in output


def test_drain_returns_true_when_queue_settles():
    store = FakeReportStore()

    async def scenario():
        coordinator = _coordinator(store)
        await coordinator.poller.poll_once()
        coordinator.queue_update("2", "delete")
        return await drain(coordinator, 2.0), coordinator

    settled, coordinator = asyncio.run(scenario())

    assert settled is True
    assert "2" not in store.reports
    assert not coordinator.has_failed_updates
