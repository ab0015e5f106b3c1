"""API-level tests for the report and sync routers."""
from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from fastapi.testclient import TestClient


os.environ["REPORTS_API_BASE_URL"] = "http://localhost:8080/api"
os.environ["REPORTS_API_TOKEN"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fake_store import FakeReportStore  # noqa: E402
from reportsync.main import create_app  # noqa: E402
from reportsync.models.report import ReportFilters  # noqa: E402
from reportsync.services.coordinator import ReportsUpdateCoordinator  # noqa: E402
from reportsync.services.query_cache import QueryCache  # noqa: E402


def _client(store: FakeReportStore) -> TestClient:
    def factory() -> ReportsUpdateCoordinator:
        return ReportsUpdateCoordinator(
            store,
            QueryCache(),
            filters=ReportFilters(limit=10),
            enable_polling=True,
            polling_interval=60.0,
            max_retries=0,
            retry_delay=0,
            update_timeout=2.0,
        )

    return TestClient(create_app(factory))


def _wait_for(client: TestClient, update_id: str, status: str, timeout: float = 3.0) -> dict:
    deadline = time.time() + timeout
    while time.time() < deadline:
        items = {item["id"]: item for item in client.get("/sync/queue").json()["items"]}
        if items.get(update_id, {}).get("status") == status:
            return items[update_id]
        time.sleep(0.01)
    raise AssertionError(f"{update_id} never reached {status}")


def test_health_and_initial_poll():
    with _client(FakeReportStore()) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json() == {"status": "healthy", "polling": True}

        reports = client.get("/reports")
        assert reports.status_code == 200
        body = reports.json()
        assert [row["id"] for row in body["data"]] == ["1", "2", "3"]
        assert body["pagination"]["total"] == 3
        assert body["error"] is None
        assert body["loading"] is False

        stats = client.get("/reports/statistics")
        assert stats.json()["statistics"]["totalReports"] == 3


def test_get_report_from_cache():
    with _client(FakeReportStore()) as client:
        found = client.get("/reports/2")
        assert found.status_code == 200
        assert found.json()["branchId"] == "BR-1"

        missing = client.get("/reports/99")
        assert missing.status_code == 404


def test_approve_flow_completes():
    store = FakeReportStore()
    with _client(store) as client:
        queued = client.post("/reports/1/approve", json={"approvedBy": "manager-7"})
        assert queued.status_code == 202
        update_id = queued.json()["update_id"]

        item = _wait_for(client, update_id, "completed")
        assert item["kind"] == "approve"

        report = client.get("/reports/1").json()
        assert report["status"] == "approved"
        assert report["approvedBy"] == "manager-7"
        assert store.reports["1"].approved_by == "manager-7"


def test_review_requires_reviewer():
    with _client(FakeReportStore()) as client:
        response = client.post("/reports/1/decline", json={"reason": "missing figures"})
        assert response.status_code == 422


def test_delete_and_patch_flow():
    store = FakeReportStore()
    with _client(store) as client:
        deleted = client.delete("/reports/2").json()["update_id"]
        _wait_for(client, deleted, "completed")
        assert [row["id"] for row in client.get("/reports").json()["data"]] == ["1", "3"]

        assert client.patch("/reports/3", json={}).status_code == 400
        patched = client.patch("/reports/3", json={"loansDisbursed": 12}).json()["update_id"]
        _wait_for(client, patched, "completed")
        assert client.get("/reports/3").json()["loansDisbursed"] == 12


def test_failed_update_can_be_retried():
    store = FakeReportStore()
    store.failures["approve"] = 1
    with _client(store) as client:
        update_id = client.post("/reports/1/approve", json={"approvedBy": "manager-7"}).json()["update_id"]
        _wait_for(client, update_id, "failed")

        state = client.get("/sync/state").json()
        assert state["has_failed_updates"] is True
        assert "approve unavailable" in state["update_errors"][update_id]

        assert client.post("/sync/queue/unknown/retry").status_code == 404
        retried = client.post(f"/sync/queue/{update_id}/retry")
        assert retried.status_code == 200
        _wait_for(client, update_id, "completed")

        cleared = client.post("/sync/queue/clear")
        assert cleared.status_code == 200
        assert client.get("/sync/queue").json()["items"] == []


def test_conflict_routes():
    with _client(FakeReportStore()) as client:
        assert client.get("/sync/conflicts").json() == {"items": []}
        missing = client.post("/sync/conflicts/conflict_9_1/resolve", json={"resolution": "use_server"})
        assert missing.status_code == 404
        by_index = client.post("/sync/conflicts/0/resolve", json={"resolution": "merge"})
        assert by_index.status_code == 404


def test_refresh_and_events():
    store = FakeReportStore()
    with _client(store) as client:
        ok = client.post("/sync/refresh")
        assert ok.status_code == 200
        assert ok.json()["refreshed"] is True

        store.failures["list"] = 1
        failed = client.post("/sync/refresh")
        assert failed.status_code == 502
        assert "list unavailable" in failed.json()["detail"]

        kpis = client.post("/sync/refresh/statistics")
        assert kpis.status_code == 200
        assert kpis.json()["statistics"]["totalReports"] == 3
        assert kpis.json()["refresh_status"]["last_refresh"] is not None

        store.failures["statistics"] = 1
        assert client.post("/sync/refresh/statistics").status_code == 502

        focus = client.post("/sync/events/focus")
        assert focus.status_code == 200
        assert isinstance(focus.json()["refetching"], bool)
        assert client.post("/sync/events/reconnect").status_code == 200
