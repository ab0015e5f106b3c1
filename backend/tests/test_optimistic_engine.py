"""Optimistic update engine: apply, confirm, retry, rollback, and conflicts."""
from __future__ import annotations

import asyncio
import contextlib
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fake_store import BASE_TIME, FakeReportStore, later, make_report  # noqa: E402
from reportsync.models.report import ReportFilters, ReportStatus  # noqa: E402
from reportsync.models.sync import ConflictResolution, ConflictType, OptimisticUpdate, UpdateKind  # noqa: E402
from reportsync.services.optimistic import (  # noqa: E402
    MutationFailedError,
    OptimisticUpdateEngine,
    detect_conflict_type,
    merge_report_data,
)
from reportsync.services.query_cache import QueryCache, list_key, report_key, statistics_key  # noqa: E402
from reportsync.services.report_store import ReportNotFoundError  # noqa: E402

FILTERS = ReportFilters(limit=10)
LIST_KEY = list_key(FILTERS.cache_key())
STATS_KEY = statistics_key(FILTERS.statistics_filters().cache_key())


async def _seed(store: FakeReportStore, **kwargs) -> OptimisticUpdateEngine:
    cache = QueryCache()
    cache.set(LIST_KEY, await store.list_reports(FILTERS))
    cache.set(STATS_KEY, await store.get_report_statistics(FILTERS.statistics_filters()))
    store.calls.clear()
    options = {"max_retries": 0, "retry_delay": 0, "conflict_window": 60}
    options.update(kwargs)
    return OptimisticUpdateEngine(store, cache, **options)


def _cached(engine: OptimisticUpdateEngine, report_id: str):
    return engine.cache.get(LIST_KEY).find(report_id)


def test_approve_applies_before_store_confirms():
    store = FakeReportStore()

    async def scenario():
        gate = asyncio.Event()
        store.gates["approve"] = gate
        engine = await _seed(store)
        task = asyncio.create_task(engine.approve("1", {"approved_by": "manager-7"}))
        await asyncio.sleep(0)
        optimistic = _cached(engine, "1")
        pending = list(engine.pending_updates)
        gate.set()
        result = await task
        return engine, optimistic, pending, result

    engine, optimistic, pending, result = asyncio.run(scenario())

    assert optimistic.status is ReportStatus.APPROVED
    assert optimistic.approved_by == "manager-7"
    assert optimistic.approved_at is not None
    assert len(pending) == 1
    assert result.status is ReportStatus.APPROVED
    assert _cached(engine, "1") is result
    assert engine.pending_updates == {}
    assert engine.cache.is_stale(STATS_KEY)


def test_exhausted_retries_restore_exact_original():
    store = FakeReportStore()
    store.failures["approve"] = 10

    async def scenario():
        engine = await _seed(store, max_retries=2)
        original = _cached(engine, "1")
        try:
            await engine.approve("1", {"approved_by": "manager-7"}, update_id="approve-1")
        except MutationFailedError as exc:
            return engine, original, exc
        raise AssertionError("approve should have failed")

    engine, original, exc = asyncio.run(scenario())

    assert store.count("approve") == 3
    assert exc.attempts == 3
    assert exc.update_id == "approve-1"
    restored = _cached(engine, "1")
    assert restored is original
    assert restored.status is ReportStatus.PENDING
    assert "approve unavailable" in str(exc)
    assert engine.pending_updates == {}


def test_retry_backoff_doubles_delay():
    store = FakeReportStore()
    store.failures["update"] = 2
    delays = []
    retries = []

    async def fake_sleep(delay):
        delays.append(delay)

    async def scenario():
        engine = await _seed(store, max_retries=3, retry_delay=0.5, sleep=fake_sleep)
        return await engine.update("2", {"loansDisbursed": 12}, on_retry=retries.append)

    result = asyncio.run(scenario())

    assert delays == [0.5, 1.0]
    assert retries == [1, 2]
    assert store.count("update") == 3
    assert result.loans_disbursed == 12


def test_decline_with_empty_reason_rolls_back_on_failure():
    store = FakeReportStore()
    store.failures["decline"] = 1

    async def scenario():
        gate = asyncio.Event()
        store.gates["decline"] = gate
        engine = await _seed(store)
        task = asyncio.create_task(engine.decline("1", {"approved_by": "manager-7", "reason": ""}))
        await asyncio.sleep(0)
        optimistic = _cached(engine, "1")
        gate.set()
        with contextlib.suppress(MutationFailedError):
            await task
        return engine, optimistic

    engine, optimistic = asyncio.run(scenario())

    assert optimistic.status is ReportStatus.DECLINED
    assert optimistic.decline_reason == ""
    restored = _cached(engine, "1")
    assert restored.status is ReportStatus.PENDING
    assert restored.decline_reason is None
    assert engine.pending_updates == {}


def test_delete_removes_row_and_total_before_network():
    store = FakeReportStore()

    async def scenario():
        gate = asyncio.Event()
        store.gates["delete"] = gate
        engine = await _seed(store)
        task = asyncio.create_task(engine.delete("2"))
        await asyncio.sleep(0)
        during = engine.cache.get(LIST_KEY)
        gate.set()
        await task
        return engine, during

    engine, during = asyncio.run(scenario())

    assert during.ids() == ["1", "3"]
    assert during.pagination.total == 2
    assert engine.cache.get(LIST_KEY).ids() == ["1", "3"]
    assert "2" not in store.reports


def test_failed_delete_invalidates_report_queries():
    store = FakeReportStore()
    store.failures["delete"] = 1

    async def scenario():
        engine = await _seed(store)
        with contextlib.suppress(MutationFailedError):
            await engine.delete("2")
        return engine

    engine = asyncio.run(scenario())

    assert engine.cache.is_stale(LIST_KEY)
    assert engine.pending_updates == {}


def test_uncached_report_is_rejected_without_store_call():
    store = FakeReportStore()

    async def scenario():
        engine = await _seed(store)
        try:
            await engine.approve("404", {"approved_by": "manager-7"})
        except ReportNotFoundError:
            return True
        return False

    assert asyncio.run(scenario()) is True
    assert store.calls == []


def test_remote_not_found_is_not_retried():
    store = FakeReportStore()

    async def scenario():
        engine = await _seed(store, max_retries=3)
        original = _cached(engine, "3")
        del store.reports["3"]
        try:
            await engine.update("3", {"remarks": "late"})
        except MutationFailedError as exc:
            return engine, original, exc
        raise AssertionError("update should have failed")

    engine, original, exc = asyncio.run(scenario())

    assert store.count("update") == 1
    assert isinstance(exc.__cause__, ReportNotFoundError)
    assert _cached(engine, "3") is original


def test_cancelled_mutation_rolls_back():
    store = FakeReportStore()

    async def scenario():
        store.gates["approve"] = asyncio.Event()
        engine = await _seed(store)
        original = _cached(engine, "1")
        task = asyncio.create_task(engine.approve("1", {"approved_by": "manager-7"}))
        await asyncio.sleep(0)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return engine, original

    engine, original = asyncio.run(scenario())

    assert _cached(engine, "1") is original
    assert engine.pending_updates == {}


def _update(original, timestamp):
    return OptimisticUpdate(
        id="u1",
        report_id=original.id,
        kind=UpdateKind.APPROVE,
        timestamp=timestamp,
        original_data=original,
        optimistic_data={"status": ReportStatus.APPROVED},
    )


def test_conflict_classification():
    original = make_report("1")
    stamp = BASE_TIME + timedelta(minutes=5)
    update = _update(original, stamp)

    newer_status = make_report("1", status="approved", updated_at=stamp + timedelta(minutes=1))
    assert detect_conflict_type(update, newer_status) is ConflictType.STATUS

    older_status = make_report("1", status="declined", updated_at=BASE_TIME)
    assert detect_conflict_type(update, older_status) is ConflictType.STATUS

    newer_same_status = make_report("1", updated_at=stamp + timedelta(minutes=1))
    assert detect_conflict_type(update, newer_same_status) is ConflictType.VERSION

    older_edit = make_report("1", title="renamed")
    assert detect_conflict_type(update, older_edit) is ConflictType.DATA

    assert detect_conflict_type(update, make_report("1")) is None


def test_merge_keeps_local_metrics_and_server_status():
    server = make_report("1", status="approved", approved_by="other", loans_disbursed=10)
    merged = merge_report_data(
        server,
        {"loans_disbursed": 15, "savings_collected": 99.0, "status": ReportStatus.DECLINED, "title": "local"},
    )

    assert merged.loans_disbursed == 15
    assert merged.savings_collected == 99.0
    assert merged.status is ReportStatus.APPROVED
    assert merged.approved_by == "other"
    assert merged.title == server.title


def _prompting(store, **kwargs):
    return _seed(store, resolver=lambda *args: ConflictResolution.PROMPT_USER, **kwargs)


def test_prompted_conflict_waits_for_user_choice():
    store = FakeReportStore()
    resolved = []

    async def scenario():
        engine = await _prompting(store, on_resolution=lambda choice, data: resolved.append((choice, data)))
        await engine.approve("1", {"approved_by": "manager-7"})
        store.server_edit("1", status=ReportStatus.DECLINED, approved_by="manager-2")
        detected = engine.reconcile(store.reports.values())
        shown = _cached(engine, "1")
        again = engine.reconcile(store.reports.values())
        final = engine.resolve_conflict(0, "use_local")
        return engine, detected, shown, again, final

    engine, detected, shown, again, final = asyncio.run(scenario())

    assert len(detected) == 1
    assert detected[0].conflict_type is ConflictType.STATUS
    assert shown.status is ReportStatus.DECLINED
    assert again == []
    assert final.status is ReportStatus.APPROVED
    assert final.approved_by == "manager-7"
    assert _cached(engine, "1").status is ReportStatus.APPROVED
    assert engine.cache.get(report_key("1")) is final
    assert engine.conflicts == []
    assert resolved == [(ConflictResolution.USE_LOCAL, final)]


def test_server_wins_conflict_shows_server_copy():
    store = FakeReportStore()

    async def scenario():
        engine = await _seed(store)
        await engine.update("2", {"loans_disbursed": 30})
        store.server_edit("2", loans_disbursed=31, status=ReportStatus.APPROVED)
        detected = engine.reconcile(store.reports.values())
        return engine, detected

    engine, detected = asyncio.run(scenario())

    assert len(detected) == 1
    assert engine.conflicts == []
    assert _cached(engine, "2").loans_disbursed == 31
    assert _cached(engine, "2").status is ReportStatus.APPROVED


def test_resolve_conflict_rejects_prompt_and_unknown_ids():
    store = FakeReportStore()

    async def scenario():
        engine = await _prompting(store)
        await engine.approve("1", {"approved_by": "manager-7"})
        store.server_edit("1", status=ReportStatus.DECLINED)
        engine.reconcile(store.reports.values())
        return engine

    engine = asyncio.run(scenario())

    for key, error in ((0, ValueError), ("missing", KeyError), (5, KeyError)):
        resolution = "prompt_user" if error is ValueError else "use_server"
        try:
            engine.resolve_conflict(key, resolution)
        except error:
            continue
        raise AssertionError(f"{key!r} should raise {error.__name__}")
    assert len(engine.conflicts) == 1


def test_conflict_superseded_when_server_catches_up():
    store = FakeReportStore()

    async def scenario():
        engine = await _prompting(store)
        await engine.approve("1", {"approved_by": "manager-7"})
        store.server_edit("1", status=ReportStatus.DECLINED)
        engine.reconcile(store.reports.values())
        pending = len(engine.conflicts)
        store.server_edit("1", status=ReportStatus.APPROVED, approved_by="manager-7", updated_at=later(5))
        engine.reconcile(store.reports.values())
        return engine, pending

    engine, pending = asyncio.run(scenario())

    assert pending == 1
    assert engine.conflicts == []


def test_conflict_for_report_deleted_on_server_is_dropped():
    store = FakeReportStore()

    async def scenario():
        engine = await _prompting(store)
        await engine.approve("1", {"approved_by": "manager-7"})
        store.server_edit("1", status=ReportStatus.DECLINED)
        engine.reconcile(store.reports.values())
        conflict_id = engine.conflicts[0].id
        del store.reports["1"]
        removed = await engine.prune_deleted_conflicts(store.reports.keys())
        return engine, conflict_id, removed

    engine, conflict_id, removed = asyncio.run(scenario())

    assert removed == [conflict_id]
    assert engine.conflicts == []
    assert _cached(engine, "1") is None


def test_disabled_optimistic_updates_wait_for_store():
    store = FakeReportStore()

    async def scenario():
        gate = asyncio.Event()
        store.gates["approve"] = gate
        engine = await _seed(store, enable_optimistic_updates=False)
        original = _cached(engine, "1")
        task = asyncio.create_task(engine.approve("1", {"approved_by": "manager-7"}))
        await asyncio.sleep(0)
        during = _cached(engine, "1")
        gate.set()
        result = await task
        return engine, original, during, result

    engine, original, during, result = asyncio.run(scenario())

    assert during is original
    assert _cached(engine, "1") is result
    assert result.status is ReportStatus.APPROVED
