"""Admission control and sequencing for concurrent report mutations."""
from __future__ import annotations

import asyncio
import itertools
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel

from reportsync.core.config import get_settings
from reportsync.core.logging import logger
from reportsync.models.report import (
    Report,
    ReportApprovalData,
    ReportFilters,
    ReportPage,
    ReportStatistics,
    StatisticsFilters,
)
from reportsync.models.sync import (
    Conflict,
    ConflictResolution,
    ConflictStrategy,
    ConflictType,
    OptimisticUpdate,
    PollingSnapshot,
    RefreshStatus,
    SyncStateResponse,
    UpdateKind,
    UpdateQueueItem,
    UpdateStatus,
)
from reportsync.services.optimistic import OptimisticUpdateEngine, ResolutionCallback
from reportsync.services.polling import ReportsPoller
from reportsync.services.query_cache import QueryCache, list_key, statistics_key
from reportsync.services.report_store import ReportStore, ReportStoreClient, ReportStoreError


class UpdateTimeoutError(ReportStoreError):
    """Recorded when a queued mutation does not settle within the update timeout."""


class ReportsUpdateCoordinator:
    """Queues report mutations and drains them under a concurrency ceiling.

    Items move ``pending -> processing -> completed | failed``. A failed item
    only returns to ``pending`` through :meth:`retry_failed_update`. Retries
    and backoff for store errors belong to the engine; the item's
    ``retry_count`` mirrors the engine's retry attempts.
    """

    def __init__(
        self,
        store: ReportStore,
        cache: Optional[QueryCache] = None,
        *,
        engine: Optional[OptimisticUpdateEngine] = None,
        poller: Optional[ReportsPoller] = None,
        filters: Optional[ReportFilters] = None,
        statistics_filters: Optional[StatisticsFilters] = None,
        conflict_resolution: Optional[Union[ConflictStrategy, str]] = None,
        max_concurrent_updates: Optional[int] = None,
        update_timeout: Optional[float] = None,
        completed_retention: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        enable_optimistic_updates: Optional[bool] = None,
        enable_polling: Optional[bool] = None,
        polling_interval: Optional[float] = None,
        on_conflict_resolved: Optional[ResolutionCallback] = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.cache = cache if cache is not None else QueryCache()
        self.conflict_resolution = ConflictStrategy(
            conflict_resolution or settings.normalized_conflict_resolution()
        )
        self.max_concurrent_updates = max(
            1, settings.max_concurrent_updates if max_concurrent_updates is None else max_concurrent_updates
        )
        self.update_timeout = settings.update_timeout_seconds if update_timeout is None else update_timeout
        self.completed_retention = max(
            0, settings.completed_update_retention if completed_retention is None else completed_retention
        )

        self.engine = engine or OptimisticUpdateEngine(
            store,
            self.cache,
            max_retries=max_retries,
            retry_delay=retry_delay,
            enable_optimistic_updates=enable_optimistic_updates,
            resolver=self._resolve_by_strategy,
        )
        self.engine.add_resolution_callback(on_conflict_resolved or self._log_resolution)
        self.poller = poller or ReportsPoller(
            store,
            self.cache,
            filters=filters,
            statistics_filters=statistics_filters,
            interval=polling_interval,
            enabled=enable_polling,
        )
        self.poller.add_listener(self.handle_snapshot)

        self._queue: List[UpdateQueueItem] = []
        self._processing: Dict[str, None] = {}
        self._errors: Dict[str, Exception] = {}
        self._runners: Set[asyncio.Task] = set()
        self._executions: Dict[str, asyncio.Task] = {}
        self._ids = itertools.count(1)
        self._last_server_sync: datetime = datetime.now(timezone.utc)
        self._accepting = True

    # Strategy

    def _resolve_by_strategy(
        self,
        update: OptimisticUpdate,
        server_data: Report,
        conflict_type: ConflictType,
    ) -> ConflictResolution:
        return self.conflict_resolution.resolution()

    @staticmethod
    def _log_resolution(resolution: ConflictResolution, final_data: Report) -> None:
        logger.debug(
            "Conflict resolution applied to cache",
            resolution=resolution.value,
            report_id=final_data.id,
            status=final_data.status.value,
        )

    # Queue

    def queue_update(
        self,
        report_id: str,
        kind: Union[UpdateKind, str],
        data: Optional[Union[BaseModel, Dict[str, Any]]] = None,
    ) -> str:
        """Append a pending mutation and return its id without awaiting it."""
        kind = UpdateKind(kind)
        report_id = str(report_id)
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_none=True)
        update_id = f"{kind.value}_{report_id}_{int(time.time() * 1000)}_{next(self._ids)}"
        self._queue.append(
            UpdateQueueItem(id=update_id, kind=kind, report_id=report_id, data=dict(data or {}))
        )
        logger.debug("Queued report update", update_id=update_id, kind=kind.value, report_id=report_id)
        if len(self._processing) < self.max_concurrent_updates:
            self.process_next_update()
        return update_id

    def approve_report(self, report_id: str, approval: Union[ReportApprovalData, Dict[str, Any]]) -> str:
        return self.queue_update(report_id, UpdateKind.APPROVE, approval)

    def decline_report(self, report_id: str, decline: Union[ReportApprovalData, Dict[str, Any]]) -> str:
        return self.queue_update(report_id, UpdateKind.DECLINE, decline)

    def update_report(self, report_id: str, fields: Dict[str, Any]) -> str:
        return self.queue_update(report_id, UpdateKind.UPDATE, fields)

    def delete_report(self, report_id: str) -> str:
        return self.queue_update(report_id, UpdateKind.DELETE, {})

    def process_next_update(self) -> Optional[str]:
        """Admit the oldest pending item if there is capacity; returns its id.

        A retried item whose timed-out execution is still running stays
        pending until that execution settles.
        """
        if not self._accepting or len(self._processing) >= self.max_concurrent_updates:
            return None
        item = next(
            (
                row for row in self._queue
                if row.status is UpdateStatus.PENDING
                and row.id not in self._processing
                and row.id not in self._executions
            ),
            None,
        )
        if item is None:
            return None

        item.status = UpdateStatus.PROCESSING
        self._processing[item.id] = None
        runner = asyncio.get_running_loop().create_task(self._run(item))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)
        return item.id

    def _advance(self) -> None:
        while self.process_next_update() is not None:
            pass

    async def _run(self, item: UpdateQueueItem) -> None:
        execution = asyncio.get_running_loop().create_task(self._execute(item))
        self._executions[item.id] = execution
        execution.add_done_callback(partial(self._forget_execution, item.id))
        try:
            done, _ = await asyncio.wait({execution}, timeout=self.update_timeout)
            if execution in done:
                self._settle(item, self._outcome(execution))
            else:
                logger.warning("Report update timed out", update_id=item.id, timeout_seconds=self.update_timeout)
                self._settle(item, UpdateTimeoutError("Update timed out"))
                execution.add_done_callback(partial(self._late_settle, item.id))
        finally:
            self._processing.pop(item.id, None)
            self._advance()

    async def _execute(self, item: UpdateQueueItem) -> Any:
        on_retry = partial(self._record_retry, item)
        data = dict(item.data)
        if item.kind is UpdateKind.APPROVE:
            return await self.engine.approve(item.report_id, data, update_id=item.id, on_retry=on_retry)
        if item.kind is UpdateKind.DECLINE:
            return await self.engine.decline(item.report_id, data, update_id=item.id, on_retry=on_retry)
        if item.kind is UpdateKind.UPDATE:
            return await self.engine.update(item.report_id, data, update_id=item.id, on_retry=on_retry)
        if item.kind is UpdateKind.DELETE:
            return await self.engine.delete(item.report_id, update_id=item.id, on_retry=on_retry)
        raise ValueError(f"Unknown update type: {item.kind}")

    @staticmethod
    def _outcome(execution: asyncio.Task) -> Optional[BaseException]:
        if execution.cancelled():
            return ReportStoreError("Update was cancelled")
        return execution.exception()

    def _is_current(self, item: UpdateQueueItem) -> bool:
        return any(row is item for row in self._queue)

    def _record_retry(self, item: UpdateQueueItem, attempt: int) -> None:
        if self._is_current(item) and item.status is UpdateStatus.PROCESSING:
            item.retry_count = attempt

    def _settle(self, item: UpdateQueueItem, error: Optional[BaseException]) -> None:
        if not self._is_current(item) or item.status is not UpdateStatus.PROCESSING:
            logger.info("Ignoring settlement of update that is no longer processing", update_id=item.id)
            return
        if error is None:
            item.status = UpdateStatus.COMPLETED
            self._errors.pop(item.id, None)
            logger.info("Report update completed", update_id=item.id, kind=item.kind.value)
            self._prune_completed()
            return
        item.status = UpdateStatus.FAILED
        self._errors[item.id] = error if isinstance(error, Exception) else ReportStoreError(str(error))
        logger.error(
            "Report update failed",
            update_id=item.id,
            kind=item.kind.value,
            report_id=item.report_id,
            retry_count=item.retry_count,
            error=str(error),
        )

    def _prune_completed(self) -> None:
        completed = [item for item in self._queue if item.status is UpdateStatus.COMPLETED]
        excess = len(completed) - self.completed_retention
        if excess <= 0:
            return
        dropped = {item.id for item in completed[:excess]}
        self._queue = [item for item in self._queue if item.id not in dropped]
        logger.debug("Pruned completed report updates", count=len(dropped))

    def _forget_execution(self, update_id: str, execution: asyncio.Task) -> None:
        if self._executions.get(update_id) is execution:
            del self._executions[update_id]

    def _late_settle(self, update_id: str, execution: asyncio.Task) -> None:
        outcome = "cancelled" if execution.cancelled() else ("failed" if execution.exception() else "succeeded")
        logger.info("Ignoring late result of timed-out update", update_id=update_id, outcome=outcome)
        # A retry of this item may have been waiting for the execution to finish.
        self._forget_execution(update_id, execution)
        self._advance()

    def clear_queue(self) -> None:
        """Drop every queued item, processing marker, and recorded error."""
        self._queue = []
        self._processing.clear()
        self._errors.clear()
        logger.info("Report update queue cleared")

    def retry_failed_update(self, update_id: str) -> bool:
        for item in self._queue:
            if item.id == update_id and item.status is UpdateStatus.FAILED:
                item.status = UpdateStatus.PENDING
                item.retry_count = 0
                self._errors.pop(update_id, None)
                logger.info("Retrying failed report update", update_id=update_id)
                self._advance()
                return True
        return False

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until nothing is pending, processing, or still executing."""

        async def _drain() -> None:
            while True:
                tasks = [task for task in self._runners | set(self._executions.values()) if not task.done()]
                if tasks:
                    await asyncio.wait(tasks)
                    continue
                if self.process_next_update() is None:
                    return

        await asyncio.wait_for(_drain(), timeout)

    # Polling bridge

    def handle_snapshot(self, snapshot: PollingSnapshot) -> None:
        """Cancel stale pending items (server wins) and reconcile the engine."""
        reports = snapshot.reports.data if snapshot.reports else []
        last_update = snapshot.last_update
        if last_update is not None and last_update > self._last_server_sync:
            changed = {report.id for report in reports if report.updated_at > self._last_server_sync}
            conflicting = [
                item for item in self._queue
                if item.status is UpdateStatus.PENDING and item.report_id in changed
            ]
            if conflicting:
                logger.info("Detected potential conflicts from server updates", count=len(conflicting))
                if self.conflict_resolution is ConflictStrategy.SERVER_WINS:
                    cancelled = {item.id for item in conflicting}
                    self._queue = [item for item in self._queue if item.id not in cancelled]
                    logger.info("Cancelled stale pending updates", update_ids=sorted(cancelled))
            self._last_server_sync = last_update

        self.engine.reconcile(reports)
        if self.engine.conflicts:
            task = asyncio.get_running_loop().create_task(
                self.engine.prune_deleted_conflicts(report.id for report in reports)
            )
            self._runners.add(task)
            task.add_done_callback(self._runners.discard)

    # Lifecycle

    async def start(
        self,
        filters: Optional[ReportFilters] = None,
        statistics_filters: Optional[StatisticsFilters] = None,
    ) -> None:
        self._accepting = True
        await self.poller.start(filters, statistics_filters=statistics_filters)

    async def stop(self) -> None:
        self._accepting = False
        await self.poller.stop()
        tasks = [task for task in self._runners | set(self._executions.values()) if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled in-flight report updates", count=len(tasks))

    async def refresh(self) -> None:
        await self.poller.refresh()

    async def refresh_statistics(self) -> ReportStatistics:
        return await self.poller.refresh_statistics()

    def notify_focus(self) -> bool:
        return self.poller.notify_focus()

    def notify_reconnect(self) -> bool:
        return self.poller.notify_reconnect()

    def resolve_conflict(self, key: Union[str, int], resolution: Union[ConflictResolution, str]) -> Report:
        return self.engine.resolve_conflict(key, resolution)

    # Views

    @property
    def reports(self) -> List[Report]:
        page = self.cache.get(list_key(self.poller.filters.cache_key()))
        if isinstance(page, ReportPage):
            return list(page.data)
        return list(self.poller.reports.data) if self.poller.reports else []

    @property
    def report_page(self) -> Optional[ReportPage]:
        page = self.cache.get(list_key(self.poller.filters.cache_key()))
        return page if isinstance(page, ReportPage) else self.poller.reports

    @property
    def statistics(self) -> Optional[ReportStatistics]:
        key = statistics_key(self.poller.statistics_filters.cache_key())
        cached = self.cache.get(key)
        return cached if isinstance(cached, ReportStatistics) else self.poller.statistics

    @property
    def is_polling(self) -> bool:
        return self.poller.is_polling

    @property
    def last_update(self) -> Optional[datetime]:
        return self.poller.last_update

    @property
    def reports_loading(self) -> bool:
        return self.poller.reports_loading

    @property
    def statistics_loading(self) -> bool:
        return self.poller.statistics_loading

    @property
    def refresh_status(self) -> RefreshStatus:
        return self.poller.refresh_status()

    @property
    def update_queue(self) -> List[UpdateQueueItem]:
        return [item.model_copy() for item in self._queue]

    @property
    def processing_updates(self) -> List[str]:
        return list(self._processing)

    @property
    def update_errors(self) -> Dict[str, Exception]:
        return dict(self._errors)

    @property
    def pending_optimistic_updates(self) -> List[OptimisticUpdate]:
        return list(self.engine.pending_updates.values())

    @property
    def conflicts(self) -> List[Conflict]:
        return list(self.engine.conflicts)

    @property
    def has_pending_updates(self) -> bool:
        return any(item.status is UpdateStatus.PENDING for item in self._queue) or self.engine.has_pending_updates

    @property
    def has_failed_updates(self) -> bool:
        return any(item.status is UpdateStatus.FAILED for item in self._queue)

    @property
    def has_conflicts(self) -> bool:
        return self.engine.has_conflicts

    def get_item(self, update_id: str) -> Optional[UpdateQueueItem]:
        for item in self._queue:
            if item.id == update_id:
                return item.model_copy()
        return None

    def state(self) -> SyncStateResponse:
        return SyncStateResponse(
            reports=self.reports,
            statistics=self.statistics,
            is_polling=self.is_polling,
            last_update=self.last_update,
            reports_error=self.poller.reports_error,
            statistics_error=self.poller.statistics_error,
            reports_loading=self.reports_loading,
            statistics_loading=self.statistics_loading,
            refresh_status=self.refresh_status,
            update_queue=self.update_queue,
            processing_updates=self.processing_updates,
            update_errors={key: str(value) for key, value in self._errors.items()},
            pending_optimistic_updates=self.pending_optimistic_updates,
            conflicts=self.conflicts,
            has_pending_updates=self.has_pending_updates,
            has_failed_updates=self.has_failed_updates,
            has_conflicts=self.has_conflicts,
        )


def build_coordinator(store: Optional[ReportStore] = None, **overrides: Any) -> ReportsUpdateCoordinator:
    """Create a coordinator wired to the configured report store."""
    return ReportsUpdateCoordinator(store or ReportStoreClient(), QueryCache(), **overrides)
