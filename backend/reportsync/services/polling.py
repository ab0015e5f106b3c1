"""Periodic polling of the report list and statistics."""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from reportsync.core.config import get_settings
from reportsync.core.logging import logger
from reportsync.models.report import ReportFilters, ReportPage, ReportStatistics, StatisticsFilters
from reportsync.models.sync import PollingSnapshot, RefreshStatus
from reportsync.services.query_cache import DASHBOARD, QueryCache, list_key, statistics_key
from reportsync.services.report_store import ReportStore

SnapshotListener = Callable[[PollingSnapshot], Any]


def newest_update(page: Optional[ReportPage]) -> Optional[datetime]:
    if page is None or not page.data:
        return None
    return max(report.updated_at for report in page.data)


class ReportsPoller:
    """Keeps a near-real-time snapshot of reports and statistics.

    List and statistics fetches run concurrently and fail independently. A
    failed fetch is recorded as that resource's error and the timer keeps
    going. Every fetch carries an issue sequence number; a response or error
    issued before the one already applied for the same resource is discarded.

    Statistics follow the list's branch and date range unless
    ``statistics_filters`` is given, which lets a dashboard poll KPIs under
    its own scope next to a differently filtered list.
    """

    def __init__(
        self,
        store: ReportStore,
        cache: QueryCache,
        *,
        filters: Optional[ReportFilters] = None,
        statistics_filters: Optional[StatisticsFilters] = None,
        interval: Optional[float] = None,
        stale_time: Optional[float] = None,
        refetch_on_focus: Optional[bool] = None,
        refetch_on_reconnect: Optional[bool] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.cache = cache
        if filters is None:
            filters = ReportFilters(limit=settings.default_page_size)
            if settings.default_branch_id:
                filters = filters.for_branch(settings.default_branch_id)
        self.filters = filters
        self._statistics_filters = statistics_filters
        self.interval = interval if interval is not None else settings.polling_interval_seconds
        self.stale_time = stale_time if stale_time is not None else settings.stale_time_seconds
        self.refetch_on_focus = settings.refetch_on_focus if refetch_on_focus is None else refetch_on_focus
        self.refetch_on_reconnect = (
            settings.refetch_on_reconnect if refetch_on_reconnect is None else refetch_on_reconnect
        )
        self.enabled = settings.enable_polling if enabled is None else enabled

        self.reports_error: Optional[str] = None
        self.statistics_error: Optional[str] = None
        self._snapshot: Optional[PollingSnapshot] = None
        self._last_update: Optional[datetime] = None
        self._last_refresh: Optional[float] = None
        self._last_refresh_at: Optional[datetime] = None
        self._listed_ids: Optional[Set[str]] = None
        self._listeners: List[SnapshotListener] = []
        self._sequence = itertools.count(1)
        self._applied: Dict[str, int] = {"reports": 0, "statistics": 0}
        self._in_flight: Dict[str, int] = {"reports": 0, "statistics": 0}
        self._timer: Optional[asyncio.Task] = None
        self._refetch_task: Optional[asyncio.Task] = None
        self._refetch_targets: Set[str] = set()
        self._unsubscribe = cache.subscribe(self._on_invalidate)

    @classmethod
    def for_branch(
        cls,
        store: ReportStore,
        cache: QueryCache,
        branch_id: str,
        *,
        filters: Optional[ReportFilters] = None,
        **options: Any,
    ) -> "ReportsPoller":
        """Poller scoped to one branch; any branch in ``filters`` is replaced."""
        base = filters or ReportFilters(limit=get_settings().default_page_size)
        return cls(store, cache, filters=base.for_branch(branch_id), **options)

    # Views

    @property
    def statistics_filters(self) -> StatisticsFilters:
        return self._statistics_filters or self.filters.statistics_filters()

    @property
    def snapshot(self) -> Optional[PollingSnapshot]:
        return self._snapshot

    @property
    def reports(self) -> Optional[ReportPage]:
        return self._snapshot.reports if self._snapshot else None

    @property
    def statistics(self) -> Optional[ReportStatistics]:
        return self._snapshot.statistics if self._snapshot else None

    @property
    def last_update(self) -> Optional[datetime]:
        return self._last_update

    @property
    def last_refresh(self) -> Optional[datetime]:
        return self._last_refresh_at

    @property
    def is_polling(self) -> bool:
        return self.enabled and self._timer is not None and not self._timer.done()

    @property
    def reports_loading(self) -> bool:
        """True while the first list fetch is still in flight."""
        return self._in_flight["reports"] > 0 and self.reports is None

    @property
    def statistics_loading(self) -> bool:
        return self._in_flight["statistics"] > 0 and self.statistics is None

    @property
    def is_refreshing(self) -> bool:
        return any(self._in_flight.values())

    def refresh_status(self) -> RefreshStatus:
        return RefreshStatus(
            is_refreshing=self.is_refreshing,
            last_refresh=self._last_refresh_at,
            is_enabled=self.enabled,
        )

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # Lifecycle

    async def start(
        self,
        filters: Optional[ReportFilters] = None,
        interval: Optional[float] = None,
        statistics_filters: Optional[StatisticsFilters] = None,
    ) -> None:
        """Fetch immediately, then keep polling on the interval."""
        await self.stop()
        if filters is not None:
            self.filters = filters
        if statistics_filters is not None:
            self._statistics_filters = statistics_filters
        if interval is not None:
            self.interval = interval
        if not self.enabled:
            logger.info("Report polling disabled; skipping start")
            return
        await self.poll_once()
        self._timer = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Report polling started",
            interval_seconds=self.interval,
            filters=self.filters.cache_key(),
            statistics_filters=self.statistics_filters.cache_key(),
        )

    async def stop(self) -> None:
        tasks = [task for task in (self._timer, self._refetch_task) if task is not None]
        self._timer = None
        self._refetch_task = None
        self._refetch_targets.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("Report polling stopped")

    def close(self) -> None:
        self._unsubscribe()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.poll_once()

    # Fetching

    async def poll_once(self) -> List[Any]:
        """Run both fetches; errors are recorded, never raised."""
        results = await asyncio.gather(
            self._fetch_reports(), self._fetch_statistics(), return_exceptions=True
        )
        self._mark_refreshed()
        return results

    async def refresh(self) -> None:
        """Manual refresh of the list and statistics.

        Unlike scheduled polls this raises the first fetch error.
        """
        results = await self.poll_once()
        self.cache.invalidate(DASHBOARD)
        for result in results:
            if isinstance(result, Exception):
                raise result

    async def refresh_statistics(self) -> ReportStatistics:
        """Refetch only the dashboard statistics; raises on failure."""
        try:
            statistics = await self._fetch_statistics()
        finally:
            self._mark_refreshed()
            self.cache.invalidate(DASHBOARD)
        return statistics

    def _mark_refreshed(self) -> None:
        self._last_refresh = time.monotonic()
        self._last_refresh_at = datetime.now(timezone.utc)

    async def _fetch_reports(self) -> ReportPage:
        seq = next(self._sequence)
        filters = self.filters
        self._in_flight["reports"] += 1
        try:
            page = await self.store.list_reports(filters)
        except Exception as exc:
            if seq < self._applied["reports"]:
                logger.debug("Ignoring failure of superseded report list fetch", sequence=seq, error=str(exc))
                raise
            self.reports_error = str(exc)
            logger.warning("Report list poll failed", error=str(exc), filters=filters.cache_key())
            raise
        finally:
            self._in_flight["reports"] -= 1
        if seq < self._applied["reports"] or filters != self.filters:
            logger.debug("Discarding stale report list response", sequence=seq)
            return page
        self._applied["reports"] = seq
        self.reports_error = None
        self.cache.set(list_key(filters.cache_key()), page)
        self._publish(reports=page)
        return page

    async def _fetch_statistics(self) -> ReportStatistics:
        seq = next(self._sequence)
        filters = self.statistics_filters
        self._in_flight["statistics"] += 1
        try:
            statistics = await self.store.get_report_statistics(filters)
        except Exception as exc:
            if seq < self._applied["statistics"]:
                logger.debug("Ignoring failure of superseded statistics fetch", sequence=seq, error=str(exc))
                raise
            self.statistics_error = str(exc)
            logger.warning("Report statistics poll failed", error=str(exc))
            raise
        finally:
            self._in_flight["statistics"] -= 1
        if seq < self._applied["statistics"] or filters != self.statistics_filters:
            logger.debug("Discarding stale statistics response", sequence=seq)
            return statistics
        self._applied["statistics"] = seq
        self.statistics_error = None
        previous = self.statistics
        self.cache.set(statistics_key(filters.cache_key()), statistics)
        self._publish(statistics=statistics)
        if statistics != previous:
            self.cache.invalidate(DASHBOARD)
        return statistics

    def _publish(
        self,
        reports: Optional[ReportPage] = None,
        statistics: Optional[ReportStatistics] = None,
    ) -> None:
        previous = self._snapshot
        newest = newest_update(reports)
        advanced = newest is not None and (self._last_update is None or newest > self._last_update)
        if advanced:
            self._last_update = newest

        # Deletions leave the newest timestamp untouched; membership still counts as a change.
        membership_changed = False
        if reports is not None:
            ids = set(reports.ids())
            membership_changed = self._listed_ids is not None and ids != self._listed_ids
            self._listed_ids = ids

        self._snapshot = PollingSnapshot(
            filters=self.filters,
            reports=reports if reports is not None else (previous.reports if previous else None),
            statistics=statistics if statistics is not None else (previous.statistics if previous else None),
            last_update=self._last_update,
            fetched_at=datetime.now(timezone.utc),
        )

        if advanced:
            self.cache.invalidate(DASHBOARD)
        if advanced or membership_changed:
            for listener in list(self._listeners):
                try:
                    listener(self._snapshot)
                except Exception as exc:
                    logger.error("Snapshot listener failed", error=str(exc))

    # Triggers

    def notify_focus(self) -> bool:
        if not self.refetch_on_focus:
            return False
        return self._conditional_refetch("focus")

    def notify_reconnect(self) -> bool:
        if not self.refetch_on_reconnect:
            return False
        return self._conditional_refetch("reconnect")

    def _conditional_refetch(self, trigger: str) -> bool:
        if not self.is_polling:
            return False
        if self._last_refresh is not None and time.monotonic() - self._last_refresh <= self.stale_time:
            return False
        logger.debug("Refetching reports", trigger=trigger)
        return self._schedule_refetch()

    def _on_invalidate(self, prefix) -> None:
        if not self.is_polling:
            return
        watched = {
            "reports": list_key(self.filters.cache_key()),
            "statistics": statistics_key(self.statistics_filters.cache_key()),
        }
        targets = {name for name, key in watched.items() if key[: len(prefix)] == prefix}
        if targets:
            self._schedule_refetch(targets)

    def _schedule_refetch(self, targets: Iterable[str] = ("reports", "statistics")) -> bool:
        self._refetch_targets.update(targets)
        if self._refetch_task is not None and not self._refetch_task.done():
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; refetch skipped")
            self._refetch_targets.clear()
            return False
        self._refetch_task = loop.create_task(self._refetch())
        return True

    async def _refetch(self) -> None:
        # Invalidations that land mid-fetch queue another pass.
        while self._refetch_targets:
            targets, self._refetch_targets = self._refetch_targets, set()
            fetches = []
            if "reports" in targets:
                fetches.append(self._fetch_reports())
            if "statistics" in targets:
                fetches.append(self._fetch_statistics())
            await asyncio.gather(*fetches, return_exceptions=True)
            self._mark_refreshed()
