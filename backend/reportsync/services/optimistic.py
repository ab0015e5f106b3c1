"""Optimistic report mutations with retry, rollback, and conflict resolution."""
from __future__ import annotations

import asyncio
import itertools
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from reportsync.core.config import get_settings
from reportsync.core.logging import logger
from reportsync.models.report import (
    USER_EDITABLE_FIELDS,
    Report,
    ReportApprovalData,
    ReportPage,
    ReportStatus,
    normalize_report_fields,
)
from reportsync.models.sync import (
    Conflict,
    ConflictResolution,
    ConflictType,
    OptimisticUpdate,
    UpdateKind,
)
from reportsync.services.query_cache import (
    DASHBOARD,
    REPORT_LISTS,
    REPORT_STATISTICS,
    REPORTS,
    QueryCache,
    report_key,
)
from reportsync.services.report_store import ReportNotFoundError, ReportStore, ReportStoreError

ConflictResolver = Callable[[OptimisticUpdate, Report, ConflictType], ConflictResolution]
ResolutionCallback = Callable[[ConflictResolution, Report], None]
RetryCallback = Callable[[int], None]

# Timestamps the client stamps on patches; the server always overwrites them.
_PLACEHOLDER_FIELDS = {"updated_at", "approved_at"}


class MutationFailedError(ReportStoreError):
    """Raised when a mutation exhausts its retries and has been rolled back."""

    def __init__(self, message: str, update_id: str, attempts: int) -> None:
        super().__init__(message)
        self.update_id = update_id
        self.attempts = attempts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def server_wins(update: OptimisticUpdate, server_data: Report, conflict_type: ConflictType) -> ConflictResolution:
    return ConflictResolution.USE_SERVER


def apply_patch(report: Report, patch: Dict[str, Any]) -> Report:
    return Report.model_validate({**report.model_dump(), **patch})


def merge_report_data(server_data: Report, local_changes: Dict[str, Any]) -> Report:
    """Metric fields keep local values; everything else, including status,
    approver and timestamps, comes from the server."""
    updates = {
        field: local_changes[field]
        for field in USER_EDITABLE_FIELDS
        if local_changes.get(field) is not None
    }
    if not updates:
        return server_data
    return apply_patch(server_data, updates)


def detect_conflict_type(update: OptimisticUpdate, server_data: Report) -> Optional[ConflictType]:
    """Classify how a server copy disagrees with the state an update assumed.

    A status mismatch always wins over every other difference.
    """
    original = update.original_data
    if original is None:
        return None
    if original.status != server_data.status:
        return ConflictType.STATUS
    if server_data.updated_at > update.timestamp:
        return ConflictType.VERSION
    if original.model_dump() != server_data.model_dump():
        return ConflictType.DATA
    return None


def server_reflects(update: OptimisticUpdate, server_data: Report) -> bool:
    """True when the server copy already carries every field of the local patch."""
    if update.kind is UpdateKind.DELETE:
        return False
    for field, value in update.optimistic_data.items():
        if field in _PLACEHOLDER_FIELDS:
            continue
        if getattr(server_data, field, None) != value:
            return False
    return True


class OptimisticUpdateEngine:
    """Applies report mutations locally before the store confirms them.

    On failure a mutation is retried with exponential backoff
    (``retry_delay * 2**attempt``). After the last attempt the cached report is
    restored to the exact object captured before the patch; deletes instead
    invalidate every cached report query.
    """

    def __init__(
        self,
        store: ReportStore,
        cache: QueryCache,
        *,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        enable_optimistic_updates: Optional[bool] = None,
        conflict_window: Optional[float] = None,
        resolver: Optional[ConflictResolver] = None,
        on_resolution: Optional[ResolutionCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.cache = cache
        self.max_retries = max(0, settings.max_retries if max_retries is None else max_retries)
        self.retry_delay = settings.retry_delay_seconds if retry_delay is None else retry_delay
        self.enable_optimistic_updates = (
            settings.enable_optimistic_updates if enable_optimistic_updates is None else enable_optimistic_updates
        )
        self.conflict_window = settings.conflict_window_seconds if conflict_window is None else conflict_window
        self.resolver: ConflictResolver = resolver or server_wins
        self._resolution_callbacks: List[ResolutionCallback] = [on_resolution] if on_resolution else []
        self._sleep = sleep

        self.pending_updates: Dict[str, OptimisticUpdate] = {}
        self.conflicts: List[Conflict] = []
        self._recent: Dict[str, Tuple[OptimisticUpdate, float]] = {}
        self._ids = itertools.count(1)

    @property
    def has_pending_updates(self) -> bool:
        return bool(self.pending_updates)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def add_resolution_callback(self, callback: ResolutionCallback) -> None:
        self._resolution_callbacks.append(callback)

    def new_update_id(self, kind: UpdateKind, report_id: str) -> str:
        return f"{kind.value}_{report_id}_{int(time.time() * 1000)}_{next(self._ids)}"

    # Cache access

    def find_cached_report(self, report_id: str) -> Optional[Report]:
        for page in self.cache.items(REPORT_LISTS).values():
            if isinstance(page, ReportPage):
                found = page.find(report_id)
                if found is not None:
                    return found
        cached = self.cache.get(report_key(report_id))
        return cached if isinstance(cached, Report) else None

    def _replace_report(self, report_id: str, replacement: Callable[[Report], Report]) -> None:
        def _page(page: Any) -> Any:
            if not isinstance(page, ReportPage) or page.find(report_id) is None:
                return page
            rows = [replacement(row) if row.id == report_id else row for row in page.data]
            return page.model_copy(update={"data": rows})

        self.cache.update_matching(REPORT_LISTS, _page)
        self.cache.update_matching(
            report_key(report_id),
            lambda value: replacement(value) if isinstance(value, Report) else value,
        )

    def _remove_report(self, report_id: str) -> None:
        def _page(page: Any) -> Any:
            if not isinstance(page, ReportPage) or page.find(report_id) is None:
                return page
            pagination = page.pagination.model_copy(update={"total": max(0, page.pagination.total - 1)})
            rows = [row for row in page.data if row.id != report_id]
            return page.model_copy(update={"data": rows, "pagination": pagination})

        self.cache.update_matching(REPORT_LISTS, _page)
        self.cache.remove(report_key(report_id))

    def _invalidate_aggregates(self) -> None:
        self.cache.invalidate(REPORT_STATISTICS)
        self.cache.invalidate(DASHBOARD)

    # Mutations

    async def approve(
        self,
        report_id: str,
        data: Union[ReportApprovalData, Dict[str, Any]],
        *,
        update_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> Report:
        approval = ReportApprovalData.model_validate(data)
        patch = {
            "status": ReportStatus.APPROVED,
            "approved_by": approval.approved_by,
            "approved_at": _utcnow(),
        }
        return await self._execute(
            report_id,
            UpdateKind.APPROVE,
            lambda: self.store.approve_report(report_id, approval),
            patch,
            update_id=update_id,
            on_retry=on_retry,
        )

    async def decline(
        self,
        report_id: str,
        data: Union[ReportApprovalData, Dict[str, Any]],
        *,
        update_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> Report:
        decline = ReportApprovalData.model_validate(data)
        patch = {
            "status": ReportStatus.DECLINED,
            "decline_reason": decline.reason,
            "approved_by": decline.approved_by,
            "approved_at": _utcnow(),
        }
        return await self._execute(
            report_id,
            UpdateKind.DECLINE,
            lambda: self.store.decline_report(report_id, decline),
            patch,
            update_id=update_id,
            on_retry=on_retry,
        )

    async def update(
        self,
        report_id: str,
        fields: Dict[str, Any],
        *,
        update_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> Report:
        changes = normalize_report_fields(fields)
        changes.pop("id", None)
        patch = {**changes, "updated_at": _utcnow()}
        return await self._execute(
            report_id,
            UpdateKind.UPDATE,
            lambda: self.store.update_report(report_id, changes),
            patch,
            update_id=update_id,
            on_retry=on_retry,
        )

    async def delete(
        self,
        report_id: str,
        *,
        update_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> None:
        await self._execute(
            report_id,
            UpdateKind.DELETE,
            lambda: self.store.delete_report(report_id),
            {},
            update_id=update_id,
            on_retry=on_retry,
        )

    async def _execute(
        self,
        report_id: str,
        kind: UpdateKind,
        call: Callable[[], Awaitable[Any]],
        patch: Dict[str, Any],
        *,
        update_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> Any:
        original = self.find_cached_report(report_id)
        if original is None:
            raise ReportNotFoundError(f"Report {report_id} not found in cache")

        update = OptimisticUpdate(
            id=update_id or self.new_update_id(kind, report_id),
            report_id=report_id,
            kind=kind,
            original_data=original,
            optimistic_data=patch,
        )
        self.pending_updates[update.id] = update
        if self.enable_optimistic_updates:
            self._apply_optimistic(update)

        try:
            result = await self._call_with_retry(update, call, on_retry)
        except asyncio.CancelledError:
            self._fail(update, ReportStoreError(f"{kind.value} for report {report_id} was cancelled"))
            raise

        self._confirm(update, result)
        return result

    async def _call_with_retry(
        self,
        update: OptimisticUpdate,
        call: Callable[[], Awaitable[Any]],
        on_retry: Optional[RetryCallback],
    ) -> Any:
        attempt = 0
        while True:
            update.attempts += 1
            try:
                return await call()
            except Exception as exc:
                retryable = not isinstance(exc, ReportNotFoundError)
                if not retryable or attempt >= self.max_retries:
                    self._fail(update, exc)
                    raise MutationFailedError(
                        f"{update.kind.value} failed for report {update.report_id} "
                        f"after {update.attempts} attempt(s): {exc}",
                        update_id=update.id,
                        attempts=update.attempts,
                    ) from exc
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Report mutation failed; retrying",
                    update_id=update.id,
                    kind=update.kind.value,
                    report_id=update.report_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
            if on_retry is not None:
                on_retry(attempt)
            await self._sleep(delay)

    def _apply_optimistic(self, update: OptimisticUpdate) -> None:
        if update.kind is UpdateKind.DELETE:
            self._remove_report(update.report_id)
            self._invalidate_aggregates()
            return
        self._replace_report(update.report_id, lambda row: apply_patch(row, update.optimistic_data))
        if "status" in update.optimistic_data:
            self._invalidate_aggregates()

    def _confirm(self, update: OptimisticUpdate, result: Any) -> None:
        self.pending_updates.pop(update.id, None)
        if isinstance(result, Report):
            self._replace_report(update.report_id, lambda _row: result)
            update.confirmed_version = result.updated_at
            self._recent[update.id] = (update, time.monotonic())
        if update.kind is UpdateKind.DELETE:
            self._drop_conflicts_for(update.report_id, reason="report deleted")
        logger.info(
            "Report mutation confirmed",
            update_id=update.id,
            kind=update.kind.value,
            report_id=update.report_id,
            attempts=update.attempts,
        )
        self.cache.invalidate(REPORTS)
        self.cache.invalidate(DASHBOARD)

    def _fail(self, update: OptimisticUpdate, exc: Exception) -> None:
        self.pending_updates.pop(update.id, None)
        if update.kind is UpdateKind.DELETE:
            self.cache.invalidate(REPORTS)
            self.cache.invalidate(DASHBOARD)
        elif update.original_data is not None:
            original = update.original_data
            self._replace_report(update.report_id, lambda _row: original)
            self._invalidate_aggregates()
        logger.error(
            "Report mutation failed; local change rolled back",
            update_id=update.id,
            kind=update.kind.value,
            report_id=update.report_id,
            attempts=update.attempts,
            error=str(exc),
        )

    # Conflicts

    def reconcile(self, server_reports: Iterable[Report]) -> List[Conflict]:
        """Compare fresher server copies with pending and recently confirmed updates.

        Returns every conflict detected; only ``prompt_user`` ones stay in the
        outbox.
        """
        by_id = {report.id: report for report in server_reports}
        self._prune_recent()
        self._supersede_conflicts(by_id)

        candidates = list(self.pending_updates.values()) + [entry[0] for entry in self._recent.values()]
        detected: List[Conflict] = []
        for update in candidates:
            if update.kind is UpdateKind.DELETE:
                continue
            server_data = by_id.get(update.report_id)
            if server_data is None:
                continue
            baseline = max(
                value
                for value in (update.timestamp, update.confirmed_version, update.reconciled_version)
                if value is not None
            )
            if server_data.updated_at <= baseline:
                continue
            update.reconciled_version = server_data.updated_at
            if server_reflects(update, server_data):
                continue
            conflict_type = detect_conflict_type(update, server_data)
            if conflict_type is None:
                continue
            detected.append(self._handle_conflict(update, server_data, conflict_type))
            self._recent.pop(update.id, None)
        return detected

    def _handle_conflict(
        self,
        update: OptimisticUpdate,
        server_data: Report,
        conflict_type: ConflictType,
    ) -> Conflict:
        conflict = Conflict(
            id=f"conflict_{update.report_id}_{next(self._ids)}",
            update=update,
            server_data=server_data,
            conflict_type=conflict_type,
        )
        resolution = ConflictResolution(self.resolver(update, server_data, conflict_type))
        if resolution is ConflictResolution.PROMPT_USER:
            self.conflicts.append(conflict)
            self._replace_report(update.report_id, lambda _row: server_data)
            self._invalidate_aggregates()
            logger.info(
                "Conflict awaiting user resolution",
                conflict_id=conflict.id,
                report_id=update.report_id,
                conflict_type=conflict_type.value,
            )
            return conflict

        final_data = self._resolved_data(resolution, update, server_data)
        self._replace_report(update.report_id, lambda _row: final_data)
        self._invalidate_aggregates()
        logger.info(
            "Conflict resolved",
            report_id=update.report_id,
            update_id=update.id,
            conflict_type=conflict_type.value,
            resolution=resolution.value,
        )
        self._notify_resolution(resolution, final_data)
        return conflict

    @staticmethod
    def _resolved_data(resolution: ConflictResolution, update: OptimisticUpdate, server_data: Report) -> Report:
        if resolution is ConflictResolution.USE_LOCAL:
            return apply_patch(server_data, update.optimistic_data)
        if resolution is ConflictResolution.MERGE:
            return merge_report_data(server_data, update.optimistic_data)
        return server_data

    def _notify_resolution(self, resolution: ConflictResolution, final_data: Report) -> None:
        for callback in list(self._resolution_callbacks):
            try:
                callback(resolution, final_data)
            except Exception as exc:
                logger.error("Conflict resolution callback failed", error=str(exc))

    def find_conflict(self, key: Union[str, int]) -> Conflict:
        if isinstance(key, int):
            if 0 <= key < len(self.conflicts):
                return self.conflicts[key]
            raise KeyError(key)
        for conflict in self.conflicts:
            if conflict.id == key:
                return conflict
        raise KeyError(key)

    def resolve_conflict(
        self,
        key: Union[str, int],
        resolution: Union[ConflictResolution, str],
    ) -> Report:
        """Apply a user's choice to a prompted conflict and drop it from the outbox."""
        choice = ConflictResolution(resolution)
        if choice is ConflictResolution.PROMPT_USER:
            raise ValueError("A prompted conflict must be resolved with use_server, use_local, or merge")
        conflict = self.find_conflict(key)
        final_data = self._resolved_data(choice, conflict.update, conflict.server_data)

        self.cache.set(report_key(conflict.update.report_id), final_data)
        self._replace_report(conflict.update.report_id, lambda _row: final_data)
        self.conflicts = [row for row in self.conflicts if row.id != conflict.id]
        self._invalidate_aggregates()
        logger.info(
            "Conflict resolved by user",
            conflict_id=conflict.id,
            report_id=conflict.update.report_id,
            resolution=choice.value,
        )
        self._notify_resolution(choice, final_data)
        return final_data

    def _supersede_conflicts(self, by_id: Dict[str, Report]) -> None:
        kept: List[Conflict] = []
        for conflict in self.conflicts:
            server_data = by_id.get(conflict.update.report_id)
            if (
                server_data is not None
                and server_data.updated_at > conflict.server_data.updated_at
                and server_reflects(conflict.update, server_data)
            ):
                logger.info("Conflict superseded by newer server data", conflict_id=conflict.id)
                continue
            kept.append(conflict)
        self.conflicts = kept

    def _drop_conflicts_for(self, report_id: str, reason: str) -> None:
        remaining = [row for row in self.conflicts if row.update.report_id != report_id]
        if len(remaining) != len(self.conflicts):
            logger.info("Dropped conflicts for report", report_id=report_id, reason=reason)
        self.conflicts = remaining

    async def prune_deleted_conflicts(self, present_ids: Iterable[str] = ()) -> List[str]:
        """Resolve server-wins any prompted conflict whose report no longer exists remotely."""
        present = set(present_ids)
        removed: List[str] = []
        for conflict in list(self.conflicts):
            report_id = conflict.update.report_id
            if report_id in present:
                continue
            try:
                await self.store.get_report(report_id)
            except ReportNotFoundError:
                self._drop_conflicts_for(report_id, reason="report deleted on server")
                self._remove_report(report_id)
                self._invalidate_aggregates()
                removed.append(conflict.id)
            except Exception as exc:
                logger.warning("Could not verify conflicted report", report_id=report_id, error=str(exc))
        return removed

    def _prune_recent(self) -> None:
        cutoff = time.monotonic() - self.conflict_window
        for update_id, (_update, confirmed_at) in list(self._recent.items()):
            if confirmed_at < cutoff:
                self._recent.pop(update_id, None)
