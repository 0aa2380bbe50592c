from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, TypeVar

from zonetrust.core.errors import (
    AnomalyNotFoundError,
    DuplicateReportError,
    InvalidTransitionError,
    RecordNotFoundError,
    ReportIdConflictError,
)
from zonetrust.domain.records import AnomalyReport, EntityKey, KillSwitchRecord
from zonetrust.services.kill_switch.transitions import initialize_record


T = TypeVar("T")

# A mutation is a synchronous read-modify-write over the freshly loaded record.
Mutation = Callable[[KillSwitchRecord], tuple[KillSwitchRecord, T]]


class KillSwitchStore(ABC):
    """Owns one record per entity key and serializes writes per key.

    ``update`` is the only write path for records. Implementations must run
    ``mutate`` against the current persisted record (never a cached copy),
    persist the result together with ``report`` atomically, and ensure two
    updates for the same key never interleave. Updates for different keys may
    run concurrently.
    """

    @abstractmethod
    async def get(self, key: EntityKey) -> KillSwitchRecord | None: ...

    @abstractmethod
    async def list_keys(self) -> list[EntityKey]: ...

    @abstractmethod
    async def list_records(self, *, region_id: str | None = None) -> list[KillSwitchRecord]: ...

    @abstractmethod
    async def update(
        self,
        key: EntityKey,
        mutate: Mutation[T],
        *,
        now: datetime,
        region_id: str | None = None,
        report: AnomalyReport | None = None,
    ) -> tuple[KillSwitchRecord, T]:
        """Apply ``mutate`` under the per-key write guard.

        A missing record is created lazily when ``region_id`` is given and
        ``RecordNotFoundError`` is raised otherwise. ``report`` is stored in
        the same atomic step; an already stored report id raises
        ``DuplicateReportError`` without touching the record, or
        ``ReportIdConflictError`` when that id belongs to another entity.
        """

    @abstractmethod
    async def get_anomaly(self, report_id: str) -> AnomalyReport | None: ...

    @abstractmethod
    async def list_anomalies(
        self,
        *,
        key: EntityKey | None = None,
        region_id: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[AnomalyReport]: ...

    @abstractmethod
    async def resolve_anomaly(
        self,
        report_id: str,
        *,
        resolved_by: str,
        notes: str | None,
        now: datetime,
    ) -> AnomalyReport: ...


def resolve_report(report: AnomalyReport, *, resolved_by: str, notes: str | None, now: datetime) -> AnomalyReport:
    # Resolution fields are the only mutable part of a report, and only once.
    if report.resolved:
        raise InvalidTransitionError(f"anomaly report {report.id} is already resolved")
    return replace(
        report,
        resolved=True,
        resolved_at=now,
        resolved_by=resolved_by,
        resolution_notes=notes,
    )


def bump_version(before: KillSwitchRecord | None, after: KillSwitchRecord) -> KillSwitchRecord:
    expected = before.version if before is not None else 0
    return replace(after, version=expected + 1)


class InMemoryKillSwitchStore(KillSwitchStore):
    """Single-process store with one asyncio lock per entity key."""

    def __init__(self) -> None:
        self._records: dict[EntityKey, KillSwitchRecord] = {}
        self._locks: dict[EntityKey, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._reports: dict[str, AnomalyReport] = {}

    async def _lock_for(self, key: EntityKey) -> asyncio.Lock:
        async with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def get(self, key: EntityKey) -> KillSwitchRecord | None:
        return self._records.get(key)

    async def list_keys(self) -> list[EntityKey]:
        return sorted(self._records)

    async def list_records(self, *, region_id: str | None = None) -> list[KillSwitchRecord]:
        records = [self._records[key] for key in sorted(self._records)]
        if region_id is None:
            return records
        return [record for record in records if record.region_id == region_id]

    async def update(
        self,
        key: EntityKey,
        mutate: Mutation[T],
        *,
        now: datetime,
        region_id: str | None = None,
        report: AnomalyReport | None = None,
    ) -> tuple[KillSwitchRecord, T]:
        lock = await self._lock_for(key)
        async with lock:
            # No awaits below: the read-modify-write completes while the key lock is held.
            stored = self._reports.get(report.id) if report is not None else None
            if stored is not None:
                if stored.key != key:
                    raise ReportIdConflictError(f"anomaly report {stored.id} belongs to {stored.key}")
                raise DuplicateReportError(f"anomaly report {report.id} already applied")
            current = self._records.get(key)
            if current is None:
                if region_id is None:
                    raise RecordNotFoundError(f"no kill switch record for {key}")
                base = initialize_record(key=key, region_id=region_id, now=now)
            else:
                base = current
            updated, result = mutate(base)
            if current is None or updated != current:
                updated = bump_version(current, updated)
                self._records[key] = updated
            if report is not None:
                self._reports[report.id] = report
            return self._records[key], result

    async def get_anomaly(self, report_id: str) -> AnomalyReport | None:
        return self._reports.get(report_id)

    async def list_anomalies(
        self,
        *,
        key: EntityKey | None = None,
        region_id: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[AnomalyReport]:
        rows = list(self._reports.values())
        if key is not None:
            rows = [row for row in rows if row.key == key]
        if region_id is not None:
            rows = [row for row in rows if row.region_id == region_id]
        if unresolved_only:
            rows = [row for row in rows if not row.resolved]
        rows.sort(key=lambda row: (row.reported_at, row.id), reverse=True)
        return rows[: max(0, limit)]

    async def resolve_anomaly(
        self,
        report_id: str,
        *,
        resolved_by: str,
        notes: str | None,
        now: datetime,
    ) -> AnomalyReport:
        report = self._reports.get(report_id)
        if report is None:
            raise AnomalyNotFoundError(f"anomaly report {report_id} not found")
        resolved = resolve_report(report, resolved_by=resolved_by, notes=notes, now=now)
        self._reports[report_id] = resolved
        return resolved
