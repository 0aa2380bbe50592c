from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zonetrust.core.config import get_settings
from zonetrust.core.errors import (
    AnomalyNotFoundError,
    ConcurrentWriteError,
    DuplicateReportError,
    PersistenceError,
    RecordNotFoundError,
    ReportIdConflictError,
)
from zonetrust.domain.models import AnomalyReportRow, KillSwitch, KillSwitchAuditEntry
from zonetrust.domain.records import (
    AnomalyReport,
    AnomalyType,
    AuditEntry,
    EntityKey,
    EntityState,
    KillSwitchRecord,
    Severity,
)
from zonetrust.services.kill_switch.store import (
    KillSwitchStore,
    Mutation,
    bump_version,
    resolve_report,
)
from zonetrust.services.kill_switch.transitions import initialize_record


logger = logging.getLogger(__name__)

T = TypeVar("T")


class _CasConflict(Exception):
    # Internal signal that another writer won the race for this key.
    pass


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; every timestamp in the engine is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _entity_filter(model, key: EntityKey):
    return (model.entity_type == key.entity_type, model.entity_id == key.entity_id)


def _to_audit_entry(row: KillSwitchAuditEntry) -> AuditEntry:
    return AuditEntry(
        timestamp=_as_utc(row.occurred_at),
        previous_state=EntityState(row.previous_state),
        new_state=EntityState(row.new_state),
        reason=row.reason,
        actor=row.actor,
        details=row.details,
    )


def _to_record(row: KillSwitch, entries: list[KillSwitchAuditEntry]) -> KillSwitchRecord:
    return KillSwitchRecord(
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        region_id=row.region_id,
        state=EntityState(row.state),
        audit_log=tuple(_to_audit_entry(entry) for entry in entries),
        reason=row.reason,
        killed_at=_as_utc(row.killed_at),
        killed_by=row.killed_by,
        revive_after=_as_utc(row.revive_after),
        hazard_count=row.hazard_count,
        anomaly_count=row.anomaly_count,
        last_verified=_as_utc(row.last_verified),
        data_updated_at=_as_utc(row.data_updated_at),
        version=row.version,
    )


def _record_values(record: KillSwitchRecord) -> dict:
    return {
        "region_id": record.region_id,
        "state": record.state.value,
        "reason": record.reason,
        "killed_at": record.killed_at,
        "killed_by": record.killed_by,
        "revive_after": record.revive_after,
        "hazard_count": record.hazard_count,
        "anomaly_count": record.anomaly_count,
        "last_verified": record.last_verified,
        "data_updated_at": record.data_updated_at,
        "version": record.version,
    }


def _to_report(row: AnomalyReportRow) -> AnomalyReport:
    return AnomalyReport(
        id=row.id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        region_id=row.region_id,
        anomaly_type=AnomalyType(row.anomaly_type),
        severity=Severity(row.severity),
        reported_at=_as_utc(row.reported_at),
        reported_by=row.reported_by,
        description=row.description,
        evidence=row.evidence_json,
        resolved=row.resolved,
        resolved_at=_as_utc(row.resolved_at),
        resolved_by=row.resolved_by,
        resolution_notes=row.resolution_notes,
    )


def _to_report_row(report: AnomalyReport) -> AnomalyReportRow:
    return AnomalyReportRow(
        id=report.id,
        entity_type=report.entity_type,
        entity_id=report.entity_id,
        region_id=report.region_id,
        anomaly_type=report.anomaly_type.value,
        severity=report.severity.value,
        reported_at=report.reported_at,
        reported_by=report.reported_by,
        description=report.description,
        evidence_json=report.evidence,
        resolved=report.resolved,
        resolved_at=report.resolved_at,
        resolved_by=report.resolved_by,
        resolution_notes=report.resolution_notes,
    )


async def _load_entries(session: AsyncSession, key: EntityKey) -> list[KillSwitchAuditEntry]:
    rows = (
        await session.execute(
            select(KillSwitchAuditEntry)
            .where(*_entity_filter(KillSwitchAuditEntry, key))
            .order_by(KillSwitchAuditEntry.seq.asc())
        )
    ).scalars().all()
    return list(rows)


class SqlKillSwitchStore(KillSwitchStore):
    """Durable store using optimistic compare-and-swap on ``version``.

    The record row, its new audit rows and the anomaly report row commit in
    one transaction. A writer that loses the race re-reads the record and
    re-applies its mutation; persistence failures and timeouts surface as
    ``PersistenceError`` and are never retried here.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        max_cas_retries: int | None = None,
        write_timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._sessionmaker = sessionmaker
        self._max_cas_retries = max(
            0, int(max_cas_retries if max_cas_retries is not None else settings.store_max_cas_retries)
        )
        self._write_timeout_s = float(
            write_timeout_s if write_timeout_s is not None else settings.store_write_timeout_s
        )

    async def get(self, key: EntityKey) -> KillSwitchRecord | None:
        try:
            async with self._sessionmaker() as session:
                row = (
                    await session.execute(select(KillSwitch).where(*_entity_filter(KillSwitch, key)))
                ).scalar_one_or_none()
                if row is None:
                    return None
                return _to_record(row, await _load_entries(session, key))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load kill switch {key}") from exc

    async def list_keys(self) -> list[EntityKey]:
        try:
            async with self._sessionmaker() as session:
                rows = (
                    await session.execute(
                        select(KillSwitch.entity_type, KillSwitch.entity_id).order_by(
                            KillSwitch.entity_type.asc(), KillSwitch.entity_id.asc()
                        )
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to list kill switch keys") from exc
        return [EntityKey(entity_type, entity_id) for entity_type, entity_id in rows]

    async def list_records(self, *, region_id: str | None = None) -> list[KillSwitchRecord]:
        try:
            async with self._sessionmaker() as session:
                stmt = select(KillSwitch).order_by(KillSwitch.entity_type.asc(), KillSwitch.entity_id.asc())
                if region_id is not None:
                    stmt = stmt.where(KillSwitch.region_id == region_id)
                rows = (await session.execute(stmt)).scalars().all()
                records: list[KillSwitchRecord] = []
                for row in rows:
                    key = EntityKey(row.entity_type, row.entity_id)
                    records.append(_to_record(row, await _load_entries(session, key)))
                return records
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to list kill switch records") from exc

    async def update(
        self,
        key: EntityKey,
        mutate: Mutation[T],
        *,
        now: datetime,
        region_id: str | None = None,
        report: AnomalyReport | None = None,
    ) -> tuple[KillSwitchRecord, T]:
        for attempt in range(1, self._max_cas_retries + 2):
            try:
                return await asyncio.wait_for(
                    self._attempt_update(key, mutate, now=now, region_id=region_id, report=report),
                    timeout=self._write_timeout_s,
                )
            except _CasConflict:
                logger.warning("kill_switch_cas_conflict entity=%s attempt=%s", key, attempt)
                continue
            except asyncio.TimeoutError as exc:
                # The commit may or may not have landed; callers re-read instead of re-applying.
                logger.error("kill_switch_persist_timeout entity=%s timeout_s=%s", key, self._write_timeout_s)
                raise PersistenceError(f"persist timed out for {key}") from exc
            except SQLAlchemyError as exc:
                logger.error("kill_switch_persist_failed entity=%s", key, exc_info=exc)
                raise PersistenceError(f"persist failed for {key}") from exc
        raise ConcurrentWriteError(f"gave up on {key} after {self._max_cas_retries + 1} conflicting attempts")

    async def _attempt_update(
        self,
        key: EntityKey,
        mutate: Mutation[T],
        *,
        now: datetime,
        region_id: str | None,
        report: AnomalyReport | None,
    ) -> tuple[KillSwitchRecord, T]:
        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    if report is not None:
                        stored = await session.get(AnomalyReportRow, report.id)
                        if stored is not None:
                            if (stored.entity_type, stored.entity_id) != (key.entity_type, key.entity_id):
                                raise ReportIdConflictError(
                                    f"anomaly report {report.id} belongs to {stored.entity_type}:{stored.entity_id}"
                                )
                            raise DuplicateReportError(f"anomaly report {report.id} already applied")

                    row = (
                        await session.execute(select(KillSwitch).where(*_entity_filter(KillSwitch, key)))
                    ).scalar_one_or_none()
                    if row is None:
                        if region_id is None:
                            raise RecordNotFoundError(f"no kill switch record for {key}")
                        current = None
                        base = initialize_record(key=key, region_id=region_id, now=now)
                    else:
                        current = _to_record(row, await _load_entries(session, key))
                        base = current

                    updated, result = mutate(base)
                    if current is not None and updated == current:
                        if report is not None:
                            session.add(_to_report_row(report))
                        return current, result

                    updated = bump_version(current, updated)
                    if current is None:
                        session.add(
                            KillSwitch(
                                entity_type=key.entity_type,
                                entity_id=key.entity_id,
                                **_record_values(updated),
                            )
                        )
                        known_entries = 0
                    else:
                        outcome = await session.execute(
                            update(KillSwitch)
                            .where(
                                *_entity_filter(KillSwitch, key),
                                KillSwitch.version == current.version,
                            )
                            .values(**_record_values(updated))
                        )
                        if outcome.rowcount != 1:
                            raise _CasConflict()
                        known_entries = len(current.audit_log)

                    for seq, entry in enumerate(updated.audit_log[known_entries:], start=known_entries):
                        session.add(
                            KillSwitchAuditEntry(
                                entity_type=key.entity_type,
                                entity_id=key.entity_id,
                                seq=seq,
                                occurred_at=entry.timestamp,
                                previous_state=entry.previous_state.value,
                                new_state=entry.new_state.value,
                                reason=entry.reason,
                                actor=entry.actor,
                                details=entry.details,
                            )
                        )
                    if report is not None:
                        session.add(_to_report_row(report))
                    await session.flush()
                return updated, result
            except IntegrityError as exc:
                # A concurrent first insert or duplicate audit seq: re-read and re-apply.
                raise _CasConflict() from exc

    async def get_anomaly(self, report_id: str) -> AnomalyReport | None:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(AnomalyReportRow, report_id)
                return _to_report(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load anomaly report {report_id}") from exc

    async def list_anomalies(
        self,
        *,
        key: EntityKey | None = None,
        region_id: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[AnomalyReport]:
        stmt = select(AnomalyReportRow)
        if key is not None:
            stmt = stmt.where(*_entity_filter(AnomalyReportRow, key))
        if region_id is not None:
            stmt = stmt.where(AnomalyReportRow.region_id == region_id)
        if unresolved_only:
            stmt = stmt.where(AnomalyReportRow.resolved.is_(False))
        stmt = stmt.order_by(AnomalyReportRow.reported_at.desc(), AnomalyReportRow.id.desc()).limit(max(0, limit))
        try:
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to list anomaly reports") from exc
        return [_to_report(row) for row in rows]

    async def resolve_anomaly(
        self,
        report_id: str,
        *,
        resolved_by: str,
        notes: str | None,
        now: datetime,
    ) -> AnomalyReport:
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    row = await session.get(AnomalyReportRow, report_id, with_for_update=True)
                    if row is None:
                        raise AnomalyNotFoundError(f"anomaly report {report_id} not found")
                    resolved = resolve_report(_to_report(row), resolved_by=resolved_by, notes=notes, now=now)
                    row.resolved = True
                    row.resolved_at = resolved.resolved_at
                    row.resolved_by = resolved.resolved_by
                    row.resolution_notes = resolved.resolution_notes
                return resolved
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to resolve anomaly report {report_id}") from exc
