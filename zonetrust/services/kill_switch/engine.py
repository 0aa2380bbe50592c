from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable, Mapping

from zonetrust.core.config import Settings, get_settings
from zonetrust.core.errors import (
    DuplicateReportError,
    InvalidInputError,
    InvalidSignalError,
    RecordNotFoundError,
)
from zonetrust.domain.records import (
    AnomalyReport,
    AnomalyType,
    EntityKey,
    EvaluationResult,
    KillReason,
    KillSwitchRecord,
    KillSwitchSummary,
    PriceAnomaly,
    PriceBaseline,
    PricePoint,
    ReconciliationResult,
)
from zonetrust.services.kill_switch import reconciliation, reporting
from zonetrust.services.kill_switch.classifier import create_anomaly_report, detect_price_anomaly
from zonetrust.services.kill_switch.policy import ACTION_DUPLICATE, KillSwitchThresholds
from zonetrust.services.kill_switch.store import InMemoryKillSwitchStore, KillSwitchStore
from zonetrust.services.kill_switch.transitions import (
    apply_anomaly_report,
    permanent_kill,
    record_data_refresh,
    require_aware,
    revive_entity,
    trigger_kill,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_key(entity_key: EntityKey | str) -> EntityKey:
    if isinstance(entity_key, EntityKey):
        return entity_key
    return EntityKey.parse(entity_key)


def _coerce_kill_reason(reason: KillReason | str) -> KillReason:
    if isinstance(reason, KillReason):
        return reason
    try:
        return KillReason(str(reason).strip().upper())
    except ValueError as exc:
        raise InvalidSignalError(f"unrecognized kill reason: {reason!r}") from exc


class KillSwitchEngine:
    """Entry point for signal sources, operators and the scheduler.

    Every state change goes through ``KillSwitchStore.update`` with a pure
    transition function, so callers never see a half-applied transition.
    ``clock`` is injectable so tests can pin time.
    """

    def __init__(
        self,
        store: KillSwitchStore,
        *,
        thresholds: KillSwitchThresholds | None = None,
        clock: Clock | None = None,
        summary_recent_window_days: int = 7,
        summary_recent_limit: int = 10,
    ) -> None:
        self.store = store
        self.thresholds = thresholds or KillSwitchThresholds()
        self._clock = clock or _utc_now
        self._summary_recent_window_days = summary_recent_window_days
        self._summary_recent_limit = summary_recent_limit

    def now(self) -> datetime:
        return self._clock()

    async def evaluate(self, entity_key: EntityKey | str, report: AnomalyReport) -> EvaluationResult:
        """Apply one anomaly report to its entity, creating the record on first sight.

        Re-submitting an already applied report id returns action
        ``DUPLICATE`` with the current record and no transition.
        """
        key = _coerce_key(entity_key)
        if report.key != key:
            raise InvalidSignalError(f"report {report.id} targets {report.key}, not {key}")
        now = self.now()
        try:
            record, action = await self.store.update(
                key,
                lambda record: apply_anomaly_report(record, report, thresholds=self.thresholds, now=now),
                now=now,
                region_id=report.region_id,
                report=report,
            )
        except DuplicateReportError:
            logger.info("anomaly_report_duplicate entity=%s report_id=%s", key, report.id)
            current = await self.store.get(key)
            if current is None:
                raise
            return EvaluationResult(state=current.state, action_taken=ACTION_DUPLICATE, record=current)
        logger.info(
            "anomaly_report_evaluated entity=%s report_id=%s type=%s severity=%s action=%s state=%s",
            key,
            report.id,
            report.anomaly_type.value,
            report.severity.value,
            action,
            record.state.value,
        )
        return EvaluationResult(state=record.state, action_taken=action, record=record)

    async def get_record(self, entity_key: EntityKey | str) -> KillSwitchRecord | None:
        return await self.store.get(_coerce_key(entity_key))

    async def require_record(self, entity_key: EntityKey | str) -> KillSwitchRecord:
        key = _coerce_key(entity_key)
        record = await self.store.get(key)
        if record is None:
            raise RecordNotFoundError(f"no kill switch record for {key}")
        return record

    async def ingest_signal(
        self,
        *,
        entity_key: EntityKey | str,
        region_id: str,
        anomaly_type: AnomalyType | str,
        reported_by: str,
        description: str = "",
        context: Mapping[str, Any] | None = None,
        evidence: dict[str, Any] | None = None,
        report_id: str | None = None,
    ) -> EvaluationResult:
        # Classify at the boundary; nothing is stored when the signal is rejected.
        try:
            key = _coerce_key(entity_key)
            report = create_anomaly_report(
                key=key,
                region_id=region_id,
                anomaly_type=anomaly_type,
                reported_by=reported_by,
                description=description,
                context=context,
                evidence=evidence,
                reported_at=self.now(),
                report_id=report_id,
            )
        except InvalidInputError as exc:
            logger.warning("signal_rejected entity=%s type=%s error=%s", entity_key, anomaly_type, exc)
            raise
        return await self.evaluate(key, report)

    async def ingest_price_observation(
        self,
        *,
        entity_key: EntityKey | str,
        region_id: str,
        price: float,
        baseline: PriceBaseline,
        recent_prices: Iterable[PricePoint | float] = (),
        reported_by: str,
        report_id: str | None = None,
    ) -> tuple[PriceAnomaly, EvaluationResult | None]:
        """Run price detection and feed a detected anomaly into ``evaluate``.

        A normal price leaves the store untouched and returns ``None`` for the
        evaluation.
        """
        try:
            key = _coerce_key(entity_key)
            anomaly = detect_price_anomaly(price, baseline, recent_prices, thresholds=self.thresholds)
        except InvalidInputError as exc:
            logger.warning("price_observation_rejected entity=%s error=%s", entity_key, exc)
            raise
        if not anomaly.is_anomaly or anomaly.anomaly_type is None:
            return anomaly, None
        report = create_anomaly_report(
            key=key,
            region_id=region_id,
            anomaly_type=anomaly.anomaly_type,
            reported_by=reported_by,
            description=f"Observed price {price} outside expected range",
            context={"variance": anomaly.variance},
            evidence={
                "price": price,
                "baseline": {"min": baseline.min, "max": baseline.max, "typical": baseline.typical},
                "variance": anomaly.variance,
            },
            reported_at=self.now(),
            report_id=report_id,
        )
        return anomaly, await self.evaluate(key, report)

    async def record_data_update(
        self,
        entity_key: EntityKey | str,
        *,
        updated_at: datetime | None = None,
        region_id: str | None = None,
    ) -> KillSwitchRecord:
        # Freshness signal for staleness checks; it never changes state by itself.
        key = _coerce_key(entity_key)
        now = self.now()
        stamp = require_aware(updated_at, field="updated_at") if updated_at is not None else now
        if stamp > now:
            raise InvalidSignalError("updated_at cannot be in the future")
        record, _ = await self.store.update(
            key,
            lambda record: (record_data_refresh(record, updated_at=stamp), None),
            now=now,
            region_id=region_id,
        )
        return record

    async def revive(
        self,
        entity_key: EntityKey | str,
        *,
        actor: str,
        reason: str,
        reset_anomaly_count: bool = False,
    ) -> KillSwitchRecord:
        key = _coerce_key(entity_key)
        now = self.now()
        record, _ = await self.store.update(
            key,
            lambda record: (
                revive_entity(
                    record,
                    actor=actor,
                    reason=reason,
                    now=now,
                    reset_anomaly_count=reset_anomaly_count,
                ),
                None,
            ),
            now=now,
        )
        return record

    async def kill(
        self,
        entity_key: EntityKey | str,
        *,
        actor: str,
        reason: KillReason | str,
        details: str,
        duration_days: int | None = None,
    ) -> KillSwitchRecord:
        # Manual hide (-> OFFLINE), optionally with a scheduled revival.
        key = _coerce_key(entity_key)
        kill_reason = _coerce_kill_reason(reason)
        if duration_days is not None and duration_days < 1:
            raise InvalidSignalError("duration_days must be >= 1")
        now = self.now()
        record, _ = await self.store.update(
            key,
            lambda record: (
                trigger_kill(
                    record,
                    reason=kill_reason,
                    actor=actor,
                    details=details,
                    now=now,
                    duration_days=duration_days,
                ),
                None,
            ),
            now=now,
        )
        return record

    async def permanent_kill(self, entity_key: EntityKey | str, *, actor: str, reason: str) -> KillSwitchRecord:
        key = _coerce_key(entity_key)
        now = self.now()
        record, _ = await self.store.update(
            key,
            lambda record: (permanent_kill(record, actor=actor, reason=reason, now=now), None),
            now=now,
        )
        logger.warning("kill_switch_permanent_kill entity=%s actor=%s", key, actor)
        return record

    async def get_anomaly(self, report_id: str) -> AnomalyReport | None:
        return await self.store.get_anomaly(report_id)

    async def list_anomalies(
        self,
        *,
        entity_key: EntityKey | str | None = None,
        region_id: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[AnomalyReport]:
        key = _coerce_key(entity_key) if entity_key is not None else None
        return await self.store.list_anomalies(
            key=key,
            region_id=region_id,
            unresolved_only=unresolved_only,
            limit=limit,
        )

    async def resolve_anomaly(
        self,
        report_id: str,
        *,
        resolved_by: str,
        notes: str | None = None,
    ) -> AnomalyReport:
        if not str(resolved_by or "").strip():
            raise InvalidSignalError("resolved_by is required")
        return await self.store.resolve_anomaly(
            report_id,
            resolved_by=resolved_by.strip(),
            notes=notes,
            now=self.now(),
        )

    async def run_reconciliation(
        self,
        *,
        last_updated: Mapping[EntityKey, datetime] | None = None,
    ) -> ReconciliationResult:
        return await reconciliation.run_reconciliation_cycle(
            self.store,
            thresholds=self.thresholds,
            now=self.now(),
            last_updated=last_updated,
        )

    async def summarize(self, region_id: str | None = None) -> KillSwitchSummary:
        records = await self.store.list_records(region_id=region_id)
        return reporting.summarize(
            records,
            region_id=region_id,
            now=self.now(),
            recent_window_days=self._summary_recent_window_days,
            recent_limit=self._summary_recent_limit,
        )

    async def export_audit(self, entity_key: EntityKey | str) -> str:
        return reporting.export_audit_log(await self.require_record(entity_key))

    async def format_status(self, entity_key: EntityKey | str) -> str:
        return reporting.format_status(await self.require_record(entity_key), now=self.now())


def build_store(settings: Settings | None = None) -> KillSwitchStore:
    resolved = settings or get_settings()
    backend = resolved.store_backend.strip().lower()
    if backend == "memory":
        return InMemoryKillSwitchStore()
    if backend == "sql":
        # Imported lazily so the in-memory backend does not need a database driver.
        from zonetrust.persistence.db import get_sessionmaker
        from zonetrust.persistence.repos.kill_switches import SqlKillSwitchStore

        return SqlKillSwitchStore(
            get_sessionmaker(),
            max_cas_retries=resolved.store_max_cas_retries,
            write_timeout_s=resolved.store_write_timeout_s,
        )
    raise ValueError(f"unknown store_backend: {resolved.store_backend!r}")


def build_kill_switch_engine(
    settings: Settings | None = None,
    *,
    store: KillSwitchStore | None = None,
    clock: Clock | None = None,
) -> KillSwitchEngine:
    resolved = settings or get_settings()
    return KillSwitchEngine(
        store or build_store(resolved),
        thresholds=KillSwitchThresholds.from_settings(resolved),
        clock=clock,
        summary_recent_window_days=resolved.summary_recent_window_days,
        summary_recent_limit=resolved.summary_recent_limit,
    )
