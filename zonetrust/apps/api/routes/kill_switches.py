from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from zonetrust.apps.api.deps import get_actor, get_engine
from zonetrust.apps.api.response import success_response
from zonetrust.core.errors import AnomalyNotFoundError, InvalidInputError
from zonetrust.domain.records import (
    AnomalyReport,
    AuditEntry,
    EntityKey,
    EvaluationResult,
    KillReason,
    KillSwitchRecord,
    PriceBaseline,
    display_mode,
    is_displayable,
)
from zonetrust.services.kill_switch.engine import KillSwitchEngine
from zonetrust.services.kill_switch.reporting import format_status


router = APIRouter(prefix="/kill-switches", tags=["kill-switches"])


class SignalRequest(BaseModel):
    entity_type: str
    entity_id: str
    region_id: str
    anomaly_type: str
    reported_by: str
    description: str = ""
    context: dict[str, Any] | None = None
    evidence: dict[str, Any] | None = None
    # Client-chosen id makes retries of the same signal idempotent.
    report_id: str | None = None


class BaselineModel(BaseModel):
    min: float
    max: float
    typical: float


class PriceObservationRequest(BaseModel):
    entity_type: str
    entity_id: str
    region_id: str
    price: float
    baseline: BaselineModel
    recent_prices: list[float] = Field(default_factory=list)
    reported_by: str
    report_id: str | None = None


class DataUpdatedRequest(BaseModel):
    updated_at: datetime | None = None
    region_id: str | None = None


class ReviveRequest(BaseModel):
    reason: str = Field(min_length=1)
    reset_anomaly_count: bool = False


class KillRequest(BaseModel):
    reason: str = KillReason.ADMIN_MANUAL.value
    details: str = Field(min_length=1)
    duration_days: int | None = Field(default=None, ge=1)


class PermanentKillRequest(BaseModel):
    reason: str = Field(min_length=1)


class ResolveAnomalyRequest(BaseModel):
    notes: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _audit_payload(entry: AuditEntry) -> dict[str, Any]:
    return {
        "timestamp": entry.timestamp.isoformat(),
        "previous_state": entry.previous_state.value,
        "new_state": entry.new_state.value,
        "reason": entry.reason,
        "actor": entry.actor,
        "details": entry.details,
    }


def _record_payload(record: KillSwitchRecord, *, now: datetime) -> dict[str, Any]:
    return {
        "entity_key": str(record.key),
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        "region_id": record.region_id,
        "state": record.state.value,
        "displayable": is_displayable(record.state),
        "display_mode": display_mode(record.state),
        "status": format_status(record, now=now),
        "reason": record.reason,
        "killed_at": _iso(record.killed_at),
        "killed_by": record.killed_by,
        "revive_after": _iso(record.revive_after),
        "hazard_count": record.hazard_count,
        "anomaly_count": record.anomaly_count,
        "last_verified": _iso(record.last_verified),
        "data_updated_at": _iso(record.data_updated_at),
        "version": record.version,
        "audit_log": [_audit_payload(entry) for entry in record.audit_log],
    }


def _anomaly_payload(report: AnomalyReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "entity_key": str(report.key),
        "region_id": report.region_id,
        "anomaly_type": report.anomaly_type.value,
        "severity": report.severity.value,
        "reported_at": report.reported_at.isoformat(),
        "reported_by": report.reported_by,
        "description": report.description,
        "evidence": report.evidence,
        "resolved": report.resolved,
        "resolved_at": _iso(report.resolved_at),
        "resolved_by": report.resolved_by,
        "resolution_notes": report.resolution_notes,
    }


def _evaluation_payload(result: EvaluationResult, *, now: datetime) -> dict[str, Any]:
    return {
        "state": result.state.value,
        "action_taken": result.action_taken,
        "record": _record_payload(result.record, now=now),
    }


@router.post("/signals")
async def ingest_signal(
    request: Request,
    payload: SignalRequest,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    # Classify and apply one crowd or system signal.
    result = await engine.ingest_signal(
        entity_key=EntityKey(payload.entity_type, payload.entity_id),
        region_id=payload.region_id,
        anomaly_type=payload.anomaly_type,
        reported_by=payload.reported_by,
        description=payload.description,
        context=payload.context,
        evidence=payload.evidence,
        report_id=payload.report_id,
    )
    return success_response(request=request, data=_evaluation_payload(result, now=engine.now()))


@router.post("/price-observations")
async def ingest_price_observation(
    request: Request,
    payload: PriceObservationRequest,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    # Normal prices are acknowledged without touching the store.
    anomaly, result = await engine.ingest_price_observation(
        entity_key=EntityKey(payload.entity_type, payload.entity_id),
        region_id=payload.region_id,
        price=payload.price,
        baseline=PriceBaseline(
            min=payload.baseline.min,
            max=payload.baseline.max,
            typical=payload.baseline.typical,
        ),
        recent_prices=payload.recent_prices,
        reported_by=payload.reported_by,
        report_id=payload.report_id,
    )
    data: dict[str, Any] = {
        "is_anomaly": anomaly.is_anomaly,
        "anomaly_type": anomaly.anomaly_type.value if anomaly.anomaly_type is not None else None,
        "variance": anomaly.variance,
        "evaluation": _evaluation_payload(result, now=engine.now()) if result is not None else None,
    }
    return success_response(request=request, data=data)


@router.get("/summary")
async def get_summary(
    request: Request,
    region_id: str | None = None,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    summary = await engine.summarize(region_id=region_id)
    now = engine.now()
    data = {
        "region_id": region_id,
        "total": summary.total,
        "active": summary.active,
        "degraded": summary.degraded,
        "offline": summary.offline,
        "killed": summary.killed,
        "pending_revive": summary.pending_revive,
        "recent_kills": [_record_payload(record, now=now) for record in summary.recent_kills],
    }
    return success_response(request=request, data=data)


@router.post("/reconcile")
async def reconcile(
    request: Request,
    actor: str = Depends(get_actor),
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    # Operator-triggered pass; shares the scheduler lock so it never overlaps a cron run.
    result = await engine.run_reconciliation()
    return success_response(request=request, data={**result.as_dict(), "requested_by": actor})


@router.get("/anomalies")
async def list_anomalies(
    request: Request,
    entity_type: str | None = None,
    entity_id: str | None = None,
    region_id: str | None = None,
    unresolved_only: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    if (entity_type is None) != (entity_id is None):
        raise InvalidInputError("entity_type and entity_id filter together; supply both or neither")
    key = EntityKey(entity_type, entity_id) if entity_type is not None else None
    reports = await engine.list_anomalies(
        entity_key=key,
        region_id=region_id,
        unresolved_only=unresolved_only,
        limit=limit,
    )
    return success_response(request=request, data={"items": [_anomaly_payload(report) for report in reports]})


@router.get("/anomalies/{report_id}")
async def get_anomaly(
    request: Request,
    report_id: str,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    report = await engine.get_anomaly(report_id)
    if report is None:
        raise AnomalyNotFoundError(f"anomaly report {report_id} not found")
    return success_response(request=request, data=_anomaly_payload(report))


@router.post("/anomalies/{report_id}/resolve")
async def resolve_anomaly(
    request: Request,
    report_id: str,
    payload: ResolveAnomalyRequest,
    actor: str = Depends(get_actor),
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    report = await engine.resolve_anomaly(report_id, resolved_by=actor, notes=payload.notes)
    return success_response(request=request, data=_anomaly_payload(report))


@router.get("/{entity_type}/{entity_id}")
async def get_kill_switch(
    request: Request,
    entity_type: str,
    entity_id: str,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    record = await engine.require_record(EntityKey(entity_type, entity_id))
    return success_response(request=request, data=_record_payload(record, now=engine.now()))


@router.get("/{entity_type}/{entity_id}/audit")
async def get_audit_export(
    request: Request,
    entity_type: str,
    entity_id: str,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    # Human-readable trail, one line per entry.
    key = EntityKey(entity_type, entity_id)
    export = await engine.export_audit(key)
    return success_response(
        request=request,
        data={"entity_key": str(key), "lines": export.splitlines(), "text": export},
    )


@router.post("/{entity_type}/{entity_id}/data-updated")
async def record_data_updated(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: DataUpdatedRequest,
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    record = await engine.record_data_update(
        EntityKey(entity_type, entity_id),
        updated_at=payload.updated_at,
        region_id=payload.region_id,
    )
    return success_response(request=request, data=_record_payload(record, now=engine.now()))


@router.post("/{entity_type}/{entity_id}/revive")
async def revive(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: ReviveRequest,
    actor: str = Depends(get_actor),
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    record = await engine.revive(
        EntityKey(entity_type, entity_id),
        actor=actor,
        reason=payload.reason,
        reset_anomaly_count=payload.reset_anomaly_count,
    )
    return success_response(request=request, data=_record_payload(record, now=engine.now()))


@router.post("/{entity_type}/{entity_id}/kill")
async def kill(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: KillRequest,
    actor: str = Depends(get_actor),
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    record = await engine.kill(
        EntityKey(entity_type, entity_id),
        actor=actor,
        reason=payload.reason,
        details=payload.details,
        duration_days=payload.duration_days,
    )
    return success_response(request=request, data=_record_payload(record, now=engine.now()))


@router.post("/{entity_type}/{entity_id}/permanent-kill")
async def permanent_kill(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: PermanentKillRequest,
    actor: str = Depends(get_actor),
    engine: KillSwitchEngine = Depends(get_engine),
) -> dict:
    record = await engine.permanent_kill(EntityKey(entity_type, entity_id), actor=actor, reason=payload.reason)
    return success_response(request=request, data=_record_payload(record, now=engine.now()))
