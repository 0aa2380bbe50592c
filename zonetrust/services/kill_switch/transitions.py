"""Kill-switch state machine.

ACTIVE -> DEGRADED -> OFFLINE -> ACTIVE (revival), and any state -> KILLED via
an explicit manual action only. Every function here is synchronous and pure:
it takes a record and returns a new one with exactly one audit entry appended
per state write. Persistence and per-key serialization live in the stores.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
import logging
from typing import Iterable

from zonetrust.core.errors import AuditTrailError, InvalidSignalError, InvalidTransitionError
from zonetrust.domain.records import (
    INITIALIZATION_REASON,
    SYSTEM_ACTOR,
    AnomalyReport,
    AuditEntry,
    EntityKey,
    EntityState,
    KillReason,
    KillSwitchRecord,
)
from zonetrust.services.kill_switch.policy import (
    ACTION_IGNORED_KILLED,
    TRANSITION_DEGRADE,
    TRANSITION_KILL,
    TRANSITION_REVIVE,
    KillSwitchThresholds,
    PolicyDecision,
    days_between,
    decide_auto_revive,
    decide_for_anomaly,
    decide_staleness,
)


logger = logging.getLogger(__name__)

REVIVED_REASON = "REVIVED"
PERMANENT_KILL_REASON = "PERMANENT_KILL"


def initialize_record(*, key: EntityKey, region_id: str, now: datetime) -> KillSwitchRecord:
    return KillSwitchRecord(
        entity_type=key.entity_type,
        entity_id=key.entity_id,
        region_id=region_id,
        state=EntityState.ACTIVE,
        audit_log=(
            AuditEntry(
                timestamp=now,
                previous_state=EntityState.ACTIVE,
                new_state=EntityState.ACTIVE,
                reason=INITIALIZATION_REASON,
                actor=SYSTEM_ACTOR,
                details="Kill switch initialized",
            ),
        ),
    )


def _reason_value(reason: KillReason | str) -> str:
    return reason.value if isinstance(reason, KillReason) else str(reason)


def _transition(
    record: KillSwitchRecord,
    *,
    new_state: EntityState,
    audit_reason: str,
    actor: str,
    details: str,
    now: datetime,
    **changes,
) -> KillSwitchRecord:
    # The only place that writes `state`; it always appends the matching audit entry.
    entry = AuditEntry(
        timestamp=now,
        previous_state=record.state,
        new_state=new_state,
        reason=audit_reason,
        actor=actor,
        details=details,
    )
    logger.info(
        "kill_switch_transition entity=%s:%s from=%s to=%s reason=%s actor=%s",
        record.entity_type,
        record.entity_id,
        record.state.value,
        new_state.value,
        audit_reason,
        actor,
    )
    return replace(record, state=new_state, audit_log=record.audit_log + (entry,), **changes)


def _require_actor(actor: str) -> str:
    cleaned = str(actor or "").strip()
    if not cleaned:
        raise InvalidSignalError("actor is required")
    return cleaned


def trigger_kill(
    record: KillSwitchRecord,
    *,
    reason: KillReason | str,
    actor: str,
    details: str,
    now: datetime,
    duration_days: int | None = None,
) -> KillSwitchRecord:
    """Hide the entity (any non-terminal state -> OFFLINE).

    ``duration_days`` schedules automatic revival; without it the entity stays
    OFFLINE until a manual or verification-driven revive.
    """
    if record.state == EntityState.KILLED:
        raise InvalidTransitionError("KILLED is terminal; cannot move to OFFLINE")
    actor = _require_actor(actor)
    reason_value = _reason_value(reason)
    revive_after = now + timedelta(days=duration_days) if duration_days else None
    return _transition(
        record,
        new_state=EntityState.OFFLINE,
        audit_reason=reason_value,
        actor=actor,
        details=details,
        now=now,
        reason=reason_value,
        killed_at=now,
        killed_by=actor,
        revive_after=revive_after,
    )


def set_degraded(
    record: KillSwitchRecord,
    *,
    reason: KillReason | str,
    actor: str,
    details: str,
    now: datetime,
) -> KillSwitchRecord:
    # Show-with-warning; kill metadata is left untouched.
    if record.state == EntityState.KILLED:
        raise InvalidTransitionError("KILLED is terminal; cannot move to DEGRADED")
    reason_value = _reason_value(reason)
    return _transition(
        record,
        new_state=EntityState.DEGRADED,
        audit_reason=reason_value,
        actor=_require_actor(actor),
        details=details,
        now=now,
        reason=reason_value,
    )


def revive_entity(
    record: KillSwitchRecord,
    *,
    actor: str,
    reason: str,
    now: datetime,
    reset_anomaly_count: bool = False,
) -> KillSwitchRecord:
    # hazard_count always resets; anomaly_count persists unless a manual reviver clears it.
    if record.state not in (EntityState.OFFLINE, EntityState.DEGRADED):
        raise InvalidTransitionError(f"cannot revive from {record.state.value}")
    actor = _require_actor(actor)
    if reset_anomaly_count and actor == SYSTEM_ACTOR:
        raise InvalidTransitionError("anomaly_count reset requires a manual actor")
    details = reason
    if reset_anomaly_count:
        details = f"{reason} (anomaly_count reset from {record.anomaly_count})"
    return _transition(
        record,
        new_state=EntityState.ACTIVE,
        audit_reason=REVIVED_REASON,
        actor=actor,
        details=details,
        now=now,
        reason=None,
        killed_at=None,
        killed_by=None,
        revive_after=None,
        hazard_count=0,
        anomaly_count=0 if reset_anomaly_count else record.anomaly_count,
        last_verified=now,
    )


def permanent_kill(
    record: KillSwitchRecord,
    *,
    actor: str,
    reason: str,
    now: datetime,
) -> KillSwitchRecord:
    # Manual-only: no automatic path may produce KILLED.
    actor = _require_actor(actor)
    if actor == SYSTEM_ACTOR:
        raise InvalidTransitionError("permanent kill requires a manual actor")
    return _transition(
        record,
        new_state=EntityState.KILLED,
        audit_reason=PERMANENT_KILL_REASON,
        actor=actor,
        details=reason,
        now=now,
        reason=KillReason.ADMIN_MANUAL.value,
        killed_at=now,
        killed_by=actor,
        revive_after=None,
    )


def apply_decision(record: KillSwitchRecord, decision: PolicyDecision, *, now: datetime) -> KillSwitchRecord:
    if decision.transition == TRANSITION_KILL:
        return trigger_kill(
            record,
            reason=decision.reason,
            actor=SYSTEM_ACTOR,
            details=decision.details,
            now=now,
            duration_days=decision.duration_days,
        )
    if decision.transition == TRANSITION_DEGRADE:
        return set_degraded(
            record,
            reason=decision.reason,
            actor=SYSTEM_ACTOR,
            details=decision.details,
            now=now,
        )
    if decision.transition == TRANSITION_REVIVE:
        return revive_entity(record, actor=SYSTEM_ACTOR, reason=decision.details, now=now)
    return record


def apply_anomaly_report(
    record: KillSwitchRecord,
    report: AnomalyReport,
    *,
    thresholds: KillSwitchThresholds,
    now: datetime,
) -> tuple[KillSwitchRecord, str]:
    """Count one report against the record and apply the threshold policy."""
    if report.key != record.key:
        raise InvalidSignalError(f"report {report.id} targets {report.key}, not {record.key}")
    if record.state == EntityState.KILLED:
        return record, ACTION_IGNORED_KILLED

    if report.anomaly_type.is_hazard:
        record = replace(record, hazard_count=record.hazard_count + 1)
    else:
        record = replace(record, anomaly_count=record.anomaly_count + 1)

    decision = decide_for_anomaly(
        state=record.state,
        anomaly_type=report.anomaly_type,
        severity=report.severity,
        description=report.description,
        hazard_count=record.hazard_count,
        anomaly_count=record.anomaly_count,
        thresholds=thresholds,
        revive_after=record.revive_after,
    )
    return apply_decision(record, decision, now=now), decision.action


def freshness_reference(record: KillSwitchRecord, last_updated: datetime | None = None) -> datetime:
    # Explicit input wins, then the recorded data refresh, then record creation.
    return last_updated or record.data_updated_at or record.initialized_at


def check_staleness(
    record: KillSwitchRecord,
    *,
    thresholds: KillSwitchThresholds,
    now: datetime,
    last_updated: datetime | None = None,
) -> tuple[KillSwitchRecord, PolicyDecision]:
    decision = decide_staleness(
        state=record.state,
        days_since_update=days_between(freshness_reference(record, last_updated), now),
        thresholds=thresholds,
    )
    return apply_decision(record, decision, now=now), decision


def check_auto_revive(record: KillSwitchRecord, *, now: datetime) -> tuple[KillSwitchRecord, PolicyDecision]:
    decision = decide_auto_revive(state=record.state, revive_after=record.revive_after, now=now)
    return apply_decision(record, decision, now=now), decision


def replay_state(audit_log: Iterable[AuditEntry]) -> EntityState:
    """Fold an audit trail back into the state it implies.

    Raises ``AuditTrailError`` when the trail does not start with the
    initialization entry or an entry's ``previous_state`` does not chain from
    the one before it.
    """
    entries = list(audit_log)
    if not entries:
        raise AuditTrailError("audit log is empty")
    first = entries[0]
    if first.reason != INITIALIZATION_REASON or first.new_state != EntityState.ACTIVE:
        raise AuditTrailError("audit log must start with an ACTIVE initialization entry")
    state = first.new_state
    for index, entry in enumerate(entries[1:], start=1):
        if entry.previous_state != state:
            raise AuditTrailError(
                f"entry {index} starts from {entry.previous_state.value}, expected {state.value}"
            )
        if state == EntityState.KILLED and entry.new_state != EntityState.KILLED:
            raise AuditTrailError(f"entry {index} leaves terminal KILLED state")
        state = entry.new_state
    return state


def require_aware(value: datetime, *, field: str) -> datetime:
    # Timestamps from outside must carry an offset; naive values are rejected, never guessed.
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidSignalError(f"{field} must include a timezone offset")
    return value


def record_data_refresh(record: KillSwitchRecord, *, updated_at: datetime) -> KillSwitchRecord:
    # Freshness only moves forward; a late or replayed signal cannot make data look older.
    require_aware(updated_at, field="updated_at")
    if record.data_updated_at is not None and record.data_updated_at >= updated_at:
        return record
    return replace(record, data_updated_at=updated_at)
