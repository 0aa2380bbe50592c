from __future__ import annotations

from datetime import datetime, timedelta, timezone
import math
from typing import Iterable

from zonetrust.domain.records import AuditEntry, EntityState, KillSwitchRecord, KillSwitchSummary


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def summarize(
    records: Iterable[KillSwitchRecord],
    *,
    region_id: str | None = None,
    now: datetime | None = None,
    recent_window_days: int = 7,
    recent_limit: int = 10,
) -> KillSwitchSummary:
    """Aggregate records into dashboard counts.

    ``pending_revive`` counts OFFLINE records whose cooling period has not
    elapsed yet. ``recent_kills`` holds the most recently hidden records
    within the trailing window, newest first.
    """
    current = now or _utc_now()
    rows = [record for record in records if region_id is None or record.region_id == region_id]
    counts = {state: 0 for state in EntityState}
    for record in rows:
        counts[record.state] += 1

    pending = sum(
        1
        for record in rows
        if record.state == EntityState.OFFLINE and record.revive_after is not None and record.revive_after > current
    )
    window_start = current - timedelta(days=recent_window_days)
    recent = sorted(
        (record for record in rows if record.killed_at is not None and record.killed_at > window_start),
        key=lambda record: record.killed_at,
        reverse=True,
    )
    return KillSwitchSummary(
        total=len(rows),
        active=counts[EntityState.ACTIVE],
        degraded=counts[EntityState.DEGRADED],
        offline=counts[EntityState.OFFLINE],
        killed=counts[EntityState.KILLED],
        pending_revive=pending,
        recent_kills=tuple(recent[: max(0, recent_limit)]),
    )


def format_status(record: KillSwitchRecord, *, now: datetime | None = None) -> str:
    # One-line operator status, e.g. "OFFLINE (revives in 3d), 2 hazards".
    status = record.state.value
    if record.state == EntityState.OFFLINE and record.revive_after is not None:
        remaining_days = (record.revive_after - (now or _utc_now())).total_seconds() / 86400.0
        status += f" (revives in {max(0, math.ceil(remaining_days))}d)"
    if record.hazard_count > 0:
        status += f", {record.hazard_count} hazards"
    return status


def format_audit_line(entry: AuditEntry) -> str:
    return " | ".join(
        [
            entry.timestamp.isoformat(),
            entry.new_state.value,
            entry.reason,
            entry.actor,
            entry.details,
        ]
    )


def export_audit_log(record: KillSwitchRecord) -> str:
    return "\n".join(format_audit_line(entry) for entry in record.audit_log)
