from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from zonetrust.core.config import Settings, get_settings
from zonetrust.domain.records import AnomalyType, EntityState, KillReason, Severity


# Decision actions reported back to the signal source.
ACTION_LOGGED = "LOGGED"
ACTION_DEGRADED_HAZARD = "DEGRADED_HAZARD"
ACTION_KILLED_HAZARD = "KILLED_HAZARD"
ACTION_KILLED_PRICE_ANOMALY = "KILLED_PRICE_ANOMALY"
ACTION_DEGRADED_SEVERITY = "DEGRADED_SEVERITY"
ACTION_IGNORED_KILLED = "IGNORED_KILLED"
ACTION_DUPLICATE = "DUPLICATE"
ACTION_NO_ANOMALY = "NO_ANOMALY"
ACTION_KILLED_STALENESS = "KILLED_STALENESS"
ACTION_DEGRADED_STALENESS = "DEGRADED_STALENESS"
ACTION_AUTO_REVIVED = "AUTO_REVIVED"

# Transition kinds a decision can request.
TRANSITION_NONE = "none"
TRANSITION_KILL = "kill"
TRANSITION_DEGRADE = "degrade"
TRANSITION_REVIVE = "revive"

AUTO_REVIVE_DETAILS = "auto-revive after cooling period"


class ThresholdConfigError(ValueError):
    # Raised when deployment-supplied thresholds are internally inconsistent.
    pass


@dataclass(frozen=True)
class KillSwitchThresholds:
    hazard_count_kill: int = 2
    hazard_kill_duration_days: int = 7
    price_anomaly_kill: int = 3
    price_variance_threshold: float = 0.5
    price_spike_multiplier: float = 1.5
    price_drop_multiplier: float = 0.5
    recent_price_min_samples: int = 3
    staleness_degraded_days: int = 90
    staleness_offline_days: int = 180

    def __post_init__(self) -> None:
        if self.hazard_count_kill < 1:
            raise ThresholdConfigError("hazard_count_kill must be >= 1")
        if self.hazard_kill_duration_days < 1:
            raise ThresholdConfigError("hazard_kill_duration_days must be >= 1")
        if self.price_anomaly_kill < 1:
            raise ThresholdConfigError("price_anomaly_kill must be >= 1")
        if self.price_variance_threshold <= 0:
            raise ThresholdConfigError("price_variance_threshold must be > 0")
        if self.price_spike_multiplier <= 1.0:
            raise ThresholdConfigError("price_spike_multiplier must be > 1")
        if not 0.0 < self.price_drop_multiplier < 1.0:
            raise ThresholdConfigError("price_drop_multiplier must be in (0, 1)")
        if self.recent_price_min_samples < 1:
            raise ThresholdConfigError("recent_price_min_samples must be >= 1")
        if not 0 < self.staleness_degraded_days < self.staleness_offline_days:
            raise ThresholdConfigError("staleness thresholds must satisfy 0 < degraded < offline")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "KillSwitchThresholds":
        resolved = settings or get_settings()
        return cls(
            hazard_count_kill=resolved.hazard_count_kill,
            hazard_kill_duration_days=resolved.hazard_kill_duration_days,
            price_anomaly_kill=resolved.price_anomaly_kill,
            price_variance_threshold=resolved.price_variance_threshold,
            price_spike_multiplier=resolved.price_spike_multiplier,
            price_drop_multiplier=resolved.price_drop_multiplier,
            recent_price_min_samples=resolved.recent_price_min_samples,
            staleness_degraded_days=resolved.staleness_degraded_days,
            staleness_offline_days=resolved.staleness_offline_days,
        )


@dataclass(frozen=True)
class PolicyDecision:
    action: str
    transition: str = TRANSITION_NONE
    reason: KillReason | None = None
    details: str = ""
    duration_days: int | None = None


def decide_for_anomaly(
    *,
    state: EntityState,
    anomaly_type: AnomalyType,
    severity: Severity,
    description: str,
    hazard_count: int,
    anomaly_count: int,
    thresholds: KillSwitchThresholds,
    revive_after: datetime | None = None,
) -> PolicyDecision:
    """Map already-incremented counters for one report to a transition.

    ``hazard_count``/``anomaly_count`` are the values *after* counting the
    report being processed. An OFFLINE record is never brought back into view
    by a report: degrade decisions are logged only, and a re-kill keeps an
    indefinite hold (``revive_after`` of ``None``) indefinite.
    """
    decision = _decide_for_counts(
        anomaly_type=anomaly_type,
        severity=severity,
        description=description,
        hazard_count=hazard_count,
        anomaly_count=anomaly_count,
        thresholds=thresholds,
    )
    if state != EntityState.OFFLINE:
        return decision
    if decision.transition == TRANSITION_DEGRADE:
        return PolicyDecision(action=ACTION_LOGGED)
    if decision.transition == TRANSITION_KILL and revive_after is None:
        return replace(decision, duration_days=None)
    return decision


def _decide_for_counts(
    *,
    anomaly_type: AnomalyType,
    severity: Severity,
    description: str,
    hazard_count: int,
    anomaly_count: int,
    thresholds: KillSwitchThresholds,
) -> PolicyDecision:
    if anomaly_type.is_hazard:
        if hazard_count >= thresholds.hazard_count_kill:
            return PolicyDecision(
                action=ACTION_KILLED_HAZARD,
                transition=TRANSITION_KILL,
                reason=KillReason.HAZARD_REPORTS,
                details=f"{hazard_count} hazard reports received",
                duration_days=thresholds.hazard_kill_duration_days,
            )
        return PolicyDecision(
            action=ACTION_DEGRADED_HAZARD,
            transition=TRANSITION_DEGRADE,
            reason=KillReason.HAZARD_REPORTS,
            details=f"Hazard reported: {description}",
        )

    if anomaly_type.is_price and anomaly_count >= thresholds.price_anomaly_kill:
        # Price truth does not self-correct on a timer; no revive_after.
        return PolicyDecision(
            action=ACTION_KILLED_PRICE_ANOMALY,
            transition=TRANSITION_KILL,
            reason=KillReason.PRICE_ANOMALY,
            details=f"{anomaly_count} price anomalies detected",
        )
    if severity.rank >= Severity.HIGH.rank:
        return PolicyDecision(
            action=ACTION_DEGRADED_SEVERITY,
            transition=TRANSITION_DEGRADE,
            reason=KillReason.SYSTEM_AUTO,
            details=f"High severity anomaly: {anomaly_type.value}",
        )
    return PolicyDecision(action=ACTION_LOGGED)


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 86400.0


def decide_staleness(
    *,
    state: EntityState,
    days_since_update: float,
    thresholds: KillSwitchThresholds,
) -> PolicyDecision:
    # Staleness never escalates past OFFLINE/KILLED and never overwrites an existing DEGRADED reason.
    rounded = round(days_since_update)
    if days_since_update >= thresholds.staleness_offline_days:
        if state in (EntityState.OFFLINE, EntityState.KILLED):
            return PolicyDecision(action=ACTION_LOGGED)
        return PolicyDecision(
            action=ACTION_KILLED_STALENESS,
            transition=TRANSITION_KILL,
            reason=KillReason.STALENESS,
            details=f"Data is {rounded} days old (threshold: {thresholds.staleness_offline_days})",
        )
    if days_since_update >= thresholds.staleness_degraded_days and state == EntityState.ACTIVE:
        return PolicyDecision(
            action=ACTION_DEGRADED_STALENESS,
            transition=TRANSITION_DEGRADE,
            reason=KillReason.STALENESS,
            details=f"Data is {rounded} days old (threshold: {thresholds.staleness_degraded_days})",
        )
    return PolicyDecision(action=ACTION_LOGGED)


def decide_auto_revive(
    *,
    state: EntityState,
    revive_after: datetime | None,
    now: datetime,
) -> PolicyDecision:
    # A null revive_after marks kills that need verification; those stay OFFLINE.
    if state != EntityState.OFFLINE or revive_after is None:
        return PolicyDecision(action=ACTION_LOGGED)
    if now < revive_after:
        return PolicyDecision(action=ACTION_LOGGED)
    return PolicyDecision(
        action=ACTION_AUTO_REVIVED,
        transition=TRANSITION_REVIVE,
        details=AUTO_REVIVE_DETAILS,
    )
