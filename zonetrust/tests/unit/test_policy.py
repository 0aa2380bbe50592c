from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from zonetrust.core.config import get_settings
from zonetrust.domain.records import AnomalyType, EntityState, KillReason, Severity
from zonetrust.services.kill_switch.policy import (
    ACTION_AUTO_REVIVED,
    ACTION_DEGRADED_HAZARD,
    ACTION_DEGRADED_SEVERITY,
    ACTION_DEGRADED_STALENESS,
    ACTION_KILLED_HAZARD,
    ACTION_KILLED_PRICE_ANOMALY,
    ACTION_KILLED_STALENESS,
    ACTION_LOGGED,
    TRANSITION_DEGRADE,
    TRANSITION_KILL,
    TRANSITION_NONE,
    TRANSITION_REVIVE,
    KillSwitchThresholds,
    ThresholdConfigError,
    decide_auto_revive,
    decide_for_anomaly,
    decide_staleness,
)


NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _decide(anomaly_type, severity, *, hazard_count=0, anomaly_count=0, thresholds=None, state=EntityState.ACTIVE,
            revive_after=None):
    return decide_for_anomaly(
        state=state,
        revive_after=revive_after,
        anomaly_type=anomaly_type,
        severity=severity,
        description="report",
        hazard_count=hazard_count,
        anomaly_count=anomaly_count,
        thresholds=thresholds or KillSwitchThresholds(),
    )


def test_first_hazard_degrades_second_kills_with_cooling_period() -> None:
    first = _decide(AnomalyType.HAZARD_SAFETY, Severity.HIGH, hazard_count=1)
    assert first.action == ACTION_DEGRADED_HAZARD
    assert first.transition == TRANSITION_DEGRADE
    assert first.reason == KillReason.HAZARD_REPORTS

    second = _decide(AnomalyType.HAZARD_PHYSICAL, Severity.HIGH, hazard_count=2)
    assert second.action == ACTION_KILLED_HAZARD
    assert second.transition == TRANSITION_KILL
    assert second.duration_days == 7


def test_third_price_anomaly_kills_without_revive() -> None:
    second = _decide(AnomalyType.PRICE_SPIKE, Severity.MEDIUM, anomaly_count=2)
    assert second.action == ACTION_LOGGED
    assert second.transition == TRANSITION_NONE

    third = _decide(AnomalyType.PRICE_DROP, Severity.LOW, anomaly_count=3)
    assert third.action == ACTION_KILLED_PRICE_ANOMALY
    assert third.reason == KillReason.PRICE_ANOMALY
    assert third.duration_days is None


def test_high_severity_non_price_anomaly_degrades() -> None:
    decision = _decide(AnomalyType.CLOSURE_PERMANENT, Severity.HIGH, anomaly_count=1)
    assert decision.action == ACTION_DEGRADED_SEVERITY
    assert decision.reason == KillReason.SYSTEM_AUTO

    critical = _decide(AnomalyType.PRICE_SPIKE, Severity.CRITICAL, anomaly_count=1)
    assert critical.action == ACTION_DEGRADED_SEVERITY


def test_non_price_anomalies_never_trigger_price_kill() -> None:
    decision = _decide(AnomalyType.DATA_MISMATCH, Severity.MEDIUM, anomaly_count=10)
    assert decision.action == ACTION_LOGGED


def test_thresholds_are_injectable() -> None:
    lenient = KillSwitchThresholds(hazard_count_kill=3, hazard_kill_duration_days=14)
    assert _decide(AnomalyType.HAZARD_SCAM, Severity.HIGH, hazard_count=2, thresholds=lenient).action == (
        ACTION_DEGRADED_HAZARD
    )
    killed = _decide(AnomalyType.HAZARD_SCAM, Severity.HIGH, hazard_count=3, thresholds=lenient)
    assert killed.duration_days == 14


def test_offline_records_are_only_ever_rekilled() -> None:
    hazard = _decide(AnomalyType.HAZARD_SAFETY, Severity.HIGH, hazard_count=1, state=EntityState.OFFLINE)
    assert hazard.action == ACTION_LOGGED
    severe = _decide(AnomalyType.COORDINATE_ERROR, Severity.HIGH, state=EntityState.OFFLINE)
    assert severe.action == ACTION_LOGGED

    indefinite = _decide(AnomalyType.HAZARD_SAFETY, Severity.HIGH, hazard_count=2, state=EntityState.OFFLINE)
    assert indefinite.transition == TRANSITION_KILL
    assert indefinite.duration_days is None

    timed = _decide(
        AnomalyType.HAZARD_SAFETY,
        Severity.HIGH,
        hazard_count=2,
        state=EntityState.OFFLINE,
        revive_after=NOW,
    )
    assert timed.duration_days == 7


@pytest.mark.parametrize(
    "overrides",
    [
        {"hazard_count_kill": 0},
        {"price_anomaly_kill": 0},
        {"price_spike_multiplier": 1.0},
        {"price_drop_multiplier": 1.5},
        {"staleness_degraded_days": 200, "staleness_offline_days": 180},
    ],
)
def test_inconsistent_thresholds_are_rejected(overrides) -> None:
    with pytest.raises(ThresholdConfigError):
        KillSwitchThresholds(**overrides)


def test_thresholds_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("HAZARD_COUNT_KILL", "4")
    monkeypatch.setenv("STALENESS_OFFLINE_DAYS", "365")
    get_settings.cache_clear()
    thresholds = KillSwitchThresholds.from_settings()
    assert thresholds.hazard_count_kill == 4
    assert thresholds.staleness_offline_days == 365
    assert thresholds.staleness_degraded_days == 90


@pytest.mark.parametrize(
    ("state", "days", "action"),
    [
        (EntityState.ACTIVE, 89.9, ACTION_LOGGED),
        (EntityState.ACTIVE, 90, ACTION_DEGRADED_STALENESS),
        (EntityState.DEGRADED, 120, ACTION_LOGGED),
        (EntityState.ACTIVE, 180, ACTION_KILLED_STALENESS),
        (EntityState.DEGRADED, 200, ACTION_KILLED_STALENESS),
        (EntityState.OFFLINE, 400, ACTION_LOGGED),
        (EntityState.KILLED, 400, ACTION_LOGGED),
    ],
)
def test_staleness_decisions(state, days, action) -> None:
    decision = decide_staleness(state=state, days_since_update=days, thresholds=KillSwitchThresholds())
    assert decision.action == action


def test_staleness_kill_has_no_revive() -> None:
    decision = decide_staleness(
        state=EntityState.ACTIVE,
        days_since_update=200,
        thresholds=KillSwitchThresholds(),
    )
    assert decision.transition == TRANSITION_KILL
    assert decision.reason == KillReason.STALENESS
    assert decision.duration_days is None
    assert "200 days old" in decision.details


def test_auto_revive_only_for_elapsed_offline_records() -> None:
    elapsed = decide_auto_revive(state=EntityState.OFFLINE, revive_after=NOW - timedelta(seconds=1), now=NOW)
    assert elapsed.action == ACTION_AUTO_REVIVED
    assert elapsed.transition == TRANSITION_REVIVE

    assert decide_auto_revive(state=EntityState.OFFLINE, revive_after=NOW, now=NOW).action == ACTION_AUTO_REVIVED
    pending = decide_auto_revive(state=EntityState.OFFLINE, revive_after=NOW + timedelta(days=1), now=NOW)
    assert pending.transition == TRANSITION_NONE
    assert decide_auto_revive(state=EntityState.OFFLINE, revive_after=None, now=NOW).transition == TRANSITION_NONE
    assert decide_auto_revive(state=EntityState.DEGRADED, revive_after=NOW, now=NOW).transition == TRANSITION_NONE
