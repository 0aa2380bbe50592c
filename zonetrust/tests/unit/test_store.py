from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from zonetrust.core.errors import (
    AnomalyNotFoundError,
    DuplicateReportError,
    InvalidTransitionError,
    RecordNotFoundError,
    ReportIdConflictError,
)
from zonetrust.domain.records import AnomalyType, EntityKey, EntityState
from zonetrust.services.kill_switch.classifier import create_anomaly_report
from zonetrust.services.kill_switch.transitions import apply_anomaly_report, replay_state
from zonetrust.tests.utils.clock import START


def _report(key, anomaly_type=AnomalyType.HAZARD_SAFETY, *, report_id=None):
    return create_anomaly_report(
        key=key,
        region_id="bangkok",
        anomaly_type=anomaly_type,
        reported_by="user_1",
        reported_at=START,
        report_id=report_id,
    )


@pytest.mark.asyncio
async def test_update_creates_record_lazily(store, zone_key) -> None:
    record, result = await store.update(zone_key, lambda record: (record, "noop"), now=START, region_id="bangkok")
    assert result == "noop"
    assert record.state == EntityState.ACTIVE
    assert record.version == 1
    assert len(record.audit_log) == 1
    assert await store.get(zone_key) == record
    assert await store.list_keys() == [zone_key]


@pytest.mark.asyncio
async def test_update_without_region_requires_existing_record(store, zone_key) -> None:
    with pytest.raises(RecordNotFoundError):
        await store.update(zone_key, lambda record: (record, None), now=START)
    assert await store.get(zone_key) is None


@pytest.mark.asyncio
async def test_version_only_moves_on_change(store, zone_key) -> None:
    await store.update(zone_key, lambda record: (record, None), now=START, region_id="bangkok")
    unchanged, _ = await store.update(zone_key, lambda record: (record, None), now=START)
    assert unchanged.version == 1
    changed, _ = await store.update(zone_key, lambda record: (replace(record, hazard_count=5), None), now=START)
    assert changed.version == 2


@pytest.mark.asyncio
async def test_failed_mutation_leaves_record_untouched(store, zone_key) -> None:
    before, _ = await store.update(zone_key, lambda record: (record, None), now=START, region_id="bangkok")

    def _reject(record):
        raise InvalidTransitionError("nope")

    report = _report(zone_key)
    with pytest.raises(InvalidTransitionError):
        await store.update(zone_key, _reject, now=START, report=report)
    assert await store.get(zone_key) == before
    assert await store.get_anomaly(report.id) is None


@pytest.mark.asyncio
async def test_concurrent_hazards_on_one_key_are_serialized(store, zone_key, thresholds) -> None:
    # Both reports must be counted; a lost update would leave the entity DEGRADED with one hazard.
    async def _submit(report):
        return await store.update(
            zone_key,
            lambda record: apply_anomaly_report(record, report, thresholds=thresholds, now=START),
            now=START,
            region_id="bangkok",
            report=report,
        )

    results = await asyncio.gather(_submit(_report(zone_key)), _submit(_report(zone_key, AnomalyType.HAZARD_SCAM)))
    actions = sorted(action for _, action in results)
    assert actions == ["DEGRADED_HAZARD", "KILLED_HAZARD"]

    record = await store.get(zone_key)
    assert record.state == EntityState.OFFLINE
    assert record.hazard_count == 2
    assert record.revive_after == START + timedelta(days=7)
    assert replay_state(record.audit_log) == EntityState.OFFLINE
    assert len(record.audit_log) == 3


@pytest.mark.asyncio
async def test_different_keys_do_not_share_state(store, thresholds) -> None:
    keys = [EntityKey("zone", f"z{index}") for index in range(5)]

    async def _submit(key):
        report = _report(key)
        return await store.update(
            key,
            lambda record: apply_anomaly_report(record, report, thresholds=thresholds, now=START),
            now=START,
            region_id="bangkok",
            report=report,
        )

    await asyncio.gather(*(_submit(key) for key in keys))
    for key in keys:
        record = await store.get(key)
        assert record.hazard_count == 1
        assert record.state == EntityState.DEGRADED


@pytest.mark.asyncio
async def test_duplicate_report_id_is_rejected(store, zone_key, thresholds) -> None:
    report = _report(zone_key, report_id="anomaly_fixed")

    def _apply(record):
        return apply_anomaly_report(record, report, thresholds=thresholds, now=START)

    await store.update(zone_key, _apply, now=START, region_id="bangkok", report=report)
    with pytest.raises(DuplicateReportError):
        await store.update(zone_key, _apply, now=START, region_id="bangkok", report=report)
    record = await store.get(zone_key)
    assert record.hazard_count == 1


@pytest.mark.asyncio
async def test_report_id_reused_for_another_entity_is_a_conflict(store, zone_key, thresholds) -> None:
    other_key = EntityKey("zone", "other")
    first = _report(zone_key, report_id="anomaly_shared")
    await store.update(
        zone_key,
        lambda record: apply_anomaly_report(record, first, thresholds=thresholds, now=START),
        now=START,
        region_id="bangkok",
        report=first,
    )
    await store.update(other_key, lambda record: (record, None), now=START, region_id="bangkok")

    reused = _report(other_key, report_id="anomaly_shared")
    with pytest.raises(ReportIdConflictError):
        await store.update(
            other_key,
            lambda record: apply_anomaly_report(record, reused, thresholds=thresholds, now=START),
            now=START,
            region_id="bangkok",
            report=reused,
        )
    assert (await store.get(other_key)).hazard_count == 0
    assert (await store.get_anomaly("anomaly_shared")).key == zone_key


@pytest.mark.asyncio
async def test_anomaly_listing_and_resolution(store, zone_key) -> None:
    other_key = EntityKey("vendor", "v1")
    first = _report(zone_key, AnomalyType.OTHER, report_id="anomaly_a")
    second = _report(other_key, AnomalyType.OTHER, report_id="anomaly_b")
    for report in (first, second):
        await store.update(report.key, lambda record: (record, None), now=START, region_id="bangkok", report=report)

    assert {report.id for report in await store.list_anomalies()} == {"anomaly_a", "anomaly_b"}
    assert [report.id for report in await store.list_anomalies(key=zone_key)] == ["anomaly_a"]
    assert await store.list_anomalies(region_id="chiang_mai") == []

    resolved = await store.resolve_anomaly("anomaly_a", resolved_by="ops_1", notes="checked", now=START)
    assert resolved.resolved is True
    assert resolved.resolved_by == "ops_1"
    assert resolved.anomaly_type == first.anomaly_type
    assert [report.id for report in await store.list_anomalies(unresolved_only=True)] == ["anomaly_b"]

    with pytest.raises(InvalidTransitionError):
        await store.resolve_anomaly("anomaly_a", resolved_by="ops_2", notes=None, now=START)
    with pytest.raises(AnomalyNotFoundError):
        await store.resolve_anomaly("anomaly_missing", resolved_by="ops_1", notes=None, now=START)


@pytest.mark.asyncio
async def test_list_records_filters_by_region(store) -> None:
    await store.update(EntityKey("zone", "a"), lambda record: (record, None), now=START, region_id="bangkok")
    await store.update(EntityKey("zone", "b"), lambda record: (record, None), now=START, region_id="phuket")
    assert [record.entity_id for record in await store.list_records()] == ["a", "b"]
    assert [record.entity_id for record in await store.list_records(region_id="phuket")] == ["b"]
