from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from zonetrust.apps.api.main import create_app
from zonetrust.services.kill_switch.engine import KillSwitchEngine


ACTOR = {"X-Actor-Id": "ops_1"}


@pytest.fixture
async def client(engine: KillSwitchEngine):
    app = create_app(engine=engine)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


def _signal(anomaly_type: str = "HAZARD_SAFETY", **overrides) -> dict:
    payload = {
        "entity_type": "zone",
        "entity_id": "zone_sukhumvit_123",
        "region_id": "bangkok",
        "anomaly_type": anomaly_type,
        "reported_by": "user_1",
        "description": "open manhole",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_health_is_unwrapped(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_signal_flow_and_record_view(client) -> None:
    first = await client.post("/v1/kill-switches/signals", json=_signal())
    assert first.status_code == 200
    payload = first.json()
    assert payload["meta"]["api_version"] == "v1"
    assert payload["meta"]["request_id"]
    assert payload["data"]["action_taken"] == "DEGRADED_HAZARD"
    assert payload["data"]["record"]["display_mode"] == "warning"

    second = await client.post("/v1/kill-switches/signals", json=_signal("HAZARD_PHYSICAL"))
    assert second.json()["data"]["action_taken"] == "KILLED_HAZARD"

    record = (await client.get("/v1/kill-switches/zone/zone_sukhumvit_123")).json()["data"]
    assert record["state"] == "OFFLINE"
    assert record["displayable"] is False
    assert record["display_mode"] == "hidden"
    assert record["hazard_count"] == 2
    assert record["status"] == "OFFLINE (revives in 7d), 2 hazards"
    assert len(record["audit_log"]) == 3

    audit = (await client.get("/v1/kill-switches/zone/zone_sukhumvit_123/audit")).json()["data"]
    assert len(audit["lines"]) == 3
    assert audit["lines"][2].split(" | ")[1:4] == ["OFFLINE", "HAZARD_REPORTS", "system"]


@pytest.mark.asyncio
async def test_input_errors_map_to_422(client) -> None:
    unknown = await client.post("/v1/kill-switches/signals", json=_signal("HAZARD_LAVA"))
    assert unknown.status_code == 422
    assert unknown.json()["error"]["code"] == "UNKNOWN_ANOMALY_TYPE"

    bad_key = await client.post("/v1/kill-switches/signals", json=_signal(entity_type="Zone"))
    assert bad_key.status_code == 422
    assert bad_key.json()["error"]["code"] == "INVALID_ENTITY_KEY"

    missing_field = await client.post("/v1/kill-switches/signals", json={"entity_type": "zone"})
    assert missing_field.status_code == 422
    assert missing_field.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    missing = await client.get("/v1/kill-switches/zone/zone_sukhumvit_123")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "KILL_SWITCH_NOT_FOUND"


@pytest.mark.asyncio
async def test_price_observations(client) -> None:
    body = {
        "entity_type": "vendor",
        "entity_id": "mango_cart",
        "region_id": "bangkok",
        "baseline": {"min": 40, "max": 60, "typical": 50},
        "reported_by": "user_2",
    }
    normal = await client.post("/v1/kill-switches/price-observations", json={**body, "price": 55})
    assert normal.status_code == 200
    assert normal.json()["data"]["is_anomaly"] is False
    assert normal.json()["data"]["evaluation"] is None

    spike = await client.post("/v1/kill-switches/price-observations", json={**body, "price": 200})
    data = spike.json()["data"]
    assert data["anomaly_type"] == "PRICE_SPIKE"
    assert data["evaluation"]["action_taken"] == "DEGRADED_SEVERITY"

    invalid = await client.post(
        "/v1/kill-switches/price-observations",
        json={**body, "price": 55, "baseline": {"min": 0, "max": 60, "typical": 50}},
    )
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "INVALID_SIGNAL"


@pytest.mark.asyncio
async def test_manual_actions_require_actor(client) -> None:
    await client.post("/v1/kill-switches/signals", json=_signal())
    anonymous = await client.post(
        "/v1/kill-switches/zone/zone_sukhumvit_123/kill",
        json={"details": "scam reports"},
    )
    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    killed = await client.post(
        "/v1/kill-switches/zone/zone_sukhumvit_123/kill",
        json={"reason": "USER_FLAGGED", "details": "scam reports", "duration_days": 3},
        headers=ACTOR,
    )
    assert killed.status_code == 200
    assert killed.json()["data"]["killed_by"] == "ops_1"

    revived = await client.post(
        "/v1/kill-switches/zone/zone_sukhumvit_123/revive",
        json={"reason": "verified", "reset_anomaly_count": True},
        headers=ACTOR,
    )
    assert revived.json()["data"]["state"] == "ACTIVE"

    again = await client.post(
        "/v1/kill-switches/zone/zone_sukhumvit_123/revive",
        json={"reason": "verified"},
        headers=ACTOR,
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_TRANSITION"

    final = await client.post(
        "/v1/kill-switches/zone/zone_sukhumvit_123/permanent-kill",
        json={"reason": "closed"},
        headers=ACTOR,
    )
    assert final.json()["data"]["state"] == "KILLED"
    ignored = await client.post("/v1/kill-switches/signals", json=_signal())
    assert ignored.json()["data"]["action_taken"] == "IGNORED_KILLED"


@pytest.mark.asyncio
async def test_data_update_and_reconcile(client, clock) -> None:
    created = await client.post(
        "/v1/kill-switches/zone/old_market/data-updated",
        json={"region_id": "bangkok"},
    )
    assert created.status_code == 200
    clock.advance(days=95)

    result = await client.post("/v1/kill-switches/reconcile", headers=ACTOR)
    data = result.json()["data"]
    assert data["status"] == "ok"
    assert data["degraded"] == 1
    assert data["requested_by"] == "ops_1"

    summary = (await client.get("/v1/kill-switches/summary", params={"region_id": "bangkok"})).json()["data"]
    assert summary["total"] == 1
    assert summary["degraded"] == 1

    missing = await client.post("/v1/kill-switches/zone/nowhere/data-updated", json={})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_anomaly_review_endpoints(client) -> None:
    await client.post("/v1/kill-switches/signals", json=_signal("TEXTURE_MISMATCH", report_id="anomaly_api_1"))
    listed = (await client.get("/v1/kill-switches/anomalies", params={"unresolved_only": True})).json()["data"]
    assert [item["id"] for item in listed["items"]] == ["anomaly_api_1"]

    fetched = await client.get("/v1/kill-switches/anomalies/anomaly_api_1")
    assert fetched.json()["data"]["severity"] == "LOW"

    resolved = await client.post(
        "/v1/kill-switches/anomalies/anomaly_api_1/resolve",
        json={"notes": "texture pack updated"},
        headers=ACTOR,
    )
    assert resolved.json()["data"]["resolved_by"] == "ops_1"

    twice = await client.post(
        "/v1/kill-switches/anomalies/anomaly_api_1/resolve",
        json={},
        headers=ACTOR,
    )
    assert twice.status_code == 409

    unknown = await client.get("/v1/kill-switches/anomalies/anomaly_nope")
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "ANOMALY_NOT_FOUND"


@pytest.mark.asyncio
async def test_request_id_is_echoed_in_meta(client) -> None:
    response = await client.get("/v1/kill-switches/summary", headers={"X-Request-Id": "req-123"})
    assert response.json()["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_timestamp_without_offset_is_rejected(client) -> None:
    response = await client.post(
        "/v1/kill-switches/zone/z1/data-updated",
        json={"region_id": "bangkok", "updated_at": "2026-01-01T00:00:00"},
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_SIGNAL"
    assert (await client.get("/v1/kill-switches/zone/z1")).status_code == 404


@pytest.mark.asyncio
async def test_report_id_reuse_across_entities(client) -> None:
    first = await client.post("/v1/kill-switches/signals", json=_signal(entity_id="a", report_id="r1"))
    assert first.status_code == 200

    retry = await client.post("/v1/kill-switches/signals", json=_signal(entity_id="a", report_id="r1"))
    assert retry.json()["data"]["action_taken"] == "DUPLICATE"

    reused = await client.post("/v1/kill-switches/signals", json=_signal(entity_id="b", report_id="r1"))
    assert reused.status_code == 422
    assert reused.json()["error"]["code"] == "REPORT_ID_CONFLICT"

    await client.post("/v1/kill-switches/zone/b/data-updated", json={"region_id": "bangkok"})
    existing = await client.post("/v1/kill-switches/signals", json=_signal(entity_id="b", report_id="r1"))
    assert existing.status_code == 422
    record = (await client.get("/v1/kill-switches/zone/b")).json()["data"]
    assert record["hazard_count"] == 0


@pytest.mark.asyncio
async def test_anomaly_filter_needs_both_key_halves(client) -> None:
    half = await client.get("/v1/kill-switches/anomalies", params={"entity_type": "zone"})
    assert half.status_code == 422
    assert half.json()["error"]["code"] == "INVALID_INPUT"

    other_half = await client.get("/v1/kill-switches/anomalies", params={"entity_id": "a"})
    assert other_half.status_code == 422
