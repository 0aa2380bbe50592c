from __future__ import annotations

import pytest

from zonetrust.core.config import get_settings
from zonetrust.domain.records import EntityKey
from zonetrust.services.kill_switch.engine import KillSwitchEngine
from zonetrust.services.kill_switch.policy import KillSwitchThresholds
from zonetrust.services.kill_switch.store import InMemoryKillSwitchStore
from zonetrust.tests.utils.clock import FakeClock


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch) -> None:
    # Keep tests off real Redis/Postgres and reset cached settings around each test.
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def thresholds() -> KillSwitchThresholds:
    return KillSwitchThresholds()


@pytest.fixture
def store() -> InMemoryKillSwitchStore:
    return InMemoryKillSwitchStore()


@pytest.fixture
def engine(store, thresholds, clock) -> KillSwitchEngine:
    return KillSwitchEngine(store, thresholds=thresholds, clock=clock)


@pytest.fixture
def zone_key() -> EntityKey:
    return EntityKey("zone", "zone_sukhumvit_123")
