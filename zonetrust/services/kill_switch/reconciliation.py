from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Mapping
from uuid import uuid4

from redis.exceptions import RedisError

from zonetrust.core.config import get_settings
from zonetrust.core.errors import ConcurrentWriteError
from zonetrust.core.redis import get_redis
from zonetrust.domain.records import EntityKey, EntityState, KillSwitchRecord, ReconciliationResult
from zonetrust.services.kill_switch.policy import KillSwitchThresholds
from zonetrust.services.kill_switch.store import KillSwitchStore
from zonetrust.services.kill_switch.transitions import check_auto_revive, check_staleness, require_aware


logger = logging.getLogger(__name__)

RECONCILE_LOCK_KEY = "zonetrust:kill_switch:reconcile:lock"

_local_lock = asyncio.Lock()
_local_lock_owner: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _KeyOutcome:
    revived: bool
    stale_state: EntityState | None


def _reconcile_record(
    record: KillSwitchRecord,
    *,
    thresholds: KillSwitchThresholds,
    now: datetime,
    last_updated: datetime | None,
) -> tuple[KillSwitchRecord, _KeyOutcome]:
    # Auto-revive runs first so a revived record is immediately re-checked for staleness.
    before = record.state
    record, _ = check_auto_revive(record, now=now)
    revived = before == EntityState.OFFLINE and record.state == EntityState.ACTIVE
    before_stale = record.state
    record, _ = check_staleness(record, thresholds=thresholds, now=now, last_updated=last_updated)
    stale_state = record.state if record.state != before_stale else None
    return record, _KeyOutcome(revived=revived, stale_state=stale_state)


async def run_reconciliation(
    store: KillSwitchStore,
    *,
    thresholds: KillSwitchThresholds,
    now: datetime | None = None,
    last_updated: Mapping[EntityKey, datetime] | None = None,
) -> ReconciliationResult:
    """Apply auto-revive and staleness checks to every stored record.

    Each key is re-read and updated under the store's per-key guard, so a
    reconciliation pass never overwrites a transition that landed after the
    key list was taken. Running it twice with the same ``now`` is a no-op the
    second time.
    """
    current = now or _utc_now()
    for key, value in (last_updated or {}).items():
        require_aware(value, field=f"last_updated[{key}]")
    updated = revivals = degraded = killed = 0
    for key in await store.list_keys():
        freshness = (last_updated or {}).get(key)
        try:
            _, outcome = await store.update(
                key,
                lambda record, freshness=freshness: _reconcile_record(
                    record, thresholds=thresholds, now=current, last_updated=freshness
                ),
                now=current,
            )
        except ConcurrentWriteError:
            # Leave the key for the next pass; its writer already holds the newer state.
            logger.warning("reconcile_key_conflict entity=%s", key)
            continue
        if outcome.revived:
            revivals += 1
            updated += 1
        if outcome.stale_state is not None:
            updated += 1
            if outcome.stale_state == EntityState.DEGRADED:
                degraded += 1
            elif outcome.stale_state == EntityState.OFFLINE:
                killed += 1
    result = ReconciliationResult(updated=updated, revivals=revivals, degraded=degraded, killed=killed)
    logger.info(
        "kill_switch_reconciled updated=%s revivals=%s degraded=%s killed=%s",
        updated,
        revivals,
        degraded,
        killed,
    )
    return result


@dataclass(slots=True)
class ReconcileLock:
    token: str
    redis: Any | None
    local: bool


async def acquire_reconcile_lock() -> ReconcileLock | None:
    # Only one scheduler process may own a reconciliation pass at a time.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_redis()
    ttl_s = max(5, int(settings.reconcile_lock_ttl_s))
    if redis is not None:
        try:
            acquired = await redis.set(RECONCILE_LOCK_KEY, token, nx=True, ex=ttl_s)
        except (RedisError, OSError) as exc:
            logger.warning("reconcile_lock_redis_unavailable fallback=local", exc_info=exc)
        else:
            if not acquired:
                return None
            return ReconcileLock(token=token, redis=redis, local=False)

    # Fall back to an in-process lock for single-process and test environments.
    global _local_lock_owner
    if _local_lock.locked():
        return None
    await _local_lock.acquire()
    _local_lock_owner = token
    return ReconcileLock(token=token, redis=None, local=True)


async def release_reconcile_lock(lock: ReconcileLock) -> None:
    # Release only while still the owner so an expired lock taken over by another process survives.
    global _local_lock_owner
    if lock.local:
        if _local_lock.locked() and _local_lock_owner == lock.token:
            _local_lock_owner = None
            _local_lock.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(RECONCILE_LOCK_KEY)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(RECONCILE_LOCK_KEY)
    except (RedisError, OSError) as exc:
        # The TTL frees the lock if the release cannot reach Redis.
        logger.warning("reconcile_lock_release_failed", exc_info=exc)


async def run_reconciliation_cycle(
    store: KillSwitchStore,
    *,
    thresholds: KillSwitchThresholds | None = None,
    now: datetime | None = None,
    last_updated: Mapping[EntityKey, datetime] | None = None,
) -> ReconciliationResult:
    lock = await acquire_reconcile_lock()
    if lock is None:
        logger.info("kill_switch_reconcile_skipped reason=lock_held")
        return ReconciliationResult(status="skipped_lock")
    try:
        return await run_reconciliation(
            store,
            thresholds=thresholds or KillSwitchThresholds.from_settings(),
            now=now,
            last_updated=last_updated,
        )
    finally:
        await release_reconcile_lock(lock)


async def run_reconciliation_loop(store: KillSwitchStore) -> None:
    # Keep reconciling on a fixed cadence; a failed pass is logged and retried next interval.
    interval = max(60, int(get_settings().reconcile_interval_s))
    while True:
        try:
            await run_reconciliation_cycle(store)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("kill switch reconciliation cycle failed")
        await asyncio.sleep(interval)
