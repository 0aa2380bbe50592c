from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from zonetrust.core.config import get_settings
from zonetrust.core.logging import configure_logging
from zonetrust.persistence.db import dispose_engine
from zonetrust.services.kill_switch.engine import build_kill_switch_engine


logger = logging.getLogger(__name__)


async def reconcile_kill_switches(ctx) -> dict:
    # Run one locked reconciliation pass; a pass skipped on the lock is not an error.
    engine = ctx.get("engine") or build_kill_switch_engine()
    result = await engine.run_reconciliation()
    logger.info("kill_switch_reconcile_job status=%s updated=%s", result.status, result.updated)
    return result.as_dict()


async def _startup(ctx) -> None:
    # Build the engine once per worker process so every cron run shares the store.
    configure_logging()
    ctx["engine"] = build_kill_switch_engine()


async def _shutdown(ctx) -> None:
    ctx.pop("engine", None)
    await dispose_engine()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [reconcile_kill_switches]
    cron_jobs = [
        cron(
            reconcile_kill_switches,
            hour={int(settings.reconcile_hour_utc) % 24},
            minute={0},
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
