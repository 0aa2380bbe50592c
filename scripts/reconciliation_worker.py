from __future__ import annotations

import asyncio

from zonetrust.core.logging import configure_logging
from zonetrust.services.kill_switch.engine import build_store
from zonetrust.services.kill_switch.reconciliation import run_reconciliation_loop


async def _main() -> None:
    # Plain asyncio scheduler for deployments that do not run the arq worker.
    configure_logging()
    await run_reconciliation_loop(build_store())


if __name__ == "__main__":
    asyncio.run(_main())
