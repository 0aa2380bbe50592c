from __future__ import annotations

import argparse
import asyncio
import json

from zonetrust.core.logging import configure_logging
from zonetrust.persistence.db import dispose_engine
from zonetrust.services.kill_switch.engine import build_kill_switch_engine


async def _run() -> None:
    # Run a single locked reconciliation pass and print its counters.
    engine = build_kill_switch_engine()
    try:
        result = await engine.run_reconciliation()
        print(json.dumps(result.as_dict(), sort_keys=True))
    finally:
        await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one kill-switch reconciliation pass")
    parser.parse_args()
    configure_logging()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
