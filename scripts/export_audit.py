from __future__ import annotations

import argparse
import asyncio
import sys

from zonetrust.core.errors import ZoneTrustError
from zonetrust.core.logging import configure_logging
from zonetrust.persistence.db import dispose_engine
from zonetrust.services.kill_switch.engine import build_kill_switch_engine


async def _export(entity_key: str, with_status: bool) -> int:
    # Print the audit trail for operator review, one line per entry.
    engine = build_kill_switch_engine()
    try:
        if with_status:
            print(f"# {entity_key}: {await engine.format_status(entity_key)}")
        print(await engine.export_audit(entity_key))
    except ZoneTrustError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await dispose_engine()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Export a kill-switch audit trail")
    parser.add_argument("entity_key", help="entity key as <type>:<id>, e.g. zone:zone_123")
    parser.add_argument("--status", action="store_true", help="print the current status line first")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_export(args.entity_key, args.status)))


if __name__ == "__main__":
    main()
