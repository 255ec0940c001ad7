"""Drain the CRM sync outbox once.

Useful when the in-process worker is disabled, or to flush the backlog by hand
after a CRM outage.

Example:
    python tooling/scripts/run_sync_outbox.py --batches 5
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay due sync outbox entries")
    parser.add_argument(
        "--batches",
        type=int,
        default=1,
        help="Number of lease/replay rounds to run before exiting.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of entries leased per round.",
    )
    parser.add_argument(
        "--worker-id",
        default=None,
        help="Lease owner recorded on claimed entries.",
    )
    return parser.parse_args()


async def _run(batches: int, batch_size: int | None, worker_id: str | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from rewards_api.db.session import async_session  # type: ignore import-position
    from rewards_api.services.loyalty import LoyaltyOperations  # type: ignore import-position
    from rewards_api.workers import SyncOutboxWorker  # type: ignore import-position

    operations = LoyaltyOperations.from_settings(async_session)
    worker = SyncOutboxWorker(
        operations.sync.outbox,
        operations.sync,
        worker_id=worker_id,
        batch_size=batch_size,
    )

    totals = {"claimed": 0, "succeeded": 0, "retry": 0, "terminal": 0}
    for _ in range(max(batches, 1)):
        summary = await worker.run_once()
        for key in totals:
            totals[key] += summary.get(key, 0)
        if summary.get("claimed", 0) == 0:
            break
    return totals


def main() -> int:
    args = parse_args()
    totals = asyncio.run(_run(args.batches, args.batch_size, args.worker_id))
    logger.success("Sync outbox drain completed", **totals)
    return 0


if __name__ == "__main__":
    sys.exit(main())
