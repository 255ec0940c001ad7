"""Expire lapsed referral relationships and claimed benefits once.

Example:
    python tooling/scripts/run_expiry_sweep.py
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from loguru import logger


async def _run() -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from rewards_api.db.session import async_session  # type: ignore import-position
    from rewards_api.services.loyalty import LoyaltyOperations  # type: ignore import-position
    from rewards_api.workers import ExpirySweepWorker  # type: ignore import-position

    worker = ExpirySweepWorker(LoyaltyOperations.from_settings(async_session))
    return await worker.run_once()


def main() -> int:
    summary = asyncio.run(_run())
    logger.success(
        "Expiry sweep completed",
        referrals=summary.get("referrals", 0),
        benefits=summary.get("benefits", 0),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
