"""Worker that expires lapsed referrals and claimed benefits."""

from __future__ import annotations

import asyncio
from typing import Dict

from loguru import logger

from rewards_api.core.logging import log_context
from rewards_api.core.settings import settings
from rewards_api.services.loyalty import LoyaltyOperations


class ExpirySweepWorker:
    """Runs the expiry sweep on a fixed interval."""

    # meta: worker: expiry-sweep

    def __init__(self, operations: LoyaltyOperations, *, interval_seconds: int | None = None) -> None:
        self._operations = operations
        self.interval_seconds = interval_seconds or settings.expiry_sweep_interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Expiry sweep worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Expiry sweep worker stopped")

    async def run_once(self) -> Dict[str, int]:
        summary = await self._operations.expire_lapsed()
        if any(summary.values()):
            logger.info("Expiry sweep completed", **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                with log_context(worker_id="expiry-sweep"):
                    await self.run_once()
            except Exception as exc:  # pragma: no cover - loop must survive
                logger.exception("Expiry sweep iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
