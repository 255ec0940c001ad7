"""Post-commit work scheduled on background tasks."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Set

from loguru import logger


class BackgroundEffects:
    """Runs side effects after the owning transaction committed.

    Failures are logged and never reach the caller; ``drain`` waits for
    everything scheduled so far (tests, shutdown).
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, effect: Awaitable[object], *, label: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(effect, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    async def _guard(effect: Awaitable[object], label: str) -> None:
        try:
            await effect
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Post-commit effect failed", effect=label, error=str(exc))


__all__ = ["BackgroundEffects"]
