"""Worker that replays CRM propagation left in the sync outbox."""

from __future__ import annotations

import asyncio
import socket
from typing import Dict
from uuid import uuid4

from loguru import logger

from rewards_api.core.logging import log_context
from rewards_api.core.settings import settings
from rewards_api.db.session import OperationTimeout, TransientStoreError
from rewards_api.observability.sync import SyncObservabilityStore, get_sync_store
from rewards_api.services.sync import CrmError, CrmRejectedError, SyncDispatcher, SyncOutbox
from rewards_api.services.sync.outbox import ClaimedEntry

MAX_BATCH_SIZE = 50


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


class SyncOutboxWorker:
    """Periodically leases due outbox entries and pushes them to the CRM."""

    # meta: worker: sync-outbox

    def __init__(
        self,
        outbox: SyncOutbox,
        dispatcher: SyncDispatcher,
        *,
        worker_id: str | None = None,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
        store: SyncObservabilityStore | None = None,
    ) -> None:
        self._outbox = outbox
        self._dispatcher = dispatcher
        self.worker_id = worker_id or settings.sync_worker_id or _default_worker_id()
        self.interval_seconds = interval_seconds or settings.sync_worker_interval_seconds
        self._batch_size = min(batch_size or settings.sync_worker_batch_size, MAX_BATCH_SIZE)
        self._lease_seconds = lease_seconds or settings.sync_worker_lease_seconds
        self._store = store or get_sync_store()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        if self._lease_seconds <= settings.crm_timeout_seconds:
            logger.warning(
                "Sync lease is not longer than the CRM timeout; slow calls may be retried by another worker",
                lease_seconds=self._lease_seconds,
                crm_timeout_seconds=settings.crm_timeout_seconds,
            )

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Sync outbox worker started",
            worker_id=self.worker_id,
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Sync outbox worker stopped", worker_id=self.worker_id)

    async def run_once(self) -> Dict[str, int]:
        """Process one batch; returns counts per outcome.

        Each entry's lease is renewed right before its CRM call. An entry whose
        lease went to another worker while earlier entries were processed is
        skipped rather than sent twice.
        """

        summary: Dict[str, int] = {"claimed": 0, "succeeded": 0, "retry": 0, "terminal": 0, "skipped": 0}
        with log_context(worker_id=self.worker_id):
            entries = await self._outbox.claim_due(
                self.worker_id,
                limit=self._batch_size,
                lease_seconds=self._lease_seconds,
            )
            summary["claimed"] = len(entries)

            for entry in entries:
                with log_context(
                    entry_id=entry.id,
                    operation=entry.operation_type.value,
                    resource_id=entry.resource_id,
                ):
                    try:
                        outcome = await self._process(entry)
                    except (TransientStoreError, OperationTimeout) as exc:
                        # The lease lapses and the entry is picked up again later.
                        logger.error("Could not record sync outcome", error=str(exc))
                        outcome = "skipped"
                summary[outcome] += 1
                if outcome != "skipped":
                    self._store.record_sync(entry.operation_type.value, outcome)

            if entries:
                logger.info("Sync outbox batch processed", **summary)
        return summary

    async def _process(self, entry: ClaimedEntry) -> str:
        renewed = await self._outbox.renew_lease(entry.id, self.worker_id, lease_seconds=self._lease_seconds)
        if not renewed:
            logger.warning("Sync entry lease lost before CRM call; skipping")
            return "skipped"

        try:
            remote_id = await self._dispatcher.call_crm(entry.operation_type, entry.resource_id, entry.payload)
        except CrmError as exc:
            return await self._record_failure(entry, str(exc), permanent=isinstance(exc, CrmRejectedError))
        except Exception as exc:
            logger.exception("Unexpected error while calling the CRM")
            return await self._record_failure(entry, f"{type(exc).__name__}: {exc}", permanent=False)

        if not await self._outbox.mark_succeeded(entry.id, self.worker_id, remote_id=remote_id):
            logger.warning("Sync entry lease lost after CRM call")
            return "skipped"
        return "succeeded"

    async def _record_failure(self, entry: ClaimedEntry, error: str, *, permanent: bool) -> str:
        outcome = await self._outbox.mark_failed(entry.id, self.worker_id, error, permanent=permanent)
        if outcome is None:
            return "skipped"
        return "terminal" if outcome.is_terminal else "retry"

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - loop must survive
                logger.exception("Sync outbox iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
