"""Try the CRM right away; fall back to the outbox when it fails."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from rewards_api.core.settings import settings
from rewards_api.db.session import OperationTimeout, SessionFactory, TransientStoreError, run_in_transaction
from rewards_api.models.sync_queue import SyncOperationType
from rewards_api.observability.sync import SyncObservabilityStore, get_sync_store
from rewards_api.observability.tracing import get_tracer
from rewards_api.services.sync.crm_client import (
    CrmClient,
    CrmError,
    CrmRejectedError,
    HttpCrmClient,
    InMemoryCrmClient,
)
from rewards_api.services.sync.handlers import perform_sync, record_remote_reference
from rewards_api.services.sync.outbox import SyncOutbox


@dataclass
class SyncAttempt:
    delivered: bool
    remote_id: str | None = None
    queue_id: UUID | None = None
    error: str | None = None


class SyncDispatcher:
    """Sync-or-enqueue: never called with a transaction open."""

    def __init__(
        self,
        client: CrmClient,
        outbox: SyncOutbox,
        session_factory: SessionFactory,
        *,
        timeout_seconds: float | None = None,
        store: SyncObservabilityStore | None = None,
    ) -> None:
        self.client = client
        self.outbox = outbox
        self._session_factory = session_factory
        self._timeout = timeout_seconds or settings.crm_timeout_seconds
        self._store = store or get_sync_store()

    async def call_crm(
        self,
        operation_type: SyncOperationType,
        resource_id: str,
        payload: Mapping[str, Any],
    ) -> str | None:
        """One bounded CRM call plus the local remote-id bookkeeping."""

        with get_tracer().start_as_current_span(f"crm.{operation_type.value}") as span:
            span.set_attribute("crm.resource_id", str(resource_id))
            try:
                remote_id = await asyncio.wait_for(
                    perform_sync(self.client, operation_type, resource_id, payload),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                raise CrmError(f"CRM call timed out after {self._timeout}s") from exc

        try:
            await run_in_transaction(
                self._session_factory,
                lambda session: record_remote_reference(session, operation_type, resource_id, remote_id),
                label="sync.record_remote_reference",
            )
        except (SQLAlchemyError, TransientStoreError, OperationTimeout) as exc:
            logger.warning(
                "Could not store CRM reference",
                operation=operation_type.value,
                resource_id=str(resource_id),
                error=str(exc),
            )
        return remote_id

    async def sync_or_enqueue(
        self,
        operation_type: SyncOperationType,
        resource_id: str,
        payload: Mapping[str, Any],
        *,
        source: str = "app",
    ) -> SyncAttempt:
        try:
            remote_id = await self.call_crm(operation_type, resource_id, payload)
        except CrmRejectedError as exc:
            self._store.record_sync(operation_type.value, "terminal")
            queue_id = await self._enqueue(operation_type, resource_id, payload, source, terminal_error=str(exc))
            return SyncAttempt(delivered=False, queue_id=queue_id, error=str(exc))
        except CrmError as exc:
            logger.warning(
                "Direct CRM sync failed; enqueueing",
                operation=operation_type.value,
                resource_id=str(resource_id),
                error=str(exc),
            )
            queue_id = await self._enqueue(operation_type, resource_id, payload, source)
            if queue_id is not None:
                self._store.record_sync(operation_type.value, "enqueued")
            return SyncAttempt(delivered=False, queue_id=queue_id, error=str(exc))

        self._store.record_sync(operation_type.value, "direct")
        return SyncAttempt(delivered=True, remote_id=remote_id)

    async def _enqueue(
        self,
        operation_type: SyncOperationType,
        resource_id: str,
        payload: Mapping[str, Any],
        source: str,
        *,
        terminal_error: str | None = None,
    ) -> UUID | None:
        try:
            return await self.outbox.enqueue(
                operation_type,
                resource_id,
                payload,
                source=source,
                terminal_error=terminal_error,
            )
        except (SQLAlchemyError, TransientStoreError, OperationTimeout) as exc:
            self._store.record_sync(operation_type.value, "enqueue_failed")
            logger.error(
                "Failed to enqueue CRM sync",
                operation=operation_type.value,
                resource_id=str(resource_id),
                error=str(exc),
            )
            return None


def build_crm_client() -> CrmClient:
    if settings.crm_base_url:
        return HttpCrmClient(
            settings.crm_base_url,
            token=settings.crm_api_token,
            timeout_seconds=settings.crm_timeout_seconds,
        )
    logger.warning("CRM base URL not configured; using in-memory CRM client")
    return InMemoryCrmClient()


__all__ = ["SyncAttempt", "SyncDispatcher", "build_crm_client"]
