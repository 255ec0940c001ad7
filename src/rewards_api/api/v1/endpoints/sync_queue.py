"""Operator views over the CRM sync outbox."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from rewards_api.api.dependencies.operations import get_outbox, get_sync_worker
from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.models.sync_queue import SyncQueueEntry
from rewards_api.services.sync import SyncOutbox
from rewards_api.workers import SyncOutboxWorker

router = APIRouter(
    prefix="/sync-queue",
    tags=["Sync queue"],
    dependencies=[Depends(require_admin_api_key)],
)


class SyncEntryResponse(BaseModel):
    id: UUID
    operationType: str
    resourceId: str
    attemptCount: int
    isTerminal: bool
    lastError: Optional[str]
    nextRetryAt: datetime
    completedAt: Optional[datetime]
    payload: Dict[str, Any]

    @classmethod
    def from_model(cls, entry: SyncQueueEntry) -> "SyncEntryResponse":
        return cls(
            id=entry.id,
            operationType=entry.operation_type.value,
            resourceId=entry.resource_id,
            attemptCount=int(entry.attempt_count or 0),
            isTerminal=bool(entry.is_terminal),
            lastError=entry.last_error,
            nextRetryAt=entry.next_retry_at,
            completedAt=entry.completed_at,
            payload=dict(entry.payload_json or {}),
        )


@router.get("/terminal", response_model=List[SyncEntryResponse])
async def list_terminal(
    limit: int = Query(50, ge=1, le=500),
    outbox: SyncOutbox = Depends(get_outbox),
) -> List[SyncEntryResponse]:
    return [SyncEntryResponse.from_model(entry) for entry in await outbox.list_terminal(limit=limit)]


@router.get("/pending", response_model=List[SyncEntryResponse])
async def list_pending(
    limit: int = Query(50, ge=1, le=500),
    outbox: SyncOutbox = Depends(get_outbox),
) -> List[SyncEntryResponse]:
    return [SyncEntryResponse.from_model(entry) for entry in await outbox.list_pending(limit=limit)]


@router.post("/{entry_id}/requeue", status_code=status.HTTP_202_ACCEPTED)
async def requeue(entry_id: UUID, outbox: SyncOutbox = Depends(get_outbox)) -> dict[str, str]:
    if not await outbox.requeue(entry_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Entry is not terminal or does not exist",
        )
    return {"status": "requeued"}


@router.post("/drain")
async def drain_once(worker: SyncOutboxWorker = Depends(get_sync_worker)) -> dict[str, int]:
    return await worker.run_once()
