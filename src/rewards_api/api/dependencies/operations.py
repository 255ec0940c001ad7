"""Access to the application-wide loyalty services."""

from __future__ import annotations

from fastapi import Request

from rewards_api.services.loyalty import LoyaltyOperations
from rewards_api.services.sync import SyncOutbox
from rewards_api.workers import SyncOutboxWorker


def get_operations(request: Request) -> LoyaltyOperations:
    return request.app.state.operations


def get_outbox(request: Request) -> SyncOutbox:
    return request.app.state.operations.sync.outbox


def get_sync_worker(request: Request) -> SyncOutboxWorker:
    return request.app.state.sync_worker
