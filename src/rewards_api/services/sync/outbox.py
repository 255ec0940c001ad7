"""Durable sync outbox with leases and capped exponential backoff."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import settings
from rewards_api.core.time import utcnow
from rewards_api.db.session import SessionFactory, run_in_transaction
from rewards_api.models.sync_queue import SyncOperationType, SyncQueueEntry

_MAX_EXPONENT = 30


def compute_backoff(attempt: int, *, base_seconds: int, cap_seconds: int) -> timedelta:
    """Delay before retry ``attempt`` (1-based): ``min(cap, base * 2**(attempt-1))``."""

    exponent = min(max(attempt - 1, 0), _MAX_EXPONENT)
    return timedelta(seconds=min(cap_seconds, base_seconds * (2**exponent)))


@dataclass
class ClaimedEntry:
    """Detached view of a leased outbox row."""

    id: UUID
    operation_type: SyncOperationType
    resource_id: str
    payload: dict[str, Any]
    attempt_count: int


@dataclass
class FailureOutcome:
    attempt_count: int
    is_terminal: bool
    next_retry_at: datetime | None


def _pending_filter(now: datetime):
    return (
        SyncQueueEntry.is_terminal.is_(False),
        SyncQueueEntry.completed_at.is_(None),
        SyncQueueEntry.next_retry_at <= now,
        or_(SyncQueueEntry.claimed_until.is_(None), SyncQueueEntry.claimed_until < now),
    )


class SyncOutbox:
    """Each method is its own short transaction; none of them talk to the CRM."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        max_attempts: int | None = None,
        backoff_base_seconds: int | None = None,
        backoff_cap_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts or settings.sync_max_attempts
        self._backoff_base = backoff_base_seconds or settings.sync_backoff_base_seconds
        self._backoff_cap = backoff_cap_seconds or settings.sync_backoff_cap_seconds

    async def enqueue(
        self,
        operation_type: SyncOperationType,
        resource_id: str,
        payload: Mapping[str, Any],
        *,
        source: str = "app",
        source_context: Mapping[str, Any] | None = None,
        terminal_error: str | None = None,
        now: datetime | None = None,
    ) -> UUID:
        current = now or utcnow()

        async def _work(session: AsyncSession) -> UUID:
            entry = SyncQueueEntry(
                operation_type=operation_type,
                resource_id=str(resource_id),
                payload_json=dict(payload),
                source=source,
                source_context=dict(source_context) if source_context else None,
                attempt_count=1 if terminal_error else 0,
                next_retry_at=current,
                is_terminal=terminal_error is not None,
                last_error=terminal_error,
                created_at=current,
                updated_at=current,
            )
            session.add(entry)
            await session.flush()
            return entry.id

        entry_id = await run_in_transaction(self._session_factory, _work, label="sync_outbox.enqueue")
        if terminal_error:
            logger.error(
                "Sync entry stored as terminal",
                entry_id=str(entry_id),
                operation=operation_type.value,
                resource_id=str(resource_id),
                error=terminal_error,
            )
        else:
            logger.info(
                "Sync entry enqueued",
                entry_id=str(entry_id),
                operation=operation_type.value,
                resource_id=str(resource_id),
            )
        return entry_id

    async def claim_due(
        self,
        worker_id: str,
        *,
        limit: int,
        lease_seconds: int,
        now: datetime | None = None,
    ) -> list[ClaimedEntry]:
        """Lease up to ``limit`` due entries, oldest first.

        A row is only taken when its lease is free or expired, checked again in
        the conditional update, so two workers never hold the same entry.
        """

        current = now or utcnow()
        lease_until = current + timedelta(seconds=lease_seconds)

        async def _work(session: AsyncSession) -> list[ClaimedEntry]:
            result = await session.execute(
                select(SyncQueueEntry)
                .where(*_pending_filter(current))
                .order_by(SyncQueueEntry.next_retry_at.asc(), SyncQueueEntry.created_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            claimed: list[ClaimedEntry] = []
            for entry in result.scalars().all():
                stmt = (
                    update(SyncQueueEntry)
                    .where(SyncQueueEntry.id == entry.id, *_pending_filter(current))
                    .values(claimed_by=worker_id, claimed_until=lease_until, updated_at=current)
                    .execution_options(synchronize_session=False)
                )
                outcome = await session.execute(stmt)
                if outcome.rowcount != 1:
                    continue
                claimed.append(
                    ClaimedEntry(
                        id=entry.id,
                        operation_type=entry.operation_type,
                        resource_id=entry.resource_id,
                        payload=dict(entry.payload_json or {}),
                        attempt_count=int(entry.attempt_count or 0),
                    )
                )
            return claimed

        return await run_in_transaction(self._session_factory, _work, label="sync_outbox.claim")

    async def renew_lease(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        lease_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Extend this worker's lease on an open entry.

        Fails once another worker has claimed the entry or it was completed,
        so the caller must not contact the CRM for it.
        """

        current = now or utcnow()

        async def _work(session: AsyncSession) -> bool:
            stmt = (
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.id == entry_id,
                    SyncQueueEntry.claimed_by == worker_id,
                    SyncQueueEntry.completed_at.is_(None),
                    SyncQueueEntry.is_terminal.is_(False),
                )
                .values(claimed_until=current + timedelta(seconds=lease_seconds), updated_at=current)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        return await run_in_transaction(self._session_factory, _work, label="sync_outbox.renew")

    async def mark_succeeded(
        self,
        entry_id: UUID,
        worker_id: str,
        *,
        remote_id: str | None,
        now: datetime | None = None,
    ) -> bool:
        current = now or utcnow()

        async def _work(session: AsyncSession) -> bool:
            stmt = (
                update(SyncQueueEntry)
                .where(SyncQueueEntry.id == entry_id, SyncQueueEntry.claimed_by == worker_id)
                .values(
                    completed_at=current,
                    remote_id=remote_id,
                    claimed_by=None,
                    claimed_until=None,
                    last_error=None,
                    updated_at=current,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        return await run_in_transaction(self._session_factory, _work, label="sync_outbox.succeeded")

    async def mark_failed(
        self,
        entry_id: UUID,
        worker_id: str,
        error: str,
        *,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> FailureOutcome | None:
        """Record a failed attempt and schedule the next one or go terminal.

        Returns ``None`` when the lease was lost to another worker.
        """

        current = now or utcnow()

        async def _work(session: AsyncSession) -> FailureOutcome | None:
            entry = await session.scalar(
                select(SyncQueueEntry)
                .where(SyncQueueEntry.id == entry_id, SyncQueueEntry.claimed_by == worker_id)
                .with_for_update()
            )
            if entry is None:
                return None

            attempt = int(entry.attempt_count or 0) + 1
            terminal = permanent or attempt >= self.max_attempts
            next_retry_at = None if terminal else current + compute_backoff(
                attempt,
                base_seconds=self._backoff_base,
                cap_seconds=self._backoff_cap,
            )
            entry.attempt_count = attempt
            entry.is_terminal = terminal
            entry.last_error = error[:2000]
            entry.claimed_by = None
            entry.claimed_until = None
            entry.updated_at = current
            if next_retry_at is not None:
                entry.next_retry_at = next_retry_at
            await session.flush()
            return FailureOutcome(attempt_count=attempt, is_terminal=terminal, next_retry_at=next_retry_at)

        outcome = await run_in_transaction(self._session_factory, _work, label="sync_outbox.failed")
        if outcome is None:
            logger.warning("Sync entry lease lost before failure was recorded", entry_id=str(entry_id))
        elif outcome.is_terminal:
            logger.error(
                "Sync entry became terminal",
                entry_id=str(entry_id),
                attempts=outcome.attempt_count,
                permanent=permanent,
                error=error,
            )
        else:
            logger.warning(
                "Sync attempt failed; retry scheduled",
                entry_id=str(entry_id),
                attempts=outcome.attempt_count,
                next_retry_at=outcome.next_retry_at.isoformat(),
                error=error,
            )
        return outcome

    async def get(self, entry_id: UUID) -> SyncQueueEntry | None:
        async with self._session_factory() as session:
            return await session.get(SyncQueueEntry, entry_id)

    async def list_terminal(self, *, limit: int = 50) -> list[SyncQueueEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncQueueEntry)
                .where(SyncQueueEntry.is_terminal.is_(True))
                .order_by(SyncQueueEntry.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_pending(self, *, limit: int = 50) -> list[SyncQueueEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncQueueEntry)
                .where(SyncQueueEntry.is_terminal.is_(False), SyncQueueEntry.completed_at.is_(None))
                .order_by(SyncQueueEntry.next_retry_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def requeue(self, entry_id: UUID, *, now: datetime | None = None) -> bool:
        """Give a terminal entry a fresh attempt budget."""

        current = now or utcnow()

        async def _work(session: AsyncSession) -> bool:
            stmt = (
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.id == entry_id,
                    SyncQueueEntry.is_terminal.is_(True),
                    SyncQueueEntry.completed_at.is_(None),
                )
                .values(
                    is_terminal=False,
                    attempt_count=0,
                    next_retry_at=current,
                    claimed_by=None,
                    claimed_until=None,
                    updated_at=current,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        requeued = await run_in_transaction(self._session_factory, _work, label="sync_outbox.requeue")
        if requeued:
            logger.info("Sync entry requeued by operator", entry_id=str(entry_id))
        return requeued


__all__ = ["ClaimedEntry", "FailureOutcome", "SyncOutbox", "compute_backoff"]
