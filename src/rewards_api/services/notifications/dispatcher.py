"""Deliver loyalty pushes to members and admins off the request path."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select

from rewards_api.core.settings import settings
from rewards_api.db.session import SessionFactory
from rewards_api.models.account import Account
from rewards_api.observability.sync import SyncObservabilityStore, get_sync_store
from rewards_api.services.side_effects import BackgroundEffects

from .backend import InMemoryPushBackend, PushBackend, WebhookPushBackend
from .templates import NotificationEventType, render_push


class _AllAdmins:
    def __repr__(self) -> str:
        return "ALL_ADMINS"


ALL_ADMINS = _AllAdmins()


@dataclass
class NotificationEvent:
    """Representation of a push that was handed to the backend."""

    recipient: str
    account_id: str
    title: str
    body: str
    event_type: str
    metadata: dict[str, Any]


class NotificationDispatcher:
    """Coordinates push delivery via a pluggable backend."""

    def __init__(
        self,
        session_factory: SessionFactory,
        effects: BackgroundEffects,
        backend: Optional[PushBackend] = None,
        *,
        disabled_events: set[str] | None = None,
        store: SyncObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._effects = effects
        self._backend = backend or self._build_default_backend()
        self._disabled = set(disabled_events if disabled_events is not None else settings.push_disabled_events)
        self._store = store or get_sync_store()
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return self._events

    def notify(
        self,
        event_type: NotificationEventType,
        target: UUID | _AllAdmins,
        data: Mapping[str, Any],
    ) -> None:
        """Schedule delivery; never raises and never blocks the caller."""

        if event_type.value in self._disabled:
            logger.debug("Push event disabled", event_type=event_type.value)
            return
        self._effects.spawn(
            self._deliver(event_type, target, dict(data)),
            label=f"notify:{event_type.value}",
        )

    async def deliver_now(
        self,
        event_type: NotificationEventType,
        target: UUID | _AllAdmins,
        data: Mapping[str, Any],
    ) -> int:
        return await self._deliver(event_type, target, dict(data))

    async def _deliver(
        self,
        event_type: NotificationEventType,
        target: UUID | _AllAdmins,
        data: dict[str, Any],
    ) -> int:
        recipients = await self._resolve_recipients(target)
        if not recipients:
            logger.debug("No push recipients", event_type=event_type.value, target=str(target))
            return 0

        rendered = render_push(event_type, data)
        metadata = {key: str(value) for key, value in data.items() if value is not None}
        metadata["event_type"] = event_type.value
        delivered = 0
        for account_id, phone in recipients:
            try:
                await self._backend.send_push(phone, rendered.title, rendered.body, metadata=metadata)
            except Exception as exc:  # noqa: BLE001
                self._store.record_notification("failed")
                logger.warning(
                    "Push delivery failed",
                    event_type=event_type.value,
                    account_id=account_id,
                    error=str(exc),
                )
                continue
            delivered += 1
            self._store.record_notification("delivered")
            self._events.append(
                NotificationEvent(
                    recipient=phone,
                    account_id=account_id,
                    title=rendered.title,
                    body=rendered.body,
                    event_type=event_type.value,
                    metadata=metadata,
                )
            )
        return delivered

    async def _resolve_recipients(self, target: UUID | _AllAdmins) -> list[tuple[str, str]]:
        stmt = select(Account.id, Account.phone).where(Account.is_active.is_(True))
        if target is ALL_ADMINS:
            stmt = stmt.where(Account.is_admin.is_(True))
        else:
            stmt = stmt.where(Account.id == target)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [(str(account_id), phone) for account_id, phone in result.all()]

    def _build_default_backend(self) -> PushBackend:
        if settings.push_webhook_url:
            return WebhookPushBackend(
                settings.push_webhook_url,
                token=settings.push_webhook_token,
                timeout_seconds=settings.push_timeout_seconds,
            )
        return InMemoryPushBackend()


__all__ = ["ALL_ADMINS", "NotificationDispatcher", "NotificationEvent"]
