from __future__ import annotations

import httpx
import pytest

from rewards_api.observability.sync import SyncObservabilityStore
from rewards_api.services.notifications import (
    ALL_ADMINS,
    InMemoryPushBackend,
    NotificationDispatcher,
    NotificationEventType,
    PushDeliveryError,
    WebhookPushBackend,
    render_push,
)
from rewards_api.services.side_effects import BackgroundEffects


class _FailingBackend:
    async def send_push(self, recipient, title, body, *, metadata=None) -> None:
        raise PushDeliveryError("relay offline")


def test_points_templates_handle_sign() -> None:
    received = render_push(NotificationEventType.POINTS_RECEIVED, {"delta": 1, "new_balance": 11})
    assert received.title == "You received points!"
    assert "1 point were added" in received.body

    deducted = render_push(NotificationEventType.POINTS_RECEIVED, {"delta": -20, "new_balance": 5})
    assert deducted.title == "Points adjusted"
    assert "20 points were deducted" in deducted.body


@pytest.mark.asyncio
async def test_admin_fan_out_skips_inactive_accounts(session_factory, member_factory) -> None:
    active_admin = await member_factory(is_admin=True)
    await member_factory(is_admin=True, is_active=False)
    await member_factory()

    backend = InMemoryPushBackend()
    store = SyncObservabilityStore()
    dispatcher = NotificationDispatcher(session_factory, BackgroundEffects(), backend, disabled_events=set(), store=store)

    delivered = await dispatcher.deliver_now(
        NotificationEventType.NEW_REDEMPTION,
        ALL_ADMINS,
        {"item_name": "Mug", "points_spent": 30, "display_name": "Ana"},
    )
    assert delivered == 1
    assert [message["recipient"] for message in backend.sent_messages] == [active_admin.phone]
    assert backend.sent_messages[0]["body"] == "Ana redeemed Mug for 30 points."
    assert dispatcher.sent_events[0].event_type == "new_redemption"
    assert store.snapshot().notifications == {"delivered": 1}


@pytest.mark.asyncio
async def test_disabled_events_are_not_scheduled(session_factory, member_factory) -> None:
    member = await member_factory()
    effects = BackgroundEffects()
    backend = InMemoryPushBackend()
    dispatcher = NotificationDispatcher(
        session_factory,
        effects,
        backend,
        disabled_events={"tier_changed"},
        store=SyncObservabilityStore(),
    )

    dispatcher.notify(NotificationEventType.TIER_CHANGED, member.id, {"tier": "vip"})
    assert effects.pending == 0

    dispatcher.notify(NotificationEventType.BENEFIT_USED, member.id, {"benefit_name": "Spa"})
    await effects.drain()
    assert len(backend.sent_messages) == 1


@pytest.mark.asyncio
async def test_delivery_failures_are_counted_not_raised(session_factory, member_factory) -> None:
    member = await member_factory()
    store = SyncObservabilityStore()
    effects = BackgroundEffects()
    dispatcher = NotificationDispatcher(session_factory, effects, _FailingBackend(), disabled_events=set(), store=store)

    dispatcher.notify(NotificationEventType.POINTS_RECEIVED, member.id, {"delta": 5, "new_balance": 5})
    await effects.drain()
    assert store.snapshot().notifications == {"failed": 1}
    assert dispatcher.sent_events == []


@pytest.mark.asyncio
async def test_background_effect_failure_is_contained() -> None:
    effects = BackgroundEffects()

    async def boom() -> None:
        raise RuntimeError("boom")

    effects.spawn(boom(), label="boom")
    await effects.drain()
    assert effects.pending == 0


@pytest.mark.asyncio
async def test_webhook_backend_posts_payload() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = request.content
        return httpx.Response(202)

    backend = WebhookPushBackend(
        "https://push.test/send",
        token="push-token",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    await backend.send_push("5550000001", "Hello", "World", metadata={"event_type": "points_received"})
    assert captured["auth"] == "Bearer push-token"
    assert b'"recipient":"5550000001"' in captured["body"].replace(b" ", b"")

    failing = WebhookPushBackend(
        "https://push.test/send",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    with pytest.raises(PushDeliveryError):
        await failing.send_push("5550000001", "Hello", "World")
