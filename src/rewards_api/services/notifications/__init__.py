"""Push notifications for loyalty events."""

from .backend import InMemoryPushBackend, PushBackend, PushDeliveryError, WebhookPushBackend
from .dispatcher import ALL_ADMINS, NotificationDispatcher, NotificationEvent
from .templates import NotificationEventType, RenderedPush, render_push

__all__ = [
    "ALL_ADMINS",
    "InMemoryPushBackend",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationEventType",
    "PushBackend",
    "PushDeliveryError",
    "RenderedPush",
    "WebhookPushBackend",
    "render_push",
]
