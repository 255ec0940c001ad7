"""Push backend implementations for member and admin notifications."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx


class PushDeliveryError(RuntimeError):
    """Raised when a push backend could not hand off a message."""


class PushBackend(Protocol):
    """Protocol for push notification connectors."""

    async def send_push(
        self,
        recipient: str,
        title: str,
        body: str,
        *,
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        ...


class WebhookPushBackend:
    """Posts each push to a relay webhook that fans out to devices."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout_seconds
        self._client = http_client

    async def send_push(
        self,
        recipient: str,
        title: str,
        body: str,
        *,
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._client is None
        try:
            response = await client.post(
                self._url,
                json={"recipient": recipient, "title": title, "body": body, "data": metadata or {}},
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PushDeliveryError(str(exc)) from exc
        finally:
            if owns_client:
                await client.aclose()


@dataclass
class InMemoryPushBackend:
    """In-memory push dispatcher for validation."""

    sent_messages: List[dict[str, object]]

    def __init__(self) -> None:
        self.sent_messages = []

    async def send_push(
        self,
        recipient: str,
        title: str,
        body: str,
        *,
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        self.sent_messages.append(
            {
                "recipient": recipient,
                "title": title,
                "body": body,
                "metadata": metadata or {},
            }
        )
