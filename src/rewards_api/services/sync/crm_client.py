"""CRM connector: idempotent find-or-create calls over HTTP."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol

import httpx
from loguru import logger

_RETRYABLE_STATUS = {408, 409, 429}


class CrmError(RuntimeError):
    """Retryable CRM failure (network, timeout, 5xx, malformed response)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CrmRejectedError(CrmError):
    """The CRM refused the request; retrying will not help."""


def phone_key(phone: str) -> str:
    return f"phone:{phone}"


def phone_variants(phone: str) -> list[str]:
    """Numbers may be stored locally or with the +52 country prefix."""

    digits = str(phone or "").strip()
    return [digits, f"+52{digits}"] if digits else []


class CrmClient(Protocol):
    async def sync_account(self, resource_id: str, snapshot: Mapping[str, Any]) -> str:
        ...

    async def create_ticket(self, resource_id: str, details: Mapping[str, Any]) -> str:
        ...

    async def update_status(self, resource_id: str, new_state: str) -> str:
        ...


class HttpCrmClient:
    """JSON-over-HTTP CRM client.

    Every write is preceded by a lookup on a stable external key (the phone for
    contacts, the local resource id for tickets) so replays never duplicate
    remote records.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 8.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds
        self._client = http_client

    async def sync_account(self, resource_id: str, snapshot: Mapping[str, Any]) -> str:
        phone = str(snapshot.get("phone") or "")
        if not phone:
            raise CrmRejectedError("Account snapshot has no phone")

        remote_id: str | None = None
        for candidate in phone_variants(phone):
            remote_id = await self._find("/contacts", {"phone": candidate})
            if remote_id:
                break

        body = {"external_key": phone_key(phone), "account_id": resource_id, **dict(snapshot)}
        if remote_id:
            await self._request("PATCH", f"/contacts/{remote_id}", json=body)
            return remote_id
        payload = await self._request("POST", "/contacts", json=body)
        return self._extract_id(payload)

    async def create_ticket(self, resource_id: str, details: Mapping[str, Any]) -> str:
        existing = await self._find("/tickets", {"external_key": resource_id})
        if existing:
            return existing
        payload = await self._request(
            "POST",
            "/tickets",
            json={"external_key": resource_id, **dict(details)},
        )
        return self._extract_id(payload)

    async def update_status(self, resource_id: str, new_state: str) -> str:
        remote_id = await self._find("/tickets", {"external_key": resource_id})
        if not remote_id:
            # The ticket may still be waiting in the outbox.
            raise CrmError(f"Ticket for {resource_id} not found yet")
        await self._request("PATCH", f"/tickets/{remote_id}", json={"status": new_state})
        return remote_id

    async def _find(self, path: str, params: Mapping[str, str]) -> str | None:
        payload = await self._request("GET", path, params=dict(params))
        records = payload.get("data")
        if not isinstance(records, list):
            raise CrmError(f"Malformed lookup response from {path}")
        for record in records:
            if isinstance(record, Mapping) and record.get("id"):
                return str(record["id"])
        return None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Mapping[str, Any]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._client is None
        try:
            response = await client.request(method, f"{self._base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise CrmError(f"{method} {path} failed: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()

        status = response.status_code
        if status >= 500 or status in _RETRYABLE_STATUS:
            raise CrmError(f"{method} {path} returned {status}", status_code=status)
        if status >= 400:
            logger.warning("CRM rejected request", method=method, path=path, status_code=status)
            raise CrmRejectedError(f"{method} {path} rejected with {status}", status_code=status)

        if not response.content:
            return {}
        try:
            parsed = response.json()
        except ValueError as exc:
            raise CrmError(f"{method} {path} returned invalid JSON") from exc
        if not isinstance(parsed, Mapping):
            raise CrmError(f"{method} {path} returned an unexpected body")
        return parsed

    @staticmethod
    def _extract_id(payload: Mapping[str, Any]) -> str:
        remote_id = payload.get("id")
        if remote_id is None and isinstance(payload.get("data"), Mapping):
            remote_id = payload["data"].get("id")
        if not remote_id:
            raise CrmError("CRM response is missing an id")
        return str(remote_id)


@dataclass
class InMemoryCrmClient:
    """Dictionary-backed CRM used in tests and when no CRM is configured."""

    contacts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tickets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    calls: List[tuple[str, str]] = field(default_factory=list)
    _failures: List[CrmError] = field(default_factory=list)

    def fail_next(self, count: int = 1, *, rejected: bool = False) -> None:
        error_cls = CrmRejectedError if rejected else CrmError
        self._failures.extend(error_cls("injected failure") for _ in range(count))

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    async def sync_account(self, resource_id: str, snapshot: Mapping[str, Any]) -> str:
        self.calls.append(("sync_account", resource_id))
        self._maybe_fail()
        key = phone_key(str(snapshot.get("phone") or resource_id))
        record = self.contacts.setdefault(key, {"id": f"contact-{len(self.contacts) + 1}"})
        record.update(dict(snapshot))
        return record["id"]

    async def create_ticket(self, resource_id: str, details: Mapping[str, Any]) -> str:
        self.calls.append(("create_ticket", resource_id))
        self._maybe_fail()
        record = self.tickets.setdefault(
            resource_id,
            {"id": f"ticket-{len(self.tickets) + 1}", **dict(details)},
        )
        return record["id"]

    async def update_status(self, resource_id: str, new_state: str) -> str:
        self.calls.append(("update_status", resource_id))
        self._maybe_fail()
        record = self.tickets.get(resource_id)
        if record is None:
            raise CrmError(f"Ticket for {resource_id} not found yet")
        record["status"] = new_state
        return record["id"]


__all__ = [
    "CrmClient",
    "CrmError",
    "CrmRejectedError",
    "HttpCrmClient",
    "InMemoryCrmClient",
    "phone_key",
    "phone_variants",
]
