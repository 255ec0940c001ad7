from __future__ import annotations

from typing import Any, Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import settings
from rewards_api.db.session import get_session
from rewards_api.observability.sync import get_sync_store

router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]
    sync: Dict[str, Any]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    overall: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        overall = "error"

    workers = {
        "sync_worker": settings.sync_worker_enabled,
        "expiry_worker": settings.expiry_sweep_enabled,
    }
    for name, enabled in workers.items():
        worker = getattr(request.app.state, name, None)
        if not enabled or worker is None:
            components[name] = ComponentStatus(status="disabled")
        elif worker.is_running:
            components[name] = ComponentStatus(status="ready")
        else:
            components[name] = ComponentStatus(status="error", detail="Worker is not running")
            if overall == "ready":
                overall = "degraded"

    return ReadinessPayload(status=overall, components=components, sync=get_sync_store().snapshot().as_dict())
