from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.core.settings import settings
from giftsync_api.db.session import get_session
from giftsync_api.observability.gift_cycle import get_gift_cycle_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/healthz", include_in_schema=False)
async def service_health_alias() -> dict[str, str]:
    """Alias under /health for load balancers probing that path."""

    return await service_health()


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"

    scheduler = getattr(request.app.state, "gift_cycle_scheduler", None)
    if settings.gift_cycle_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        scheduler_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Gift cycle scheduler not running"
        if not running:
            status = "degraded" if status != "error" else status
        components["gift_cycle_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["gift_cycle_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Gift cycle scheduler disabled via settings",
        )

    snapshot = get_gift_cycle_store().snapshot()
    last_success = snapshot.last_completed_at.isoformat() if snapshot.last_completed_at else None
    if snapshot.last_shop_errors:
        failing = ", ".join(sorted(snapshot.last_shop_errors))
        components["gift_cycle"] = ComponentStatus(
            status="degraded",
            detail=f"Shops with errors in last cycle: {failing}",
            last_success_at=last_success,
        )
        status = "degraded" if status == "ready" else status
    elif snapshot.last_completed_at is None:
        components["gift_cycle"] = ComponentStatus(status="starting", detail="No gift cycle has completed yet")
    else:
        components["gift_cycle"] = ComponentStatus(status="ready", last_success_at=last_success)

    return ReadinessPayload(status=status, components=components)


@router.get("/health/readyz", include_in_schema=False)
async def service_readiness_alias(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    return await service_readiness(request, session)
