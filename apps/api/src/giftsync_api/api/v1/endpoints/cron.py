from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from giftsync_api.api.dependencies.providers import get_gift_cycle_runner
from giftsync_api.api.dependencies.security import require_admin_api_key
from giftsync_api.jobs.gift_cycle import CycleSummary, GiftCycleRunner
from giftsync_api.observability.gift_cycle import get_gift_cycle_store


router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_admin_api_key)])


class ShopCycleResultPayload(BaseModel):
    shop: str
    subscribersSynced: int
    eligibilitiesCreated: int
    emailsSent: int
    emailsFailed: int
    errors: list[str] = Field(default_factory=list)


class CycleResponse(BaseModel):
    success: bool
    skipped: bool = False
    triggeredBy: str
    timestamp: datetime
    shopsProcessed: int
    results: list[ShopCycleResultPayload]


class CycleStatusResponse(BaseModel):
    state: str
    lastRun: CycleResponse | None = None
    metrics: dict[str, object]


def _to_payload(summary: CycleSummary) -> CycleResponse:
    return CycleResponse(
        success=summary.success,
        skipped=summary.skipped,
        triggeredBy=summary.triggered_by,
        timestamp=summary.completed_at or summary.started_at,
        shopsProcessed=summary.shops_processed,
        results=[
            ShopCycleResultPayload(
                shop=result.shop,
                subscribersSynced=result.subscribers_synced,
                eligibilitiesCreated=result.eligibilities_created,
                emailsSent=result.emails_sent,
                emailsFailed=result.emails_failed,
                errors=list(result.errors),
            )
            for result in summary.results
        ],
    )


@router.post("", response_model=CycleResponse, summary="Run the gift cycle for every enabled shop")
async def trigger_gift_cycle(runner: GiftCycleRunner = Depends(get_gift_cycle_runner)) -> CycleResponse:
    summary = await runner.run_cycle(triggered_by="http")
    return _to_payload(summary)


@router.get("", response_model=CycleStatusResponse, summary="Gift cycle status")
async def gift_cycle_status(runner: GiftCycleRunner = Depends(get_gift_cycle_runner)) -> CycleStatusResponse:
    return CycleStatusResponse(
        state=runner.state.value,
        lastRun=_to_payload(runner.last_summary) if runner.last_summary else None,
        metrics=get_gift_cycle_store().snapshot().as_dict(),
    )


