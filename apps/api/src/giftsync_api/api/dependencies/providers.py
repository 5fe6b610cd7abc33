"""Request-scoped providers that tests can override."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from giftsync_api.jobs.gift_cycle import GiftCycleRunner
from giftsync_api.services.gifts import ClientFactory, default_client_factory


def get_appstle_client_factory() -> ClientFactory:
    return default_client_factory


def get_gift_cycle_runner(request: Request) -> GiftCycleRunner:
    runner = getattr(request.app.state, "gift_cycle_runner", None)
    if runner is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gift cycle runner unavailable")
    return runner
