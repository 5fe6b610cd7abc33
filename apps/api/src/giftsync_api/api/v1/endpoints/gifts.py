"""Storefront gift endpoints (cross-origin)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.api.dependencies.providers import get_appstle_client_factory
from giftsync_api.db.session import get_session
from giftsync_api.services.appstle import AppstleError
from giftsync_api.services.gifts import (
    ClientFactory,
    ConfigurationError,
    GiftRedemptionService,
    GiftValidationError,
    SelectedProduct,
)
from giftsync_api.services.gifts.redemption import MSG_NOT_CONFIGURED


router = APIRouter(prefix="/gift", tags=["gifts"])


class GiftProductPayload(BaseModel):
    variantId: str = Field(..., min_length=1)
    title: str | None = None
    quantity: int = Field(default=1, ge=1, le=10)
    variantHandle: str | None = None


class GiftSelectRequest(BaseModel):
    token: str | None = None
    products: list[GiftProductPayload] = Field(default_factory=list)


class GiftLineResultPayload(BaseModel):
    variantId: str
    success: bool
    lineId: str | None = None
    error: str | None = None


class GiftSelectResponse(BaseModel):
    success: bool
    partial: bool = False
    message: str
    status: str
    results: list[GiftLineResultPayload]


class GiftVerifyResponse(BaseModel):
    valid: bool
    message: str | None = None
    token: str | None = None
    customerName: str | None = None
    orderNumber: int | None = None
    maxGifts: int | None = None
    eligibleProductIds: list[str] = Field(default_factory=list)
    expiresAt: datetime | None = None


def _failure(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


@router.get("/ping", summary="Storefront connectivity check")
async def ping() -> dict[str, Any]:
    return {
        "success": True,
        "message": "App is running!",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/verify", response_model=GiftVerifyResponse)
async def verify_gift(
    token: str | None = Query(default=None),
    email: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> GiftVerifyResponse:
    service = GiftRedemptionService(session)
    try:
        verification = await service.verify(token=token, email=email)
    except GiftValidationError as exc:
        return GiftVerifyResponse(valid=False, message=exc.message)

    return GiftVerifyResponse(
        valid=True,
        token=verification.token,
        customerName=verification.customer_name,
        orderNumber=verification.order_number,
        maxGifts=verification.max_gifts,
        eligibleProductIds=verification.eligible_product_ids,
        expiresAt=verification.expires_at,
    )


@router.get("/select", include_in_schema=False)
async def select_gift_usage() -> dict[str, str]:
    return {"message": "Use POST to submit gift selections"}


@router.post("/select", response_model=GiftSelectResponse)
async def select_gift(
    payload: GiftSelectRequest,
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
):
    service = GiftRedemptionService(session, client_factory=client_factory)
    products = [
        SelectedProduct(
            variant_id=product.variantId,
            title=product.title,
            quantity=product.quantity,
            variant_handle=product.variantHandle,
        )
        for product in payload.products
    ]
    try:
        outcome = await service.redeem(payload.token, products)
    except GiftValidationError as exc:
        return _failure(status.HTTP_400_BAD_REQUEST, exc.message, code=exc.code.value)
    except ConfigurationError as exc:
        logger.warning("Gift redemption blocked by configuration", shop=exc.shop, reason=str(exc))
        return _failure(status.HTTP_503_SERVICE_UNAVAILABLE, MSG_NOT_CONFIGURED)
    except AppstleError as exc:
        logger.exception("Gift redemption upstream failure", error=str(exc))
        return _failure(status.HTTP_502_BAD_GATEWAY, f"An error occurred: {exc}")

    body = GiftSelectResponse(
        success=outcome.success,
        partial=outcome.partial,
        message=outcome.message,
        status=outcome.status.value,
        results=[
            GiftLineResultPayload(
                variantId=result.variant_id,
                success=result.success,
                lineId=result.line_id,
                error=result.error,
            )
            for result in outcome.results
        ],
    )
    if not outcome.success:
        return _failure(
            status.HTTP_502_BAD_GATEWAY,
            outcome.message,
            partial=False,
            status=outcome.status.value,
            results=[result.model_dump() for result in body.results],
        )
    return body
