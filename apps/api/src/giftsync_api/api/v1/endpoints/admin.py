"""Operator API for shop configuration, subscribers and gift eligibilities."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.api.dependencies.providers import get_appstle_client_factory
from giftsync_api.api.dependencies.security import require_admin_api_key
from giftsync_api.db.session import get_session
from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus, ensure_aware
from giftsync_api.models.shop_settings import GiftSettings
from giftsync_api.models.subscriber import SubscriberSnapshot, SyncLog
from giftsync_api.services.appstle import AppstleError
from giftsync_api.services.gifts import (
    ClientFactory,
    ConfigurationError,
    DuplicateEligibilityError,
    EligibilityNotFoundError,
    EligibilityStateError,
    GiftRedemptionService,
    GiftReportingService,
    MilestoneEvaluator,
    MilestonePolicy,
    ShopSettingsService,
    SubscriberReconciler,
    masked_api_key,
    parse_product_allow_list,
    parse_trigger_thresholds,
)
from giftsync_api.services.notifications import build_gift_link


router = APIRouter(
    prefix="/admin/shops/{shop}",
    tags=["admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class SyncLogResponse(BaseModel):
    status: str
    totalFetched: int
    totalSynced: int
    filterMinOrders: int
    triggeredBy: str
    errorMessage: str | None = None
    syncedAt: datetime


class ShopOverviewResponse(BaseModel):
    shop: str
    configured: bool
    giftsEnabled: bool
    subscriberCount: int
    eligibilityCounts: Dict[str, int]
    lastSync: SyncLogResponse | None = None


class AppSettingsResponse(BaseModel):
    shop: str
    configured: bool
    apiKey: str
    apiUrl: str | None = None


class AppSettingsUpdateRequest(BaseModel):
    apiKey: str | None = None
    apiUrl: str | None = None


class ConnectionCheckResponse(BaseModel):
    ok: bool
    message: str
    statusCode: int | None = None


class GiftSettingsResponse(BaseModel):
    shop: str
    enabled: bool
    triggerOrderNumbers: list[int]
    maxGiftProducts: int
    giftExpiryDays: int
    emailDelayDays: int
    eligibleProductIds: list[str]
    emailSubject: str


class GiftSettingsUpdateRequest(BaseModel):
    enabled: bool = True
    triggerOrderNumbers: str
    maxGiftProducts: int = 3
    giftExpiryDays: int = 14
    emailDelayDays: int = 7
    eligibleProductIds: list[str] = Field(default_factory=list)
    emailSubject: str | None = None


class SubscriberResponse(BaseModel):
    contractId: str
    customerId: str | None = None
    customerEmail: str | None = None
    customerName: str
    status: str
    totalOrdersDelivered: int
    lastOrderId: str | None = None
    lastOrderDate: datetime | None = None
    nextBillingDate: datetime | None = None
    syncedAt: datetime


class SubscriberListResponse(BaseModel):
    subscribers: list[SubscriberResponse]
    total: int
    page: int
    pageSize: int
    totalPages: int
    lastSync: SyncLogResponse | None = None


class SyncRequest(BaseModel):
    minOrders: int = Field(default=0, ge=0)
    statuses: list[str] = Field(default_factory=list)


class SyncResponse(BaseModel):
    totalFetched: int
    totalSynced: int


class ContractStatusRequest(BaseModel):
    status: Literal["ACTIVE", "PAUSED", "CANCELLED"]


class ContractOrdersResponse(BaseModel):
    contractId: str
    totalCount: int
    sourcePath: str | None = None
    orders: list[dict]


class EligibilityResponse(BaseModel):
    id: UUID
    contractId: str
    customerId: str | None = None
    customerEmail: str
    customerName: str | None = None
    orderNumber: int
    status: str
    giftLink: str
    emailSentAt: datetime | None = None
    selectedAt: datetime | None = None
    appliedAt: datetime | None = None
    expiresAt: datetime
    createdAt: datetime


class EligibilityListResponse(BaseModel):
    eligibilities: list[EligibilityResponse]
    total: int
    page: int
    pageSize: int


class ManualEligibilityRequest(BaseModel):
    contractId: str = Field(..., min_length=1)
    customerEmail: str = Field(..., min_length=3)
    orderNumber: int = Field(..., ge=1)
    customerName: str | None = None
    customerId: str | None = None


class EvaluateRequest(BaseModel):
    policy: MilestonePolicy = MilestonePolicy.CUMULATIVE


class EvaluateResponse(BaseModel):
    created: int
    alreadyIssued: int
    skippedWithoutEmail: int


class GiftLineResultPayload(BaseModel):
    variantId: str
    success: bool
    lineId: str | None = None
    error: str | None = None


class RetryResponse(BaseModel):
    success: bool
    partial: bool
    message: str
    status: str
    results: list[GiftLineResultPayload]


def _sync_log_payload(log: SyncLog | None) -> SyncLogResponse | None:
    if log is None:
        return None
    return SyncLogResponse(
        status=log.status.value,
        totalFetched=log.total_fetched,
        totalSynced=log.total_synced,
        filterMinOrders=log.filter_min_orders,
        triggeredBy=log.triggered_by,
        errorMessage=log.error_message,
        syncedAt=ensure_aware(log.synced_at),
    )


def _gift_settings_payload(record: GiftSettings) -> GiftSettingsResponse:
    return GiftSettingsResponse(
        shop=record.shop,
        enabled=record.enabled,
        triggerOrderNumbers=parse_trigger_thresholds(record.trigger_order_numbers),
        maxGiftProducts=record.max_gift_products,
        giftExpiryDays=record.gift_expiry_days,
        emailDelayDays=record.email_delay_days,
        eligibleProductIds=parse_product_allow_list(record.eligible_product_ids),
        emailSubject=record.email_subject,
    )


def _subscriber_payload(snapshot: SubscriberSnapshot) -> SubscriberResponse:
    return SubscriberResponse(
        contractId=snapshot.contract_id,
        customerId=snapshot.customer_id,
        customerEmail=snapshot.customer_email,
        customerName=snapshot.customer_name,
        status=snapshot.status,
        totalOrdersDelivered=snapshot.total_orders_delivered,
        lastOrderId=snapshot.last_order_id,
        lastOrderDate=ensure_aware(snapshot.last_order_date),
        nextBillingDate=ensure_aware(snapshot.next_billing_date),
        syncedAt=ensure_aware(snapshot.synced_at),
    )


def _eligibility_payload(eligibility: GiftEligibility) -> EligibilityResponse:
    return EligibilityResponse(
        id=eligibility.id,
        contractId=eligibility.subscription_contract_id,
        customerId=eligibility.customer_id,
        customerEmail=eligibility.customer_email,
        customerName=eligibility.customer_name,
        orderNumber=eligibility.order_number,
        status=eligibility.display_status().value,
        giftLink=build_gift_link(eligibility.shop, eligibility.gift_token),
        emailSentAt=ensure_aware(eligibility.email_sent_at),
        selectedAt=ensure_aware(eligibility.selected_at),
        appliedAt=ensure_aware(eligibility.applied_at),
        expiresAt=ensure_aware(eligibility.expires_at),
        createdAt=ensure_aware(eligibility.created_at),
    )


async def _require_shop_eligibility(session: AsyncSession, shop: str, eligibility_id: UUID) -> GiftEligibility:
    eligibility = await session.get(GiftEligibility, eligibility_id)
    if eligibility is None or eligibility.shop != shop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gift eligibility not found")
    return eligibility


async def _build_client(service: ShopSettingsService, shop: str):
    try:
        return await service.build_client(shop)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/overview", response_model=ShopOverviewResponse)
async def shop_overview(shop: str, session: AsyncSession = Depends(get_session)) -> ShopOverviewResponse:
    settings_service = ShopSettingsService(session)
    app_settings = await settings_service.get_app_settings(shop)
    gift_settings = await settings_service.get_gift_settings(shop)
    overview = await GiftReportingService(session).overview(shop)
    return ShopOverviewResponse(
        shop=shop,
        configured=bool(app_settings and app_settings.appstle_api_key),
        giftsEnabled=bool(gift_settings and gift_settings.enabled),
        subscriberCount=overview.subscriber_count,
        eligibilityCounts=overview.eligibility_counts,
        lastSync=_sync_log_payload(overview.last_sync),
    )


@router.get("/settings", response_model=AppSettingsResponse)
async def get_app_settings(shop: str, session: AsyncSession = Depends(get_session)) -> AppSettingsResponse:
    record = await ShopSettingsService(session).get_app_settings(shop)
    api_key = record.appstle_api_key if record else None
    return AppSettingsResponse(
        shop=shop,
        configured=bool(api_key),
        apiKey=masked_api_key(api_key),
        apiUrl=record.appstle_api_url if record else None,
    )


@router.put("/settings", response_model=AppSettingsResponse)
async def update_app_settings(
    shop: str,
    payload: AppSettingsUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> AppSettingsResponse:
    try:
        record = await ShopSettingsService(session).save_app_settings(
            shop, api_key=payload.apiKey, api_url=payload.apiUrl
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return AppSettingsResponse(
        shop=shop,
        configured=True,
        apiKey=masked_api_key(record.appstle_api_key),
        apiUrl=record.appstle_api_url,
    )


@router.post("/settings/test-connection", response_model=ConnectionCheckResponse)
async def test_connection(
    shop: str,
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
) -> ConnectionCheckResponse:
    client = await _build_client(ShopSettingsService(session, client_factory=client_factory), shop)
    async with client:
        check = await client.test_connection()
    return ConnectionCheckResponse(ok=check.ok, message=check.message, statusCode=check.status_code)


@router.get("/gift-settings", response_model=GiftSettingsResponse)
async def get_gift_settings(shop: str, session: AsyncSession = Depends(get_session)) -> GiftSettingsResponse:
    record = await ShopSettingsService(session).ensure_gift_settings(shop)
    return _gift_settings_payload(record)


@router.put("/gift-settings", response_model=GiftSettingsResponse)
async def update_gift_settings(
    shop: str,
    payload: GiftSettingsUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> GiftSettingsResponse:
    try:
        record = await ShopSettingsService(session).save_gift_settings(
            shop,
            enabled=payload.enabled,
            trigger_order_numbers=payload.triggerOrderNumbers,
            max_gift_products=payload.maxGiftProducts,
            gift_expiry_days=payload.giftExpiryDays,
            email_delay_days=payload.emailDelayDays,
            eligible_product_ids=payload.eligibleProductIds,
            email_subject=payload.emailSubject,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _gift_settings_payload(record)


@router.get("/subscribers", response_model=SubscriberListResponse)
async def list_subscribers(
    shop: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200, alias="pageSize"),
    session: AsyncSession = Depends(get_session),
) -> SubscriberListResponse:
    reconciler = SubscriberReconciler(session)
    result = await reconciler.list_subscribers(shop, page=page, page_size=page_size)
    return SubscriberListResponse(
        subscribers=[_subscriber_payload(snapshot) for snapshot in result.subscribers],
        total=result.total,
        page=result.page,
        pageSize=result.page_size,
        totalPages=result.total_pages,
        lastSync=_sync_log_payload(await reconciler.last_sync(shop)),
    )


@router.post("/subscribers/sync", response_model=SyncResponse)
async def sync_subscribers(
    shop: str,
    payload: SyncRequest,
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
) -> SyncResponse:
    client = await _build_client(ShopSettingsService(session, client_factory=client_factory), shop)
    async with client:
        try:
            result = await SubscriberReconciler(session).reconcile(
                shop,
                client,
                min_orders=payload.minOrders,
                status_filter=payload.statuses or None,
                triggered_by="manual",
            )
        except AppstleError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return SyncResponse(totalFetched=result.total_fetched, totalSynced=result.total_synced)


@router.delete("/subscribers")
async def clear_subscribers(shop: str, session: AsyncSession = Depends(get_session)) -> dict[str, int]:
    deleted = await SubscriberReconciler(session).clear(shop)
    return {"deleted": deleted}


@router.get("/subscribers/{contract_id}/orders", response_model=ContractOrdersResponse)
async def contract_orders(
    shop: str,
    contract_id: str,
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
) -> ContractOrdersResponse:
    client = await _build_client(ShopSettingsService(session, client_factory=client_factory), shop)
    async with client:
        try:
            history = await client.fetch_contract_orders(contract_id)
        except AppstleError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return ContractOrdersResponse(
        contractId=contract_id,
        totalCount=history.total_count,
        sourcePath=history.source_path,
        orders=history.orders,
    )


@router.put("/subscribers/{contract_id}/status")
async def update_contract_status(
    shop: str,
    contract_id: str,
    payload: ContractStatusRequest,
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
) -> dict[str, str]:
    client = await _build_client(ShopSettingsService(session, client_factory=client_factory), shop)
    async with client:
        try:
            await client.update_contract_status(contract_id, payload.status)
        except AppstleError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"contractId": contract_id, "status": payload.status}


@router.get("/eligibilities", response_model=EligibilityListResponse)
async def list_eligibilities(
    shop: str,
    status_filter: GiftEligibilityStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200, alias="pageSize"),
    session: AsyncSession = Depends(get_session),
) -> EligibilityListResponse:
    result = await GiftReportingService(session).list_eligibilities(
        shop, status=status_filter, page=page, page_size=page_size
    )
    return EligibilityListResponse(
        eligibilities=[_eligibility_payload(eligibility) for eligibility in result.eligibilities],
        total=result.total,
        page=result.page,
        pageSize=result.page_size,
    )


@router.post("/eligibilities", response_model=EligibilityResponse, status_code=status.HTTP_201_CREATED)
async def create_eligibility(
    shop: str,
    payload: ManualEligibilityRequest,
    session: AsyncSession = Depends(get_session),
) -> EligibilityResponse:
    try:
        eligibility = await MilestoneEvaluator(session).create_manual_eligibility(
            shop,
            contract_id=payload.contractId,
            customer_email=payload.customerEmail,
            order_number=payload.orderNumber,
            customer_name=payload.customerName,
            customer_id=payload.customerId,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DuplicateEligibilityError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _eligibility_payload(eligibility)


@router.post("/eligibilities/evaluate", response_model=EvaluateResponse)
async def evaluate_eligibilities(
    shop: str,
    payload: EvaluateRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> EvaluateResponse:
    policy = payload.policy if payload else MilestonePolicy.CUMULATIVE
    try:
        result = await MilestoneEvaluator(session).evaluate_eligibility(shop, policy=policy)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return EvaluateResponse(
        created=result.created,
        alreadyIssued=result.already_issued,
        skippedWithoutEmail=result.skipped_without_email,
    )


@router.post("/eligibilities/{eligibility_id}/reset", response_model=EligibilityResponse)
async def reset_eligibility(
    shop: str,
    eligibility_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> EligibilityResponse:
    await _require_shop_eligibility(session, shop, eligibility_id)
    try:
        eligibility = await GiftRedemptionService(session).reset(eligibility_id)
    except EligibilityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _eligibility_payload(eligibility)


@router.post("/eligibilities/{eligibility_id}/retry", response_model=RetryResponse)
async def retry_eligibility(
    shop: str,
    eligibility_id: UUID,
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
) -> RetryResponse:
    await _require_shop_eligibility(session, shop, eligibility_id)
    service = GiftRedemptionService(session, client_factory=client_factory)
    try:
        outcome = await service.retry_failed_selections(eligibility_id)
    except EligibilityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except EligibilityStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AppstleError as exc:
        logger.exception("Gift retry failed upstream", shop=shop, eligibility_id=str(eligibility_id))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return RetryResponse(
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
