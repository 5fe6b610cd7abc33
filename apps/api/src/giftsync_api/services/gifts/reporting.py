"""Read models for operator dashboards."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus
from giftsync_api.models.subscriber import SubscriberSnapshot, SyncLog


@dataclass(slots=True)
class ShopOverview:
    shop: str
    subscriber_count: int
    eligibility_counts: Dict[str, int]
    last_sync: SyncLog | None


@dataclass(slots=True)
class EligibilityPage:
    eligibilities: list[GiftEligibility]
    total: int
    page: int
    page_size: int


class GiftReportingService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def overview(self, shop: str) -> ShopOverview:
        subscriber_count = await self._session.scalar(
            select(func.count()).select_from(SubscriberSnapshot).where(SubscriberSnapshot.shop == shop)
        )
        rows = await self._session.execute(
            select(GiftEligibility.status, func.count())
            .where(GiftEligibility.shop == shop)
            .group_by(GiftEligibility.status)
        )
        counts = {status.value: 0 for status in GiftEligibilityStatus}
        for status, count in rows.all():
            counts[status.value] = count
        last_sync = (
            await self._session.execute(
                select(SyncLog).where(SyncLog.shop == shop).order_by(SyncLog.synced_at.desc()).limit(1)
            )
        ).scalar_one_or_none()
        return ShopOverview(
            shop=shop,
            subscriber_count=subscriber_count or 0,
            eligibility_counts=counts,
            last_sync=last_sync,
        )

    async def list_eligibilities(
        self,
        shop: str,
        *,
        status: GiftEligibilityStatus | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> EligibilityPage:
        page = max(page, 1)
        conditions = [GiftEligibility.shop == shop]
        if status is not None:
            conditions.append(GiftEligibility.status == status)
        total = await self._session.scalar(select(func.count()).select_from(GiftEligibility).where(*conditions))
        result = await self._session.execute(
            select(GiftEligibility)
            .where(*conditions)
            .order_by(GiftEligibility.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return EligibilityPage(
            eligibilities=list(result.scalars().all()),
            total=total or 0,
            page=page,
            page_size=page_size,
        )
