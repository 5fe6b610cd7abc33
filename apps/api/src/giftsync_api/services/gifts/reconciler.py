"""Replace a shop's cached subscriber snapshot with fresh upstream data."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.models.subscriber import SubscriberSnapshot, SyncLog, SyncLogStatus
from giftsync_api.services.appstle import AppstleClient, ContractRecord


@dataclass(slots=True)
class ReconcileResult:
    total_fetched: int
    total_synced: int
    sync_log_id: UUID | None = None


@dataclass(slots=True)
class SubscriberPage:
    subscribers: list[SubscriberSnapshot]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max((self.total + self.page_size - 1) // self.page_size, 1)


def _normalize_statuses(status_filter: Sequence[str] | str | None) -> list[str]:
    if not status_filter:
        return []
    if isinstance(status_filter, str):
        status_filter = status_filter.split(",")
    return sorted({status.strip().upper() for status in status_filter if status and status.strip()})


def _snapshot_from_record(shop: str, record: ContractRecord, synced_at: datetime) -> SubscriberSnapshot:
    return SubscriberSnapshot(
        shop=shop,
        contract_id=record.contract_id,
        appstle_internal_id=record.internal_id,
        customer_id=record.customer_id,
        customer_email=record.customer_email,
        customer_first_name=record.customer_first_name,
        customer_last_name=record.customer_last_name,
        status=record.status,
        total_orders_delivered=record.delivered_orders,
        last_order_id=record.last_order_name,
        last_order_date=record.last_order_date,
        next_billing_date=record.next_billing_date,
        subscription_data=record.raw,
        synced_at=synced_at,
    )


class SubscriberReconciler:
    """Full-replace sync of ``SubscriberSnapshot`` rows for one shop."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def reconcile(
        self,
        shop: str,
        client: AppstleClient,
        *,
        min_orders: int = 0,
        status_filter: Sequence[str] | str | None = None,
        triggered_by: str = "manual",
    ) -> ReconcileResult:
        """Fetch, filter and replace. Appends one ``SyncLog`` row either way."""

        statuses = _normalize_statuses(status_filter)
        # A single status can be filtered upstream; several are filtered here.
        upstream_status = statuses[0] if len(statuses) == 1 else None
        fetched: list[ContractRecord] = []

        try:
            fetched = await client.fetch_all_contracts(status=upstream_status)
            selected: dict[str, ContractRecord] = {}
            for record in fetched:
                if statuses and record.status not in statuses:
                    continue
                if record.delivered_orders < min_orders:
                    continue
                selected.setdefault(record.contract_id, record)

            synced_at = datetime.now(timezone.utc)
            await self._session.execute(delete(SubscriberSnapshot).where(SubscriberSnapshot.shop == shop))
            self._session.add_all(
                _snapshot_from_record(shop, record, synced_at) for record in selected.values()
            )
            sync_log = SyncLog(
                shop=shop,
                total_fetched=len(fetched),
                total_synced=len(selected),
                filter_min_orders=min_orders,
                status=SyncLogStatus.SUCCESS,
                triggered_by=triggered_by,
                synced_at=synced_at,
            )
            self._session.add(sync_log)
            await self._session.commit()
        except Exception as exc:
            await self._session.rollback()
            sync_log = SyncLog(
                shop=shop,
                total_fetched=len(fetched),
                total_synced=0,
                filter_min_orders=min_orders,
                status=SyncLogStatus.FAILED,
                error_message=str(exc),
                triggered_by=triggered_by,
            )
            self._session.add(sync_log)
            await self._session.commit()
            logger.exception("Subscriber sync failed", shop=shop, error=str(exc), triggered_by=triggered_by)
            raise

        logger.info(
            "Subscriber sync completed",
            shop=shop,
            total_fetched=len(fetched),
            total_synced=len(selected),
            min_orders=min_orders,
            statuses=statuses,
            triggered_by=triggered_by,
        )
        return ReconcileResult(total_fetched=len(fetched), total_synced=len(selected), sync_log_id=sync_log.id)

    async def clear(self, shop: str) -> int:
        result = await self._session.execute(delete(SubscriberSnapshot).where(SubscriberSnapshot.shop == shop))
        await self._session.commit()
        logger.info("Cleared subscriber snapshot", shop=shop, deleted=result.rowcount)
        return result.rowcount or 0

    async def list_subscribers(self, shop: str, *, page: int = 1, page_size: int = 50) -> SubscriberPage:
        page = max(page, 1)
        total = await self._session.scalar(
            select(func.count()).select_from(SubscriberSnapshot).where(SubscriberSnapshot.shop == shop)
        )
        result = await self._session.execute(
            select(SubscriberSnapshot)
            .where(SubscriberSnapshot.shop == shop)
            .order_by(SubscriberSnapshot.total_orders_delivered.desc(), SubscriberSnapshot.contract_id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return SubscriberPage(
            subscribers=list(result.scalars().all()),
            total=total or 0,
            page=page,
            page_size=page_size,
        )

    async def last_sync(self, shop: str) -> SyncLog | None:
        result = await self._session.execute(
            select(SyncLog).where(SyncLog.shop == shop).order_by(SyncLog.synced_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()
