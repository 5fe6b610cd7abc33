import pytest
from sqlalchemy import select

from giftsync_api.models.subscriber import SubscriberSnapshot, SyncLog, SyncLogStatus
from giftsync_api.services.appstle import UpstreamHttpError
from giftsync_api.services.gifts import SubscriberReconciler

SHOP = "gift-shop.myshopify.com"


async def _snapshot_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(
            select(SubscriberSnapshot).where(SubscriberSnapshot.shop == SHOP).order_by(SubscriberSnapshot.contract_id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(session_factory, fake_appstle) -> None:
    fake_appstle.add_contract("1", delivered=2, email="one@example.com")
    fake_appstle.add_contract("2", delivered=5, email="two@example.com")

    async with session_factory() as session:
        first = await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client())
    rows_after_first = [(row.contract_id, row.total_orders_delivered, row.customer_email) for row in await _snapshot_rows(session_factory)]

    async with session_factory() as session:
        second = await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client())
    rows_after_second = [(row.contract_id, row.total_orders_delivered, row.customer_email) for row in await _snapshot_rows(session_factory)]

    assert first.total_synced == second.total_synced == 2
    assert rows_after_first == rows_after_second == [("1", 2, "one@example.com"), ("2", 5, "two@example.com")]

    async with session_factory() as session:
        logs = (await session.execute(select(SyncLog).where(SyncLog.shop == SHOP))).scalars().all()
    assert len(logs) == 2
    assert all(log.status == SyncLogStatus.SUCCESS for log in logs)


@pytest.mark.asyncio
async def test_reconcile_replaces_previous_snapshot(session_factory, fake_appstle) -> None:
    fake_appstle.add_contract("1", delivered=2)
    fake_appstle.add_contract("2", delivered=5)

    async with session_factory() as session:
        await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client())

    fake_appstle.contracts = fake_appstle.contracts[1:]
    fake_appstle.set_delivered("2", 6)

    async with session_factory() as session:
        await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client())

    rows = await _snapshot_rows(session_factory)
    assert [(row.contract_id, row.total_orders_delivered) for row in rows] == [("2", 6)]


@pytest.mark.asyncio
async def test_reconcile_filters_by_min_orders_and_status(session_factory, fake_appstle) -> None:
    fake_appstle.add_contract("1", delivered=1)
    fake_appstle.add_contract("2", delivered=4, status="PAUSED")
    fake_appstle.add_contract("3", delivered=7, status="CANCELLED")
    fake_appstle.add_contract("4", delivered=9)

    async with session_factory() as session:
        result = await SubscriberReconciler(session).reconcile(
            SHOP,
            fake_appstle.build_client(),
            min_orders=3,
            status_filter=["active", "PAUSED"],
            triggered_by="scheduler",
        )

    assert result.total_fetched == 4
    assert result.total_synced == 2
    assert [row.contract_id for row in await _snapshot_rows(session_factory)] == ["2", "4"]

    listing_calls = [r for r in fake_appstle.requests if r.url.path.endswith("subscription-contract-details")]
    assert all("status" not in request.url.params for request in listing_calls)

    async with session_factory() as session:
        log = await SubscriberReconciler(session).last_sync(SHOP)
    assert log.filter_min_orders == 3
    assert log.triggered_by == "scheduler"


@pytest.mark.asyncio
async def test_single_status_filter_is_sent_upstream(session_factory, fake_appstle) -> None:
    fake_appstle.add_contract("1", delivered=3)
    fake_appstle.add_contract("2", delivered=3, status="PAUSED")

    async with session_factory() as session:
        result = await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client(), status_filter="ACTIVE")

    assert result.total_synced == 1
    assert fake_appstle.requests[0].url.params["status"] == "ACTIVE"


@pytest.mark.asyncio
async def test_failed_fetch_keeps_snapshot_and_logs_failure(session_factory, fake_appstle) -> None:
    fake_appstle.add_contract("1", delivered=3)
    async with session_factory() as session:
        await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client())

    fake_appstle.listing_error = 500
    async with session_factory() as session:
        with pytest.raises(UpstreamHttpError):
            await SubscriberReconciler(session).reconcile(SHOP, fake_appstle.build_client())

    assert [row.contract_id for row in await _snapshot_rows(session_factory)] == ["1"]
    async with session_factory() as session:
        last = await SubscriberReconciler(session).last_sync(SHOP)
    assert last.status == SyncLogStatus.FAILED
    assert "500" in last.error_message


@pytest.mark.asyncio
async def test_list_and_clear_subscribers(session_factory, fake_appstle) -> None:
    for index, delivered in enumerate([1, 8, 4]):
        fake_appstle.add_contract(str(index), delivered=delivered)
    async with session_factory() as session:
        reconciler = SubscriberReconciler(session)
        await reconciler.reconcile(SHOP, fake_appstle.build_client())
        page = await reconciler.list_subscribers(SHOP, page=1, page_size=2)
        deleted = await reconciler.clear(SHOP)

    assert page.total == 3
    assert page.total_pages == 2
    assert [row.total_orders_delivered for row in page.subscribers] == [8, 4]
    assert deleted == 3
    assert await _snapshot_rows(session_factory) == []
