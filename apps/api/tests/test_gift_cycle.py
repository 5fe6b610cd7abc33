import asyncio

import pytest
from sqlalchemy import select

from giftsync_api.jobs.gift_cycle import CycleState, GiftCycleRunner
from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus
from giftsync_api.models.subscriber import SyncLog
from giftsync_api.observability.gift_cycle import get_gift_cycle_store
from giftsync_api.services.notifications import GiftNotificationService, InMemoryEmailBackend

SHOP = "gift-shop.myshopify.com"
OTHER_SHOP = "other-shop.myshopify.com"


def _runner(session_factory, fake_appstle) -> tuple[GiftCycleRunner, InMemoryEmailBackend]:
    backend = InMemoryEmailBackend()
    notifier = GiftNotificationService(backend=backend)
    runner = GiftCycleRunner(
        session_factory,
        client_factory=fake_appstle.client_factory,
        notifier_factory=lambda: notifier,
        email_send_delay_seconds=0,
    )
    return runner, backend


async def _milestones(factory, shop: str = SHOP) -> list[int]:
    async with factory() as session:
        rows = await session.execute(
            select(GiftEligibility.order_number)
            .where(GiftEligibility.shop == shop)
            .order_by(GiftEligibility.order_number)
        )
        return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_cycle_issues_one_gift_per_milestone_as_orders_accumulate(
    session_factory, shop_seeder, fake_appstle
) -> None:
    await shop_seeder(session_factory, thresholds="3,5,10")
    fake_appstle.add_contract("600", delivered=3)
    fake_appstle.add_contract("601", delivered=1, email="early@example.com")
    runner, backend = _runner(session_factory, fake_appstle)

    first = await runner.run_cycle(triggered_by="test")
    assert first.success is True
    assert first.results[0].subscribers_synced == 1
    assert first.results[0].eligibilities_created == 1
    assert first.results[0].emails_sent == 1
    assert await _milestones(session_factory) == [3]

    fake_appstle.set_delivered("600", 5)
    second = await runner.run_cycle(triggered_by="test")
    assert second.results[0].eligibilities_created == 1
    assert await _milestones(session_factory) == [3, 5]

    fake_appstle.set_delivered("600", 10)
    await runner.run_cycle(triggered_by="test")
    repeat = await runner.run_cycle(triggered_by="test")

    assert repeat.results[0].eligibilities_created == 0
    assert repeat.results[0].emails_sent == 0
    assert await _milestones(session_factory) == [3, 5, 10]
    assert len(backend.sent_messages) == 3
    assert {message["To"] for message in backend.sent_messages} == {"subscriber@example.com"}

    async with session_factory() as session:
        statuses = (await session.execute(select(GiftEligibility.status))).scalars().all()
        logs = (await session.execute(select(SyncLog).where(SyncLog.shop == SHOP))).scalars().all()
    assert set(statuses) == {GiftEligibilityStatus.EMAIL_SENT}
    assert len(logs) == 4
    assert {log.triggered_by for log in logs} == {"test"}

    snapshot = get_gift_cycle_store().snapshot()
    assert snapshot.totals["runs"] == 4
    assert snapshot.totals["eligibilities_created"] == 3
    assert snapshot.last_triggered_by == "test"
    assert runner.last_summary is repeat


@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped(session_factory, shop_seeder, fake_appstle) -> None:
    await shop_seeder(session_factory)
    fake_appstle.add_contract("610", delivered=3)
    runner, _ = _runner(session_factory, fake_appstle)

    first, second = await asyncio.gather(
        runner.run_cycle(triggered_by="scheduler"),
        runner.run_cycle(triggered_by="http"),
    )

    assert first.skipped is False
    assert second.skipped is True
    assert second.success is False
    assert runner.state is CycleState.IDLE
    assert get_gift_cycle_store().snapshot().totals["skipped_overlaps"] == 1
    assert await _milestones(session_factory) == [3]


@pytest.mark.asyncio
async def test_shop_failure_does_not_stop_other_shops(session_factory, shop_seeder, fake_appstle) -> None:
    await shop_seeder(session_factory, shop=OTHER_SHOP, api_key=None)
    await shop_seeder(session_factory)
    fake_appstle.add_contract("620", delivered=3)
    runner, backend = _runner(session_factory, fake_appstle)

    summary = await runner.run_cycle(triggered_by="test")

    by_shop = {result.shop: result for result in summary.results}
    assert set(by_shop) == {SHOP, OTHER_SHOP}
    assert by_shop[OTHER_SHOP].errors
    assert by_shop[SHOP].errors == []
    assert by_shop[SHOP].eligibilities_created == 1
    assert summary.success is False
    assert len(backend.sent_messages) == 1
    assert OTHER_SHOP in get_gift_cycle_store().snapshot().last_shop_errors


@pytest.mark.asyncio
async def test_disabled_shop_is_not_processed(session_factory, shop_seeder, fake_appstle) -> None:
    await shop_seeder(session_factory, enabled=False)
    fake_appstle.add_contract("630", delivered=3)
    runner, _ = _runner(session_factory, fake_appstle)

    summary = await runner.run_cycle(triggered_by="test")

    assert summary.results == []
    assert fake_appstle.requests == []


@pytest.mark.asyncio
async def test_failed_sync_keeps_evaluating_existing_snapshot(session_factory, shop_seeder, fake_appstle) -> None:
    await shop_seeder(session_factory)
    fake_appstle.add_contract("640", delivered=3)
    runner, _ = _runner(session_factory, fake_appstle)
    await runner.run_cycle(triggered_by="test")

    fake_appstle.listing_error = 503
    summary = await runner.run_cycle(triggered_by="test")

    result = summary.results[0]
    assert result.errors and result.errors[0].startswith("Subscriber sync failed")
    assert result.eligibilities_created == 0
    assert await _milestones(session_factory) == [3]


@pytest.mark.asyncio
async def test_unexpected_shop_error_is_recorded_and_cycle_continues(
    session_factory, shop_seeder, fake_appstle
) -> None:
    broken_shop = "aaa-shop.myshopify.com"
    await shop_seeder(session_factory, shop=broken_shop)
    await shop_seeder(session_factory)
    fake_appstle.add_contract("650", delivered=3)

    def client_factory(app_settings):
        if app_settings.shop == broken_shop:
            raise RuntimeError("client construction failed")
        return fake_appstle.client_factory(app_settings)

    backend = InMemoryEmailBackend()
    notifier = GiftNotificationService(backend=backend)
    runner = GiftCycleRunner(
        session_factory,
        client_factory=client_factory,
        notifier_factory=lambda: notifier,
        email_send_delay_seconds=0,
    )

    summary = await runner.run_cycle(triggered_by="test")

    by_shop = {result.shop: result for result in summary.results}
    assert by_shop[broken_shop].errors == ["Shop processing failed: client construction failed"]
    assert by_shop[SHOP].errors == []
    assert by_shop[SHOP].eligibilities_created == 1
    assert len(backend.sent_messages) == 1
    assert summary.success is False
    assert runner.state is CycleState.IDLE
