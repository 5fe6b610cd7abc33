import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus, ensure_aware
from giftsync_api.models.subscriber import SubscriberSnapshot
from giftsync_api.services.gifts import (
    ConfigurationError,
    DuplicateEligibilityError,
    MilestoneCandidate,
    MilestoneEvaluator,
    MilestonePolicy,
    crossed_thresholds,
)

SHOP = "gift-shop.myshopify.com"


async def _add_snapshot(factory, contract_id: str, delivered: int, *, email: str | None = "sub@example.com") -> None:
    async with factory() as session:
        session.add(
            SubscriberSnapshot(
                shop=SHOP,
                contract_id=contract_id,
                customer_id="7001",
                customer_email=email,
                customer_first_name="Ada",
                customer_last_name="Lovelace",
                status="ACTIVE",
                total_orders_delivered=delivered,
            )
        )
        await session.commit()


async def _eligibilities(factory) -> list[GiftEligibility]:
    async with factory() as session:
        result = await session.execute(
            select(GiftEligibility).order_by(GiftEligibility.subscription_contract_id, GiftEligibility.order_number)
        )
        return list(result.scalars().all())


def test_crossed_thresholds_policies() -> None:
    assert crossed_thresholds(6, [3, 5, 10], MilestonePolicy.CUMULATIVE) == [3, 5]
    assert crossed_thresholds(6, [3, 5, 10], MilestonePolicy.EXACT) == []
    assert crossed_thresholds(5, [3, 5, 10], MilestonePolicy.EXACT) == [5]


@pytest.mark.asyncio
async def test_evaluation_issues_each_crossed_milestone_once(session_factory, shop_seeder) -> None:
    await shop_seeder(session_factory, gift_expiry_days=14)
    await _add_snapshot(session_factory, "c-1", 6)
    await _add_snapshot(session_factory, "c-2", 2)

    async with session_factory() as session:
        first = await MilestoneEvaluator(session).evaluate_eligibility(SHOP)
    async with session_factory() as session:
        second = await MilestoneEvaluator(session).evaluate_eligibility(SHOP)

    assert first.created == 2
    assert second.created == 0
    assert second.already_issued == 2

    rows = await _eligibilities(session_factory)
    assert [(row.subscription_contract_id, row.order_number) for row in rows] == [("c-1", 3), ("c-1", 5)]
    for row in rows:
        assert row.status == GiftEligibilityStatus.PENDING
        assert len(row.gift_token) == 64
        assert row.customer_name == "Ada Lovelace"
        lifetime = ensure_aware(row.expires_at) - ensure_aware(row.created_at)
        assert timedelta(days=13, hours=23) < lifetime <= timedelta(days=14)
    assert rows[0].gift_token != rows[1].gift_token


@pytest.mark.asyncio
async def test_subscriber_without_email_is_skipped(session_factory, shop_seeder) -> None:
    await shop_seeder(session_factory)
    await _add_snapshot(session_factory, "c-1", 5, email=None)

    async with session_factory() as session:
        result = await MilestoneEvaluator(session).evaluate_eligibility(SHOP)

    assert result.created == 0
    assert result.skipped_without_email == 1
    assert await _eligibilities(session_factory) == []


@pytest.mark.asyncio
async def test_evaluation_requires_gift_settings(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(ConfigurationError):
            await MilestoneEvaluator(session).evaluate_eligibility(SHOP)


@pytest.mark.asyncio
async def test_record_milestone_with_exact_policy(session_factory, shop_seeder) -> None:
    await shop_seeder(session_factory)
    candidate = MilestoneCandidate(contract_id="c-9", customer_email="nine@example.com", delivered_orders=6)

    async with session_factory() as session:
        missed = await MilestoneEvaluator(session).record_milestone(SHOP, candidate, policy=MilestonePolicy.EXACT)
        candidate.delivered_orders = 5
        hit = await MilestoneEvaluator(session).record_milestone(SHOP, candidate, policy=MilestonePolicy.EXACT)
        repeat = await MilestoneEvaluator(session).record_milestone(SHOP, candidate, policy=MilestonePolicy.EXACT)

    assert missed.created == 0
    assert hit.created == 1
    assert repeat.created == 0
    assert repeat.already_issued == 1


@pytest.mark.asyncio
async def test_concurrent_evaluations_create_one_row_per_milestone(file_session_factory, shop_seeder) -> None:
    await shop_seeder(file_session_factory)
    for index in range(5):
        await _add_snapshot(file_session_factory, f"c-{index}", 10)

    async def evaluate():
        async with file_session_factory() as session:
            return await MilestoneEvaluator(session).evaluate_eligibility(SHOP)

    results = await asyncio.gather(evaluate(), evaluate())

    async with file_session_factory() as session:
        total = await session.scalar(select(func.count()).select_from(GiftEligibility))
        distinct_keys = await session.scalar(
            select(func.count()).select_from(
                select(GiftEligibility.subscription_contract_id, GiftEligibility.order_number).distinct().subquery()
            )
        )

    assert total == distinct_keys == 15
    assert sum(result.created for result in results) == 15


@pytest.mark.asyncio
async def test_manual_eligibility_rejects_duplicates(session_factory, shop_seeder) -> None:
    await shop_seeder(session_factory)

    async with session_factory() as session:
        evaluator = MilestoneEvaluator(session)
        eligibility = await evaluator.create_manual_eligibility(
            SHOP,
            contract_id="c-1",
            customer_email="manual@example.com",
            order_number=5,
            customer_name="Manual Person",
        )
        with pytest.raises(DuplicateEligibilityError):
            await evaluator.create_manual_eligibility(
                SHOP,
                contract_id="c-1",
                customer_email="manual@example.com",
                order_number=5,
            )

    assert eligibility.customer_id == "manual"
    assert eligibility.status == GiftEligibilityStatus.PENDING
    assert ensure_aware(eligibility.expires_at) > datetime.now(timezone.utc)
