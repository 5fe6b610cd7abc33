"""Milestone detection and at-most-once eligibility creation."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.core.logging import mask_secret
from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus
from giftsync_api.models.shop_settings import GiftSettings
from giftsync_api.models.subscriber import SubscriberSnapshot

from .errors import ConfigurationError, DuplicateEligibilityError
from .shop_settings import ShopSettingsService, parse_trigger_thresholds

_ELIGIBILITY_KEY = ("shop", "subscription_contract_id", "order_number")


class MilestonePolicy(str, Enum):
    """How a delivered-order count is compared to trigger thresholds."""

    CUMULATIVE = "cumulative"
    EXACT = "exact"


def crossed_thresholds(count: int, thresholds: Iterable[int], policy: MilestonePolicy) -> list[int]:
    if policy is MilestonePolicy.EXACT:
        return [threshold for threshold in thresholds if count == threshold]
    return [threshold for threshold in thresholds if count >= threshold]


def generate_gift_token() -> str:
    """256 bits of randomness rendered as 64 hex characters."""

    return secrets.token_hex(32)


@dataclass(slots=True)
class MilestoneCandidate:
    """Subscriber identity needed to issue an eligibility."""

    contract_id: str
    customer_email: str | None
    delivered_orders: int
    customer_id: str | None = None
    customer_name: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: SubscriberSnapshot) -> "MilestoneCandidate":
        return cls(
            contract_id=snapshot.contract_id,
            customer_email=snapshot.customer_email,
            delivered_orders=snapshot.total_orders_delivered,
            customer_id=snapshot.customer_id,
            customer_name=snapshot.customer_name or None,
        )


@dataclass(slots=True)
class EvaluationResult:
    created: int = 0
    already_issued: int = 0
    skipped_without_email: int = 0
    eligibility_ids: list[UUID] = field(default_factory=list)


class MilestoneEvaluator:
    """Creates ``GiftEligibility`` rows exactly once per (shop, contract, threshold)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def evaluate_eligibility(
        self,
        shop: str,
        *,
        policy: MilestonePolicy = MilestonePolicy.CUMULATIVE,
        gift_settings: GiftSettings | None = None,
    ) -> EvaluationResult:
        gift_settings = gift_settings or await self._require_gift_settings(shop)
        thresholds = parse_trigger_thresholds(gift_settings.trigger_order_numbers)
        result = EvaluationResult()
        if not thresholds:
            logger.info("No trigger thresholds configured", shop=shop)
            return result

        snapshots = (
            await self._session.execute(select(SubscriberSnapshot).where(SubscriberSnapshot.shop == shop))
        ).scalars().all()
        existing = await self._existing_keys(shop)

        for snapshot in snapshots:
            await self._issue(
                shop,
                MilestoneCandidate.from_snapshot(snapshot),
                thresholds,
                policy=policy,
                gift_settings=gift_settings,
                existing=existing,
                result=result,
            )

        await self._session.commit()
        logger.info(
            "Milestone evaluation completed",
            shop=shop,
            policy=policy.value,
            subscribers=len(snapshots),
            created=result.created,
            already_issued=result.already_issued,
        )
        return result

    async def record_milestone(
        self,
        shop: str,
        candidate: MilestoneCandidate,
        *,
        policy: MilestonePolicy,
        gift_settings: GiftSettings | None = None,
    ) -> EvaluationResult:
        """Evaluate a single subscriber outside the scheduled sweep."""

        gift_settings = gift_settings or await self._require_gift_settings(shop)
        thresholds = parse_trigger_thresholds(gift_settings.trigger_order_numbers)
        result = EvaluationResult()
        await self._issue(
            shop,
            candidate,
            thresholds,
            policy=policy,
            gift_settings=gift_settings,
            existing=set(),
            result=result,
        )
        await self._session.commit()
        return result

    async def create_manual_eligibility(
        self,
        shop: str,
        *,
        contract_id: str,
        customer_email: str,
        order_number: int,
        customer_name: str | None = None,
        customer_id: str | None = None,
        gift_settings: GiftSettings | None = None,
    ) -> GiftEligibility:
        gift_settings = gift_settings or await self._require_gift_settings(shop)
        eligibility_id = await self._insert_if_absent(
            self._eligibility_values(
                shop,
                MilestoneCandidate(
                    contract_id=contract_id,
                    customer_email=customer_email,
                    delivered_orders=order_number,
                    customer_id=customer_id or "manual",
                    customer_name=customer_name,
                ),
                order_number,
                gift_settings,
            )
        )
        if eligibility_id is None:
            raise DuplicateEligibilityError(shop, contract_id, order_number)
        await self._session.commit()
        eligibility = await self._session.get(GiftEligibility, eligibility_id)
        logger.info("Created manual gift eligibility", shop=shop, contract_id=contract_id, order_number=order_number)
        return eligibility

    async def _require_gift_settings(self, shop: str) -> GiftSettings:
        gift_settings = await ShopSettingsService(self._session).get_gift_settings(shop)
        if gift_settings is None:
            raise ConfigurationError(shop, "Gift settings not configured")
        return gift_settings

    async def _existing_keys(self, shop: str) -> set[tuple[str, int]]:
        rows = await self._session.execute(
            select(GiftEligibility.subscription_contract_id, GiftEligibility.order_number).where(
                GiftEligibility.shop == shop
            )
        )
        return {(contract_id, order_number) for contract_id, order_number in rows.all()}

    async def _issue(
        self,
        shop: str,
        candidate: MilestoneCandidate,
        thresholds: list[int],
        *,
        policy: MilestonePolicy,
        gift_settings: GiftSettings,
        existing: set[tuple[str, int]],
        result: EvaluationResult,
    ) -> None:
        matched = crossed_thresholds(candidate.delivered_orders, thresholds, policy)
        if matched and not candidate.customer_email:
            result.skipped_without_email += 1
            logger.warning("Subscriber crossed milestone without email", shop=shop, contract_id=candidate.contract_id)
            return

        for threshold in matched:
            if (candidate.contract_id, threshold) in existing:
                result.already_issued += 1
                continue
            eligibility_id = await self._insert_if_absent(
                self._eligibility_values(shop, candidate, threshold, gift_settings)
            )
            existing.add((candidate.contract_id, threshold))
            if eligibility_id is None:
                result.already_issued += 1
                continue
            result.created += 1
            result.eligibility_ids.append(eligibility_id)
            logger.info(
                "Gift eligibility created",
                shop=shop,
                contract_id=candidate.contract_id,
                order_number=threshold,
                eligibility_id=str(eligibility_id),
            )

    def _eligibility_values(
        self,
        shop: str,
        candidate: MilestoneCandidate,
        threshold: int,
        gift_settings: GiftSettings,
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        token = generate_gift_token()
        logger.debug("Issuing gift token", shop=shop, token=mask_secret(token, visible=8))
        return {
            "id": uuid4(),
            "shop": shop,
            "subscription_contract_id": candidate.contract_id,
            "customer_id": candidate.customer_id,
            "customer_email": candidate.customer_email,
            "customer_name": candidate.customer_name,
            "order_number": threshold,
            "gift_token": token,
            "status": GiftEligibilityStatus.PENDING,
            "expires_at": now + timedelta(days=gift_settings.gift_expiry_days),
            "created_at": now,
            "updated_at": now,
        }

    async def _insert_if_absent(self, values: dict[str, Any]) -> UUID | None:
        """Insert guarded by the unique milestone key; ``None`` when the row already exists."""

        table = GiftEligibility.__table__
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            statement = postgresql_insert(table).values(**values).on_conflict_do_nothing(index_elements=_ELIGIBILITY_KEY)
        elif dialect == "sqlite":
            statement = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=_ELIGIBILITY_KEY)
        else:
            try:
                async with self._session.begin_nested():
                    await self._session.execute(insert(table).values(**values))
            except IntegrityError:
                return None
            return values["id"]

        result = await self._session.execute(statement)
        return values["id"] if result.rowcount else None


__all__ = [
    "EvaluationResult",
    "MilestoneCandidate",
    "MilestoneEvaluator",
    "MilestonePolicy",
    "crossed_thresholds",
    "generate_gift_token",
]
