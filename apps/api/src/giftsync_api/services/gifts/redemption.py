"""Customer gift verification and redemption."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.core.logging import mask_secret
from giftsync_api.core.settings import get_settings
from giftsync_api.models.gift import (
    REDEEMABLE_STATUSES,
    GiftEligibility,
    GiftEligibilityStatus,
    GiftSelection,
    ensure_aware,
)
from giftsync_api.services.appstle import AppstleClient, GiftLineOutcome, GiftLineRequest

from .errors import (
    EligibilityNotFoundError,
    EligibilityStateError,
    GiftValidationCode,
    GiftValidationError,
)
from .shop_settings import ClientFactory, ShopSettingsService, parse_product_allow_list

MSG_MISSING_INPUT = "Invalid request - missing token or products"
MSG_INVALID_TOKEN = "Invalid gift token. Please use the link from your email."
MSG_EXPIRED = "This gift link has expired"
MSG_ALREADY_REDEEMED = "You have already selected your free gifts"
MSG_NOT_CONFIGURED = "Gift system is not configured. Please contact support."
MSG_APPLIED = "Your free gifts have been added to your next order!"


@dataclass(slots=True)
class SelectedProduct:
    variant_id: str
    title: str | None = None
    quantity: int = 1
    variant_handle: str | None = None


@dataclass(slots=True)
class GiftVerification:
    token: str
    customer_name: str | None
    order_number: int
    max_gifts: int
    eligible_product_ids: list[str]
    expires_at: datetime


@dataclass(slots=True)
class RedemptionOutcome:
    success: bool
    partial: bool
    message: str
    status: GiftEligibilityStatus
    results: list[GiftLineOutcome] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results if not result.success)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GiftRedemptionService:
    """Validates gift tokens and applies customer selections upstream."""

    def __init__(self, session: AsyncSession, *, client_factory: ClientFactory | None = None) -> None:
        self._session = session
        self._shop_settings = ShopSettingsService(session, client_factory=client_factory)

    async def verify(self, *, token: str | None = None, email: str | None = None) -> GiftVerification:
        now = _utcnow()
        if token:
            eligibility = await self._validated_eligibility(token, now)
        elif email:
            eligibility = await self._active_eligibility_for_email(email, now)
        else:
            raise GiftValidationError(GiftValidationCode.MISSING_INPUT, "No token or email provided")

        gift_settings = await self._shop_settings.get_gift_settings(eligibility.shop)
        max_gifts = gift_settings.max_gift_products if gift_settings else get_settings().gift_default_max_products
        return GiftVerification(
            token=eligibility.gift_token,
            customer_name=eligibility.customer_name,
            order_number=eligibility.order_number,
            max_gifts=max_gifts,
            eligible_product_ids=parse_product_allow_list(gift_settings.eligible_product_ids if gift_settings else None),
            expires_at=ensure_aware(eligibility.expires_at),
        )

    async def redeem(self, token: str | None, products: Sequence[SelectedProduct]) -> RedemptionOutcome:
        """Record the customer's selection and apply it to their next order.

        Raises ``GiftValidationError`` for customer errors and
        ``ConfigurationError`` when the shop has no Appstle credentials; in
        both cases nothing has been persisted.
        """

        if not token or not products:
            raise GiftValidationError(GiftValidationCode.MISSING_INPUT, MSG_MISSING_INPUT)

        now = _utcnow()
        eligibility = await self._validated_eligibility(token, now)
        gift_settings = await self._shop_settings.get_gift_settings(eligibility.shop)
        max_gifts = gift_settings.max_gift_products if gift_settings else get_settings().gift_default_max_products
        if len(products) > max_gifts:
            raise GiftValidationError(
                GiftValidationCode.SELECTION_LIMIT,
                f"You can only select up to {max_gifts} products",
            )

        client = await self._shop_settings.build_client(eligibility.shop)
        async with client:
            previous_status = await self._claim(eligibility, now)
            # Unapplied rows from an earlier failed attempt are superseded by this one.
            await self._session.execute(
                delete(GiftSelection).where(
                    GiftSelection.gift_eligibility_id == eligibility.id,
                    GiftSelection.added_to_subscription.is_(False),
                )
            )
            selections = [
                GiftSelection(
                    gift_eligibility_id=eligibility.id,
                    variant_id=product.variant_id,
                    product_title=product.title,
                    quantity=max(product.quantity, 1),
                )
                for product in products
            ]
            self._session.add_all(selections)
            await self._session.commit()

            try:
                results = await client.apply_gift_lines(
                    eligibility.subscription_contract_id,
                    [
                        GiftLineRequest(
                            variant_id=product.variant_id,
                            quantity=max(product.quantity, 1),
                            variant_handle=product.variant_handle,
                            title=product.title,
                        )
                        for product in products
                    ],
                )
            except Exception:
                await self._set_status(eligibility, previous_status)
                raise

        return await self._finalize(eligibility, selections, results, previous_status)

    async def reset(self, eligibility_id: UUID) -> GiftEligibility:
        """Operator do-over: drop selections and return the eligibility to ``pending``."""

        eligibility = await self._get(eligibility_id)
        previous_status = eligibility.status
        await self._session.execute(
            delete(GiftSelection).where(GiftSelection.gift_eligibility_id == eligibility.id)
        )
        if previous_status is GiftEligibilityStatus.EMAIL_FAILED:
            # Clearing the timestamp lets the next dispatch retry the email.
            eligibility.email_sent_at = None
        eligibility.status = GiftEligibilityStatus.PENDING
        eligibility.selected_at = None
        eligibility.applied_at = None
        eligibility.updated_at = _utcnow()
        await self._session.commit()
        logger.info(
            "Gift eligibility reset",
            shop=eligibility.shop,
            eligibility_id=str(eligibility.id),
            previous_status=previous_status.value,
        )
        return eligibility

    async def retry_failed_selections(self, eligibility_id: UUID) -> RedemptionOutcome:
        """Re-apply selections that did not reach the subscription (``selected`` -> ``applied``)."""

        eligibility = await self._get(eligibility_id)
        if eligibility.status is not GiftEligibilityStatus.SELECTED:
            raise EligibilityStateError(eligibility.id, eligibility.status.value, "retry")

        client = await self._shop_settings.build_client(eligibility.shop)
        pending = (
            await self._session.execute(
                select(GiftSelection)
                .where(
                    GiftSelection.gift_eligibility_id == eligibility.id,
                    GiftSelection.added_to_subscription.is_(False),
                )
                .order_by(GiftSelection.created_at)
            )
        ).scalars().all()

        async with client:
            claimed = await self._compare_and_set(
                eligibility, GiftEligibilityStatus.SELECTED, GiftEligibilityStatus.SELECTING, _utcnow()
            )
            if not claimed:
                raise EligibilityStateError(eligibility.id, eligibility.status.value, "retry")
            try:
                results = await client.apply_gift_lines(
                    eligibility.subscription_contract_id,
                    [
                        GiftLineRequest(
                            variant_id=selection.variant_id,
                            quantity=selection.quantity,
                            title=selection.product_title,
                        )
                        for selection in pending
                    ],
                )
            except Exception:
                await self._set_status(eligibility, GiftEligibilityStatus.SELECTED)
                raise

        self._record_results(pending, results)
        remaining = await self._session.scalar(
            select(GiftSelection.id)
            .where(
                GiftSelection.gift_eligibility_id == eligibility.id,
                GiftSelection.added_to_subscription.is_(False),
            )
            .limit(1)
        )
        now = _utcnow()
        if remaining is None:
            eligibility.status = GiftEligibilityStatus.APPLIED
            eligibility.applied_at = now
        else:
            eligibility.status = GiftEligibilityStatus.SELECTED
        eligibility.updated_at = now
        await self._session.commit()

        failed = sum(1 for result in results if not result.success)
        logger.info(
            "Retried gift selections",
            shop=eligibility.shop,
            eligibility_id=str(eligibility.id),
            attempted=len(results),
            failed=failed,
        )
        return RedemptionOutcome(
            success=failed == 0,
            partial=0 < failed < len(results),
            message=MSG_APPLIED if failed == 0 else f"{failed} of {len(results)} products still failed",
            status=eligibility.status,
            results=results,
        )

    async def _validated_eligibility(self, token: str, now: datetime) -> GiftEligibility:
        eligibility = (
            await self._session.execute(select(GiftEligibility).where(GiftEligibility.gift_token == token))
        ).scalar_one_or_none()
        if eligibility is None:
            logger.info("Unknown gift token presented", token=mask_secret(token, visible=8))
            raise GiftValidationError(GiftValidationCode.INVALID_TOKEN, MSG_INVALID_TOKEN)
        if eligibility.is_expired(now):
            raise GiftValidationError(GiftValidationCode.EXPIRED, MSG_EXPIRED)
        if eligibility.status not in REDEEMABLE_STATUSES:
            raise GiftValidationError(GiftValidationCode.ALREADY_REDEEMED, MSG_ALREADY_REDEEMED)
        return eligibility

    async def _active_eligibility_for_email(self, email: str, now: datetime) -> GiftEligibility:
        normalized = email.strip().lower()
        rows = (
            await self._session.execute(
                select(GiftEligibility)
                .where(GiftEligibility.customer_email.ilike(normalized))
                .order_by(GiftEligibility.created_at.desc())
            )
        ).scalars().all()
        for eligibility in rows:
            if eligibility.status in REDEEMABLE_STATUSES and not eligibility.is_expired(now):
                return eligibility
        if any(
            eligibility.status in (GiftEligibilityStatus.SELECTED, GiftEligibilityStatus.APPLIED)
            for eligibility in rows
        ):
            raise GiftValidationError(
                GiftValidationCode.ALREADY_REDEEMED,
                "You have already selected your free gifts for this milestone!",
            )
        raise GiftValidationError(
            GiftValidationCode.INVALID_TOKEN,
            "No active gift found for this email. You may not be eligible yet, or your gift has expired.",
        )

    async def _claim(self, eligibility: GiftEligibility, now: datetime) -> GiftEligibilityStatus:
        """Atomically move a redeemable eligibility to ``selecting``; returns the prior status."""

        for _ in range(2):
            current = eligibility.status
            if current not in REDEEMABLE_STATUSES or eligibility.is_expired(now):
                break
            if await self._compare_and_set(eligibility, current, GiftEligibilityStatus.SELECTING, now):
                return current
            # Lost a race (a dispatch may have moved pending -> email_sent); re-read once.
            await self._session.refresh(eligibility)
        logger.info(
            "Concurrent gift redemption rejected",
            shop=eligibility.shop,
            eligibility_id=str(eligibility.id),
        )
        raise GiftValidationError(GiftValidationCode.ALREADY_REDEEMED, MSG_ALREADY_REDEEMED)

    async def _compare_and_set(
        self,
        eligibility: GiftEligibility,
        expected: GiftEligibilityStatus,
        target: GiftEligibilityStatus,
        now: datetime,
    ) -> bool:
        values: dict[str, object] = {"status": target, "updated_at": now}
        if target is GiftEligibilityStatus.SELECTING and expected in REDEEMABLE_STATUSES:
            values["selected_at"] = now
        swapped = (
            await self._session.execute(
                update(GiftEligibility)
                .where(GiftEligibility.id == eligibility.id, GiftEligibility.status == expected)
                .values(**values)
                .returning(GiftEligibility.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        await self._session.commit()
        if swapped is None:
            return False
        eligibility.status = target
        if "selected_at" in values:
            eligibility.selected_at = now
        return True

    async def _set_status(self, eligibility: GiftEligibility, status: GiftEligibilityStatus) -> None:
        await self._session.execute(
            update(GiftEligibility)
            .where(GiftEligibility.id == eligibility.id)
            .values(status=status, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        eligibility.status = status

    def _record_results(self, selections: Sequence[GiftSelection], results: Sequence[GiftLineOutcome]) -> None:
        for selection, result in zip(selections, results):
            selection.added_to_subscription = result.success
            selection.appstle_line_id = result.line_id
            selection.error_message = None if result.success else result.error

    async def _finalize(
        self,
        eligibility: GiftEligibility,
        selections: Sequence[GiftSelection],
        results: list[GiftLineOutcome],
        previous_status: GiftEligibilityStatus,
    ) -> RedemptionOutcome:
        """Record per-product results and settle the eligibility status.

        All products applied gives ``applied`` and some applied gives ``selected``.
        When none reached the subscription the eligibility returns to
        ``previous_status`` instead of ``selected``, so the same token can be
        redeemed again. The failed rows stay for diagnostics until that next
        attempt replaces them.
        """

        self._record_results(selections, results)
        succeeded = sum(1 for result in results if result.success)
        failed = len(results) - succeeded
        now = _utcnow()

        if failed == 0:
            eligibility.status = GiftEligibilityStatus.APPLIED
            eligibility.applied_at = now
        elif succeeded:
            eligibility.status = GiftEligibilityStatus.SELECTED
        else:
            # Nothing reached the subscription; let the customer try again.
            eligibility.status = previous_status
        eligibility.updated_at = now
        await self._session.commit()

        errors = "; ".join(result.error or "unknown error" for result in results if not result.success)
        logger.info(
            "Gift redemption processed",
            shop=eligibility.shop,
            eligibility_id=str(eligibility.id),
            succeeded=succeeded,
            failed=failed,
            status=eligibility.status.value,
        )

        if failed == 0:
            return RedemptionOutcome(True, False, MSG_APPLIED, eligibility.status, results)
        if succeeded:
            return RedemptionOutcome(
                True,
                True,
                f"{succeeded} of {len(results)} products were added. {failed} failed: {errors}",
                eligibility.status,
                results,
            )
        return RedemptionOutcome(
            False,
            False,
            f"We could not add your gifts to your next order: {errors}",
            eligibility.status,
            results,
        )

    async def _get(self, eligibility_id: UUID) -> GiftEligibility:
        eligibility = await self._session.get(GiftEligibility, eligibility_id)
        if eligibility is None:
            raise EligibilityNotFoundError(eligibility_id)
        return eligibility


__all__ = [
    "GiftRedemptionService",
    "GiftVerification",
    "RedemptionOutcome",
    "SelectedProduct",
]
