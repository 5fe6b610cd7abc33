"""Claim-then-act email dispatch for pending gift eligibilities."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.core.settings import get_settings
from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus
from giftsync_api.models.shop_settings import GiftSettings
from giftsync_api.services.notifications import GiftNotificationService

from .errors import ConfigurationError
from .shop_settings import ShopSettingsService


@dataclass(slots=True)
class DispatchResult:
    claimed: int = 0
    sent: int = 0
    failed: int = 0


class EmailDispatchGate:
    """Emails each ready eligibility at most once.

    Rows are claimed (``pending`` -> ``email_sent``) by a single conditional
    bulk UPDATE before any email goes out; only ids returned by that UPDATE
    are mailed, so an overlapping invocation cannot claim them again. A
    failed send moves the row to ``email_failed``; it is never put back to
    ``pending``.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        notifier: GiftNotificationService,
        send_delay_seconds: float | None = None,
    ) -> None:
        self._session = session
        self._notifier = notifier
        self._send_delay = (
            send_delay_seconds if send_delay_seconds is not None else get_settings().email_send_delay_seconds
        )

    async def dispatch_pending_emails(
        self,
        shop: str,
        *,
        gift_settings: GiftSettings | None = None,
        now: datetime | None = None,
    ) -> DispatchResult:
        if not self._notifier.is_configured:
            raise ConfigurationError(shop, "Email delivery is not configured")
        if gift_settings is None:
            gift_settings = await ShopSettingsService(self._session).get_gift_settings(shop)
            if gift_settings is None:
                raise ConfigurationError(shop, "Gift settings not configured")

        now = now or datetime.now(timezone.utc)
        created_cutoff = now - timedelta(days=gift_settings.email_delay_days)

        ready_ids = (
            await self._session.execute(
                select(GiftEligibility.id).where(
                    GiftEligibility.shop == shop,
                    GiftEligibility.status == GiftEligibilityStatus.PENDING,
                    GiftEligibility.email_sent_at.is_(None),
                    GiftEligibility.created_at <= created_cutoff,
                    GiftEligibility.expires_at > now,
                )
            )
        ).scalars().all()
        result = DispatchResult()
        if not ready_ids:
            await self._session.commit()
            return result

        claimed_ids = (
            await self._session.execute(
                update(GiftEligibility)
                .where(
                    GiftEligibility.id.in_(ready_ids),
                    GiftEligibility.status == GiftEligibilityStatus.PENDING,
                    GiftEligibility.email_sent_at.is_(None),
                )
                .values(status=GiftEligibilityStatus.EMAIL_SENT, email_sent_at=now, updated_at=now)
                .returning(GiftEligibility.id)
                .execution_options(synchronize_session=False)
            )
        ).scalars().all()
        await self._session.commit()
        result.claimed = len(claimed_ids)
        if len(claimed_ids) < len(ready_ids):
            logger.info(
                "Eligibilities claimed by a concurrent dispatch",
                shop=shop,
                ready=len(ready_ids),
                claimed=len(claimed_ids),
            )
        if not claimed_ids:
            return result

        eligibilities = (
            await self._session.execute(
                select(GiftEligibility).where(GiftEligibility.id.in_(claimed_ids)).order_by(GiftEligibility.created_at)
            )
        ).scalars().all()

        for index, eligibility in enumerate(eligibilities):
            if index and self._send_delay > 0:
                await asyncio.sleep(self._send_delay)
            try:
                await self._notifier.send_gift_invitation(
                    eligibility,
                    subject=gift_settings.email_subject,
                    max_gifts=gift_settings.max_gift_products,
                )
            except Exception as exc:
                logger.exception(
                    "Gift email failed",
                    shop=shop,
                    eligibility_id=str(eligibility.id),
                    error=str(exc),
                )
                await self._session.execute(
                    update(GiftEligibility)
                    .where(
                        GiftEligibility.id == eligibility.id,
                        GiftEligibility.status == GiftEligibilityStatus.EMAIL_SENT,
                    )
                    .values(status=GiftEligibilityStatus.EMAIL_FAILED, updated_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                await self._session.commit()
                result.failed += 1
                continue
            result.sent += 1

        logger.bind(summary={"claimed": result.claimed, "sent": result.sent, "failed": result.failed}).info(
            "Gift email dispatch completed", shop=shop
        )
        return result


__all__ = ["DispatchResult", "EmailDispatchGate"]
