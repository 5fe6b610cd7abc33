"""Per-shop gift cycle: sync subscribers, issue eligibilities, send emails."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.observability.gift_cycle import GiftCycleObservabilityStore, get_gift_cycle_store
from giftsync_api.observability.tracing import get_tracer
from giftsync_api.services.gifts import (
    ClientFactory,
    ConfigurationError,
    EmailDispatchGate,
    MilestoneEvaluator,
    ShopSettingsService,
    SubscriberReconciler,
    parse_trigger_thresholds,
)
from giftsync_api.services.notifications import GiftNotificationService

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]
NotifierFactory = Callable[[], GiftNotificationService]


class CycleState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(slots=True)
class ShopCycleResult:
    shop: str
    subscribers_synced: int = 0
    eligibilities_created: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CycleSummary:
    triggered_by: str
    started_at: datetime
    completed_at: datetime | None = None
    skipped: bool = False
    results: list[ShopCycleResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.skipped and all(not result.errors for result in self.results)

    @property
    def shops_processed(self) -> int:
        return len(self.results)

    def totals(self) -> Dict[str, int]:
        return {
            "shops": len(self.results),
            "subscribers_synced": sum(result.subscribers_synced for result in self.results),
            "eligibilities_created": sum(result.eligibilities_created for result in self.results),
            "emails_sent": sum(result.emails_sent for result in self.results),
            "emails_failed": sum(result.emails_failed for result in self.results),
            "shops_with_errors": sum(1 for result in self.results if result.errors),
        }


class GiftCycleRunner:
    """Runs the gift cycle for every enabled shop, one cycle at a time.

    Overlapping triggers (scheduler, HTTP, operator) are suppressed while a
    cycle is in flight. The guard is in-process only.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        client_factory: ClientFactory | None = None,
        notifier_factory: NotifierFactory | None = None,
        email_send_delay_seconds: float | None = None,
        store: GiftCycleObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._notifier_factory = notifier_factory or GiftNotificationService
        self._email_send_delay = email_send_delay_seconds
        self._store = store or get_gift_cycle_store()
        self._state = CycleState.IDLE
        self.last_summary: CycleSummary | None = None

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is CycleState.RUNNING

    async def run_cycle(self, *, triggered_by: str = "manual") -> CycleSummary:
        summary = CycleSummary(triggered_by=triggered_by, started_at=datetime.now(timezone.utc))
        if self._state is CycleState.RUNNING:
            logger.info("Gift cycle already running; skipping trigger", triggered_by=triggered_by)
            self._store.record_overlap()
            summary.skipped = True
            summary.completed_at = summary.started_at
            return summary

        self._state = CycleState.RUNNING
        self._store.record_start(triggered_by)
        try:
            for shop in await self._enabled_shops():
                result = ShopCycleResult(shop=shop)
                try:
                    await self._run_shop(result, triggered_by)
                except Exception as exc:
                    logger.exception("Shop processing failed", shop=shop, error=str(exc))
                    result.errors.append(f"Shop processing failed: {exc}")
                summary.results.append(result)
                self._store.record_shop(
                    shop,
                    eligibilities_created=result.eligibilities_created,
                    emails_sent=result.emails_sent,
                    emails_failed=result.emails_failed,
                    errors=result.errors,
                )
        finally:
            self._state = CycleState.IDLE
            summary.completed_at = datetime.now(timezone.utc)
            self._store.record_complete()

        self.last_summary = summary
        logger.bind(summary=summary.totals()).info("Gift cycle completed", triggered_by=triggered_by)
        return summary

    async def _enabled_shops(self) -> list[str]:
        session = await self._ensure_session()
        async with session as managed_session:
            enabled = await ShopSettingsService(managed_session).list_enabled_gift_settings()
            return [gift_settings.shop for gift_settings in enabled]

    async def _run_shop(self, result: ShopCycleResult, triggered_by: str) -> None:
        shop = result.shop
        tracer = get_tracer()
        with tracer.start_as_current_span("gift_cycle.shop", attributes={"shop": shop, "triggered_by": triggered_by}):
            session = await self._ensure_session()
            async with session as managed_session:
                settings_service = ShopSettingsService(managed_session, client_factory=self._client_factory)
                gift_settings = await settings_service.get_gift_settings(shop)
                if gift_settings is None or not gift_settings.enabled:
                    return
                try:
                    client = await settings_service.build_client(shop)
                except ConfigurationError as exc:
                    logger.warning("Skipping shop without Appstle credentials", shop=shop)
                    result.errors.append(str(exc))
                    return

                thresholds = parse_trigger_thresholds(gift_settings.trigger_order_numbers)
                async with client:
                    try:
                        sync = await SubscriberReconciler(managed_session).reconcile(
                            shop,
                            client,
                            min_orders=min(thresholds) if thresholds else 0,
                            triggered_by=triggered_by,
                        )
                        result.subscribers_synced = sync.total_synced
                    except Exception as exc:
                        result.errors.append(f"Subscriber sync failed: {exc}")

                try:
                    evaluation = await MilestoneEvaluator(managed_session).evaluate_eligibility(shop)
                    result.eligibilities_created = evaluation.created
                except Exception as exc:
                    await managed_session.rollback()
                    logger.exception("Eligibility evaluation failed", shop=shop, error=str(exc))
                    result.errors.append(f"Eligibility evaluation failed: {exc}")

                try:
                    dispatch = await EmailDispatchGate(
                        managed_session,
                        notifier=self._notifier_factory(),
                        send_delay_seconds=self._email_send_delay,
                    ).dispatch_pending_emails(shop)
                    result.emails_sent = dispatch.sent
                    result.emails_failed = dispatch.failed
                except ConfigurationError as exc:
                    logger.warning("Gift emails not dispatched", shop=shop, reason=str(exc))
                    result.errors.append(str(exc))
                except Exception as exc:
                    await managed_session.rollback()
                    logger.exception("Gift email dispatch failed", shop=shop, error=str(exc))
                    result.errors.append(f"Email dispatch failed: {exc}")

        logger.info(
            "Gift cycle shop processed",
            shop=shop,
            subscribers_synced=result.subscribers_synced,
            eligibilities_created=result.eligibilities_created,
            emails_sent=result.emails_sent,
            emails_failed=result.emails_failed,
            errors=len(result.errors),
        )

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["CycleState", "CycleSummary", "GiftCycleRunner", "ShopCycleResult"]
