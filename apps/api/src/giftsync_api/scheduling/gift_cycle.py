"""APScheduler wiring for the recurring gift cycle."""

from __future__ import annotations

import inspect
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from giftsync_api.core.settings import settings
from giftsync_api.jobs.gift_cycle import GiftCycleRunner
from giftsync_api.observability.gift_cycle import get_gift_cycle_store

CRON_JOB_ID = "gift-cycle"
STARTUP_JOB_ID = "gift-cycle-startup"


class GiftCycleScheduler:
    """Register the gift cycle on a cron schedule."""

    def __init__(
        self,
        runner: GiftCycleRunner,
        *,
        cron: str | None = None,
        timezone_name: str | None = None,
        startup_delay_seconds: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._runner = runner
        self.cron = cron or settings.gift_cycle_cron
        self._timezone = ZoneInfo(timezone_name or settings.gift_cycle_timezone)
        self._startup_delay = (
            startup_delay_seconds if startup_delay_seconds is not None else settings.gift_cycle_startup_delay_seconds
        )
        self._trigger_label = trigger_label or settings.gift_cycle_trigger_label
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running: bool = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        if self._scheduler is not None:
            return
        scheduler = AsyncIOScheduler(timezone=self._timezone)
        scheduler.add_job(
            self._run,
            trigger=CronTrigger.from_crontab(self.cron, timezone=self._timezone),
            id=CRON_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self._startup_delay > 0:
            scheduler.add_job(
                self._run,
                trigger=DateTrigger(
                    run_date=datetime.now(self._timezone) + timedelta(seconds=self._startup_delay),
                    timezone=self._timezone,
                ),
                id=STARTUP_JOB_ID,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        self._is_running = True
        logger.info(
            "Gift cycle scheduler started",
            cron=self.cron,
            startup_delay_seconds=self._startup_delay,
        )

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Gift cycle scheduler stopped")

    def job_ids(self) -> list[str]:
        if not self._scheduler:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    async def _run(self) -> None:
        try:
            await self._runner.run_cycle(triggered_by=self._trigger_label)
        except Exception as exc:  # pragma: no cover
            logger.exception("Scheduled gift cycle failed", error=str(exc))

    def health(self) -> dict[str, object]:
        return {
            "running": self._is_running,
            "cron": self.cron,
            "cycle_state": self._runner.state.value,
            "metrics": get_gift_cycle_store().snapshot().as_dict(),
        }


__all__ = ["GiftCycleScheduler"]
