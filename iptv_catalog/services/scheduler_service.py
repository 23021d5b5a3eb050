import logging
from collections import Counter
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from iptv_catalog.config import CustomSettings, settings as default_settings
from iptv_catalog.services.catalog_service import CatalogService


logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "catalog_refresh"


class CatalogRefreshScheduler:
    """Rebuilds every cached catalog on a cron schedule"""

    def __init__(self, service: CatalogService, settings: CustomSettings | None = None):
        self.service = service
        self.settings = settings or default_settings
        self.scheduler: AsyncIOScheduler | None = None

    async def _refresh_job(self) -> None:
        """Refresh tracked catalogs, then drop expired shared entries"""
        logger.info("Scheduled catalog refresh triggered")
        try:
            outcomes = await self.service.refresh_tracked()
            purged = await self.service.purge_expired()
        except Exception as e:
            logger.error(f"Exception in scheduled refresh: {e}", exc_info=True)
            return

        counts = Counter(outcomes.values())
        logger.info(
            "Scheduled refresh finished: %s refreshed, %s skipped as recent, %s kept previous, %s failed, %s evicted, %s shared entries purged",
            counts["refreshed"],
            counts["skipped"],
            counts["kept"],
            counts["failed"],
            counts["evicted"],
            purged,
        )

    def start(self) -> None:
        """Schedule the refresh job and start the scheduler"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Refresh scheduler already running")
            return

        try:
            trigger = CronTrigger.from_crontab(self.settings.refresh_cron, timezone='UTC')
        except (ValueError, KeyError) as exc:
            logger.error("Invalid refresh cron '%s': %s", self.settings.refresh_cron, exc)
            raise

        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.scheduler.add_job(
            self._refresh_job,
            trigger=trigger,
            id=REFRESH_JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.settings.refresh_misfire_grace_sec
        )
        self.scheduler.start()

        next_time = self.get_next_run_time()
        logger.info("Refresh scheduler started, next run at %s", next_time.isoformat() if next_time else "unknown")

    def shutdown(self) -> None:
        """Stop the scheduler without waiting for a running refresh"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Refresh scheduler stopped")
        self.scheduler = None

    def get_next_run_time(self) -> datetime | None:
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(REFRESH_JOB_ID)
        return job.next_run_time if job else None
