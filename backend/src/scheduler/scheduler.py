from __future__ import annotations

from datetime import datetime, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.src.contracts.interfaces import ISyncJob

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """Runs a sync job periodically on the running event loop."""

    def __init__(self, job: ISyncJob, interval_minutes: int) -> None:
        self._scheduler = AsyncIOScheduler()
        self._job = job
        self._interval_minutes = interval_minutes

    def start(self) -> None:
        self._scheduler.add_job(
            self._run_cycle,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id="catalog_sync",
            name="Sync store catalogs and send notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(tz=timezone.utc),
        )
        self._scheduler.start()
        logger.info("scheduler_configured", interval_minutes=self._interval_minutes)

    def stop(self) -> None:
        self._scheduler.shutdown(wait=False)
        logger.info("scheduler_shutdown")

    async def trigger_now(self) -> None:
        """Run one cycle immediately, outside the interval."""
        await self._run_cycle()

    async def _run_cycle(self) -> None:
        logger.info("sync_job_start")
        try:
            summary = await self._job.run()
        except Exception:
            logger.error("sync_job_error", exc_info=True)
            return
        logger.info("sync_job_complete", summary=summary)
