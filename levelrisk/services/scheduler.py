"""
Risk Scheduler — runs in a separate process (levelrisk-scheduler).

NOT inside the API process. Prevents background jobs from blocking API requests.

Jobs:
1. Snapshot (every SNAPSHOT_INTERVAL_MINUTES) — evaluates every level at one
   instant, so windows that expire without new input are re-scored, and
   stores the set for fast historical reads
2. Retention purge (daily at RETENTION_PURGE_HOUR UTC) — deletes inputs and
   snapshots past their retention windows; alerts and audit records are kept
"""

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from levelrisk.services.risk_service import RiskPipeline

logger = structlog.get_logger(__name__)


class RiskScheduler:
    """Background scheduler for snapshots and retention."""

    def __init__(
        self,
        pipeline: RiskPipeline,
        snapshot_interval_minutes: int = 15,
        purge_hour: int = 3,
    ):
        self.pipeline = pipeline
        self.snapshot_interval_minutes = snapshot_interval_minutes
        self.purge_hour = purge_hour
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    def start(self):
        """Register and start all scheduled jobs."""
        self.scheduler.add_job(
            self.run_snapshot,
            IntervalTrigger(minutes=self.snapshot_interval_minutes),
            id="snapshot",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_retention_purge,
            CronTrigger(hour=self.purge_hour, minute=0),
            id="retention_purge",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "risk_scheduler_started",
            snapshot_interval_minutes=self.snapshot_interval_minutes,
            purge_hour=self.purge_hour,
        )

    def stop(self):
        """Gracefully stop the scheduler."""
        self.scheduler.shutdown(wait=True)
        logger.info("risk_scheduler_stopped")

    async def run_snapshot(self):
        try:
            snapshot = await self.pipeline.take_snapshot()
        except Exception as e:
            logger.error("snapshot_failed", error=str(e))
            return
        logger.info(
            "snapshot_completed",
            snapshot_id=snapshot.id,
            timestamp=snapshot.timestamp.isoformat(),
            locations=len(snapshot.states),
        )

    async def run_retention_purge(self):
        try:
            purged = await self.pipeline.purge_expired()
        except Exception as e:
            logger.error("retention_purge_failed", error=str(e))
            return
        logger.info("retention_purge_job_completed", **purged)
