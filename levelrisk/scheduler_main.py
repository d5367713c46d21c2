"""
Scheduler Entry Point — runs in a separate process.

Usage:
    python -m levelrisk.scheduler_main

This does NOT run a web server. It runs the APScheduler background loop
for periodic snapshots and the daily retention purge.
"""

import asyncio
import signal

import structlog

from levelrisk.config import settings
from levelrisk.db.engine import build_engine, build_session_factory, create_tables
from levelrisk.logging_config import configure_logging
from levelrisk.services.bootstrap import build_services
from levelrisk.services.scheduler import RiskScheduler

logger = structlog.get_logger(__name__)


async def main():
    """Initialize and run the scheduler."""
    logger.info("scheduler_starting", version=settings.app_version)

    engine = build_engine(settings.async_database_url, echo=settings.debug)
    if settings.auto_create_tables:
        await create_tables(engine)
    services = await build_services(settings, build_session_factory(engine))

    scheduler = RiskScheduler(
        services.pipeline,
        snapshot_interval_minutes=settings.snapshot_interval_minutes,
        purge_hour=settings.retention_purge_hour,
    )

    # Score every level once so current state exists before the first interval
    logger.info("running_initial_snapshot")
    await scheduler.run_snapshot()

    scheduler.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", msg="Waiting for jobs... Ctrl+C to stop.")
    await stop_event.wait()

    scheduler.stop()
    await engine.dispose()
    logger.info("scheduler_shutdown_complete")


def run():
    configure_logging()
    if not settings.enable_scheduler:
        logger.info("scheduler_disabled", reason="ENABLE_SCHEDULER is false")
        return
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
