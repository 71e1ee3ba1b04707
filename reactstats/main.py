"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from reactstats.config import Settings, load_settings
from reactstats.db import Database
from reactstats.discord_api import DiscordClient
from reactstats.reports import ReportRunner
from reactstats.scheduler import JobScheduler

LOGGER = logging.getLogger(__name__)


def build_scheduler(settings: Settings, db: Database) -> JobScheduler:
    """Wire the report runner and scheduler from settings."""

    client = DiscordClient(
        token=settings.discord_token,
        base_url=settings.discord_api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
    runner = ReportRunner(db=db, client=client, report_style=settings.report_style)
    return JobScheduler(
        db=db,
        runner=runner,
        poll_interval_seconds=settings.scheduler_poll_interval_seconds,
    )


async def run() -> None:
    """Initialize storage and run the report scheduler until cancelled."""

    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())
    LOGGER.info("DB location %s", settings.database_path)

    db = Database(settings.database_path)
    db.initialize()

    scheduler = build_scheduler(settings, db)
    try:
        await scheduler.run_forever()
    except asyncio.CancelledError:
        raise
    finally:
        scheduler.stop()
        await scheduler.wait_idle()
        LOGGER.info("Scheduler shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
