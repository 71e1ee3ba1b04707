"""Execution of a scheduled report: query, paginate, deliver."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence

from reactstats.db import Database
from reactstats.delivery import destination_for, format_interval
from reactstats.discord_api import DiscordClient
from reactstats.models import ScheduledJob, TopMessage
from reactstats.paginator import (
    MAX_PREVIEW_LENGTH,
    DeliveryUnit,
    format_multi_part,
    paginate_embeds,
)

LOGGER = logging.getLogger(__name__)

PreviewFetcher = Callable[[str, int], Awaitable[str]]


async def load_previews(
    fetch_preview: PreviewFetcher,
    messages: Sequence[TopMessage],
    max_length: int = MAX_PREVIEW_LENGTH,
) -> dict[str, str]:
    """Fetch each message's preview once, keyed by permalink."""

    previews: dict[str, str] = {}
    for message in messages:
        if message.permalink not in previews:
            previews[message.permalink] = await fetch_preview(message.permalink, max_length)
    return previews


def report_header(count: int, interval_hours: float, start: datetime, end: datetime) -> str:
    return (
        f"Top {count} messages for the last {format_interval(interval_hours)} "
        f"(from {start:%b %d %H:%M} to {end:%b %d %H:%M} UTC)"
    )


class ReportRunner:
    """Runs one scheduled job against the store and posts the result."""

    def __init__(self, db: Database, client: DiscordClient, report_style: str = "embeds") -> None:
        self._db = db
        self._client = client
        self._report_style = report_style

    async def __call__(self, job: ScheduledJob, now: datetime) -> bool:
        """Execute ``job`` for the window ending at ``now``. Returns True if anything was posted."""

        end = now
        start = end - timedelta(hours=job.interval_hours)

        filters = await asyncio.to_thread(self._db.get_schedule_channels, job.id)
        messages = await asyncio.to_thread(
            self._db.top_messages,
            start,
            end,
            job.count,
            job.guild_id,
            include_channels=[item.channel_id for item in filters if not item.is_excluded],
            exclude_channels=[item.channel_id for item in filters if item.is_excluded],
        )
        if not messages:
            LOGGER.info("No messages found for job %s", job.id)
            return False

        previews = await load_previews(self._client.fetch_preview, messages)
        header = report_header(job.count, job.interval_hours, start, end)
        destination = destination_for(job, now)

        if self._report_style == "text":
            units = [DeliveryUnit(content=part) for part in format_multi_part(messages, previews, header)]
            await destination.post(self._client, None, units)
        else:
            await destination.post(self._client, header, paginate_embeds(messages, previews))

        LOGGER.info("Successfully executed job %s (%d messages)", job.id, len(messages))
        return True
