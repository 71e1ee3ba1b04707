"""Report destinations: plain text channels and forum threads."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol, Sequence, Union

from reactstats.models import ScheduledJob
from reactstats.paginator import DeliveryUnit

LOGGER = logging.getLogger(__name__)

DEFAULT_DATE_FORMAT = "%Y-%m-%d"
DEFAULT_THREAD_TITLE = "Top {count} messages - {date}"

_DATE_TOKEN = re.compile(r"\{date(?::([^}]*))?\}")


class MessageSender(Protocol):
    async def send_message(self, channel_id: int, content: str | None = None, embeds: list | None = None) -> object: ...

    async def create_forum_thread(
        self, forum_id: int, name: str, content: str | None = None, embeds: list | None = None
    ) -> int: ...


def format_interval(hours: float) -> str:
    """4.0 -> "4h", 0.5 -> "0.5h"."""

    rounded = Decimal(str(hours)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return f"{rounded:f}".rstrip("0").rstrip(".") + "h"


def format_date(moment: datetime, date_format: str | None) -> str:
    """strftime ``moment``, using the default format when ``date_format`` is missing or unusable."""

    if not date_format or "%" not in date_format:
        return moment.strftime(DEFAULT_DATE_FORMAT)
    try:
        return moment.strftime(date_format)
    except ValueError:
        return moment.strftime(DEFAULT_DATE_FORMAT)


def render_thread_title(template: str, now: datetime, count: int, interval_hours: float) -> str:
    """Substitute ``{date[:format]}``, ``{count}`` and ``{interval}`` in a thread title template."""

    title = _DATE_TOKEN.sub(lambda match: format_date(now, match.group(1)), template)
    return title.replace("{count}", str(count)).replace("{interval}", format_interval(interval_hours))


@dataclass(frozen=True, slots=True)
class ChannelTarget:
    """Post the header and every unit straight into a text channel."""

    channel_id: int

    async def post(self, client: MessageSender, header: str | None, units: Sequence[DeliveryUnit]) -> int:
        if header:
            await client.send_message(self.channel_id, content=header)
        for unit in units:
            await client.send_message(self.channel_id, content=unit.content, embeds=unit.embeds or None)
        return self.channel_id


@dataclass(frozen=True, slots=True)
class ForumTarget:
    """Open a new forum thread titled ``title`` and post everything into it."""

    channel_id: int
    title: str

    async def post(self, client: MessageSender, header: str | None, units: Sequence[DeliveryUnit]) -> int:
        remaining = list(units)
        if header:
            thread_id = await client.create_forum_thread(self.channel_id, self.title, content=header)
        else:
            # Forum posts need a starter message.
            first = remaining.pop(0) if remaining else DeliveryUnit(content=self.title)
            thread_id = await client.create_forum_thread(
                self.channel_id, self.title, content=first.content, embeds=first.embeds or None
            )
        LOGGER.info("Created thread %s in forum %s", thread_id, self.channel_id)
        for unit in remaining:
            await client.send_message(thread_id, content=unit.content, embeds=unit.embeds or None)
        return thread_id


Destination = Union[ChannelTarget, ForumTarget]


def destination_for(job: ScheduledJob, now: datetime) -> Destination:
    if not job.is_forum:
        return ChannelTarget(job.channel_id)
    template = job.thread_title_template or DEFAULT_THREAD_TITLE
    return ForumTarget(job.channel_id, render_thread_title(template, now, job.count, job.interval_hours))
