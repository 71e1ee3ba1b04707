"""Reaction ingestion, opt-out handling and on-demand top-message reports."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

from reactstats.db import Database
from reactstats.discord_api import DiscordClient
from reactstats.errors import InvalidRequestError, log_with_reference, reference_reply
from reactstats.models import ReactionEvent, RecordResult, TopMessage
from reactstats.paginator import MAX_ITEMS_PER_UNIT, format_adaptive, paginate_embeds
from reactstats.reports import load_previews

LOGGER = logging.getLogger(__name__)

MAX_RANGE_DAYS = 7
MAX_REPORT_COUNT = 10
MAX_TEXT_REPORT_LIMIT = 50
DATE_FORMAT = "%Y-%m-%d"


@dataclass(slots=True)
class TopReply:
    """Reply to an on-demand top query."""

    content: str
    embeds: list[dict[str, Any]] = field(default_factory=list)
    error_id: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_day(value: str | None, default: date) -> date:
    if not value:
        return default
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError as exc:
        raise InvalidRequestError("Invalid date format. Please use YYYY-MM-DD") from exc


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class ReactionsService:
    """Entry points used by the gateway and command layers."""

    def __init__(
        self,
        db: Database,
        client: DiscordClient | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db = db
        self._client = client
        self._clock = clock

    def record_event(self, event: ReactionEvent) -> RecordResult:
        return self._db.record_reaction_state(event)

    async def refresh_message(self, guild_id: int, channel_id: int, message_id: int) -> RecordResult:
        """Fetch a message's current reactions and record them."""

        if self._client is None:
            raise RuntimeError("A Discord client is required to refresh messages")
        payload = await self._client.get_message(channel_id, message_id)
        return self.record_event(ReactionEvent.from_message_payload(payload, guild_id))

    def opt_out(self, user_id: int) -> int:
        LOGGER.info("User %s opting out", user_id)
        return self._db.opt_out_user(user_id)

    def opt_in(self, user_id: int) -> None:
        LOGGER.info("User %s opting in", user_id)
        self._db.opt_in_user(user_id)

    def is_opted_out(self, user_id: int) -> bool:
        return self._db.is_opted_out(user_id)

    def delete_messages(self, guild_id: int, channel_id: int | None = None, user_id: int | None = None) -> int:
        if channel_id is None and user_id is None:
            raise InvalidRequestError("You must specify at least one of: channel or user")
        deleted = self._db.delete_messages(guild_id, channel_id, user_id)
        LOGGER.info(
            "Deleted %d messages for guild %s, channel %s, user %s", deleted, guild_id, channel_id, user_id
        )
        return deleted

    async def top_report(
        self,
        guild_id: int,
        start_date: str | None = None,
        end_date: str | None = None,
        channel_id: int | None = None,
        user_id: int | None = None,
        count: int = MAX_REPORT_COUNT,
    ) -> TopReply:
        """Top messages over whole days ``[start_date, end_date]`` as rich items."""

        try:
            if not 1 <= count <= MAX_REPORT_COUNT:
                raise InvalidRequestError(f"Number of messages must be between 1 and {MAX_REPORT_COUNT}")
            end = parse_day(end_date, self._clock().date())
            start = parse_day(start_date, end)
            span = (end - start).days
            if span < 0:
                raise InvalidRequestError("Start date must be before or equal to end date")
            if span > MAX_RANGE_DAYS:
                raise InvalidRequestError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")

            messages = self._db.top_messages(
                _day_start(start), _day_start(end) + timedelta(days=1), count, guild_id, channel_id, user_id
            )
            if not messages:
                if start == end:
                    return TopReply(content=f"No messages found on {start:%b %d, %Y}")
                return TopReply(content=f"No messages found between {start:%b %d, %Y} and {end:%b %d, %Y}")

            header = f"Top {count} messages"
            if start == end:
                header += f" from {start:%b %d, %Y}"
            else:
                header += f" from {start:%b %d, %Y} to {end:%b %d, %Y}"
            if user_id is not None:
                header += f" by <@{user_id}>"
            if channel_id is not None:
                header += f" in <#{channel_id}>"

            units = paginate_embeds(messages, await self._previews(messages))
            embeds = [embed for unit in units for embed in unit.embeds]
            if len(embeds) > MAX_ITEMS_PER_UNIT:
                header += f"\n(Showing top {MAX_ITEMS_PER_UNIT} messages due to Discord limits)"
            return TopReply(content=header, embeds=embeds[:MAX_ITEMS_PER_UNIT])
        except InvalidRequestError as exc:
            return TopReply(content=str(exc))
        except Exception:  # noqa: BLE001
            error_id = log_with_reference(
                LOGGER,
                "Error getting top messages for guild %s, user %s, channel %s, start %s, end %s",
                guild_id,
                user_id,
                channel_id,
                start_date,
                end_date,
            )
            return TopReply(content=reference_reply(error_id), error_id=error_id)

    async def top_text_report(
        self,
        guild_id: int,
        day: str | None = None,
        channel_id: int | None = None,
        user_id: int | None = None,
        limit: int = 10,
    ) -> TopReply:
        """Single-day top messages rendered as one plain-text block."""

        try:
            if not 1 <= limit <= MAX_TEXT_REPORT_LIMIT:
                raise InvalidRequestError(f"Number must be between 1 and {MAX_TEXT_REPORT_LIMIT}")
            target = parse_day(day, self._clock().date())
            messages = self._db.top_messages_for_date(target, limit, guild_id, channel_id, user_id)
            long_date = f"{target:%B} {target.day}, {target.year}"
            if not messages:
                return TopReply(content=f"No messages found for {long_date}")

            header = f"**Top {limit} messages for {long_date}**\n"
            body = format_adaptive(messages, await self._previews(messages), reserved=len(header))
            return TopReply(content=header + body)
        except InvalidRequestError as exc:
            return TopReply(content=str(exc))
        except Exception:  # noqa: BLE001
            error_id = log_with_reference(
                LOGGER, "Failed to get top messages for guild %s, day %s", guild_id, day
            )
            return TopReply(content=reference_reply(error_id), error_id=error_id)

    async def _previews(self, messages: list[TopMessage]) -> dict[str, str]:
        if self._client is None:
            return {}
        return await load_previews(self._client.fetch_preview, messages)
