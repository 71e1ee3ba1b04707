"""Creation and management of recurring report schedules."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from reactstats.cron import cron_error, parse_cron
from reactstats.db import Database
from reactstats.delivery import format_interval
from reactstats.errors import InvalidRequestError
from reactstats.models import ChannelFilter, ScheduledJob

LOGGER = logging.getLogger(__name__)

MIN_INTERVAL_HOURS = 0.5
MAX_INTERVAL_HOURS = 168.0
MIN_COUNT = 1
MAX_COUNT = 20
MAX_TITLE_LENGTH = 100


class ScheduleRequest(BaseModel):
    """Validated input for a new scheduled report."""

    cron_expression: str
    interval_hours: float
    channel_id: int
    guild_id: int
    count: int
    is_forum: bool = False
    thread_title_template: str | None = None

    @field_validator("cron_expression")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        value = value.strip()
        error = cron_error(value)
        if error is not None:
            raise ValueError(error)
        return value

    @field_validator("interval_hours")
    @classmethod
    def _valid_interval(cls, value: float) -> float:
        if not MIN_INTERVAL_HOURS <= value <= MAX_INTERVAL_HOURS:
            raise ValueError(
                f"Invalid interval. Must be between {MIN_INTERVAL_HOURS:g} and {MAX_INTERVAL_HOURS:g} hours."
            )
        return value

    @field_validator("count")
    @classmethod
    def _valid_count(cls, value: int) -> int:
        if not MIN_COUNT <= value <= MAX_COUNT:
            raise ValueError(f"Invalid count. Must be between {MIN_COUNT} and {MAX_COUNT}.")
        return value

    @model_validator(mode="after")
    def _forum_needs_title(self) -> ScheduleRequest:
        if not self.is_forum:
            self.thread_title_template = None
            return self
        title = (self.thread_title_template or "").strip()
        if not 1 <= len(title) <= MAX_TITLE_LENGTH:
            raise ValueError(f"Forum schedules need a thread title of 1-{MAX_TITLE_LENGTH} characters.")
        self.thread_title_template = title
        return self


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validation_message(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        message = str(error.get("msg", ""))
        if error.get("type") == "value_error":
            messages.append(message.removeprefix("Value error, "))
            continue
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {message}" if location else message)
    return " ".join(messages)


class ScheduleService:
    """Guild-scoped operations on scheduled report jobs."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = _utc_now) -> None:
        self._db = db
        self._clock = clock

    def create_scheduled_job(self, **fields: object) -> ScheduledJob:
        """Validate and persist a new job.

        Raises:
            InvalidRequestError: on out-of-range values or an unusable cron expression.
        """
        try:
            request = ScheduleRequest(**fields)
        except ValidationError as exc:
            raise InvalidRequestError(_validation_message(exc)) from exc

        now = self._clock()
        next_run = parse_cron(request.cron_expression).next_after(now)
        if next_run is None:
            raise InvalidRequestError("Invalid cron expression - could not determine next run time")

        job = ScheduledJob(
            id=str(uuid.uuid4()),
            cron_expression=request.cron_expression,
            interval_hours=request.interval_hours,
            channel_id=request.channel_id,
            guild_id=request.guild_id,
            count=request.count,
            next_run=next_run,
            created_at=now,
            is_forum=request.is_forum,
            thread_title_template=request.thread_title_template,
        )
        self._db.create_scheduled_job(job)
        LOGGER.info(
            "Created schedule %s for guild %s, channel %s, next run at %s",
            job.id,
            job.guild_id,
            job.channel_id,
            next_run.isoformat(),
        )
        return job

    def list_schedules(self, guild_id: int) -> list[ScheduledJob]:
        return self._db.get_jobs_for_guild(guild_id)

    def get_schedule(self, guild_id: int, job_id: str) -> ScheduledJob | None:
        job = self._db.get_job_by_id(job_id)
        if job is None or job.guild_id != guild_id:
            return None
        return job

    def remove_schedule(self, guild_id: int, job_id: str) -> bool:
        """Delete a job if it belongs to ``guild_id``."""

        if self.get_schedule(guild_id, job_id) is None:
            return False
        removed = self._db.delete_job(job_id)
        LOGGER.info("Removed schedule %s for guild %s", job_id, guild_id)
        return removed

    def set_channel_filters(self, guild_id: int, job_id: str, channel_ids: Iterable[int], is_excluded: bool) -> bool:
        if self.get_schedule(guild_id, job_id) is None:
            return False
        self._db.set_schedule_channels(job_id, channel_ids, is_excluded)
        return True

    def channel_filters(self, job_id: str) -> list[ChannelFilter]:
        return self._db.get_schedule_channels(job_id)

    def describe(self, job: ScheduledJob, number: int | None = None) -> str:
        """Human-readable summary of one schedule."""

        lines = []
        if number is not None:
            lines.append(f"**Schedule #{number}**")
        lines.append(f"Channel: <#{job.channel_id}>")
        lines.append(f"Schedule: `{job.cron_expression}`")
        lines.append(f"Interval: {format_interval(job.interval_hours)}")
        lines.append(f"Messages: {job.count}")
        if job.is_forum and job.thread_title_template:
            lines.append(f"Title Template: `{job.thread_title_template}`")
        lines.append(f"Next Run: {job.next_run:%Y-%m-%d %H:%M:%S} UTC")

        filters = self.channel_filters(job.id)
        included = [item for item in filters if not item.is_excluded]
        excluded = [item for item in filters if item.is_excluded]
        if included:
            lines.append("\n📥 **Included Channels**:")
            lines.extend(f"- <#{item.channel_id}>" for item in included)
        if excluded:
            lines.append("\n📤 **Excluded Channels**:")
            lines.extend(f"- <#{item.channel_id}>" for item in excluded)
        return "\n".join(lines) + "\n"

    def describe_all(self, guild_id: int) -> str:
        jobs = self.list_schedules(guild_id)
        if not jobs:
            return "No scheduled reports found for this server."
        return "\n".join(self.describe(job, number) for number, job in enumerate(jobs, start=1))
