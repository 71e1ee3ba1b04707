"""Cron expression parsing and next-occurrence evaluation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from croniter import CroniterBadDateError, croniter

from reactstats.errors import InvalidRequestError

CRON_FIELD_COUNT = 5


@dataclass(frozen=True, slots=True)
class CronSchedule:
    """A validated standard 5-field cron expression."""

    expression: str

    def next_after(self, moment: datetime) -> datetime | None:
        """Return the first occurrence strictly after ``moment`` in UTC, or None."""

        start = _as_utc(moment)
        try:
            next_dt = croniter(self.expression, start).get_next(datetime)
        except CroniterBadDateError:
            return None
        return _as_utc(next_dt)


def cron_error(expression: str) -> str | None:
    """Describe why ``expression`` is not a usable cron expression, or None if it is."""

    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        return (
            f"Invalid cron expression {expression!r}: expected {CRON_FIELD_COUNT} fields "
            "(minute hour day-of-month month day-of-week)"
        )
    if not croniter.is_valid(expression):
        return f"Invalid cron expression {expression!r}"
    return None


def parse_cron(expression: str) -> CronSchedule:
    """Validate ``expression`` and return its schedule.

    Raises:
        InvalidRequestError: if the expression is not a valid 5-field cron.
    """
    expression = expression.strip()
    error = cron_error(expression)
    if error is not None:
        raise InvalidRequestError(error)
    return CronSchedule(expression)


def next_occurrence(expression: str, after: datetime) -> datetime | None:
    """Next run for a stored expression, or None when it cannot produce one."""

    if cron_error(expression.strip()) is not None:
        return None
    return CronSchedule(expression.strip()).next_after(after)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
