"""Daily circadian job plan, evaluated per user timezone."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

logger = logging.getLogger("lucid.circadian")

# Slots before this local hour that already passed roll to their next occurrence
ROLLOVER_CUTOFF_HOUR = 12


@dataclass
class PlannedJob:
    job_type: str
    scheduled_for: datetime  # UTC
    schedule_date: str  # user-local date of the occurrence, YYYY-MM-DD


def resolve_timezone(name: str | None, default: str) -> ZoneInfo:
    """Resolve a user's timezone, falling back to the default on bad input."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back", candidate)
    return ZoneInfo("UTC")


def occurrence_on(cron_expr: str, local_date: date, tz: ZoneInfo) -> datetime | None:
    """First cron occurrence falling on ``local_date`` in ``tz``, or None."""
    day_start = datetime.combine(local_date, time.min, tzinfo=tz)
    cron = croniter(cron_expr, day_start - timedelta(seconds=1))
    candidate = cron.get_next(datetime)
    if candidate.astimezone(tz).date() != local_date:
        return None
    return candidate


def plan_day(
    local_date: date,
    tz: ZoneInfo,
    slots: dict[str, str],
    now: datetime,
) -> list[PlannedJob]:
    """Build the circadian job plan for one user-local date.

    Each slot contributes the cron occurrence that falls on ``local_date``.
    Slots with no occurrence that day (weekly slots) are omitted. Slots
    earlier than noon that have already passed roll forward to their next
    occurrence; later slots that passed stay on ``local_date`` and become due
    immediately.
    """
    planned = []
    for job_type, cron_expr in slots.items():
        try:
            occurrence = occurrence_on(cron_expr, local_date, tz)
        except (ValueError, KeyError) as e:
            logger.error("Invalid cron %r for slot %s: %s", cron_expr, job_type, e)
            continue
        if occurrence is None:
            continue

        local = occurrence.astimezone(tz)
        if occurrence <= now and local.hour < ROLLOVER_CUTOFF_HOUR:
            local = croniter(cron_expr, now.astimezone(tz)).get_next(datetime).astimezone(tz)
            logger.debug("Slot %s already passed, rolled to %s", job_type, local.isoformat())

        planned.append(PlannedJob(
            job_type=job_type,
            scheduled_for=local.astimezone(timezone.utc),
            schedule_date=local.date().isoformat(),
        ))

    planned.sort(key=lambda p: p.scheduled_for)
    return planned
