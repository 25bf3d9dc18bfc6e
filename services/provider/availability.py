"""
services/provider/availability.py
Provider working hours: weekly slots, blocked days and a daily cap, checked
against the host's confirmed and active bookings.

Schedules are stored in the provider's local time zone; everything passed
in or returned is a UTC-aware datetime.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Booking, BookingStatus, Provider, ProviderSchedule, as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60
MAX_SUGGESTED_SLOTS = 6
BLOCKING_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.ACTIVE})


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def _local(schedule: ProviderSchedule, when: datetime) -> datetime:
    return as_utc(when).astimezone(ZoneInfo(schedule.timezone))


def _day_entry(schedule: ProviderSchedule, day: date) -> Optional[dict]:
    if day.isoformat() in (schedule.blocked_dates or []):
        return None
    entry = next(
        (d for d in schedule.weekly_schedule or [] if d.get("day_of_week") == day_of_week(day)),
        None,
    )
    if not entry or not entry.get("is_active"):
        return None
    return entry


def within_working_hours(schedule: ProviderSchedule, when: datetime) -> bool:
    """Start time falls inside an active slot on a day that is not blocked."""
    local = _local(schedule, when)
    entry = _day_entry(schedule, local.date())
    if entry is None:
        return False
    hhmm = local.strftime("%H:%M")
    return any(slot["start"] <= hhmm < slot["end"] for slot in entry.get("slots", []))


def overlaps(start: datetime, duration_minutes: int, bookings: Iterable[Booking]) -> bool:
    start = as_utc(start)
    end = start + timedelta(minutes=duration_minutes)
    for booking in bookings:
        other_start = as_utc(booking.scheduled_at)
        other_end = other_start + timedelta(
            minutes=booking.estimated_duration_minutes or DEFAULT_DURATION_MINUTES
        )
        if start < other_end and end > other_start:
            return True
    return False


def is_free(
    schedule: ProviderSchedule,
    when: datetime,
    duration_minutes: int,
    bookings: List[Booking],
) -> bool:
    if not within_working_hours(schedule, when):
        return False
    local_day = _local(schedule, when).date()
    same_day = [b for b in bookings if _local(schedule, b.scheduled_at).date() == local_day]
    if len(same_day) >= schedule.max_bookings_per_day:
        return False
    return not overlaps(when, duration_minutes, bookings)


def next_available_slots(
    schedule: ProviderSchedule,
    bookings: List[Booking],
    now: Optional[datetime] = None,
    days: int = 7,
    limit: int = MAX_SUGGESTED_SLOTS,
) -> List[datetime]:
    """Slot start times over the next `days` days that are still free."""
    tz = ZoneInfo(schedule.timezone)
    local_now = as_utc(now or utcnow()).astimezone(tz)
    found: List[datetime] = []

    for offset in range(days):
        day = local_now.date() + timedelta(days=offset)
        entry = _day_entry(schedule, day)
        if entry is None:
            continue
        for slot in sorted(entry.get("slots", []), key=lambda s: s["start"]):
            hour, minute = (int(part) for part in slot["start"].split(":"))
            start = datetime.combine(day, time(hour, minute), tzinfo=tz)
            if start < local_now:
                continue
            start_utc = start.astimezone(timezone.utc)
            if is_free(schedule, start_utc, DEFAULT_DURATION_MINUTES, bookings):
                found.append(start_utc)
                if len(found) >= limit:
                    return found
    return found


# ── Store access ──────────────────────────────────────────────

async def get_schedule(db: AsyncSession, provider_id) -> Optional[ProviderSchedule]:
    return await db.get(ProviderSchedule, provider_id)


async def host_bookings(db: AsyncSession, host_id) -> List[Booking]:
    """The host's scheduled bookings that occupy time."""
    result = await db.scalars(
        select(Booking).where(
            Booking.host_id == host_id,
            Booking.status.in_(BLOCKING_STATUSES),
            Booking.scheduled_at.is_not(None),
        )
    )
    return list(result)


async def is_available(
    db: AsyncSession,
    provider: Provider,
    when: datetime,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> bool:
    """Providers without a saved schedule take bookings at any time."""
    schedule = await get_schedule(db, provider.id)
    if schedule is None:
        return True
    available = is_free(schedule, when, duration_minutes, await host_bookings(db, provider.user_id))
    if not available:
        logger.info(f"Provider {provider.id} unavailable at {as_utc(when).isoformat()}")
    return available
