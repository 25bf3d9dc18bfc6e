"""
tests/test_availability.py
Tests for provider working hours: pure slot checks, the schedule endpoints
and availability enforcement when a booking is created.
"""

from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.provider import availability
from shared.models.models import BookingStatus, Provider, User
from tests.conftest import POZNAN, auth_headers, make_booking

WARSAW = ZoneInfo("Europe/Warsaw")
# Monday, Warsaw summer time (UTC+2)
MONDAY = date(2025, 6, 2)

WEEKDAYS_9_TO_17 = [
    {"day_of_week": day, "is_active": True, "slots": [{"start": "09:00", "end": "17:00"}]}
    for day in range(1, 6)
]


def warsaw(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=WARSAW).astimezone(timezone.utc)


def make_schedule(**overrides):
    values = dict(
        weekly_schedule=[
            {"day_of_week": 0, "is_active": False, "slots": []},
            {"day_of_week": 1, "is_active": True, "slots": [
                {"start": "09:00", "end": "12:00"}, {"start": "13:00", "end": "17:00"},
            ]},
        ],
        blocked_dates=[],
        timezone="Europe/Warsaw",
        max_bookings_per_day=8,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def booked(at: datetime, minutes: int = 60):
    return SimpleNamespace(scheduled_at=at, estimated_duration_minutes=minutes)


def next_local(weekday: int, hour: int) -> datetime:
    """Next Warsaw occurrence of a Python weekday (Monday = 0), at least a day ahead."""
    today = datetime.now(WARSAW).date()
    days = (weekday - today.weekday()) % 7 or 7
    return warsaw(today + timedelta(days=days), hour)


# ── Pure checks ────────────────────────────────────────────────────────────────

def test_day_of_week_starts_on_sunday():
    """Sunday is day 0 and Saturday day 6."""
    assert availability.day_of_week(date(2025, 6, 1)) == 0
    assert availability.day_of_week(MONDAY) == 1
    assert availability.day_of_week(date(2025, 6, 7)) == 6


def test_within_working_hours_uses_local_time():
    """Slot starts are inclusive and ends exclusive, in the provider's zone."""
    schedule = make_schedule()
    assert availability.within_working_hours(schedule, warsaw(MONDAY, 9))
    assert availability.within_working_hours(schedule, warsaw(MONDAY, 16, 59))
    assert not availability.within_working_hours(schedule, warsaw(MONDAY, 8, 59))
    assert not availability.within_working_hours(schedule, warsaw(MONDAY, 12, 30))
    assert not availability.within_working_hours(schedule, warsaw(MONDAY, 17))
    # 07:30 UTC is 09:30 in Warsaw
    assert availability.within_working_hours(schedule, datetime(2025, 6, 2, 7, 30, tzinfo=timezone.utc))


def test_inactive_missing_and_blocked_days_are_closed():
    """Inactive days, days without an entry and blocked dates take no bookings."""
    schedule = make_schedule()
    assert not availability.within_working_hours(schedule, warsaw(date(2025, 6, 1), 10))
    assert not availability.within_working_hours(schedule, warsaw(date(2025, 6, 3), 10))

    blocked = make_schedule(blocked_dates=[MONDAY.isoformat()])
    assert not availability.within_working_hours(blocked, warsaw(MONDAY, 10))


def test_is_free_rejects_overlapping_booking():
    """A request overlapping an existing job is refused; the next free hour is fine."""
    schedule = make_schedule()
    bookings = [booked(warsaw(MONDAY, 10, 30))]
    assert not availability.is_free(schedule, warsaw(MONDAY, 10), 60, bookings)
    assert not availability.is_free(schedule, warsaw(MONDAY, 9, 45), 60, bookings)
    assert availability.is_free(schedule, warsaw(MONDAY, 9), 60, bookings)
    assert availability.is_free(schedule, warsaw(MONDAY, 11, 30), 30, bookings)


def test_is_free_respects_daily_cap():
    """Once the daily cap is reached the rest of the day is closed."""
    schedule = make_schedule(max_bookings_per_day=1)
    bookings = [booked(warsaw(MONDAY, 14))]
    assert not availability.is_free(schedule, warsaw(MONDAY, 10), 60, bookings)
    assert availability.is_free(schedule, warsaw(MONDAY + timedelta(days=7), 10), 60, bookings)


def test_next_available_slots_skips_past_and_taken_starts():
    """Suggested slots start from now and leave out booked starts."""
    schedule = make_schedule()
    now = warsaw(MONDAY, 10)

    slots = availability.next_available_slots(schedule, [], now=now, days=8)
    assert slots == [
        datetime(2025, 6, 2, 11, 0, tzinfo=timezone.utc),
        datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc),
        datetime(2025, 6, 9, 11, 0, tzinfo=timezone.utc),
    ]

    taken = availability.next_available_slots(schedule, [booked(warsaw(MONDAY, 13))], now=now, days=8)
    assert datetime(2025, 6, 2, 11, 0, tzinfo=timezone.utc) not in taken
    assert availability.next_available_slots(schedule, [], now=now, days=1, limit=1) == slots[:1]


# ── Schedule endpoints ─────────────────────────────────────────────────────────

async def save_schedule(client: AsyncClient, user: User, **overrides):
    payload = {"weekly_schedule": WEEKDAYS_9_TO_17, "blocked_dates": ["2025-12-24"], **overrides}
    return await client.put("/providers/me/schedule", headers=auth_headers(user), json=payload)


@pytest.mark.asyncio
async def test_save_and_read_schedule(client: AsyncClient, pro_user: User, provider: Provider):
    """A saved schedule is returned as stored; saving again replaces it."""
    response = await save_schedule(client, pro_user)
    assert response.status_code == 200, response.text
    assert response.json()["provider_id"] == str(provider.id)
    assert response.json()["timezone"] == "Europe/Warsaw"

    fetched = await client.get(f"/providers/{provider.id}/schedule")
    assert fetched.status_code == 200
    assert fetched.json()["blocked_dates"] == ["2025-12-24"]
    assert len(fetched.json()["weekly_schedule"]) == 5

    replaced = await save_schedule(client, pro_user, blocked_dates=[], max_bookings_per_day=2)
    assert replaced.json()["blocked_dates"] == []
    assert replaced.json()["max_bookings_per_day"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"weekly_schedule": WEEKDAYS_9_TO_17 + [WEEKDAYS_9_TO_17[0]]},
        {"timezone": "Mars/Olympus_Mons"},
        {"weekly_schedule": [{"day_of_week": 1, "slots": [{"start": "17:00", "end": "09:00"}]}]},
        {"weekly_schedule": [{"day_of_week": 7, "slots": []}]},
    ],
)
async def test_invalid_schedule_rejected(client: AsyncClient, pro_user: User, provider: Provider, overrides):
    """Repeated days, unknown zones, inverted slots and bad day numbers are refused."""
    response = await save_schedule(client, pro_user, **overrides)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_schedule_requires_professional(client: AsyncClient, client_user: User):
    """Clients cannot publish working hours."""
    response = await save_schedule(client, client_user)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_missing_schedule(client: AsyncClient, provider: Provider):
    """Without a schedule there is nothing to read and no slots to suggest."""
    assert (await client.get(f"/providers/{provider.id}/schedule")).status_code == 404
    slots = await client.get(f"/providers/{provider.id}/availability/slots")
    assert slots.status_code == 200
    assert slots.json()["slots"] == []


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, pro_user: User, provider: Provider):
    """Availability follows the saved working days."""
    await save_schedule(client, pro_user)

    monday = await client.get(
        f"/providers/{provider.id}/availability", params={"at": next_local(0, 10).isoformat()}
    )
    sunday = await client.get(
        f"/providers/{provider.id}/availability", params={"at": next_local(6, 10).isoformat()}
    )
    assert monday.status_code == 200
    assert monday.json()["available"] is True
    assert monday.json()["duration_minutes"] == 60
    assert sunday.json()["available"] is False


@pytest.mark.asyncio
async def test_available_slots_endpoint(client: AsyncClient, pro_user: User, provider: Provider):
    """Suggested slots fall on working days at the slot start."""
    await save_schedule(client, pro_user)

    response = await client.get(f"/providers/{provider.id}/availability/slots", params={"days": 8})
    slots = [datetime.fromisoformat(s.replace("Z", "+00:00")) for s in response.json()["slots"]]
    assert 1 <= len(slots) <= availability.MAX_SUGGESTED_SLOTS
    for slot in slots:
        local = slot.astimezone(WARSAW)
        assert local.weekday() < 5
        assert (local.hour, local.minute) == (9, 0)


# ── Enforcement on booking ─────────────────────────────────────────────────────

async def request_booking(client: AsyncClient, user: User, provider: Provider, at: datetime):
    return await client.post(
        "/bookings",
        headers=auth_headers(user),
        json={
            "provider_id": str(provider.id),
            "scheduled_at": at.isoformat(),
            "service_location": {"lat": POZNAN[0], "lng": POZNAN[1], "address": "Półwiejska 2, Poznań"},
        },
    )


@pytest.mark.asyncio
async def test_booking_outside_working_hours_rejected(
    client: AsyncClient, pro_user: User, client_user: User, provider: Provider
):
    """Bookings on a day off are refused; a working hour is accepted."""
    await save_schedule(client, pro_user)

    sunday = await request_booking(client, client_user, provider, next_local(6, 10))
    assert sunday.status_code == 422

    monday = await request_booking(client, client_user, provider, next_local(0, 10))
    assert monday.status_code == 201, monday.text


@pytest.mark.asyncio
async def test_booking_over_confirmed_job_rejected(
    client: AsyncClient, db: AsyncSession, pro_user: User, client_user: User, provider: Provider
):
    """A confirmed job blocks overlapping requests for the same host."""
    await save_schedule(client, pro_user)
    taken = next_local(0, 10)
    await make_booking(db, client_user, provider, status=BookingStatus.CONFIRMED, scheduled_at=taken)

    clash = await request_booking(client, client_user, provider, taken + timedelta(minutes=30))
    assert clash.status_code == 422

    later = await request_booking(client, client_user, provider, taken + timedelta(hours=2))
    assert later.status_code == 201, later.text


@pytest.mark.asyncio
async def test_provider_without_schedule_takes_any_time(
    client: AsyncClient, client_user: User, provider: Provider
):
    """Providers who never published hours can be booked at any time."""
    response = await request_booking(client, client_user, provider, next_local(6, 23))
    assert response.status_code == 201, response.text
    assert response.json()["estimated_duration_minutes"] == 60
