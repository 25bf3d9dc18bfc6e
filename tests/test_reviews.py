"""
tests/test_reviews.py
Tests for the booking review sub-update: one review per completed booking,
rating aggregates, and the review window.
"""

import pytest
from datetime import timedelta
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import BookingStatus, Provider, Review, User, utcnow
from tests.conftest import auth_headers, make_booking


@pytest.mark.asyncio
async def test_review_completed_booking(
    client: AsyncClient, db: AsyncSession, client_user: User, pro_user: User, provider: Provider, sent_tasks
):
    """Reviewing a completed booking updates the ratings and queues a trust recalculation."""
    booking = await make_booking(db, client_user, provider)

    response = await client.post(
        f"/bookings/{booking.id}/review",
        headers=auth_headers(client_user),
        json={"rating": 5, "comment": "Szybko i czysto, polecam!"},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["rating"] == 5
    assert data["host_id"] == str(pro_user.id)

    await db.refresh(booking)
    await db.refresh(provider)
    await db.refresh(pro_user)
    assert booking.has_review is True
    assert provider.rating == 5.0
    assert provider.review_count == 1
    assert pro_user.average_rating == 5.0
    sent_tasks.assert_called_with(
        "tasks.trust_tasks.recalculate_trust_score", args=[str(pro_user.id)], kwargs={}
    )


@pytest.mark.asyncio
async def test_second_review_is_rejected(
    client: AsyncClient, db: AsyncSession, client_user: User, provider: Provider
):
    """A booking takes one review."""
    booking = await make_booking(db, client_user, provider)
    url = f"/bookings/{booking.id}/review"

    first = await client.post(url, headers=auth_headers(client_user), json={"rating": 4})
    second = await client.post(url, headers=auth_headers(client_user), json={"rating": 1})

    assert first.status_code == 201
    assert second.status_code == 409
    count = await db.scalar(select(func.count(Review.id)).where(Review.booking_id == booking.id))
    assert count == 1


@pytest.mark.asyncio
async def test_review_before_completion_is_rejected(
    client: AsyncClient, db: AsyncSession, client_user: User, provider: Provider
):
    """Bookings that are not completed cannot be reviewed."""
    booking = await make_booking(db, client_user, provider, status=BookingStatus.CONFIRMED)
    response = await client.post(
        f"/bookings/{booking.id}/review", headers=auth_headers(client_user), json={"rating": 5}
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_host_cannot_review_own_booking(
    client: AsyncClient, db: AsyncSession, client_user: User, pro_user: User, provider: Provider
):
    """Only the booking's client may write the review."""
    booking = await make_booking(db, client_user, provider)
    response = await client.post(
        f"/bookings/{booking.id}/review", headers=auth_headers(pro_user), json={"rating": 5}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_review_after_window_closes(
    client: AsyncClient, db: AsyncSession, client_user: User, provider: Provider
):
    """Reviews after the review window are rejected."""
    booking = await make_booking(
        db, client_user, provider, review_window_ends_at=utcnow() - timedelta(days=1)
    )
    response = await client.post(
        f"/bookings/{booking.id}/review", headers=auth_headers(client_user), json={"rating": 3}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_rating_out_of_range_is_rejected(
    client: AsyncClient, db: AsyncSession, client_user: User, provider: Provider
):
    """Ratings outside 1 to 5 are rejected."""
    booking = await make_booking(db, client_user, provider)
    response = await client.post(
        f"/bookings/{booking.id}/review", headers=auth_headers(client_user), json={"rating": 6}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_rating_average_over_several_bookings(
    client: AsyncClient, db: AsyncSession, client_user: User, other_user: User, provider: Provider
):
    """Provider rating is the mean of its visible reviews."""
    first = await make_booking(db, client_user, provider)
    second = await make_booking(db, other_user, provider)

    await client.post(f"/bookings/{first.id}/review", headers=auth_headers(client_user), json={"rating": 5})
    await client.post(f"/bookings/{second.id}/review", headers=auth_headers(other_user), json={"rating": 4})

    await db.refresh(provider)
    assert provider.rating == 4.5
    assert provider.review_count == 2
