"""
services/booking/state_machine.py
Booking lifecycle: the transition table and the conditional-update writer.

    INQUIRY ──select_proposal──► PENDING_APPROVAL ──accept──► CONFIRMED ──start──► ACTIVE
       │                              │  │                                           │
       └─cancel─► CANCELED_BY_GUEST ◄─┘  └─decline─► CANCELED_BY_HOST        complete
                                                                                   ▼
    any non-terminal ──expire──► EXPIRED                    COMPLETED ◄── review (has_review)

Every write is `UPDATE ... WHERE id = :id AND status = :expected`; a write
that matches no row lost a race and raises InvalidTransition.
"""

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.user.referrals import complete_referral
from shared.exceptions import InvalidTransition, NotFound, ValidationError
from shared.models.models import (
    Booking,
    BookingStatus,
    Provider,
    Review,
    User,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


class BookingAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"
    START = "start"
    COMPLETE = "complete"
    REVIEW = "review"
    EXPIRE = "expire"
    SELECT_PROPOSAL = "select_proposal"


class Actor(str, Enum):
    HOST = "host"
    CLIENT = "client"
    SYSTEM = "system"


@dataclass(frozen=True)
class Transition:
    target: BookingStatus
    actors: FrozenSet[Actor]


TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELED_BY_HOST,
    BookingStatus.CANCELED_BY_GUEST,
    BookingStatus.EXPIRED,
})

NON_TERMINAL_STATUSES = frozenset(s for s in BookingStatus if s not in TERMINAL_STATUSES)
SCHEDULED_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.ACTIVE})

_HOST = frozenset({Actor.HOST})
_CLIENT = frozenset({Actor.CLIENT})

TRANSITIONS: Dict[Tuple[BookingStatus, BookingAction], Transition] = {
    (BookingStatus.PENDING_APPROVAL, BookingAction.ACCEPT): Transition(BookingStatus.CONFIRMED, _HOST),
    (BookingStatus.PENDING_APPROVAL, BookingAction.DECLINE): Transition(BookingStatus.CANCELED_BY_HOST, _HOST),
    (BookingStatus.PENDING_APPROVAL, BookingAction.CANCEL): Transition(BookingStatus.CANCELED_BY_GUEST, _CLIENT),
    (BookingStatus.CONFIRMED, BookingAction.START): Transition(BookingStatus.ACTIVE, _HOST),
    (BookingStatus.ACTIVE, BookingAction.COMPLETE): Transition(
        BookingStatus.COMPLETED, frozenset({Actor.HOST, Actor.CLIENT})
    ),
    (BookingStatus.COMPLETED, BookingAction.REVIEW): Transition(BookingStatus.COMPLETED, _CLIENT),
    # Marketplace jobs
    (BookingStatus.INQUIRY, BookingAction.SELECT_PROPOSAL): Transition(BookingStatus.PENDING_APPROVAL, _CLIENT),
    (BookingStatus.INQUIRY, BookingAction.CANCEL): Transition(BookingStatus.CANCELED_BY_GUEST, _CLIENT),
}
TRANSITIONS.update({
    (s, BookingAction.EXPIRE): Transition(BookingStatus.EXPIRED, frozenset({Actor.SYSTEM}))
    for s in NON_TERMINAL_STATUSES
})


_HASH_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_booking_hash(year: Optional[int] = None) -> str:
    """Human-readable booking reference like FN-2025-7KQ2M9XA."""
    year = year or utcnow().year
    return f"FN-{year}-{''.join(random.choices(_HASH_ALPHABET, k=8))}"


def resolve(current: BookingStatus, action: BookingAction) -> Transition:
    try:
        return TRANSITIONS[(BookingStatus(current), BookingAction(action))]
    except (KeyError, ValueError):
        raise InvalidTransition(_value(current), _value(action))


def actor_for(booking: Booking, user_id: uuid.UUID) -> Optional[Actor]:
    if booking.host_id is not None and booking.host_id == user_id:
        return Actor.HOST
    if booking.client_id == user_id:
        return Actor.CLIENT
    return None


def is_expired(booking: Booking, now: Optional[datetime] = None) -> bool:
    """
    Past its marketplace deadline, or untouched for the validity window.
    Confirmed and active bookings count the window from the later of the
    last update and the scheduled visit.
    """
    now = now or utcnow()
    expires_at = as_utc(booking.expires_at)
    if expires_at is not None and expires_at <= now:
        return True
    last_activity = as_utc(booking.updated_at)
    scheduled_at = as_utc(booking.scheduled_at)
    if scheduled_at is not None and BookingStatus(booking.status) in SCHEDULED_STATUSES:
        last_activity = scheduled_at if last_activity is None else max(last_activity, scheduled_at)
    return last_activity is not None and last_activity <= now - timedelta(days=settings.BOOKING_VALIDITY_DAYS)


def transition_values(
    booking: Booking,
    transition: Transition,
    changed_by: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Column values written by a transition, timestamps and history included."""
    now = now or utcnow()
    entry = {
        "status": transition.target.value,
        "changed_at": now.isoformat(),
        "changed_by": changed_by,
        "reason": reason,
    }
    values: Dict[str, Any] = {
        "status": transition.target,
        "updated_at": now,
        "status_history": list(booking.status_history or []) + [entry],
    }
    if transition.target == BookingStatus.ACTIVE:
        values["check_in_at"] = now
    elif transition.target == BookingStatus.COMPLETED:
        values["check_out_at"] = now
        values["review_window_ends_at"] = now + timedelta(days=settings.REVIEW_WINDOW_DAYS)
    return values


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise NotFound("Booking not found", {"booking_id": str(booking_id)})
    return booking


async def apply_transition(
    db: AsyncSession,
    booking_id: uuid.UUID,
    action: BookingAction,
    actor: Actor,
    changed_by: str,
    expected_status: Optional[BookingStatus] = None,
    reason: Optional[str] = None,
    extra_values: Optional[Dict[str, Any]] = None,
) -> Booking:
    """
    Move a booking along the transition table. Does not commit.

    Raises InvalidTransition when the pair is not in the table, when
    `expected_status` does not match, or when another writer moved the
    booking first. A wrong actor gets a 403.
    """
    booking = await get_booking(db, booking_id)
    current = BookingStatus(booking.status)
    transition = resolve(current, action)

    if actor not in transition.actors:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Only {', '.join(sorted(a.value for a in transition.actors))} may '{_value(action)}' this booking",
        )

    if expected_status is not None and BookingStatus(expected_status) != current:
        raise InvalidTransition(
            current.value,
            _value(action),
            f"Booking is '{current.value}', expected '{_value(expected_status)}'",
        )

    values = transition_values(booking, transition, changed_by, reason)
    values.update(extra_values or {})

    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.refresh(booking, attribute_names=["status"])
        raise InvalidTransition(
            _value(booking.status), _value(action), "Booking was modified concurrently"
        )

    await db.refresh(booking)
    logger.info(f"Booking {booking.id}: {current.value} --{_value(action)}--> {transition.target.value}")

    if transition.target == BookingStatus.COMPLETED and current != BookingStatus.COMPLETED:
        await _on_completed(db, booking)

    return booking


async def _on_completed(db: AsyncSession, booking: Booking) -> None:
    if booking.host_id is not None:
        await db.execute(
            update(User)
            .where(User.id == booking.host_id)
            .values(completed_bookings=User.completed_bookings + 1)
            .execution_options(synchronize_session=False)
        )
    await complete_referral(db, booking.client_id)


# ── Review ────────────────────────────────────────────────────

async def submit_review(
    db: AsyncSession,
    booking_id: uuid.UUID,
    client_id: uuid.UUID,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    """
    The `review` sub-update: one Review row per COMPLETED booking, flips
    has_review, then refreshes the provider's and host's rating aggregates.
    Does not commit.
    """
    booking = await get_booking(db, booking_id)
    current = BookingStatus(booking.status)
    transition = resolve(current, BookingAction.REVIEW)

    if actor_for(booking, client_id) not in transition.actors:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the client can review this booking",
        )
    if booking.has_review:
        raise InvalidTransition(current.value, BookingAction.REVIEW.value, "Booking already reviewed")

    window_ends = as_utc(booking.review_window_ends_at)
    if window_ends is not None and window_ends < utcnow():
        raise ValidationError("The review window for this booking has closed")

    result = await db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.status == BookingStatus.COMPLETED,
            Booking.has_review.is_(False),
        )
        .values(has_review=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransition(current.value, BookingAction.REVIEW.value, "Booking already reviewed")

    review = Review(
        booking_id=booking.id,
        client_id=client_id,
        host_id=booking.host_id,
        provider_id=booking.provider_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        raise InvalidTransition(current.value, BookingAction.REVIEW.value, "Booking already reviewed")

    await refresh_rating_aggregates(db, booking.host_id)
    await db.refresh(booking)
    return review


async def refresh_rating_aggregates(db: AsyncSession, host_id: uuid.UUID) -> Tuple[float, int]:
    """Recompute rating/review_count from visible reviews for a host."""
    row = (
        await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(
                Review.host_id == host_id,
                Review.is_visible.is_(True),
            )
        )
    ).one()
    avg_rating = round(float(row[0] or 0.0), 2)
    count = int(row[1] or 0)

    await db.execute(
        update(Provider)
        .where(Provider.user_id == host_id)
        .values(rating=avg_rating, review_count=count)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(User)
        .where(User.id == host_id)
        .values(average_rating=avg_rating)
        .execution_options(synchronize_session=False)
    )
    return avg_rating, count


def _value(item: Any) -> str:
    return item.value if isinstance(item, Enum) else str(item)
