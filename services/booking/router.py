"""
services/booking/router.py
Direct bookings and lifecycle transitions for every booking source.
Status changes go through services/booking/state_machine.py only.
"""

import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking import snapshots
from services.booking.state_machine import (
    BookingAction,
    actor_for,
    apply_transition,
    generate_booking_hash,
    get_booking,
    submit_review,
)
from services.chat.router import create_chat
from services.provider.availability import is_available
from shared.exceptions import NotFound, ValidationError
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Booking,
    BookingSource,
    BookingStatus,
    Provider,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingCreatedResponse,
    BookingCreateRequest,
    BookingResponse,
    BookingTransitionRequest,
    PaginatedResponse,
    ReviewCreateRequest,
    ReviewResponse,
)
from shared.utils import background
from shared.utils.geohash import encode

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

def _ensure_participant(booking: Booking, user: User) -> None:
    if actor_for(booking, user.id) is None and user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this booking")


def service_location(lat: float, lng: float, address: Optional[str]) -> dict:
    return {
        "lat": lat,
        "lng": lng,
        "address": address,
        "geohash": encode(lat, lng, settings.PROVIDER_GEOHASH_PRECISION),
    }


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a provider directly. Creates the booking in PENDING_APPROVAL with
    client, host and listing snapshots, plus its chat, in one transaction.
    """
    provider = await db.get(Provider, data.provider_id)
    if not provider:
        raise NotFound("Provider not found", {"provider_id": str(data.provider_id)})
    if provider.user_id == current_user.id:
        raise ValidationError("You cannot book yourself")
    if data.scheduled_at is not None and not await is_available(
        db, provider, data.scheduled_at, data.duration_minutes
    ):
        raise ValidationError("Provider is not available at the requested time")

    initial_status = BookingStatus.PENDING_APPROVAL
    booking = Booking(
        booking_hash=generate_booking_hash(),
        source=BookingSource.DIRECT,
        client_id=current_user.id,
        host_id=provider.user_id,
        provider_id=provider.id,
        status=initial_status,
        status_history=[],
        pricing=snapshots.pricing_for(provider.base_price),
        cancellation_policy=data.cancellation_policy,
        client_snapshot=snapshots.client_snapshot(current_user),
        host_snapshot=snapshots.host_snapshot(provider),
        listing_snapshot=snapshots.listing_snapshot(provider),
        service_location=service_location(
            data.service_location.lat, data.service_location.lng, data.service_location.address
        ),
        scheduled_at=data.scheduled_at,
        estimated_duration_minutes=data.duration_minutes,
        notes=data.notes,
        category=provider.categories[0] if provider.categories else None,
    )
    db.add(booking)
    await db.flush()

    booking.status_history = [{
        "status": initial_status.value,
        "changed_at": booking.created_at.isoformat(),
        "changed_by": str(current_user.id),
        "reason": "created",
    }]
    chat = await create_chat(db, booking.id, [current_user.id, provider.user_id])
    booking.chat_id = chat.id
    await db.commit()

    background.notify_booking_status(booking.id)
    return BookingCreatedResponse(
        id=booking.id, booking_hash=booking.booking_hash, status=initial_status.value, chat_id=chat.id
    )


# ── Read ──────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_bookings(
    as_role: Optional[str] = Query(None, alias="role", pattern="^(client|host)$"),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings where the current user is client or host."""
    if as_role == "client":
        condition = Booking.client_id == current_user.id
    elif as_role == "host":
        condition = Booking.host_id == current_user.id
    else:
        condition = (Booking.client_id == current_user.id) | (Booking.host_id == current_user.id)

    query = select(Booking).where(condition)
    if booking_status:
        query = query.where(Booking.status == booking_status)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    items = [BookingResponse.model_validate(b) for b in result.scalars().all()]
    return PaginatedResponse(
        items=items,
        total=total or 0,
        page=page,
        page_size=page_size,
        pages=math.ceil((total or 0) / page_size),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking_detail(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking(db, booking_id)
    _ensure_participant(booking, current_user)
    return booking


# ── Transitions ───────────────────────────────────────────────

@router.post("/{booking_id}/transitions", response_model=BookingResponse)
async def transition_booking(
    booking_id: UUID,
    data: BookingTransitionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Apply `action` if the booking is still in `expected_status`.
    409 on a transition outside the table or a stale expected status.
    """
    booking = await get_booking(db, booking_id)
    actor = actor_for(booking, current_user.id)
    if actor is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this booking")

    booking = await apply_transition(
        db,
        booking.id,
        BookingAction(data.action),
        actor,
        changed_by=str(current_user.id),
        expected_status=data.expected_status,
        reason=data.reason,
    )
    await db.commit()

    background.notify_booking_status(booking.id)
    if booking.status == BookingStatus.COMPLETED and booking.host_id:
        background.recalculate_trust_score(booking.host_id)
    return booking


@router.post("/{booking_id}/review", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def review_booking(
    booking_id: UUID,
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Client reviews a completed booking. One review per booking."""
    review = await submit_review(db, booking_id, current_user.id, data.rating, data.comment)
    await db.commit()

    background.recalculate_trust_score(review.host_id)
    return review
