"""
services/provider/router.py
Provider registration, public profile, relocation, working hours and
availability, and the admin-only live-traffic simulation switch.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import get_db, get_session_factory
from services.provider.availability import (
    DEFAULT_DURATION_MINUTES,
    get_schedule,
    host_bookings,
    is_available,
    next_available_slots,
)
from services.provider.simulator import LiveTrafficSimulator
from shared.exceptions import NotFound, ValidationError
from shared.middleware.auth import get_current_user, require_admin, require_professional
from shared.models.models import Provider, ProviderSchedule, ProviderStatus, User, UserRole, as_utc, utcnow
from shared.schemas.schemas import (
    AvailabilityResponse,
    AvailableSlotsResponse,
    ProviderCreateRequest,
    ProviderLocationUpdate,
    ProviderResponse,
    ProviderScheduleRequest,
    ProviderScheduleResponse,
    SimulationStatusResponse,
)

router = APIRouter(prefix="/providers", tags=["Providers"])


def to_provider_response(provider: Provider) -> ProviderResponse:
    live = provider.live_status
    return ProviderResponse.model_validate(provider).model_copy(update={
        "is_online": bool(live and live.is_online),
        "is_busy": bool(live and live.is_busy),
    })


def get_simulator(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> LiveTrafficSimulator:
    simulator = getattr(request.app.state, "simulator", None)
    if simulator is None:
        simulator = LiveTrafficSimulator(session_factory)
        request.app.state.simulator = simulator
    return simulator


def _simulation_status(simulator: LiveTrafficSimulator) -> SimulationStatusResponse:
    return SimulationStatusResponse(
        running=simulator.is_running,
        interval_seconds=simulator.interval_seconds,
        batch_size=simulator.batch_size,
    )


# ── Registration ──────────────────────────────────────────────

@router.post("", response_model=ProviderResponse, status_code=status.HTTP_201_CREATED)
async def register_provider(
    data: ProviderCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create the provider listing and its live status row together."""
    existing = await db.scalar(select(Provider.id).where(Provider.user_id == current_user.id))
    if existing:
        raise ValidationError("A provider profile already exists for this account")

    provider = Provider(
        user_id=current_user.id,
        display_name=data.display_name,
        avatar_url=data.avatar_url or current_user.avatar_url,
        bio=data.bio,
        categories=data.categories,
        base_price=data.base_price,
        price_unit=data.price_unit,
        address=data.location.address,
        live_status=ProviderStatus(is_online=True, is_busy=False, last_seen=utcnow()),
    )
    provider.relocate(data.location.lat, data.location.lng)
    provider.live_status.relocate(data.location.lat, data.location.lng)
    db.add(provider)

    if current_user.role == UserRole.CLIENT:
        current_user.role = UserRole.PROFESSIONAL
    await db.commit()
    return to_provider_response(provider)


# ── Simulation (admin) ────────────────────────────────────────

@router.get("/simulation", response_model=SimulationStatusResponse)
async def simulation_status(
    current_user: User = Depends(require_admin),
    simulator: LiveTrafficSimulator = Depends(get_simulator),
):
    return _simulation_status(simulator)


@router.post("/simulation/start", response_model=SimulationStatusResponse)
async def start_simulation(
    current_user: User = Depends(require_admin),
    simulator: LiveTrafficSimulator = Depends(get_simulator),
):
    await simulator.start()
    return _simulation_status(simulator)


@router.post("/simulation/stop", response_model=SimulationStatusResponse)
async def stop_simulation(
    current_user: User = Depends(require_admin),
    simulator: LiveTrafficSimulator = Depends(get_simulator),
):
    await simulator.stop()
    return _simulation_status(simulator)


# ── Relocation ────────────────────────────────────────────────

@router.patch("/me/location", response_model=ProviderResponse)
async def update_my_location(
    data: ProviderLocationUpdate,
    current_user: User = Depends(require_professional),
    db: AsyncSession = Depends(get_db),
):
    """Move the base location. Existing bookings keep their own service location."""
    provider = await db.scalar(select(Provider).where(Provider.user_id == current_user.id))
    if not provider:
        raise NotFound("Provider profile not found")

    provider.relocate(data.lat, data.lng)
    if data.address:
        provider.address = data.address
    if provider.live_status is not None:
        provider.live_status.relocate(data.lat, data.lng)
        provider.live_status.last_seen = utcnow()
    await db.commit()
    return to_provider_response(provider)


@router.get("/{provider_id}", response_model=ProviderResponse)
async def get_provider(provider_id: UUID, db: AsyncSession = Depends(get_db)):
    provider = await db.get(Provider, provider_id)
    if not provider:
        raise NotFound("Provider not found", {"provider_id": str(provider_id)})
    return to_provider_response(provider)


# ── Availability ──────────────────────────────────────────────

@router.put("/me/schedule", response_model=ProviderScheduleResponse)
async def save_my_schedule(
    data: ProviderScheduleRequest,
    current_user: User = Depends(require_professional),
    db: AsyncSession = Depends(get_db),
):
    """Create or replace the weekly working hours and blocked days."""
    provider = await db.scalar(select(Provider).where(Provider.user_id == current_user.id))
    if not provider:
        raise NotFound("Provider profile not found")

    values = data.model_dump(mode="json")
    schedule = await get_schedule(db, provider.id)
    if schedule is None:
        schedule = ProviderSchedule(provider_id=provider.id, **values)
        db.add(schedule)
    else:
        for field, value in values.items():
            setattr(schedule, field, value)
    await db.commit()
    await db.refresh(schedule)
    return ProviderScheduleResponse.model_validate(schedule)


async def _provider_and_schedule(db: AsyncSession, provider_id: UUID):
    provider = await db.get(Provider, provider_id)
    if not provider:
        raise NotFound("Provider not found", {"provider_id": str(provider_id)})
    return provider, await get_schedule(db, provider.id)


@router.get("/{provider_id}/schedule", response_model=ProviderScheduleResponse)
async def get_provider_schedule(provider_id: UUID, db: AsyncSession = Depends(get_db)):
    _, schedule = await _provider_and_schedule(db, provider_id)
    if schedule is None:
        raise NotFound("Provider has no schedule", {"provider_id": str(provider_id)})
    return ProviderScheduleResponse.model_validate(schedule)


@router.get("/{provider_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    provider_id: UUID,
    at: datetime = Query(...),
    duration_minutes: int = Query(DEFAULT_DURATION_MINUTES, ge=15, le=720),
    db: AsyncSession = Depends(get_db),
):
    provider, _ = await _provider_and_schedule(db, provider_id)
    return AvailabilityResponse(
        provider_id=provider.id,
        at=as_utc(at),
        duration_minutes=duration_minutes,
        available=await is_available(db, provider, at, duration_minutes),
    )


@router.get("/{provider_id}/availability/slots", response_model=AvailableSlotsResponse)
async def get_available_slots(
    provider_id: UUID,
    days: int = Query(7, ge=1, le=31),
    db: AsyncSession = Depends(get_db),
):
    """Up to six free slot start times. Empty when the provider has no schedule."""
    provider, schedule = await _provider_and_schedule(db, provider_id)
    if schedule is None:
        return AvailableSlotsResponse(provider_id=provider.id, slots=[])
    bookings = await host_bookings(db, provider.user_id)
    return AvailableSlotsResponse(
        provider_id=provider.id,
        slots=next_available_slots(schedule, bookings, days=days),
    )
