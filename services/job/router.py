"""
services/job/router.py
Marketplace jobs: bookings with source=marketplace that start as INQUIRY
without a host, collect proposals from professionals, and get a host when
the client accepts one (the `select_proposal` transition).
"""

from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking import snapshots
from services.booking.router import service_location
from services.booking.state_machine import (
    Actor,
    BookingAction,
    apply_transition,
    generate_booking_hash,
)
from services.chat.router import append_message, create_chat
from shared.exceptions import InvalidTransition, NotFound, ValidationError
from shared.middleware.auth import get_current_user, require_professional
from shared.models.models import (
    Booking,
    BookingSource,
    BookingStatus,
    Chat,
    JobProposal,
    JobUrgency,
    Provider,
    ProposalStatus,
    User,
    utcnow,
)
from shared.schemas.schemas import (
    JobCreatedResponse,
    JobCreateRequest,
    JobResponse,
    ProposalCreateRequest,
    ProposalResponse,
)
from shared.utils import background

router = APIRouter(prefix="/jobs", tags=["Jobs"])


URGENCY_MAP = {
    "high": JobUrgency.ASAP,
    "medium": JobUrgency.WEEK,
    "low": JobUrgency.FLEXIBLE,
}

JOB_STATUS = {
    BookingStatus.INQUIRY: "open",
    BookingStatus.PENDING_APPROVAL: "in_negotiation",
    BookingStatus.PENDING_PAYMENT: "in_negotiation",
    BookingStatus.CONFIRMED: "accepted",
    BookingStatus.ACTIVE: "in_progress",
    BookingStatus.COMPLETED: "completed",
    BookingStatus.CANCELED_BY_HOST: "canceled",
    BookingStatus.CANCELED_BY_GUEST: "canceled",
    BookingStatus.EXPIRED: "expired",
}


def map_urgency(value: Optional[str]) -> JobUrgency:
    return URGENCY_MAP.get((value or "").lower(), JobUrgency.FLEXIBLE)


def job_title(category: str, address: str) -> str:
    return f"{category} - {address.split(',')[0].strip()}"


def to_job_response(job: Booking) -> JobResponse:
    return JobResponse(
        id=job.id,
        booking_hash=job.booking_hash,
        title=job.title,
        description=job.description,
        category=job.category,
        urgency=job.urgency,
        price_estimate=job.price_estimate,
        photo_urls=job.photo_urls or [],
        location=job.service_location,
        status=JOB_STATUS[BookingStatus(job.status)],
        booking_status=BookingStatus(job.status).value,
        origin=job.origin,
        client_id=job.client_id,
        client_snapshot=job.client_snapshot,
        host_id=job.host_id,
        chat_id=job.chat_id,
        expires_at=job.expires_at,
        created_at=job.created_at,
    )


async def _get_job(db: AsyncSession, job_id: UUID) -> Booking:
    job = await db.get(Booking, job_id)
    if not job or job.source != BookingSource.MARKETPLACE:
        raise NotFound("Job not found", {"job_id": str(job_id)})
    return job


async def _get_job_chat(db: AsyncSession, job: Booking) -> Chat:
    """The job's chat, created on first use."""
    if job.chat_id:
        chat = await db.get(Chat, job.chat_id)
        if chat:
            return chat
    chat = await create_chat(db, job.id, [job.client_id])
    job.chat_id = chat.id
    return chat


async def _get_own_provider(db: AsyncSession, user: User) -> Provider:
    provider = await db.scalar(select(Provider).where(Provider.user_id == user.id))
    if not provider:
        raise ValidationError("Register a provider profile before sending proposals")
    return provider


# ── Jobs ──────────────────────────────────────────────────────

@router.post("", response_model=JobCreatedResponse, status_code=status.HTTP_201_CREATED)
async def publish_job(
    data: JobCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Publish an open job that professionals can send proposals for."""
    now = utcnow()
    title = job_title(data.category, data.location.address)
    job = Booking(
        booking_hash=generate_booking_hash(now.year),
        source=BookingSource.MARKETPLACE,
        client_id=current_user.id,
        status=BookingStatus.INQUIRY,
        status_history=[{
            "status": BookingStatus.INQUIRY.value,
            "changed_at": now.isoformat(),
            "changed_by": str(current_user.id),
            "reason": "published",
        }],
        pricing={},
        client_snapshot=snapshots.client_snapshot(current_user),
        service_location=service_location(data.location.lat, data.location.lng, data.location.address),
        title=title,
        description=data.description,
        category=data.category,
        urgency=map_urgency(data.urgency),
        price_estimate={"min": data.price_range.min, "max": data.price_range.max},
        photo_urls=list(data.photo_urls),
        origin="ai_chat",
        expires_at=now + timedelta(days=settings.BOOKING_VALIDITY_DAYS),
    )
    db.add(job)
    await db.commit()
    return JobCreatedResponse(id=job.id, title=title, status=JOB_STATUS[BookingStatus.INQUIRY])


@router.get("", response_model=List[JobResponse])
async def list_open_jobs(
    category: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking).where(
        Booking.source == BookingSource.MARKETPLACE,
        Booking.status == BookingStatus.INQUIRY,
        Booking.expires_at > utcnow(),
    )
    if category and category != "Wszyscy":
        query = query.where(Booking.category == category)
    result = await db.execute(query.order_by(Booking.created_at.desc()).limit(limit))
    return [to_job_response(j) for j in result.scalars().all()]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return to_job_response(await _get_job(db, job_id))


# ── Proposals ─────────────────────────────────────────────────

@router.post("/{job_id}/proposals", response_model=ProposalResponse, status_code=status.HTTP_201_CREATED)
async def submit_proposal(
    job_id: UUID,
    data: ProposalCreateRequest,
    current_user: User = Depends(require_professional),
    db: AsyncSession = Depends(get_db),
):
    job = await _get_job(db, job_id)
    if job.status != BookingStatus.INQUIRY:
        raise InvalidTransition(BookingStatus(job.status).value, "propose", "Job is no longer open for proposals")
    if job.client_id == current_user.id:
        raise ValidationError("You cannot send a proposal for your own job")

    provider = await _get_own_provider(db, current_user)
    existing = await db.scalar(
        select(JobProposal.id).where(
            JobProposal.job_id == job.id,
            JobProposal.pro_user_id == current_user.id,
            JobProposal.status == ProposalStatus.PENDING,
        )
    )
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You already have a pending proposal for this job")

    proposal = JobProposal(
        job_id=job.id,
        provider_id=provider.id,
        pro_user_id=current_user.id,
        pro_name=provider.display_name,
        pro_avatar_url=provider.avatar_url,
        pro_rating=provider.rating or 0.0,
        price=data.price,
        message=data.message,
        availability=data.availability,
        status=ProposalStatus.PENDING,
    )
    db.add(proposal)

    chat = await _get_job_chat(db, job)
    if not chat.has_participant(current_user.id):
        chat.participant_ids = list(chat.participant_ids or []) + [str(current_user.id)]
    message = append_message(
        db, chat, None, f"💼 Nowa oferta od {provider.display_name}: {data.price} {settings.CURRENCY}"
    )
    await db.commit()

    background.notify_new_message(chat.id, message.id)
    return proposal


@router.get("/{job_id}/proposals", response_model=List[ProposalResponse])
async def list_proposals(
    job_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The job's client sees every proposal; a professional sees their own."""
    job = await _get_job(db, job_id)
    query = select(JobProposal).where(JobProposal.job_id == job.id)
    if job.client_id != current_user.id:
        query = query.where(JobProposal.pro_user_id == current_user.id)
    proposals = (await db.execute(query.order_by(JobProposal.created_at.asc()))).scalars().all()
    if job.client_id != current_user.id and not proposals:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this job")
    return proposals


@router.post("/{job_id}/proposals/{proposal_id}/accept", response_model=JobResponse)
async def accept_proposal(
    job_id: UUID,
    proposal_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Client picks a proposal: the job moves INQUIRY -> PENDING_APPROVAL, gets
    its host and snapshots, the chosen proposal is accepted and the rest rejected.
    """
    job = await _get_job(db, job_id)
    if job.client_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the job's client can accept proposals")

    proposal = await db.get(JobProposal, proposal_id)
    if not proposal or proposal.job_id != job.id:
        raise NotFound("Proposal not found", {"proposal_id": str(proposal_id)})
    if proposal.status != ProposalStatus.PENDING:
        raise ValidationError(f"Proposal is {ProposalStatus(proposal.status).value}, not pending")

    provider = await db.get(Provider, proposal.provider_id)
    if not provider:
        raise NotFound("Provider not found", {"provider_id": str(proposal.provider_id)})

    job = await apply_transition(
        db,
        job.id,
        BookingAction.SELECT_PROPOSAL,
        Actor.CLIENT,
        changed_by=str(current_user.id),
        expected_status=BookingStatus.INQUIRY,
        reason=f"proposal {proposal.id}",
        extra_values={
            "host_id": provider.user_id,
            "provider_id": provider.id,
            "host_snapshot": snapshots.host_snapshot(provider),
            "listing_snapshot": snapshots.listing_snapshot(provider, job.category, proposal.price),
            "pricing": snapshots.pricing_for(proposal.price),
            "expires_at": None,
        },
    )

    await db.execute(
        update(JobProposal)
        .where(JobProposal.job_id == job.id, JobProposal.status == ProposalStatus.PENDING)
        .values(status=ProposalStatus.REJECTED)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(JobProposal)
        .where(JobProposal.id == proposal.id)
        .values(status=ProposalStatus.ACCEPTED)
        .execution_options(synchronize_session=False)
    )

    chat = await _get_job_chat(db, job)
    chat.participant_ids = [str(job.client_id), str(provider.user_id)]
    await db.commit()

    background.notify_booking_status(job.id)
    return to_job_response(job)


@router.post("/{job_id}/proposals/{proposal_id}/withdraw", response_model=ProposalResponse)
async def withdraw_proposal(
    job_id: UUID,
    proposal_id: UUID,
    current_user: User = Depends(require_professional),
    db: AsyncSession = Depends(get_db),
):
    proposal = await db.get(JobProposal, proposal_id)
    if not proposal or proposal.job_id != job_id:
        raise NotFound("Proposal not found", {"proposal_id": str(proposal_id)})
    if proposal.pro_user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your proposal")
    if proposal.status != ProposalStatus.PENDING:
        raise ValidationError("Only pending proposals can be withdrawn")

    proposal.status = ProposalStatus.WITHDRAWN
    await db.commit()
    return proposal
