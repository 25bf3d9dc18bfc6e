"""
tasks/host_evaluation_tasks.py
Quarterly Super Fachowiec evaluation and badge awards for professionals.

Over the trailing 365 days a host qualifies with:
    average rating            >= 4.8
    response rate             >= 90%
    host cancellation rate    <= 1%
    volume                    >= 10 completed bookings or >= 100 hours
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.models.models import Booking, BookingStatus, Provider, Review, User, as_utc, utcnow
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

EVALUATION_WINDOW_DAYS = 365
MIN_RATING = 4.8
MIN_RESPONSE_RATE = 0.90
MAX_CANCELLATION_RATE = 0.01
MIN_COMPLETED_BOOKINGS = 10
MIN_TOTAL_HOURS = 100

RESPONDED_STATUSES = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELED_BY_HOST,
    BookingStatus.CANCELED_BY_GUEST,
})
CONFIRMED_STATUSES = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELED_BY_GUEST,
    BookingStatus.CANCELED_BY_HOST,
})

# Badge id -> (name, tier thresholds bronze..platinum or None)
BADGES: Dict[str, Tuple[str, Optional[Tuple[int, int, int, int]]]] = {
    "verified_identity": ("Zweryfikowana Tożsamość", None),
    "first_job": ("Pierwsze Zlecenie", None),
    "veteran": ("Weteran", (25, 50, 100, 500)),
    "five_star_streak": ("Seria 5 Gwiazdek", (5, 10, 25, 50)),
    "community_hero": ("Bohater Społeczności", (3, 10, 25, 50)),
    "early_adopter": ("Early Adopter", None),
}
TIER_NAMES = ("bronze", "silver", "gold", "platinum")
EARLY_ADOPTER_CUTOFF = datetime(2026, 1, 1, tzinfo=timezone.utc)


@dataclass
class HostMetrics:
    average_rating: float
    response_rate: float
    cancellation_rate: float
    completed_bookings: int
    total_hours: float


# ── Metrics ───────────────────────────────────────────────────

def _status(booking: Booking) -> BookingStatus:
    return BookingStatus(booking.status)


def response_rate(bookings: List[Booking]) -> float:
    """Answered requests over answered plus expired. 1.0 with nothing to answer."""
    responded = sum(1 for b in bookings if _status(b) in RESPONDED_STATUSES)
    expired = sum(1 for b in bookings if _status(b) == BookingStatus.EXPIRED)
    if responded + expired == 0:
        return 1.0
    return responded / (responded + expired)


def cancellation_rate(bookings: List[Booking]) -> float:
    confirmed = [
        b for b in bookings
        if _status(b) in CONFIRMED_STATUSES
        or any(h.get("status") == BookingStatus.CONFIRMED.value for h in b.status_history or [])
    ]
    if not confirmed:
        return 0.0
    return sum(1 for b in confirmed if _status(b) == BookingStatus.CANCELED_BY_HOST) / len(confirmed)


def worked_hours(bookings: List[Booking]) -> float:
    """Check-in to check-out where recorded, otherwise the estimated duration."""
    minutes = 0.0
    for b in bookings:
        if b.check_in_at and b.check_out_at:
            minutes += (as_utc(b.check_out_at) - as_utc(b.check_in_at)).total_seconds() / 60
        else:
            minutes += b.estimated_duration_minutes or 60
    return minutes / 60


def collect_metrics(db: Session, host_id: uuid.UUID, now: datetime) -> HostMetrics:
    since = now - timedelta(days=EVALUATION_WINDOW_DAYS)
    bookings = [
        b for b in db.execute(select(Booking).where(Booking.host_id == host_id)).scalars()
        if as_utc(b.created_at) >= since
    ]
    ratings = [
        r.rating for r in db.execute(
            select(Review).where(Review.host_id == host_id, Review.is_visible.is_(True))
        ).scalars()
        if as_utc(r.created_at) >= since
    ]
    completed = [b for b in bookings if _status(b) == BookingStatus.COMPLETED]
    return HostMetrics(
        average_rating=sum(ratings) / len(ratings) if ratings else 0.0,
        response_rate=response_rate(bookings),
        cancellation_rate=cancellation_rate(bookings),
        completed_bookings=len(completed),
        total_hours=worked_hours(completed),
    )


def failed_criteria(metrics: HostMetrics) -> List[str]:
    failed = []
    if metrics.average_rating < MIN_RATING:
        failed.append(f"Średnia ocen: {metrics.average_rating:.2f} (wymagane: ≥{MIN_RATING})")
    if metrics.response_rate < MIN_RESPONSE_RATE:
        failed.append(
            f"Response rate: {metrics.response_rate * 100:.0f}% (wymagane: ≥{MIN_RESPONSE_RATE * 100:.0f}%)"
        )
    if metrics.cancellation_rate > MAX_CANCELLATION_RATE:
        failed.append(
            f"Cancellation rate: {metrics.cancellation_rate * 100:.1f}% "
            f"(wymagane: ≤{MAX_CANCELLATION_RATE * 100:.0f}%)"
        )
    if metrics.completed_bookings < MIN_COMPLETED_BOOKINGS and metrics.total_hours < MIN_TOTAL_HOURS:
        failed.append(
            f"Wolumen: {metrics.completed_bookings} zleceń / {metrics.total_hours:.0f}h "
            f"(wymagane: ≥{MIN_COMPLETED_BOOKINGS} zleceń LUB ≥{MIN_TOTAL_HOURS}h)"
        )
    return failed


def next_quarter_start(now: datetime) -> datetime:
    quarter_month = ((now.month - 1) // 3 + 1) * 3 + 1
    if quarter_month > 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, quarter_month, 1, tzinfo=timezone.utc)


def badge_text(streak: int) -> str:
    """Profile label for a Super Fachowiec with `streak` consecutive quarters."""
    if streak >= 8:
        return "🏆 Super-Fachowiec LEGEND (2+ lata)"
    if streak >= 4:
        return "⭐ Super-Fachowiec GOLD (1+ rok)"
    return "✨ Super-Fachowiec"


# ── Badges ────────────────────────────────────────────────────

def tier_for(value: float, thresholds: Tuple[int, int, int, int]) -> Optional[str]:
    tier = None
    for name, threshold in zip(TIER_NAMES, thresholds):
        if value >= threshold:
            tier = name
    return tier


def five_star_streak(ratings_newest_first: List[int]) -> int:
    streak = 0
    for rating in ratings_newest_first:
        if rating != 5:
            break
        streak += 1
    return streak


def earned_badges(
    user: User,
    provider: Provider,
    completed_jobs: int,
    five_star_run: int,
    now: datetime,
) -> List[dict]:
    """Current badge set. Badges already held keep their original earned_at."""
    held = {b["id"]: b for b in provider.badges or []}
    values = {
        "veteran": completed_jobs,
        "five_star_streak": five_star_run,
        "community_hero": (user.referral_stats or {}).get("total", 0),
    }
    earned = {
        "verified_identity": bool(provider.is_verified or user.is_verified),
        "first_job": completed_jobs >= 1,
        "early_adopter": as_utc(user.created_at) < EARLY_ADOPTER_CUTOFF,
    }

    badges = []
    for badge_id, (name, thresholds) in BADGES.items():
        tier = None
        if thresholds is not None:
            tier = tier_for(values[badge_id], thresholds)
            if tier is None:
                continue
        elif not earned[badge_id]:
            continue
        earned_at = held[badge_id]["earned_at"] if badge_id in held else now.isoformat()
        badges.append({"id": badge_id, "name": name, "tier": tier, "earned_at": earned_at})
    return badges


# ── Evaluation ────────────────────────────────────────────────

def evaluate_host(db: Session, provider: Provider, now: Optional[datetime] = None) -> dict:
    """Evaluate one host, store the result on the provider and return it."""
    now = now or utcnow()
    user = db.execute(select(User).where(User.id == provider.user_id)).scalar_one()
    metrics = collect_metrics(db, provider.user_id, now)
    failed = failed_criteria(metrics)
    qualifies = not failed

    if qualifies:
        if provider.is_super_fachowiec:
            provider.super_fachowiec_streak = (provider.super_fachowiec_streak or 0) + 1
        else:
            provider.super_fachowiec_streak = 1
            provider.super_fachowiec_since = now
    else:
        provider.super_fachowiec_streak = 0
        provider.super_fachowiec_since = None
    provider.is_super_fachowiec = qualifies

    recent_ratings = db.execute(
        select(Review.rating)
        .where(Review.host_id == provider.user_id, Review.is_visible.is_(True))
        .order_by(Review.created_at.desc())
    ).scalars().all()
    provider.badges = earned_badges(
        user, provider, user.completed_bookings or 0, five_star_streak(list(recent_ratings)), now
    )
    provider.host_metrics = {**asdict(metrics), "failed_criteria": failed}
    provider.last_evaluated_at = now
    provider.next_evaluation_at = next_quarter_start(now)
    db.commit()

    label = badge_text(provider.super_fachowiec_streak) if qualifies else "not qualified"
    logger.info(f"Host evaluation {provider.user_id}: {label} (streak {provider.super_fachowiec_streak})")
    return {"host_id": str(provider.user_id), "qualifies": qualifies, "failed_criteria": failed}


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3)
def evaluate_super_fachowiec(self, user_id: str):
    db = self.get_session()
    try:
        provider = db.execute(
            select(Provider).where(Provider.user_id == uuid.UUID(user_id))
        ).scalar_one_or_none()
        if provider is None:
            logger.warning(f"evaluate_super_fachowiec: no provider for user {user_id}")
            return None
        return evaluate_host(db, provider)
    except Exception as e:
        db.rollback()
        logger.exception(f"evaluate_super_fachowiec failed for {user_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()


def evaluate_all(db: Session, now: Optional[datetime] = None) -> dict:
    """One failing host is logged and skipped; the rest are still evaluated."""
    stats = {"total": 0, "qualified": 0, "disqualified": 0, "errors": 0}
    providers = db.execute(select(Provider)).scalars().all()
    for provider in providers:
        stats["total"] += 1
        try:
            result = evaluate_host(db, provider, now)
        except Exception as e:
            db.rollback()
            stats["errors"] += 1
            logger.error(f"Host evaluation failed for {provider.user_id}: {e}")
            continue
        stats["qualified" if result["qualifies"] else "disqualified"] += 1
    return stats


@celery_app.task(bind=True, base=DatabaseTask)
def evaluate_all_hosts(self):
    """Beat task: first day of each quarter."""
    db = self.get_session()
    try:
        stats = evaluate_all(db)
        logger.info(f"evaluate_all_hosts: {stats}")
        return stats
    finally:
        db.close()
