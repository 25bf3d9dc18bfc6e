"""
tasks/trust_tasks.py
Trust score: completed jobs (40%), average rating (40%), verification (20%).
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.models.models import User, utcnow
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

COMPLETED_BOOKINGS_FOR_FULL_SCORE = 50


def trust_score(completed_bookings: int, average_rating: float, is_verified: bool) -> int:
    """0-100."""
    experience = min(completed_bookings / COMPLETED_BOOKINGS_FOR_FULL_SCORE * 100, 100)
    rating = (average_rating or 0.0) / 5 * 100
    verification = 100 if is_verified else 0
    return round(0.4 * experience + 0.4 * rating + 0.2 * verification)


def update_trust_score(db: Session, user_id: uuid.UUID):
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not user:
        logger.warning(f"update_trust_score: user {user_id} not found")
        return None

    user.trust_score = trust_score(user.completed_bookings, user.average_rating, user.is_verified)
    user.trust_score_updated_at = utcnow()
    db.commit()
    return user.trust_score


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3)
def recalculate_trust_score(self, user_id: str):
    """Queued after a booking completes or a review arrives."""
    db = self.get_session()
    try:
        score = update_trust_score(db, uuid.UUID(user_id))
        logger.info(f"Trust score for {user_id}: {score}")
        return score
    except Exception as e:
        db.rollback()
        logger.exception(f"recalculate_trust_score failed for {user_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()
