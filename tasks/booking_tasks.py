"""
tasks/booking_tasks.py
Periodic booking maintenance.

Expiry uses the same conditional update as request-time transitions, so a
booking a user moves while the sweep runs is left alone.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from services.booking.state_machine import (
    NON_TERMINAL_STATUSES,
    BookingAction,
    is_expired,
    resolve,
    transition_values,
)
from shared.models.models import Booking, BookingStatus, utcnow
from shared.utils.background import notify_booking_status
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Booking validity window elapsed"


def expire_bookings(db: Session, now: Optional[datetime] = None) -> list:
    """Move every stale non-terminal booking to EXPIRED. Returns the expired ids."""
    now = now or utcnow()
    candidates = db.execute(
        select(Booking).where(Booking.status.in_(NON_TERMINAL_STATUSES))
    ).scalars().all()

    expired = []
    for booking in candidates:
        if not is_expired(booking, now):
            continue
        current = BookingStatus(booking.status)
        transition = resolve(current, BookingAction.EXPIRE)
        result = db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == current)
            .values(**transition_values(booking, transition, "system", EXPIRY_REASON, now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            expired.append(booking.id)
        else:
            logger.info(f"expire_bookings: booking {booking.id} moved concurrently, skipped")

    db.commit()
    return expired


@celery_app.task(bind=True, base=DatabaseTask)
def expire_stale_bookings(self):
    """Beat task: runs every 15 minutes."""
    db = self.get_session()
    try:
        expired = expire_bookings(db)
        for booking_id in expired:
            notify_booking_status(booking_id)
        logger.info(f"expire_stale_bookings: expired {len(expired)} bookings")
        return len(expired)
    except Exception as e:
        db.rollback()
        logger.exception(f"expire_stale_bookings failed: {e}")
        raise
    finally:
        db.close()
