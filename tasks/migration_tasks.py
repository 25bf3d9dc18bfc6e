"""
tasks/migration_tasks.py
One-off copy of legacy `orders` rows into `bookings`.

Idempotent: an order whose id is already a booking's `legacy_order_id` is
skipped. Run from a worker, or directly:

    python -m tasks.migration_tasks
"""

import json
import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from services.booking.snapshots import pricing_for
from services.booking.state_machine import generate_booking_hash
from shared.models.models import (
    Booking,
    BookingSource,
    BookingStatus,
    CancellationPolicy,
    LegacyOrder,
    PaymentStatus,
    Provider,
    User,
    as_utc,
    utcnow,
)
from shared.utils.geohash import encode as encode_geohash
from tasks.base import DatabaseTask, get_sync_session_factory
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

LEGACY_STATUS_MAP = {
    "pending": BookingStatus.PENDING_APPROVAL,
    "accepted": BookingStatus.CONFIRMED,
    "en_route": BookingStatus.ACTIVE,
    "in_progress": BookingStatus.ACTIVE,
    "completed": BookingStatus.COMPLETED,
    "cancelled": BookingStatus.CANCELED_BY_GUEST,
    "rejected": BookingStatus.CANCELED_BY_HOST,
}

LEGACY_CLIENT_NAME = "Klient (Legacy)"
LEGACY_PRO_NAME = "Fachowiec (Legacy)"
UNKNOWN_ADDRESS = "Adres nieznany"
# Poznań city centre
DEFAULT_LAT, DEFAULT_LNG = 52.4064, 16.9252


def map_legacy_status(status: Optional[str]) -> BookingStatus:
    return LEGACY_STATUS_MAP.get((status or "").lower(), BookingStatus.INQUIRY)


def _display_name(db: Session, user_id, fallback: Optional[str], placeholder: str) -> str:
    if user_id is not None:
        user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
        if user and user.display_name:
            return user.display_name
    return fallback or placeholder


def booking_from_order(db: Session, order: LegacyOrder) -> Booking:
    status = map_legacy_status(order.status)
    now = utcnow()
    location = order.location or {}
    lat = DEFAULT_LAT if location.get("lat") is None else location["lat"]
    lng = DEFAULT_LNG if location.get("lng") is None else location["lng"]

    provider = None
    if order.professional_id is not None:
        provider = db.execute(
            select(Provider).where(Provider.user_id == order.professional_id)
        ).scalar_one_or_none()

    price = order.price or 0
    return Booking(
        booking_hash=generate_booking_hash(),
        source=BookingSource.DIRECT if order.professional_id else BookingSource.MARKETPLACE,
        client_id=order.client_id,
        host_id=order.professional_id,
        provider_id=provider.id if provider else None,
        status=status,
        status_history=[{
            "status": status.value,
            "changed_at": now.isoformat(),
            "changed_by": "system-migration",
            "reason": "Migrated from legacy order",
        }],
        client_snapshot={
            "display_name": _display_name(db, order.client_id, order.client_name, LEGACY_CLIENT_NAME),
            "avatar_url": None,
        },
        host_snapshot={
            "display_name": _display_name(db, order.professional_id, order.professional_name, LEGACY_PRO_NAME),
            "avatar_url": None,
            "rating_at_booking": 0.0,
        },
        listing_snapshot={
            "title": order.service_type,
            "service_type": order.service_type,
            "price_at_booking": float(price),
            "price_unit": "visit",
        },
        pricing=pricing_for(price),
        payment_status=PaymentStatus.UNPAID,
        cancellation_policy=CancellationPolicy.FLEXIBLE,
        service_location={
            "lat": lat,
            "lng": lng,
            "address": location.get("address") or UNKNOWN_ADDRESS,
            "geohash": encode_geohash(lat, lng, settings.PROVIDER_GEOHASH_PRECISION),
        },
        description=order.description,
        category=order.service_type,
        chat_id=order.chat_id,
        legacy_order_id=order.id,
        created_at=as_utc(order.created_at) or now,
        updated_at=now,
    )


def migrate_orders(db: Session) -> Dict[str, int]:
    """Copy every not-yet-migrated order. A failing order is counted, not fatal."""
    stats = {"migrated": 0, "skipped": 0, "errors": 0}
    migrated_ids = set(db.execute(
        select(Booking.legacy_order_id).where(Booking.legacy_order_id.is_not(None))
    ).scalars().all())

    orders = db.execute(select(LegacyOrder).order_by(LegacyOrder.created_at)).scalars().all()
    logger.info(f"migrate_orders: found {len(orders)} legacy orders")

    for order in orders:
        if order.id in migrated_ids:
            stats["skipped"] += 1
            continue
        try:
            with db.begin_nested():
                db.add(booking_from_order(db, order))
            stats["migrated"] += 1
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"migrate_orders: order {order.id} failed: {e}")

    db.commit()
    logger.info(f"migrate_orders: {stats}")
    return stats


@celery_app.task(bind=True, base=DatabaseTask)
def migrate_orders_to_bookings(self):
    db = self.get_session()
    try:
        return migrate_orders(db)
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    with get_sync_session_factory()() as session:
        print(json.dumps(migrate_orders(session)))
