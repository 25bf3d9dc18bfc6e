"""
shared/models/models.py
All SQLAlchemy ORM models for the FachowcyNow marketplace.
UUID primary keys throughout; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from config.settings import settings
from shared.utils.geohash import encode as encode_geohash

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "CLIENT"
    PROFESSIONAL = "PROFESSIONAL"
    ADMIN = "ADMIN"


class BookingStatus(str, PyEnum):
    INQUIRY = "INQUIRY"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELED_BY_HOST = "CANCELED_BY_HOST"
    CANCELED_BY_GUEST = "CANCELED_BY_GUEST"
    EXPIRED = "EXPIRED"


class BookingSource(str, PyEnum):
    DIRECT = "direct"
    MARKETPLACE = "marketplace"


class PaymentStatus(str, PyEnum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class CancellationPolicy(str, PyEnum):
    FLEXIBLE = "flexible"
    MODERATE = "moderate"
    STRICT = "strict"


class JobUrgency(str, PyEnum):
    ASAP = "asap"
    TODAY = "today"
    WEEK = "week"
    FLEXIBLE = "flexible"


class ProposalStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ReferralStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    BONUS_PAID = "bonus_paid"


class SubscriptionTier(str, PyEnum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"
    PREMIUM = "premium"


class SubscriptionStatus(str, PyEnum):
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class GeoPointMixin:
    """
    lat/lng plus the derived geohash. The geohash is recomputed from lat/lng
    on every insert and update (see `_sync_geohash`), so it is never stale.
    """
    geohash_precision = 10

    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    geohash: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)

    def relocate(self, lat: float, lng: float) -> None:
        self.lat = lat
        self.lng = lng
        self.geohash = encode_geohash(lat, lng, self.geohash_precision)


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account mirrored from the identity provider (id == token `sub`)."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False, default=UserRole.CLIENT)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fcm_tokens: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Referrals / wallet
    referral_code: Mapped[Optional[str]] = mapped_column(String(20), unique=True, nullable=True)
    referral_stats: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    wallet_balance: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)

    # Trust score inputs (denormalized)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trust_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    trust_score_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    provider: Mapped[Optional["Provider"]] = relationship(back_populates="user", uselist=False)

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.display_name} ({self.role})>"


class Provider(GeoPointMixin, TimestampMixin, Base):
    """A professional's public listing. `lat`/`lng` is the base location."""
    __tablename__ = "providers"

    geohash_precision = settings.PROVIDER_GEOHASH_PRECISION

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    categories: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_unit: Mapped[str] = mapped_column(String(20), default="hour", nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Rating (denormalized for query performance)
    rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout_account_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Quarterly Super Fachowiec evaluation
    is_super_fachowiec: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    super_fachowiec_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    super_fachowiec_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    host_metrics: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    badges: Mapped[List[dict]] = mapped_column(JSONType, default=list, nullable=False)
    last_evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_evaluation_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    user: Mapped["User"] = relationship(back_populates="provider")
    live_status: Mapped[Optional["ProviderStatus"]] = relationship(
        back_populates="provider", uselist=False, lazy="selectin"
    )

    __table_args__ = (Index("ix_providers_geohash", "geohash"),)


class ProviderStatus(GeoPointMixin, Base):
    """Live liveness feed: current position and online/busy flags."""
    __tablename__ = "provider_status"

    geohash_precision = settings.PROVIDER_GEOHASH_PRECISION

    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), primary_key=True
    )
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_busy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    provider: Mapped["Provider"] = relationship(back_populates="live_status")


class ProviderSchedule(TimestampMixin, Base):
    """
    Working hours in the provider's own time zone.
    weekly_schedule: [{day_of_week: 0-6 (Sunday first), is_active, slots: [{start: "09:00", end: "17:00"}]}]
    blocked_dates: ["2025-06-01", ...] whole days off.
    """
    __tablename__ = "provider_schedules"

    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id", ondelete="CASCADE"), primary_key=True
    )
    weekly_schedule: Mapped[List[dict]] = mapped_column(JSONType, default=list, nullable=False)
    blocked_dates: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="Europe/Warsaw", nullable=False)
    instant_booking: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_bookings_per_day: Mapped[int] = mapped_column(Integer, default=8, nullable=False)


class Booking(TimestampMixin, Base):
    """
    A client's request for service, tracked end to end.
    `source` tells direct bookings from marketplace jobs; a marketplace job
    starts as INQUIRY without a host and gets one when a proposal is selected.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_hash: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    source: Mapped[BookingSource] = mapped_column(Enum(BookingSource), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    host_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=True
    )

    status: Mapped[BookingStatus] = mapped_column(Enum(BookingStatus), nullable=False)
    status_history: Mapped[List[dict]] = mapped_column(JSONType, default=list, nullable=False)

    # Pricing {total_amount, currency, platform_fee, host_payout}
    pricing: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False
    )
    payment_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancellation_policy: Mapped[CancellationPolicy] = mapped_column(
        Enum(CancellationPolicy), default=CancellationPolicy.MODERATE, nullable=False
    )

    # Point-in-time copies; written once, never updated
    client_snapshot: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    host_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    listing_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # {lat, lng, address, geohash}
    service_location: Mapped[dict] = mapped_column(JSONType, nullable=False)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    estimated_duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Marketplace job fields
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    urgency: Mapped[Optional[JobUrgency]] = mapped_column(Enum(JobUrgency), nullable=True)
    price_estimate: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    photo_urls: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    origin: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    chat_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    has_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    check_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    check_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    review_window_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    legacy_order_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)

    review: Mapped[Optional["Review"]] = relationship(back_populates="booking", uselist=False)
    proposals: Mapped[List["JobProposal"]] = relationship(back_populates="job")

    __table_args__ = (
        Index("ix_bookings_client_id", "client_id"),
        Index("ix_bookings_host_id", "host_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_source_status", "source", "status"),
    )


class JobProposal(TimestampMixin, Base):
    """A professional's offer on an open marketplace job."""
    __tablename__ = "job_proposals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("providers.id"), nullable=False)
    pro_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    pro_name: Mapped[str] = mapped_column(String(255), nullable=False)
    pro_avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pro_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    availability: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[ProposalStatus] = mapped_column(
        Enum(ProposalStatus), default=ProposalStatus.PENDING, nullable=False
    )

    job: Mapped["Booking"] = relationship(back_populates="proposals")

    __table_args__ = (Index("ix_job_proposals_job_id", "job_id"),)


class Chat(TimestampMixin, Base):
    """Conversation between a booking's client and host."""
    __tablename__ = "chats"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    participant_ids: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    last_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    messages: Mapped[List["ChatMessage"]] = relationship(back_populates="chat")

    __table_args__ = (Index("ix_chats_booking_id", "booking_id"),)

    def has_participant(self, user_id: uuid.UUID) -> bool:
        return str(user_id) in (self.participant_ids or [])


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    chat_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    # None for system messages (e.g. a new proposal notice)
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    chat: Mapped["Chat"] = relationship(back_populates="messages")

    __table_args__ = (Index("ix_chat_messages_chat_created", "chat_id", "created_at"),)


class Review(TimestampMixin, Base):
    """Post-booking review. One per booking (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    host_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=True
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True)

    booking: Mapped["Booking"] = relationship(back_populates="review")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_provider_id", "provider_id"),
    )


class Referral(TimestampMixin, Base):
    __tablename__ = "referrals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    referee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), unique=True, nullable=False
    )
    referee_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    referral_code: Mapped[str] = mapped_column(String(20), nullable=False)
    referee_type: Mapped[str] = mapped_column(String(20), nullable=False)  # client | professional
    status: Mapped[ReferralStatus] = mapped_column(
        Enum(ReferralStatus), default=ReferralStatus.PENDING, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    tier: Mapped[SubscriptionTier] = mapped_column(
        Enum(SubscriptionTier), default=SubscriptionTier.FREE, nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class LegacyOrder(Base):
    """Pre-booking `orders` records, read once by the migration task."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    professional_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    client_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    professional_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    service_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    location: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    chat_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# ── Geohash sync ──────────────────────────────────────────────

def _sync_geohash(mapper, connection, target) -> None:
    if target.lat is None or target.lng is None:
        target.geohash = None
    else:
        target.geohash = encode_geohash(target.lat, target.lng, target.geohash_precision)


for _model in (Provider, ProviderStatus):
    event.listen(_model, "before_insert", _sync_geohash)
    event.listen(_model, "before_update", _sync_geohash)
