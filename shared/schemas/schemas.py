"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import BookingStatus, CancellationPolicy, as_utc, utcnow


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


# ── Location ──────────────────────────────────────────────────

class LocationIn(BaseSchema):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)


class LocationOut(BaseSchema):
    lat: float
    lng: float
    address: Optional[str] = None
    geohash: Optional[str] = None


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: Optional[EmailStr] = None
    display_name: str
    avatar_url: Optional[str] = None
    role: str
    referral_code: Optional[str] = None
    wallet_balance: Decimal
    completed_bookings: int
    average_rating: float
    is_verified: bool
    trust_score: int
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    display_name: Optional[str] = Field(None, min_length=2, max_length=255)
    avatar_url: Optional[str] = Field(None, max_length=2000)


class FcmTokenRequest(BaseSchema):
    token: str = Field(..., min_length=10, max_length=4096)


class ReferralStatsResponse(BaseSchema):
    code: str
    total_referrals: int = 0
    completed_referrals: int = 0
    total_earnings: float = 0.0
    wallet_balance: float = 0.0


class ReferralApplyRequest(BaseSchema):
    code: str = Field(..., min_length=4, max_length=20)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class SubscriptionResponse(BaseSchema):
    tier: str
    status: str
    is_pro: bool
    is_premium: bool
    expires_at: Optional[datetime] = None


# ── Provider ──────────────────────────────────────────────────

class ProviderCreateRequest(BaseSchema):
    display_name: str = Field(..., min_length=2, max_length=255)
    bio: Optional[str] = Field(None, max_length=2000)
    avatar_url: Optional[str] = None
    categories: List[str] = Field(..., min_length=1, max_length=10)
    base_price: Decimal = Field(..., gt=0)
    price_unit: Literal["hour", "visit", "job"] = "hour"
    location: LocationIn

    @field_validator("categories")
    @classmethod
    def strip_categories(cls, v: List[str]) -> List[str]:
        cleaned = [c.strip() for c in v if c and c.strip()]
        if not cleaned:
            raise ValueError("At least one category is required")
        return cleaned


class ProviderLocationUpdate(LocationIn):
    pass


class ProviderResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    display_name: str
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    categories: List[str]
    base_price: Decimal
    price_unit: str
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    geohash: Optional[str] = None
    rating: float
    review_count: int
    is_verified: bool
    is_online: bool = False
    is_busy: bool = False
    is_super_fachowiec: bool = False
    super_fachowiec_streak: int = 0
    badges: List[Dict[str, Any]] = Field(default_factory=list)


class SimulationStatusResponse(BaseSchema):
    running: bool
    interval_seconds: float
    batch_size: int


# ── Availability ──────────────────────────────────────────────

HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class TimeSlot(BaseSchema):
    start: str = Field(..., pattern=HHMM)
    end: str = Field(..., pattern=r"^(([01]\d|2[0-3]):[0-5]\d|24:00)$")

    @model_validator(mode="after")
    def start_before_end(self):
        if self.start >= self.end:
            raise ValueError("Slot must end after it starts")
        return self


class DaySchedule(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    is_active: bool = True
    slots: List[TimeSlot] = Field(default_factory=list, max_length=12)


class ProviderScheduleRequest(BaseSchema):
    weekly_schedule: List[DaySchedule] = Field(..., max_length=7)
    blocked_dates: List[date] = Field(default_factory=list, max_length=366)
    timezone: str = "Europe/Warsaw"
    instant_booking: bool = False
    max_bookings_per_day: int = Field(8, ge=1, le=50)

    @field_validator("weekly_schedule")
    @classmethod
    def one_entry_per_day(cls, v: List[DaySchedule]) -> List[DaySchedule]:
        days = [d.day_of_week for d in v]
        if len(days) != len(set(days)):
            raise ValueError("Each day of the week may appear once")
        return v

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone '{v}'")
        return v


class ProviderScheduleResponse(ProviderScheduleRequest):
    provider_id: uuid.UUID
    updated_at: Optional[datetime] = None


class AvailabilityResponse(BaseSchema):
    provider_id: uuid.UUID
    at: datetime
    duration_minutes: int
    available: bool


class AvailableSlotsResponse(BaseSchema):
    provider_id: uuid.UUID
    slots: List[datetime]


# ── Search ────────────────────────────────────────────────────

class ProviderSearchResult(ProviderResponse):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True, populate_by_name=True)

    distance: float = Field(..., alias="_distance")
    distance_m: float
    distance_text: str
    eta: str


class ProviderSearchResponse(BaseSchema):
    items: List[ProviderSearchResult]
    total: int
    center: LocationOut
    radius_m: float
    category: Optional[str] = None


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    provider_id: uuid.UUID
    service_location: LocationIn
    scheduled_at: Optional[datetime] = None
    duration_minutes: int = Field(60, ge=15, le=720)
    notes: Optional[str] = Field(None, max_length=2000)
    cancellation_policy: CancellationPolicy = CancellationPolicy.MODERATE

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_in_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and as_utc(v) <= utcnow():
            raise ValueError("scheduled_at must be in the future")
        return v


class BookingCreatedResponse(BaseSchema):
    id: uuid.UUID
    booking_hash: str
    status: str
    chat_id: Optional[uuid.UUID] = None


class BookingTransitionRequest(BaseSchema):
    action: Literal["accept", "decline", "cancel", "start", "complete"]
    expected_status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_hash: str
    source: str
    client_id: uuid.UUID
    host_id: Optional[uuid.UUID] = None
    provider_id: Optional[uuid.UUID] = None
    status: str
    status_history: List[Dict[str, Any]]
    pricing: Dict[str, Any]
    payment_status: str
    cancellation_policy: str
    client_snapshot: Dict[str, Any]
    host_snapshot: Optional[Dict[str, Any]] = None
    listing_snapshot: Optional[Dict[str, Any]] = None
    service_location: Dict[str, Any]
    scheduled_at: Optional[datetime] = None
    estimated_duration_minutes: int = 60
    notes: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    chat_id: Optional[uuid.UUID] = None
    has_review: bool
    check_in_at: Optional[datetime] = None
    check_out_at: Optional[datetime] = None
    review_window_ends_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReviewCreateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    client_id: uuid.UUID
    host_id: uuid.UUID
    provider_id: Optional[uuid.UUID] = None
    rating: int
    comment: Optional[str] = None
    is_visible: bool
    created_at: datetime


# ── Jobs (marketplace) ────────────────────────────────────────

class PriceRange(BaseSchema):
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)

    @model_validator(mode="after")
    def check_order(self) -> "PriceRange":
        if self.max < self.min:
            raise ValueError("max must be greater than or equal to min")
        return self


class JobLocationIn(LocationIn):
    address: str = Field(..., min_length=3, max_length=500)


class JobCreateRequest(BaseSchema):
    description: str = Field(..., min_length=3, max_length=5000)
    category: str = Field(..., min_length=2, max_length=100)
    location: JobLocationIn
    price_range: PriceRange
    urgency: str = "medium"  # high | medium | low
    photo_urls: List[str] = Field(default_factory=list, max_length=10)


class JobCreatedResponse(BaseSchema):
    id: uuid.UUID
    title: str
    status: str


class JobResponse(BaseSchema):
    id: uuid.UUID
    booking_hash: str
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    urgency: Optional[str] = None
    price_estimate: Optional[Dict[str, Any]] = None
    photo_urls: List[str] = []
    location: Dict[str, Any]
    status: str
    booking_status: str
    origin: Optional[str] = None
    client_id: uuid.UUID
    client_snapshot: Dict[str, Any]
    host_id: Optional[uuid.UUID] = None
    chat_id: Optional[uuid.UUID] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class ProposalCreateRequest(BaseSchema):
    price: Decimal = Field(..., gt=0)
    message: str = Field(..., min_length=1, max_length=2000)
    availability: Optional[datetime] = None


class ProposalResponse(BaseSchema):
    id: uuid.UUID
    job_id: uuid.UUID
    provider_id: uuid.UUID
    pro_user_id: uuid.UUID
    pro_name: str
    pro_avatar_url: Optional[str] = None
    pro_rating: float
    price: Decimal
    message: str
    availability: Optional[datetime] = None
    status: str
    created_at: datetime


# ── Chat ──────────────────────────────────────────────────────

class ChatResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID] = None
    participant_ids: List[str]
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_sender_id: Optional[uuid.UUID] = None


class MessageCreateRequest(BaseSchema):
    text: str = Field(..., min_length=1, max_length=4000)

    @field_validator("text")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be blank")
        return v.strip()


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    chat_id: uuid.UUID
    sender_id: Optional[uuid.UUID] = None
    text: str
    is_read: bool
    created_at: datetime


class MarkReadResponse(BaseSchema):
    updated: int


# ── AI ────────────────────────────────────────────────────────

class AnalyzeJobRequest(BaseSchema):
    description: str = Field("", max_length=5000)


class JobAnalysisResponse(BaseSchema):
    category: str
    title: str
    tags: List[str]
    price_min: float
    price_max: float
    urgency: str
    confidence: float
    source: Literal["ai", "fallback"]


class AssistantProfessional(BaseSchema):
    id: str
    name: str
    profession: Optional[str] = None
    rating: Optional[float] = None
    price: Optional[float] = None
    distance: Optional[float] = None


class AssistantContext(BaseSchema):
    job_description: Optional[str] = None
    category: Optional[str] = None
    price_range: Optional[PriceRange] = None
    professionals: List[AssistantProfessional] = []
    selected_professional: Optional[AssistantProfessional] = None
    address: Optional[str] = None
    current_state: Optional[str] = None


class AssistantChatRequest(BaseSchema):
    message: str = Field(..., min_length=1, max_length=2000)
    context: AssistantContext = Field(default_factory=AssistantContext)


class AssistantAction(BaseSchema):
    type: str = "NONE"
    payload: Dict[str, Any] = {}


class AssistantChatResponse(BaseSchema):
    response: str
    action: AssistantAction
    success: bool


# ── Geocoding ─────────────────────────────────────────────────

class GeocodeResponse(BaseSchema):
    lat: float
    lng: float
    formatted_address: str


# ── Payments ──────────────────────────────────────────────────

class PaymentIntentRequest(BaseSchema):
    booking_id: uuid.UUID


class PaymentIntentResponse(BaseSchema):
    order_id: str
    key_id: str
    amount: int  # grosze
    currency: str
    booking_id: uuid.UUID
    platform_fee: int
    host_payout: int


class OnboardingLinkResponse(BaseSchema):
    account_id: str
    refresh_url: str
    return_url: str


class SplitPaymentRequest(BaseSchema):
    booking_id: uuid.UUID


class SplitPaymentResponse(BaseSchema):
    order_id: str
    amount: int
    currency: str
    platform_fee: int
    transfer_amount: int
    destination_account: str


class PaymentVerifyRequest(BaseSchema):
    booking_id: uuid.UUID
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
