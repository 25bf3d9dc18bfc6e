"""
services/payment/router.py
Razorpay integration: checkout orders, Route linked accounts for
professionals, split orders that transfer the host payout, signature
verification and the webhook.

Amounts go to Razorpay in grosze (x100). The platform keeps
PLATFORM_FEE_PERCENT of the total; the rest is the host payout.
"""

import json
import logging
from typing import Any, Callable, Dict
from uuid import UUID

import razorpay
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pybreaker import CircuitBreakerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.snapshots import split_amounts
from services.booking.state_machine import TERMINAL_STATUSES, get_booking
from shared.exceptions import ExternalServiceError, NotFound, ValidationError
from shared.middleware.auth import get_current_user, require_professional
from shared.models.models import Booking, BookingStatus, PaymentStatus, Provider, User
from shared.schemas.schemas import (
    MessageResponse,
    OnboardingLinkResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentVerifyRequest,
    SplitPaymentRequest,
    SplitPaymentResponse,
)
from shared.utils.resilience import circuit_breaker_manager
from shared.utils.security import verify_razorpay_signature, verify_razorpay_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_razorpay_client() -> razorpay.Client:
    return razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))


async def _razorpay(fn: Callable, *args) -> Dict[str, Any]:
    """Run a sync SDK call off the event loop behind the razorpay breaker."""
    breaker = circuit_breaker_manager.get_breaker("razorpay")
    try:
        return await run_in_threadpool(breaker.call, fn, *args)
    except CircuitBreakerError as e:
        raise ExternalServiceError("razorpay", "Payment service temporarily unavailable") from e
    except Exception as e:
        logger.error(f"Razorpay call failed: {e}")
        raise ExternalServiceError("razorpay", str(e) or "Payment gateway error") from e


async def _get_payable_booking(db: AsyncSession, booking_id: UUID, user: User) -> Booking:
    booking = await get_booking(db, booking_id)
    if booking.client_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the client can pay for this booking")
    if booking.payment_status == PaymentStatus.PAID:
        raise ValidationError("Booking is already paid")
    if BookingStatus(booking.status) in TERMINAL_STATUSES and booking.status != BookingStatus.COMPLETED:
        raise ValidationError(f"Cannot pay for a booking in '{BookingStatus(booking.status).value}' state")
    if not (booking.pricing or {}).get("total_amount"):
        raise ValidationError("Booking has no price yet")
    return booking


# ── Payment Intent ────────────────────────────────────────────

@router.post("/intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    data: PaymentIntentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a Razorpay order the client opens in checkout."""
    booking = await _get_payable_booking(db, data.booking_id, current_user)
    amount, fee, payout = split_amounts(booking.pricing["total_amount"])

    order = await _razorpay(get_razorpay_client().order.create, {
        "amount": amount,
        "currency": settings.CURRENCY,
        "receipt": booking.booking_hash,
        "notes": {"booking_id": str(booking.id), "client_id": str(current_user.id)},
    })

    booking.payment_order_id = order["id"]
    booking.payment_status = PaymentStatus.PENDING
    await db.commit()

    return PaymentIntentResponse(
        order_id=order["id"],
        key_id=settings.RAZORPAY_KEY_ID,
        amount=amount,
        currency=settings.CURRENCY,
        booking_id=booking.id,
        platform_fee=fee,
        host_payout=payout,
    )


# ── Professional Onboarding ───────────────────────────────────

@router.post("/onboarding-link", response_model=OnboardingLinkResponse)
async def create_onboarding_link(
    current_user: User = Depends(require_professional),
    db: AsyncSession = Depends(get_db),
):
    """Create (once) the professional's Route linked account for payouts."""
    provider = await db.scalar(select(Provider).where(Provider.user_id == current_user.id))
    if not provider:
        raise NotFound("Provider profile not found")

    if not provider.payout_account_id:
        account = await _razorpay(get_razorpay_client().account.create, {
            "email": current_user.email,
            "type": "route",
            "reference_id": str(provider.id)[:20],
            "legal_business_name": provider.display_name,
            "business_type": "individual",
            "contact_name": current_user.display_name,
            "notes": {"provider_id": str(provider.id), "user_id": str(current_user.id)},
        })
        provider.payout_account_id = account["id"]
        await db.commit()
        logger.info(f"Created linked account {account['id']} for provider {provider.id}")

    base = settings.FRONTEND_URL.rstrip("/")
    return OnboardingLinkResponse(
        account_id=provider.payout_account_id,
        refresh_url=f"{base}/pro/dashboard?payments=refresh",
        return_url=f"{base}/pro/dashboard?payments=success",
    )


# ── Split Payment ─────────────────────────────────────────────

@router.post("/split", response_model=SplitPaymentResponse)
async def create_split_payment(
    data: SplitPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Order whose host payout is transferred to the host's linked account."""
    booking = await _get_payable_booking(db, data.booking_id, current_user)
    if booking.host_id is None:
        raise ValidationError("Booking has no professional assigned yet")

    provider = await db.scalar(select(Provider).where(Provider.user_id == booking.host_id))
    if not provider or not provider.payout_account_id:
        raise ValidationError("Professional has not completed payment onboarding")

    amount, fee, payout = split_amounts(booking.pricing["total_amount"])
    order = await _razorpay(get_razorpay_client().order.create, {
        "amount": amount,
        "currency": settings.CURRENCY,
        "receipt": booking.booking_hash,
        "notes": {"booking_id": str(booking.id)},
        "transfers": [{
            "account": provider.payout_account_id,
            "amount": payout,
            "currency": settings.CURRENCY,
            "notes": {"booking_id": str(booking.id)},
            "on_hold": 0,
        }],
    })

    booking.payment_order_id = order["id"]
    booking.payment_status = PaymentStatus.PENDING
    await db.commit()

    return SplitPaymentResponse(
        order_id=order["id"],
        amount=amount,
        currency=settings.CURRENCY,
        platform_fee=fee,
        transfer_amount=payout,
        destination_account=provider.payout_account_id,
    )


# ── Verify Payment (called from client after checkout) ────────

@router.post("/verify", response_model=MessageResponse)
async def verify_payment(
    data: PaymentVerifyRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not verify_razorpay_signature(data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature):
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    booking = await get_booking(db, data.booking_id)
    if booking.payment_order_id != data.razorpay_order_id:
        raise ValidationError("Order does not belong to this booking")

    booking.payment_id = data.razorpay_payment_id
    booking.payment_status = PaymentStatus.PAID
    await db.commit()
    return MessageResponse(message="Payment verified")


# ── Razorpay Webhook ──────────────────────────────────────────

WEBHOOK_STATUS = {
    "payment.captured": PaymentStatus.PAID,
    "payment.failed": PaymentStatus.FAILED,
    "refund.processed": PaymentStatus.REFUNDED,
}


def webhook_allows(current, new: PaymentStatus) -> bool:
    """Webhooks arrive unordered. PAID only leaves through a refund and REFUNDED is final."""
    if current == PaymentStatus.REFUNDED:
        return False
    if current == PaymentStatus.PAID:
        return new == PaymentStatus.REFUNDED
    return True


@router.post("/webhook", include_in_schema=False)
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Razorpay webhook handler. Validates HMAC signature.
    Handles: payment.captured, payment.failed, refund.processed.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not verify_razorpay_webhook_signature(body, signature):
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    payload = json.loads(body)
    event = payload.get("event")
    new_status = WEBHOOK_STATUS.get(event)
    if new_status is None:
        return {"status": "ignored"}

    entities = payload.get("payload", {})
    if event == "refund.processed":
        payment_id = entities.get("refund", {}).get("entity", {}).get("payment_id")
        query = select(Booking).where(Booking.payment_id == payment_id)
    else:
        entity = entities.get("payment", {}).get("entity", {})
        payment_id = entity.get("id")
        query = select(Booking).where(Booking.payment_order_id == entity.get("order_id"))

    booking = await db.scalar(query)
    if not booking:
        logger.warning(f"Webhook {event}: no booking for payment {payment_id}")
        return {"status": "not_found"}

    if not webhook_allows(booking.payment_status, new_status):
        logger.info(f"Webhook {event}: booking {booking.id} stays {PaymentStatus(booking.payment_status).value}")
        return {"status": "ignored"}

    booking.payment_status = new_status
    if event == "payment.captured" and payment_id:
        booking.payment_id = payment_id
    await db.commit()
    logger.info(f"Webhook {event}: booking {booking.id} payment_status={new_status.value}")
    return {"status": "ok"}
