"""
services/user/router.py
Own profile, push tokens, referral programme and subscription status.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.user.referrals import apply_referral_code, ensure_referral_code
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    User,
    as_utc,
    utcnow,
)
from shared.schemas.schemas import (
    FcmTokenRequest,
    MessageResponse,
    ReferralApplyRequest,
    ReferralStatsResponse,
    SubscriptionResponse,
    UserResponse,
    UserUpdateRequest,
)
from shared.utils.security import get_token_remaining_ttl

router = APIRouter(prefix="/users", tags=["Users"])

PRO_TIERS = {SubscriptionTier.PRO, SubscriptionTier.ENTERPRISE, SubscriptionTier.PREMIUM}
PREMIUM_TIERS = {SubscriptionTier.PREMIUM, SubscriptionTier.ENTERPRISE}


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.patch("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Only non-None fields in the request body are updated."""
    updates = data.model_dump(exclude_none=True)
    for field, value in updates.items():
        setattr(current_user, field, value)

    if updates:
        await db.commit()
    return UserResponse.model_validate(current_user)


@router.post("/me/logout", response_model=MessageResponse)
async def logout(
    current_user: User = Depends(get_current_user),
    token_data: TokenData = Depends(get_token_data),
    redis=Depends(get_redis),
):
    """Add the presented access token to the Redis deny-list until it expires."""
    ttl = get_token_remaining_ttl(token_data.payload)
    if token_data.jti and ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)
    return MessageResponse(message="Logged out")


# ── Push tokens ───────────────────────────────────────────────

@router.post("/me/fcm-tokens", response_model=MessageResponse)
async def register_fcm_token(
    data: FcmTokenRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tokens = list(current_user.fcm_tokens or [])
    if data.token not in tokens:
        current_user.fcm_tokens = tokens + [data.token]
        await db.commit()
    return MessageResponse(message="Token registered")


@router.delete("/me/fcm-tokens", response_model=MessageResponse)
async def remove_fcm_token(
    data: FcmTokenRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    current_user.fcm_tokens = [t for t in (current_user.fcm_tokens or []) if t != data.token]
    await db.commit()
    return MessageResponse(message="Token removed")


# ── Referrals ─────────────────────────────────────────────────

@router.get("/me/referral", response_model=ReferralStatsResponse)
async def get_my_referral(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Referral code (allocated on first request) and running totals."""
    code = await ensure_referral_code(db, current_user)
    await db.commit()

    stats = current_user.referral_stats or {}
    return ReferralStatsResponse(
        code=code,
        total_referrals=stats.get("total", 0),
        completed_referrals=stats.get("completed", 0),
        total_earnings=stats.get("earnings", 0.0),
        wallet_balance=float(current_user.wallet_balance or 0),
    )


@router.post("/me/referral/apply", response_model=MessageResponse)
async def apply_referral(
    data: ReferralApplyRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await apply_referral_code(db, current_user, data.code)
    await db.commit()
    return MessageResponse(message="Referral code applied. Bonus is paid after your first completed booking.")


# ── Subscription ──────────────────────────────────────────────

@router.get("/me/subscription", response_model=SubscriptionResponse)
async def get_my_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Free tier unless an active, unexpired subscription exists."""
    sub = await db.get(Subscription, current_user.id)
    if sub is None:
        return SubscriptionResponse(
            tier=SubscriptionTier.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            is_pro=False,
            is_premium=False,
        )

    expires_at = as_utc(sub.expires_at)
    active = sub.status == SubscriptionStatus.ACTIVE and (expires_at is None or expires_at > utcnow())
    tier = SubscriptionTier(sub.tier)
    return SubscriptionResponse(
        tier=tier.value,
        status=SubscriptionStatus(sub.status).value,
        is_pro=active and tier in PRO_TIERS,
        is_premium=active and tier in PREMIUM_TIERS,
        expires_at=expires_at,
    )
