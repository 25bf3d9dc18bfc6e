"""
services/user/referrals.py
Referral codes, referral application, and bonus payout on the referee's
first completed booking.
"""

import logging
import random
import string
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.exceptions import NotFound, ValidationError
from shared.models.models import Referral, ReferralStatus, User, UserRole, utcnow

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.digits + string.ascii_uppercase


def generate_referral_code(user_id: uuid.UUID) -> str:
    """FN-{first 4 of user id}-{4 random base36 chars}, upper-cased."""
    suffix = "".join(random.choices(_CODE_ALPHABET, k=4))
    return f"FN-{str(user_id).replace('-', '')[:4].upper()}-{suffix}"


async def ensure_referral_code(db: AsyncSession, user: User) -> str:
    if user.referral_code:
        return user.referral_code
    for _ in range(5):
        code = generate_referral_code(user.id)
        taken = await db.scalar(select(func.count(User.id)).where(User.referral_code == code))
        if not taken:
            user.referral_code = code
            await db.flush()
            return code
    raise ValidationError("Could not allocate a referral code, try again")


def _bump_stats(user: User, **deltas) -> None:
    stats = dict(user.referral_stats or {})
    for key, delta in deltas.items():
        stats[key] = stats.get(key, 0) + delta
    user.referral_stats = stats


async def apply_referral_code(db: AsyncSession, referee: User, code: str) -> Referral:
    referrer = await db.scalar(select(User).where(User.referral_code == code))
    if not referrer:
        raise NotFound("Referral code not found", {"code": code})
    if referrer.id == referee.id:
        raise ValidationError("You cannot use your own referral code")

    existing = await db.scalar(select(Referral).where(Referral.referee_id == referee.id))
    if existing:
        raise ValidationError("A referral code has already been applied to this account")

    referral = Referral(
        referrer_id=referrer.id,
        referee_id=referee.id,
        referee_email=referee.email,
        referral_code=code,
        referee_type="professional" if referee.role == UserRole.PROFESSIONAL else "client",
        status=ReferralStatus.PENDING,
    )
    db.add(referral)
    _bump_stats(referrer, total=1)
    await db.flush()
    return referral


async def complete_referral(db: AsyncSession, referee_id: uuid.UUID) -> Optional[Referral]:
    """
    Pay out a pending referral for `referee_id`. No-op when there is none,
    so it is safe to call on every completed booking.
    """
    referral = await db.scalar(
        select(Referral).where(
            Referral.referee_id == referee_id,
            Referral.status == ReferralStatus.PENDING,
        )
    )
    if not referral:
        return None

    referrer = await db.get(User, referral.referrer_id)
    referee = await db.get(User, referee_id)

    referrer_bonus = Decimal(str(
        settings.REFERRAL_PRO_REFERRER_BONUS
        if referral.referee_type == "professional"
        else settings.REFERRAL_REFERRER_BONUS
    ))
    referee_bonus = Decimal(str(settings.REFERRAL_REFEREE_BONUS))

    if referrer:
        referrer.wallet_balance = (referrer.wallet_balance or Decimal("0")) + referrer_bonus
        _bump_stats(referrer, completed=1, earnings=float(referrer_bonus))
    if referee:
        referee.wallet_balance = (referee.wallet_balance or Decimal("0")) + referee_bonus

    referral.status = ReferralStatus.BONUS_PAID
    referral.completed_at = utcnow()
    await db.flush()

    logger.info(
        f"Referral {referral.id} completed: referrer +{referrer_bonus}, referee +{referee_bonus}"
    )
    return referral
