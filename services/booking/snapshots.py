"""
services/booking/snapshots.py
Point-in-time copies stored on a booking. Built once, never rewritten.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from config.settings import settings
from shared.models.models import Provider, User

GROSZ = Decimal("1")


def client_snapshot(user: User) -> dict:
    return {"display_name": user.display_name, "avatar_url": user.avatar_url}


def host_snapshot(provider: Provider) -> dict:
    return {
        "display_name": provider.display_name,
        "avatar_url": provider.avatar_url,
        "rating_at_booking": float(provider.rating or 0.0),
    }


def listing_snapshot(provider: Provider, service_type: Optional[str] = None, price: Optional[Decimal] = None) -> dict:
    service_type = service_type or (provider.categories[0] if provider.categories else None)
    price = provider.base_price if price is None else price
    return {
        "title": f"{service_type} - {provider.display_name}" if service_type else provider.display_name,
        "service_type": service_type,
        "price_at_booking": float(price),
        "price_unit": provider.price_unit,
    }


def split_amounts(total_amount) -> Tuple[int, int, int]:
    """(total, platform_fee, host_payout) in grosze, fee rounded half-up."""
    total = int((Decimal(str(total_amount)) * 100).quantize(GROSZ, rounding=ROUND_HALF_UP))
    fee = int((total * Decimal(str(settings.PLATFORM_FEE_PERCENT)) / 100).quantize(GROSZ, rounding=ROUND_HALF_UP))
    return total, fee, total - fee


def pricing_for(total: Decimal) -> dict:
    """Pricing block in złoty, derived from the same split Razorpay is charged with."""
    total_amount, fee, payout = split_amounts(total)
    return {
        "total_amount": total_amount / 100,
        "currency": settings.CURRENCY,
        "platform_fee": fee / 100,
        "host_payout": payout / 100,
    }
