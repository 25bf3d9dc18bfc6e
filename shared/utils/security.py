"""
shared/utils/security.py
JWT creation/verification and payment signature helpers.
Tokens are issued by the identity provider; `create_access_token` exists for
service-to-service calls and tests.
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(
    user_id: str,
    role: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti). jti is used for deny-listing.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "name": name,
        "jti": jti,
        "iat": now,
        "exp": expire,
        "type": "access",
        **(extra or {}),
    }

    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type", "access") != "access":
        raise JWTError("Invalid token type")
    if not payload.get("sub"):
        raise JWTError("Token has no subject")
    return payload


def get_token_remaining_ttl(payload: dict) -> int:
    """Returns seconds until token expiry. Used for JWT deny-list TTL."""
    exp = payload.get("exp", 0)
    remaining = exp - datetime.now(timezone.utc).timestamp()
    return max(0, int(remaining))


# ── Razorpay Signatures ───────────────────────────────────────

def _hmac_sha256(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_razorpay_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """Verify the checkout signature: HMAC-SHA256(order_id|payment_id, key_secret)."""
    expected = _hmac_sha256(settings.RAZORPAY_KEY_SECRET, f"{order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected, signature or "")


def verify_razorpay_webhook_signature(payload_body: bytes, signature: str) -> bool:
    """Verify Razorpay webhook body signature."""
    expected = _hmac_sha256(settings.RAZORPAY_WEBHOOK_SECRET, payload_body)
    return hmac.compare_digest(expected, signature or "")
