"""
services/geocoding/router.py
Address -> coordinates through the Google Geocoding API, cached in Redis.
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query

from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.exceptions import ExternalServiceError, NotFound, ValidationError
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import GeocodeResponse
from shared.utils.resilience import transient_retry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/geocoding", tags=["Geocoding"])

MIN_ADDRESS_LENGTH = 3


def _cache_key(address: str) -> str:
    return f"geo:addr:{' '.join(address.lower().split())}"


@transient_retry(httpx.TransportError)
async def _fetch(client: httpx.AsyncClient, params: dict) -> dict:
    resp = await client.get(settings.GEOCODING_URL, params=params)
    resp.raise_for_status()
    return resp.json()


async def geocode(
    address: str,
    cache: Optional[RedisCache] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """
    Resolve an address to {lat, lng, formatted_address}.
    NotFound when Google has no result; ExternalServiceError on transport or HTTP failure.
    """
    address = (address or "").strip()
    if len(address) < MIN_ADDRESS_LENGTH:
        raise ValidationError("Address must be at least 3 characters long")

    key = _cache_key(address)
    if cache is not None:
        try:
            cached = await cache.get(key)
            if cached:
                return cached
        except Exception as e:
            logger.warning(f"Geocoding cache read failed: {e}")

    params = {"address": address, "key": settings.GOOGLE_MAPS_API_KEY, "language": "pl"}
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.GEOCODING_TIMEOUT_SECONDS) as own_client:
                payload = await _fetch(own_client, params)
        else:
            payload = await _fetch(client, params)
    except httpx.HTTPError as e:
        logger.warning(f"Geocoding request failed: {e}")
        raise ExternalServiceError("geocoding", "Geocoding provider error", {"error": str(e)}) from e

    results = payload.get("results") or []
    if payload.get("status") != "OK" or not results:
        raise NotFound("Address not found", {"address": address, "status": payload.get("status")})

    first = results[0]
    location = first["geometry"]["location"]
    data = {
        "lat": float(location["lat"]),
        "lng": float(location["lng"]),
        "formatted_address": first.get("formatted_address") or address,
    }

    if cache is not None:
        try:
            await cache.set(key, data, ttl=settings.GEOCODING_CACHE_TTL)
        except Exception as e:
            logger.warning(f"Geocoding cache write failed: {e}")
    return data


@router.get("", response_model=GeocodeResponse)
async def geocode_address(
    address: str = Query(..., max_length=500),
    current_user: User = Depends(get_current_user),
    redis=Depends(get_redis),
):
    return GeocodeResponse(**await geocode(address, RedisCache(redis)))
