"""
services/search/geosearch.py
Proximity search over the providers geohash index.

    query_bounds ──► one range query per (lo, hi), concurrently
                 ──► merge, dedup by id ──► haversine filter ──► sort by distance

Range queries are best-effort: failed ranges are logged and skipped, and
StoreUnavailable is raised only when every range fails.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.exceptions import StoreUnavailable
from shared.models.models import Provider
from shared.utils.geohash import haversine_distance, query_bounds

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "Wszyscy"

RangeFetcher = Callable[[str, str, Optional[str]], Awaitable[List[Provider]]]


def normalize_category(category: Optional[str]) -> Optional[str]:
    if not category or category.strip() in ("", ALL_CATEGORIES):
        return None
    return category.strip()


def make_range_fetcher(session_factory: async_sessionmaker) -> RangeFetcher:
    """Range queries backed by the database, each in its own session."""

    async def fetch_range(lo: str, hi: str, category: Optional[str]) -> List[Provider]:
        try:
            async with session_factory() as session:
                result = await session.execute(
                    select(Provider)
                    .where(Provider.geohash >= lo, Provider.geohash <= hi)
                    .order_by(Provider.geohash)
                )
                providers = list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable("Provider range query failed", {"range": [lo, hi], "error": str(e)}) from e
        if category:
            providers = [p for p in providers if category in (p.categories or [])]
        return providers

    return fetch_range


async def search_providers(
    fetch_range: RangeFetcher,
    lat: float,
    lng: float,
    radius_m: float,
    category: Optional[str] = None,
) -> List[Tuple[Provider, float]]:
    """
    Providers within `radius_m` metres of (lat, lng), nearest first, as
    (provider, distance_m) pairs. Each provider id appears at most once.
    """
    category = normalize_category(category)
    bounds = list(query_bounds(lat, lng, radius_m))

    results = await asyncio.gather(
        *(fetch_range(lo, hi, category) for lo, hi in bounds),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, BaseException)]
    for failure in failures:
        logger.warning(f"Geohash range query failed: {failure}")
    if bounds and len(failures) == len(bounds):
        raise StoreUnavailable(
            "Provider search is unavailable",
            {"ranges": len(bounds), "errors": [str(f) for f in failures]},
        )

    seen = set()
    matches: List[Tuple[Provider, float]] = []
    for batch in results:
        if isinstance(batch, BaseException):
            continue
        for provider in batch:
            if provider.id in seen or provider.lat is None or provider.lng is None:
                continue
            seen.add(provider.id)
            distance = haversine_distance(lat, lng, provider.lat, provider.lng)
            if distance <= radius_m:
                matches.append((provider, distance))

    matches.sort(key=lambda pair: pair[1])
    return matches


def annotate(provider: Provider, distance_m: float) -> Dict:
    """Flatten a provider plus its live status and `_distance` for the API layer."""
    live = provider.live_status
    data = {col.name: getattr(provider, col.name) for col in Provider.__table__.columns}
    data.update(
        is_online=bool(live and live.is_online),
        is_busy=bool(live and live.is_busy),
        _distance=distance_m,
    )
    return data
