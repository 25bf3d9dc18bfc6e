"""
services/search/router.py
Nearby provider search: geohash range queries over the providers index,
filtered by true distance and sorted nearest first.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import get_session_factory
from config.settings import settings
from services.search.geosearch import annotate, make_range_fetcher, normalize_category, search_providers
from shared.schemas.schemas import LocationOut, ProviderSearchResponse, ProviderSearchResult
from shared.utils.geohash import encode, estimate_eta, format_distance

router = APIRouter(prefix="/search", tags=["Search"])


@router.get("/providers", response_model=ProviderSearchResponse)
async def search_nearby_providers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_m: float = Query(settings.SEARCH_DEFAULT_RADIUS_M, gt=0, le=settings.SEARCH_MAX_RADIUS_M),
    category: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Providers within `radius_m` of (lat, lng). `category=Wszyscy` or no
    category means all. Partial results are returned if some ranges fail;
    503 only when none can be read.
    """
    matches = await search_providers(make_range_fetcher(session_factory), lat, lng, radius_m, category)

    items = []
    for provider, distance in matches[:limit]:
        data = annotate(provider, distance)
        items.append(ProviderSearchResult(
            **data,
            distance_m=round(data["_distance"], 1),
            distance_text=format_distance(distance),
            eta=estimate_eta(distance),
        ))

    return ProviderSearchResponse(
        items=items,
        total=len(matches),
        center=LocationOut(lat=lat, lng=lng, geohash=encode(lat, lng, settings.PROVIDER_GEOHASH_PRECISION)),
        radius_m=radius_m,
        category=normalize_category(category),
    )
