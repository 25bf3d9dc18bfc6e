"""
tests/test_search.py
Tests for geohash helpers and provider proximity search.
"""

import uuid
from types import SimpleNamespace

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.search.geosearch import search_providers
from shared.exceptions import StoreUnavailable
from shared.models.models import Provider, User
from shared.utils import geohash
from tests.conftest import POZNAN, make_provider, make_user

NEARBY = (52.4100, 16.9300)


# ── Geohash helpers ────────────────────────────────────────────────────────────

def test_encode_decode_roundtrip_stays_inside_cell():
    """An encoded point lies inside its decoded cell."""
    code = geohash.encode(*POZNAN, precision=9)
    assert len(code) == 9
    min_lat, min_lng, max_lat, max_lng = geohash.decode_bounds(code)
    assert min_lat <= POZNAN[0] <= max_lat
    assert min_lng <= POZNAN[1] <= max_lng


def test_haversine_poznan_scenario():
    """Two points in central Poznań are about 516 m apart."""
    distance = geohash.haversine_distance(*POZNAN, *NEARBY)
    assert 500 < distance < 530


def test_query_bounds_cover_nearby_point():
    """Query ranges cover a point inside the radius without duplicates."""
    code = geohash.encode(*NEARBY, precision=9)
    bounds = list(geohash.query_bounds(*POZNAN, 5000))
    assert bounds
    assert any(lo <= code <= hi for lo, hi in bounds)
    assert len(bounds) == len(set(bounds))


def test_query_bounds_rejects_bad_input():
    """Out-of-range latitudes and non-positive radii are rejected."""
    with pytest.raises(ValueError):
        list(geohash.query_bounds(95.0, 16.9, 1000))
    with pytest.raises(ValueError):
        list(geohash.query_bounds(*POZNAN, 0))


def test_format_distance_and_eta():
    """Distances and ETAs are formatted for display."""
    assert geohash.format_distance(516) == "516 m"
    assert geohash.format_distance(2500) == "2.5 km"
    assert geohash.estimate_eta(10) == "<1 min"


def test_neighbours_surround_the_cell():
    """A cell has eight distinct neighbours on the right sides."""
    cell = geohash.encode(*POZNAN, precision=6)
    around = geohash.neighbours(cell)

    assert set(around) == {"n", "ne", "e", "se", "s", "sw", "w", "nw"}
    assert len(set(around.values())) == 8
    assert cell not in around.values()
    assert geohash.decode(around["n"])["lat"] > geohash.decode(cell)["lat"]
    assert geohash.decode(around["w"])["lng"] < geohash.decode(cell)["lng"]


def test_optimal_precision():
    """Smaller radii need longer geohashes."""
    assert geohash.optimal_precision(5) == 8
    assert geohash.optimal_precision(0.01) == 6


# ── search_providers with a fake range fetcher ────────────────────────────────

def _fake_provider(lat, lng):
    return SimpleNamespace(id=uuid.uuid4(), lat=lat, lng=lng)


@pytest.mark.asyncio
async def test_overlapping_ranges_return_provider_once():
    """A provider found by several ranges is returned once."""
    p = _fake_provider(*NEARBY)

    async def fetch(lo, hi, category):
        return [p]

    matches = await search_providers(fetch, *POZNAN, 5000)
    assert [m[0].id for m in matches] == [p.id]


@pytest.mark.asyncio
async def test_results_sorted_and_within_radius():
    """Results are sorted by distance and cut at the radius."""
    near = _fake_provider(*NEARBY)
    far = _fake_provider(52.43, 16.95)
    outside = _fake_provider(52.60, 17.20)

    async def fetch(lo, hi, category):
        return [outside, far, near]

    matches = await search_providers(fetch, *POZNAN, 5000)
    distances = [d for _, d in matches]
    assert [m[0].id for m in matches] == [near.id, far.id]
    assert distances == sorted(distances)
    assert all(d <= 5000 for d in distances)


@pytest.mark.asyncio
async def test_partial_range_failure_returns_partial_results():
    """A failing range is skipped while the others still answer."""
    p = _fake_provider(*NEARBY)
    calls = []

    async def fetch(lo, hi, category):
        calls.append((lo, hi))
        if len(calls) == 1:
            raise StoreUnavailable("range down")
        return [p]

    bounds = list(geohash.query_bounds(*POZNAN, 5000))
    if len(bounds) < 2:
        pytest.skip("needs more than one range")
    matches = await search_providers(fetch, *POZNAN, 5000)
    assert [m[0].id for m in matches] == [p.id]


@pytest.mark.asyncio
async def test_all_ranges_failing_raises_store_unavailable():
    """When every range fails the search raises StoreUnavailable."""
    async def fetch(lo, hi, category):
        raise StoreUnavailable("down")

    with pytest.raises(StoreUnavailable):
        await search_providers(fetch, *POZNAN, 5000)


# ── HTTP endpoint ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_missing_coords_returns_422(client: AsyncClient):
    """Search needs a latitude and longitude."""
    response = await client.get("/search/providers")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_search_includes_provider_within_radius(
    client: AsyncClient, db: AsyncSession, pro_user: User
):
    """A nearby provider is returned with its distance."""
    provider = await make_provider(db, pro_user, *NEARBY)

    response = await client.get(
        "/search/providers",
        params={"lat": POZNAN[0], "lng": POZNAN[1], "radius_m": 5000},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    item = data["items"][0]
    assert item["id"] == str(provider.id)
    assert 500 < item["distance_m"] < 530
    assert item["_distance"] == pytest.approx(item["distance_m"], abs=0.1)
    assert item["is_online"] is True
    assert item["distance_text"].endswith("m")


@pytest.mark.asyncio
async def test_search_excludes_provider_outside_radius(
    client: AsyncClient, db: AsyncSession, pro_user: User
):
    """Providers outside the radius are left out."""
    await make_provider(db, pro_user, *NEARBY)

    response = await client.get(
        "/search/providers",
        params={"lat": POZNAN[0], "lng": POZNAN[1], "radius_m": 500},
    )
    assert response.status_code == 200
    assert response.json()["items"] == []


@pytest.mark.asyncio
async def test_search_category_filter(client: AsyncClient, db: AsyncSession, pro_user: User):
    """Category filters the results and "Wszyscy" means every category."""
    electrician = await make_user(db, "Ewa Elektryk")
    await make_provider(db, pro_user, *NEARBY, categories=("Hydraulik",))
    await make_provider(db, electrician, 52.4070, 16.9260, categories=("Elektryk",))

    params = {"lat": POZNAN[0], "lng": POZNAN[1], "radius_m": 5000}
    only_plumbers = await client.get("/search/providers", params={**params, "category": "Hydraulik"})
    everyone = await client.get("/search/providers", params={**params, "category": "Wszyscy"})

    assert [i["categories"] for i in only_plumbers.json()["items"]] == [["Hydraulik"]]
    assert everyone.json()["total"] == 2
    assert everyone.json()["category"] is None
    # nearest first
    assert everyone.json()["items"][0]["categories"] == ["Elektryk"]


@pytest.mark.asyncio
async def test_health_reports_missing_redis(client: AsyncClient):
    """Health reports degraded when Redis is not connected."""
    response = await client.get("/health")
    assert response.status_code == 503
    assert response.json()["redis"] == "error"
    assert response.json()["status"] == "degraded"
