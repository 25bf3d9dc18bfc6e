"""
shared/utils/geohash.py
Geohash encoding and proximity-query helpers.

Encoding interleaves longitude/latitude bits (longitude first) and emits
base-32 characters, so nearby points share long common prefixes. Query
bounds follow the geofire bounding-box decomposition: pick a bit depth whose
cell is at least as large as the radius, then cover the centre and the eight
bounding-box points around it with string ranges over the geohash index.
"""

import math
from typing import Dict, Iterator, List, Tuple

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_INDEX = {c: i for i, c in enumerate(BASE32)}

BITS_PER_CHAR = 5
MAXIMUM_BITS_PRECISION = 22 * BITS_PER_CHAR
DEFAULT_PRECISION = 10

EARTH_RADIUS_M = 6_371_000.0
EARTH_EQ_RADIUS_M = 6_378_137.0
EARTH_MERIDIONAL_CIRCUMFERENCE_M = 40_007_860.0
METERS_PER_DEGREE_LATITUDE = 110_574.0
E2 = 0.00669447819799
EPSILON = 1e-12

# Approximate cell width (km) per geohash length.
GEOHASH_PRECISION_KM: Dict[int, float] = {
    1: 5000.0,
    2: 1250.0,
    3: 156.0,
    4: 40.0,
    5: 5.0,
    6: 1.2,
    7: 0.15,
    8: 0.04,
}

URBAN_SPEED_KMH = 30.0


# ── Validation ────────────────────────────────────────────────

def validate_location(lat: float, lng: float) -> None:
    if not isinstance(lat, (int, float)) or math.isnan(lat) or not -90 <= lat <= 90:
        raise ValueError(f"Latitude must be within [-90, 90], got {lat!r}")
    if not isinstance(lng, (int, float)) or math.isnan(lng) or not -180 <= lng <= 180:
        raise ValueError(f"Longitude must be within [-180, 180], got {lng!r}")


# ── Encode / Decode ───────────────────────────────────────────

def encode(lat: float, lng: float, precision: int = DEFAULT_PRECISION) -> str:
    """Encode a coordinate into a geohash of `precision` characters."""
    validate_location(lat, lng)
    if precision < 1 or precision > 22:
        raise ValueError("Precision must be between 1 and 22")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars: List[str] = []
    value = 0
    bit = 0
    even = True  # longitude first

    while len(chars) < precision:
        rng, coord = (lng_range, lng) if even else (lat_range, lat)
        mid = (rng[0] + rng[1]) / 2
        if coord > mid:
            value = (value << 1) + 1
            rng[0] = mid
        else:
            value = value << 1
            rng[1] = mid
        even = not even
        bit += 1
        if bit == BITS_PER_CHAR:
            chars.append(BASE32[value])
            value = 0
            bit = 0

    return "".join(chars)


def decode_bounds(geohash: str) -> Tuple[float, float, float, float]:
    """Return (min_lat, min_lng, max_lat, max_lng) of the geohash cell."""
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    even = True
    for char in geohash.lower():
        if char not in _BASE32_INDEX:
            raise ValueError(f"Invalid geohash character: {char!r}")
        value = _BASE32_INDEX[char]
        for shift in range(BITS_PER_CHAR - 1, -1, -1):
            rng = lng_range if even else lat_range
            mid = (rng[0] + rng[1]) / 2
            if (value >> shift) & 1:
                rng[0] = mid
            else:
                rng[1] = mid
            even = not even
    return lat_range[0], lng_range[0], lat_range[1], lng_range[1]


def decode(geohash: str) -> Dict[str, float]:
    """Decode to the cell centre plus the half-size error on each axis."""
    min_lat, min_lng, max_lat, max_lng = decode_bounds(geohash)
    return {
        "lat": (min_lat + max_lat) / 2,
        "lng": (min_lng + max_lng) / 2,
        "lat_error": (max_lat - min_lat) / 2,
        "lng_error": (max_lng - min_lng) / 2,
    }


def neighbours(geohash: str) -> Dict[str, str]:
    """The eight cells surrounding `geohash`, keyed by compass direction."""
    centre = decode(geohash)
    lat_step = centre["lat_error"] * 2
    lng_step = centre["lng_error"] * 2
    precision = len(geohash)
    directions = {
        "n": (1, 0), "ne": (1, 1), "e": (0, 1), "se": (-1, 1),
        "s": (-1, 0), "sw": (-1, -1), "w": (0, -1), "nw": (1, -1),
    }
    result = {}
    for name, (dlat, dlng) in directions.items():
        lat = max(-90.0, min(90.0, centre["lat"] + dlat * lat_step))
        lng = wrap_longitude(centre["lng"] + dlng * lng_step)
        result[name] = encode(lat, lng, precision)
    return result


# ── Distance ──────────────────────────────────────────────────

def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def format_distance(meters: float) -> str:
    km = meters / 1000
    if km < 1:
        return f"{round(meters)} m"
    if km < 10:
        return f"{km:.1f} km"
    return f"{round(km)} km"


def estimate_eta(meters: float, speed_kmh: float = URBAN_SPEED_KMH) -> str:
    """Human readable travel time at an urban driving speed, e.g. '1h 5min'."""
    minutes = round((meters / 1000) / speed_kmh * 60)
    if minutes < 1:
        return "<1 min"
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h" if rest == 0 else f"{hours}h {rest}min"


def optimal_precision(radius_km: float) -> int:
    """Finest geohash length whose cell fits within the search diameter."""
    for precision in range(8, 0, -1):
        if GEOHASH_PRECISION_KM[precision] <= radius_km * 2:
            return precision
    return 6


# ── Query Bounds ──────────────────────────────────────────────

def wrap_longitude(lng: float) -> float:
    if -180 <= lng <= 180:
        return lng
    adjusted = lng + 180
    if adjusted > 0:
        return (adjusted % 360) - 180
    return 180 - (-adjusted % 360)


def meters_to_longitude_degrees(distance: float, latitude: float) -> float:
    radians = math.radians(latitude)
    numerator = math.cos(radians) * EARTH_EQ_RADIUS_M * math.pi / 180
    denominator = 1 / math.sqrt(1 - E2 * math.sin(radians) ** 2)
    delta_deg = numerator * denominator
    if delta_deg < EPSILON:
        return 360.0 if distance > 0 else 0.0
    return min(360.0, distance / delta_deg)


def _longitude_bits_for_resolution(resolution: float, latitude: float) -> float:
    degrees = meters_to_longitude_degrees(resolution, latitude)
    return max(1.0, math.log2(360 / degrees)) if abs(degrees) > 0.000001 else 1.0


def _latitude_bits_for_resolution(resolution: float) -> float:
    return min(math.log2(EARTH_MERIDIONAL_CIRCUMFERENCE_M / 2 / resolution), MAXIMUM_BITS_PRECISION)


def bounding_box_bits(lat: float, lng: float, size: float) -> int:
    lat_delta = size / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, lat + lat_delta)
    lat_south = max(-90.0, lat - lat_delta)
    bits_lat = math.floor(_latitude_bits_for_resolution(size)) * 2
    bits_lng_north = math.floor(_longitude_bits_for_resolution(size, lat_north)) * 2 - 1
    bits_lng_south = math.floor(_longitude_bits_for_resolution(size, lat_south)) * 2 - 1
    return min(bits_lat, bits_lng_north, bits_lng_south, MAXIMUM_BITS_PRECISION)


def bounding_box_coordinates(lat: float, lng: float, radius: float) -> List[Tuple[float, float]]:
    lat_degrees = radius / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, lat + lat_degrees)
    lat_south = max(-90.0, lat - lat_degrees)
    lng_degrees = max(
        meters_to_longitude_degrees(radius, lat_north),
        meters_to_longitude_degrees(radius, lat_south),
    )
    west = wrap_longitude(lng - lng_degrees)
    east = wrap_longitude(lng + lng_degrees)
    return [
        (lat, lng), (lat, west), (lat, east),
        (lat_north, lng), (lat_north, west), (lat_north, east),
        (lat_south, lng), (lat_south, west), (lat_south, east),
    ]


def _range_for(geohash: str, bits: int) -> Tuple[str, str]:
    precision = math.ceil(bits / BITS_PER_CHAR)
    if len(geohash) < precision:
        return geohash, geohash + "~"
    geohash = geohash[:precision]
    base = geohash[:-1]
    last_value = _BASE32_INDEX[geohash[-1]]
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits
    start_value = (last_value >> unused_bits) << unused_bits
    end_value = start_value + (1 << unused_bits)
    if end_value > 31:
        return base + BASE32[start_value], base + "~"
    return base + BASE32[start_value], base + BASE32[end_value]


def query_bounds(lat: float, lng: float, radius_m: float) -> Iterator[Tuple[str, str]]:
    """
    Lazily yield unique (lo, hi) geohash string ranges that together cover
    every point within `radius_m` of (lat, lng). Matching is lo <= hash <= hi;
    the ranges are a superset filter and must be followed by a true
    distance check.
    """
    validate_location(lat, lng)
    if radius_m <= 0:
        raise ValueError("Radius must be positive")

    query_bits = max(1, bounding_box_bits(lat, lng, radius_m))
    precision = math.ceil(query_bits / BITS_PER_CHAR)
    seen = set()
    for point_lat, point_lng in bounding_box_coordinates(lat, lng, radius_m):
        bounds = _range_for(encode(point_lat, point_lng, precision), query_bits)
        if bounds not in seen:
            seen.add(bounds)
            yield bounds
