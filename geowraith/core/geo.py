"""
Geographic helpers: great-circle distance, spherical centroids and continent spread.
"""

import math
from typing import Iterable, Optional, Sequence, Tuple

EARTH_RADIUS_M = 6_371_000.0

# (min_lat, max_lat, min_lon, max_lon); coarse boxes, first match wins
CONTINENT_BOUNDS = {
    "Europe": (35.0, 72.0, -25.0, 45.0),
    "Asia": (-10.0, 80.0, 45.0, 180.0),
    "NorthAmerica": (7.0, 84.0, -170.0, -50.0),
    "SouthAmerica": (-56.0, 13.0, -82.0, -34.0),
    "Africa": (-35.0, 37.5, -18.0, 52.0),
    "Oceania": (-50.0, 0.0, 110.0, 180.0),
}

# Penalty applied to confidence by number of distinct continents among the top hits
CONTINENT_SPREAD_PENALTY = {1: 0.0, 2: 0.1, 3: 0.25}
CONTINENT_SPREAD_PENALTY_MAX = 0.4


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def weighted_centroid(points: Sequence[Tuple[float, float]], weights: Sequence[float]) -> Tuple[float, float]:
    """
    Weighted centroid on the sphere.

    Points are averaged as unit 3D vectors so that hits on both sides of the
    antimeridian do not collapse to longitude 0.

    Args:
        points: (lat, lon) pairs in degrees
        weights: non-negative weights, one per point

    Returns:
        (lat, lon) of the centroid
    """
    if not points:
        raise ValueError("Cannot compute centroid of an empty point set")
    if len(points) != len(weights):
        raise ValueError("points and weights must have the same length")

    total = sum(weights)
    if total <= 0:
        weights = [1.0] * len(points)
        total = float(len(points))

    x = y = z = 0.0
    for (lat, lon), weight in zip(points, weights):
        phi = math.radians(lat)
        lam = math.radians(lon)
        x += weight * math.cos(phi) * math.cos(lam)
        y += weight * math.cos(phi) * math.sin(lam)
        z += weight * math.sin(phi)

    x /= total
    y /= total
    z /= total
    if math.sqrt(x * x + y * y + z * z) < 1e-12:
        # Antipodal cancellation; fall back to the heaviest point
        best = max(range(len(points)), key=lambda i: (weights[i], -i))
        return points[best]

    lat = math.degrees(math.atan2(z, math.sqrt(x * x + y * y)))
    lon = math.degrees(math.atan2(y, x))
    return lat, lon


def detect_continent(lat: float, lon: float) -> Optional[str]:
    """Return the continent whose bounding box contains the point, if any."""
    for name, (min_lat, max_lat, min_lon, max_lon) in CONTINENT_BOUNDS.items():
        if min_lat <= lat <= max_lat and min_lon <= lon <= max_lon:
            return name
    return None


def continent_spread_penalty(points: Iterable[Tuple[float, float]]) -> float:
    """Confidence penalty for candidates scattered over several continents."""
    continents = set()
    for lat, lon in points:
        continent = detect_continent(lat, lon)
        if continent:
            continents.add(continent)

    if len(continents) <= 1:
        return 0.0
    return CONTINENT_SPREAD_PENALTY.get(len(continents), CONTINENT_SPREAD_PENALTY_MAX)


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """True when lat/lon are finite and within geographic range."""
    return (
        math.isfinite(lat)
        and math.isfinite(lon)
        and -90.0 <= lat <= 90.0
        and -180.0 <= lon <= 180.0
    )
