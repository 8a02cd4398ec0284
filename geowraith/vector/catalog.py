"""
Coordinate catalog: load, validate and generate the global lattice.

The catalog is a JSON array of {id, label, lat, lon}. Each entry is validated
on its own; a bad entry is excluded and logged without aborting the load.
"""

import json
import math
from pathlib import Path
from typing import List, Tuple

from pydantic import ValidationError

from ..core.errors import InvalidRecord
from .cache import atomic_write_text, digest_of
from .types import CatalogRecord
from util.logging import logger

# Share of the lattice spent on densification around population hotspots
HOTSPOT_SHARE = 0.2

# Ring radii (km) around each hotspot
HOTSPOT_RINGS_KM = (4.0, 12.0, 30.0, 70.0, 150.0)

GOLDEN_ANGLE_DEG = 137.50776405

SPHERE_SQ_DEG = 41252.96

HOTSPOTS: List[Tuple[str, float, float]] = [
    ("Tokyo", 35.6762, 139.6503),
    ("Delhi", 28.7041, 77.1025),
    ("Shanghai", 31.2304, 121.4737),
    ("Sao Paulo", -23.5505, -46.6333),
    ("Mexico City", 19.4326, -99.1332),
    ("Cairo", 30.0444, 31.2357),
    ("Mumbai", 19.0760, 72.8777),
    ("Beijing", 39.9042, 116.4074),
    ("Dhaka", 23.8103, 90.4125),
    ("Osaka", 34.6937, 135.5023),
    ("New York", 40.7128, -74.0060),
    ("Karachi", 24.8607, 67.0011),
    ("Buenos Aires", -34.6037, -58.3816),
    ("Istanbul", 41.0082, 28.9784),
    ("Kolkata", 22.5726, 88.3639),
    ("Manila", 14.5995, 120.9842),
    ("Lagos", 6.5244, 3.3792),
    ("Rio de Janeiro", -22.9068, -43.1729),
    ("Los Angeles", 34.0522, -118.2437),
    ("Moscow", 55.7558, 37.6173),
    ("Paris", 48.8566, 2.3522),
    ("London", 51.5074, -0.1278),
    ("Bangkok", 13.7563, 100.5018),
    ("Jakarta", -6.2088, 106.8456),
    ("Seoul", 37.5665, 126.9780),
    ("Lima", -12.0464, -77.0428),
    ("Tehran", 35.6892, 51.3890),
    ("Johannesburg", -26.2041, 28.0473),
    ("Nairobi", -1.2921, 36.8219),
    ("Sydney", -33.8688, 151.2093),
    ("Rome", 41.9028, 12.4964),
    ("Barcelona", 41.3851, 2.1734),
    ("Berlin", 52.5200, 13.4050),
    ("Chicago", 41.8781, -87.6298),
    ("Toronto", 43.6532, -79.3832),
    ("Singapore", 1.3521, 103.8198),
    ("Dubai", 25.2048, 55.2708),
    ("Hong Kong", 22.3193, 114.1694),
    ("San Francisco", 37.7749, -122.4194),
    ("Vancouver", 49.2827, -123.1207),
]


def format_coordinate_label(lat: float, lon: float) -> str:
    ns = "N" if lat >= 0 else "S"
    ew = "E" if lon >= 0 else "W"
    return f"{abs(lat):.1f}°{ns} {abs(lon):.1f}°{ew}"


def parse_catalog(entries: list) -> List[CatalogRecord]:
    """Validate raw catalog entries, excluding (and logging) invalid ones."""
    records = []
    seen = set()
    for position, entry in enumerate(entries):
        record_id = entry.get("id", f"#{position}") if isinstance(entry, dict) else f"#{position}"
        try:
            try:
                record = CatalogRecord.model_validate(entry)
            except ValidationError as e:
                raise InvalidRecord(str(record_id), "; ".join(err["msg"] for err in e.errors())) from e
            if record.id in seen:
                raise InvalidRecord(record.id, "duplicate id")
        except InvalidRecord as e:
            logger.log_record_rejected(e.record_id, e.reason)
            continue
        seen.add(record.id)
        records.append(record)
    return records


def load_catalog(path: Path) -> List[CatalogRecord]:
    """
    Load a coordinate catalog file.

    Raises:
        FileNotFoundError: path does not exist
        ValueError: the file is not a JSON array
    """
    with open(path, "r", encoding="utf-8") as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError(f"Coordinate catalog {path} must contain a JSON array")

    records = parse_catalog(entries)
    rejected = len(entries) - len(records)
    logger.log_operation("catalog.load", "success", {"path": str(path), "records": len(records), "rejected": rejected})
    return records


def save_catalog(path: Path, records: List[CatalogRecord]) -> None:
    atomic_write_text(Path(path), json.dumps([record.model_dump() for record in records]))


def _offset(lat: float, lon: float, distance_km: float, bearing_deg: float) -> Tuple[float, float]:
    """Small-distance destination point; longitude wrapped, latitude clamped."""
    bearing = math.radians(bearing_deg)
    d_lat = distance_km * math.cos(bearing) / 111.32
    cos_lat = max(0.01, math.cos(math.radians(lat)))
    d_lon = distance_km * math.sin(bearing) / (111.32 * cos_lat)
    new_lat = max(-90.0, min(90.0, lat + d_lat))
    new_lon = ((lon + d_lon + 180.0) % 360.0) - 180.0
    return new_lat, new_lon


def generate_lattice(target_count: int) -> List[CatalogRecord]:
    """
    Stratified global lattice with extra density around population hotspots.

    Latitude bands are spaced evenly and each band gets a number of longitude
    steps proportional to cos(lat), so cells cover roughly equal areas. The
    result is deterministic for a given target_count.
    """
    if target_count <= 0:
        return []

    hotspot_budget = int(target_count * HOTSPOT_SHARE)
    global_budget = target_count - hotspot_budget

    records = []
    step = math.sqrt(SPHERE_SQ_DEG / max(1, global_budget))
    lat = -90.0 + step / 2
    while lat < 90.0:
        lon_steps = max(1, int(round(360.0 * math.cos(math.radians(lat)) / step)))
        lon_step = 360.0 / lon_steps
        for j in range(lon_steps):
            lon = -180.0 + lon_step * (j + 0.5)
            records.append(CatalogRecord(
                id=f"lat_{len(records):06d}",
                label=format_coordinate_label(lat, lon),
                lat=round(lat, 6),
                lon=round(lon, 6),
            ))
        lat += step

    per_hotspot = hotspot_budget // len(HOTSPOTS) if HOTSPOTS else 0
    for name, h_lat, h_lon in HOTSPOTS:
        slug = name.lower().replace(" ", "_")
        for n in range(per_hotspot):
            ring = HOTSPOT_RINGS_KM[n % len(HOTSPOT_RINGS_KM)]
            if n == 0:
                p_lat, p_lon = h_lat, h_lon
            else:
                p_lat, p_lon = _offset(h_lat, h_lon, ring, n * GOLDEN_ANGLE_DEG)
            records.append(CatalogRecord(
                id=f"hot_{slug}_{n:03d}",
                label=name,
                lat=round(p_lat, 6),
                lon=round(p_lon, 6),
            ))

    return records


def load_or_generate_catalog(path: Path, target_count: int) -> List[CatalogRecord]:
    """Load the catalog at path, generating and persisting a lattice when it is missing."""
    path = Path(path)
    if path.exists():
        return load_catalog(path)

    records = generate_lattice(target_count)
    save_catalog(path, records)
    logger.log_operation("catalog.generate", "success", {"path": str(path), "records": len(records)})
    return records


def catalog_digest(records: List[CatalogRecord]) -> str:
    """Content digest of a catalog, part of the build signature."""
    return digest_of(f"{r.id}|{r.label}|{r.lat:.6f}|{r.lon:.6f}" for r in records)
