"""
Shared fixtures: small catalogs and fake-backed extractors.
"""

import pytest

from geowraith.vector.types import CatalogRecord, EmbeddingTier
from fakes import FakeGeoBackend, make_extractor


@pytest.fixture
def small_catalog():
    """A handful of well separated lattice points."""
    points = [
        ("lat_paris", "Paris", 48.8566, 2.3522),
        ("lat_tokyo", "Tokyo", 35.6762, 139.6503),
        ("lat_nyc", "New York", 40.7128, -74.0060),
        ("lat_sydney", "Sydney", -33.8688, 151.2093),
        ("lat_cairo", "Cairo", 30.0444, 31.2357),
        ("lat_lima", "Lima", -12.0464, -77.0428),
    ]
    return [CatalogRecord(id=i, label=label, lat=lat, lon=lon) for i, label, lat, lon in points]


@pytest.fixture
def primary_backend():
    return FakeGeoBackend(EmbeddingTier.PRIMARY)


@pytest.fixture
def extractor(primary_backend):
    return make_extractor(primary=primary_backend)
