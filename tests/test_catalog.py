"""
Test cases for the coordinate catalog and lattice generation.
"""

import json

import pytest

from geowraith.vector.catalog import (
    HOTSPOTS,
    catalog_digest,
    format_coordinate_label,
    generate_lattice,
    load_catalog,
    load_or_generate_catalog,
    parse_catalog,
)


def test_parse_catalog_excludes_invalid_entries():
    """Bad entries are dropped individually; the rest load."""
    entries = [
        {"id": "ok_1", "label": "Paris", "lat": 48.85, "lon": 2.35},
        {"id": "bad_lat", "label": "X", "lat": 91.0, "lon": 0.0},
        {"id": "bad_lon", "label": "X", "lat": 0.0, "lon": -181.0},
        {"id": "no_label", "lat": 0.0, "lon": 0.0},
        {"id": "", "label": "empty id", "lat": 0.0, "lon": 0.0},
        "not even a dict",
        {"id": "ok_1", "label": "Duplicate", "lat": 1.0, "lon": 1.0},
        {"id": "ok_2", "label": "Tokyo", "lat": 35.68, "lon": 139.65, "extra": "ignored"},
    ]

    records = parse_catalog(entries)

    assert [r.id for r in records] == ["ok_1", "ok_2"]
    assert records[0].label == "Paris"


def test_load_catalog_requires_array(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"id": "x"}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_catalog(path)


def test_load_catalog_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_catalog(tmp_path / "missing.json")


def test_generate_lattice_is_deterministic():
    a = generate_lattice(500)
    b = generate_lattice(500)
    assert a == b


def test_generate_lattice_size_and_validity():
    records = generate_lattice(2000)

    # Stratified rounding lands near the target
    assert 1600 <= len(records) <= 2400
    assert len({r.id for r in records}) == len(records)
    assert all(-90.0 <= r.lat <= 90.0 and -180.0 <= r.lon <= 180.0 for r in records)

    hotspot_ids = [r.id for r in records if r.id.startswith("hot_")]
    assert len(hotspot_ids) == (2000 // 5) // len(HOTSPOTS) * len(HOTSPOTS)
    assert "hot_paris_000" in hotspot_ids


def test_generate_lattice_empty_for_nonpositive():
    assert generate_lattice(0) == []


def test_load_or_generate_writes_catalog(tmp_path):
    path = tmp_path / "data" / "catalog.json"

    generated = load_or_generate_catalog(path, 300)

    assert path.exists()
    reloaded = load_or_generate_catalog(path, 999999)
    assert reloaded == generated


def test_catalog_digest_tracks_content():
    records = generate_lattice(200)
    assert catalog_digest(records) == catalog_digest(list(records))
    assert catalog_digest(records) != catalog_digest(records[:-1])


def test_format_coordinate_label():
    assert format_coordinate_label(12.5, 30.0) == "12.5°N 30.0°E"
    assert format_coordinate_label(-33.87, -70.6) == "33.9°S 70.6°W"


if __name__ == "__main__":
    pytest.main([__file__])
