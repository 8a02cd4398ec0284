"""
Test cases for the versioned reference cache.
"""

import json

import numpy as np
import pytest

from geowraith.core.errors import InvalidRecord
from geowraith.vector.cache import (
    ann_path,
    build_signature,
    clear_cache,
    envelope_from_vectors,
    envelope_path,
    load_envelope,
    parse_envelope,
    prune_stale,
    save_envelope,
)
from geowraith.vector.types import ANCHOR, EmbeddingTier, ReferenceVector
from fakes import D, geo_vector, unit


def _refs():
    return [
        ReferenceVector("lat_a", "A", 10.0, 20.0, unit(geo_vector(10.0, 20.0))),
        ReferenceVector("lat_b", "B", -30.0, 140.0, unit(geo_vector(-30.0, 140.0))),
        ReferenceVector("img_anchor_x", "X (image-anchor)", 48.8, 2.3, unit(np.arange(1, D + 1)), kind=ANCHOR),
    ]


def _signature(**overrides):
    args = dict(
        backend_identity="fake-geo-geoclip-16",
        tier=EmbeddingTier.PRIMARY,
        dimension=D,
        catalog_digest="c" * 64,
        lattice_count=2,
        anchor_digest="a" * 64,
    )
    args.update(overrides)
    return build_signature(**args)


def test_round_trip_preserves_records(tmp_path):
    """Saved then loaded envelope has the same ids, coordinates and vectors."""
    version = _signature()
    refs = _refs()
    save_envelope(tmp_path, envelope_from_vectors(version, EmbeddingTier.PRIMARY, refs))

    loaded = load_envelope(tmp_path, version, D)

    assert loaded is not None
    assert loaded.version == version
    assert loaded.tier is EmbeddingTier.PRIMARY
    assert [r.id for r in loaded.vectors] == [r.id for r in refs]
    assert loaded.vectors == refs
    for original, restored in zip(refs, loaded.vectors):
        np.testing.assert_allclose(original.vector, restored.vector, atol=1e-6)
    assert loaded.vectors[2].is_anchor


def test_signature_changes_with_inputs():
    base = _signature()
    assert _signature() == base
    assert _signature(backend_identity="other-weights") != base
    assert _signature(tier=EmbeddingTier.DETERMINISTIC) != base
    assert _signature(catalog_digest="d" * 64) != base
    assert _signature(lattice_count=3) != base
    assert _signature(anchor_digest="b" * 64) != base
    assert _signature(schema_revision="999") != base


def test_missing_envelope_is_a_miss(tmp_path):
    assert load_envelope(tmp_path, _signature(), D) is None


def test_version_mismatch_is_rejected(tmp_path):
    """A file under the expected name but holding another version is stale."""
    version = _signature()
    path = save_envelope(tmp_path, envelope_from_vectors(version, EmbeddingTier.PRIMARY, _refs()))
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["version"] = _signature(lattice_count=99)
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert load_envelope(tmp_path, version, D) is None


def test_corrupt_json_is_rejected(tmp_path):
    version = _signature()
    envelope_path(tmp_path, version).write_text("{not json", encoding="utf-8")
    assert load_envelope(tmp_path, version, D) is None


def test_single_bad_record_rejects_whole_envelope(tmp_path):
    version = _signature()
    path = save_envelope(tmp_path, envelope_from_vectors(version, EmbeddingTier.PRIMARY, _refs()))
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["vectors"][1]["lat"] = 123.0
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert load_envelope(tmp_path, version, D) is None


def test_parse_envelope_rejects_wrong_dimension():
    payload = {
        "version": "v",
        "tier": "geoclip",
        "vectors": [{"id": "a", "label": "A", "lat": 0.0, "lon": 0.0, "vector": [1.0, 0.0]}],
    }
    with pytest.raises(InvalidRecord) as exc:
        parse_envelope(payload, D)
    assert exc.value.record_id == "a"


def test_parse_envelope_rejects_unnormalized_vector():
    payload = {
        "version": "v",
        "tier": "geoclip",
        "vectors": [{"id": "a", "label": "A", "lat": 0.0, "lon": 0.0, "vector": [2.0] + [0.0] * (D - 1)}],
    }
    with pytest.raises(InvalidRecord):
        parse_envelope(payload, D)


def test_parse_envelope_rejects_duplicate_ids():
    row = {"id": "a", "label": "A", "lat": 0.0, "lon": 0.0, "vector": [1.0] + [0.0] * (D - 1)}
    with pytest.raises(InvalidRecord):
        parse_envelope({"version": "v", "tier": "geoclip", "vectors": [row, dict(row)]}, D)


def test_parse_envelope_rejects_unknown_tier():
    with pytest.raises(InvalidRecord):
        parse_envelope({"version": "v", "tier": "mystery", "vectors": []}, D)


def test_prune_stale_keeps_current_version(tmp_path):
    current = _signature()
    stale = _signature(lattice_count=7)
    save_envelope(tmp_path, envelope_from_vectors(current, EmbeddingTier.PRIMARY, _refs()))
    save_envelope(tmp_path, envelope_from_vectors(stale, EmbeddingTier.PRIMARY, _refs()))
    ann_path(tmp_path, current).write_bytes(b"ann")
    ann_path(tmp_path, stale).write_bytes(b"ann")
    (tmp_path / "catalog.json").write_text("[]", encoding="utf-8")

    removed = prune_stale(tmp_path, current)

    assert removed == 2
    assert envelope_path(tmp_path, current).exists()
    assert ann_path(tmp_path, current).exists()
    assert not envelope_path(tmp_path, stale).exists()
    assert (tmp_path / "catalog.json").exists()


def test_clear_cache_removes_everything_cached(tmp_path):
    version = _signature()
    save_envelope(tmp_path, envelope_from_vectors(version, EmbeddingTier.PRIMARY, _refs()))
    ann_path(tmp_path, version).write_bytes(b"ann")
    (tmp_path / "catalog.json").write_text("[]", encoding="utf-8")

    assert clear_cache(tmp_path) == 2
    assert [p.name for p in tmp_path.iterdir()] == ["catalog.json"]


def test_clear_cache_missing_dir(tmp_path):
    assert clear_cache(tmp_path / "nope") == 0


if __name__ == "__main__":
    pytest.main([__file__])
