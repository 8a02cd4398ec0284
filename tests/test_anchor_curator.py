"""
Test cases for anchor curation, anchor manifests and remote fetching.
"""

import itertools
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
import requests

from geowraith.core.errors import SourceFetchFailed
from geowraith.vector.anchors import (
    AnchorCurator,
    AnchorRow,
    fetch_remote,
    load_anchor_source,
    manifest_digest,
)
from geowraith.vector.types import ANCHOR, CandidateScore, EmbeddingTier
from fakes import D, FakeGeoBackend, geo_vector, make_extractor, make_image_bytes, unit


def _candidate(ref, vector, score):
    return CandidateScore(source_ref=ref, vector=unit(vector), score=score)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def pool_with_duplicates(rng):
    """Ten distinct candidates plus near-identical copies of the top three."""
    pool = []
    for i in range(10):
        pool.append(_candidate(f"https://img/{i:02d}.jpg", rng.normal(size=D), 0.9 - i * 0.01))
    for i in range(3):
        near = pool[i].vector + rng.normal(scale=1e-4, size=D)
        pool.append(_candidate(f"https://img/dup{i:02d}.jpg", near, pool[i].score + 0.001))
    return pool


def test_select_diverse_never_exceeds_keep(pool_with_duplicates):
    curator = AnchorCurator()
    for keep in range(0, 16):
        selected = curator.select_diverse(pool_with_duplicates, keep)
        assert len(selected) <= keep
        # At least keep candidates available means exactly keep returned
        if len(pool_with_duplicates) >= keep:
            assert len(selected) == keep


def test_diverse_portion_is_below_threshold(pool_with_duplicates):
    """Pairwise cosine in the diversity-filtered portion stays below the threshold."""
    curator = AnchorCurator(threshold=0.995)
    diverse, _ = curator.partition(pool_with_duplicates, keep=13)
    for a, b in itertools.combinations(diverse, 2):
        assert float(np.dot(a.vector, b.vector)) < 0.995


def test_near_duplicates_are_excluded_before_backfill(pool_with_duplicates):
    curator = AnchorCurator()
    selected = curator.select_diverse(pool_with_duplicates, keep=10)
    refs = {c.source_ref for c in selected}
    # Duplicates score higher than their originals, so originals are the ones dropped
    assert {"https://img/dup00.jpg", "https://img/dup01.jpg", "https://img/dup02.jpg"} <= refs
    assert "https://img/00.jpg" not in refs


def test_backfill_meets_quota_with_duplicates():
    """All candidates identical: one passes diversity, the rest are backfilled by score."""
    v = unit(np.ones(D))
    pool = [_candidate(f"ref-{i}", v, 0.5 + i * 0.1) for i in range(5)]
    curator = AnchorCurator()

    diverse, backfill = curator.partition(pool, keep=3)

    assert [c.source_ref for c in diverse] == ["ref-4"]
    assert [c.source_ref for c in backfill] == ["ref-3", "ref-2"]


def test_ties_broken_by_source_ref():
    """Equal scores select lexically smaller source refs first, regardless of input order."""
    pool = [_candidate(ref, np.eye(D)[i], 0.7) for i, ref in enumerate(["c", "a", "b"])]
    curator = AnchorCurator()

    forward = [c.source_ref for c in curator.select_diverse(pool, 2)]
    backward = [c.source_ref for c in curator.select_diverse(list(reversed(pool)), 2)]

    assert forward == ["a", "b"]
    assert backward == forward


def test_fewer_candidates_than_keep_returns_all():
    pool = [_candidate("x", np.eye(D)[0], 0.1), _candidate("y", np.eye(D)[1], 0.2)]
    assert len(AnchorCurator().select_diverse(pool, 5)) == 2


def _write_source(root: Path, rows, images):
    (root / "images").mkdir(parents=True)
    for name, color in images.items():
        (root / "images" / name).write_bytes(make_image_bytes(color))
    lines = ["filename,url,lat,lon,label"] + rows
    (root / "metadata.csv").write_text("\n".join(lines) + "\n", encoding="utf-8")


def test_load_anchor_source_skips_invalid_rows(tmp_path):
    _write_source(tmp_path, [
        "eiffel_1.jpg,,48.8584,2.2945,Eiffel Tower",
        "bad_lat.jpg,,123.0,2.0,Nowhere",
        ",,10.0,10.0,No location",
        ",https://example.com/a.jpg,41.8902,12.4922,Colosseum",
        "eiffel_1.jpg,,48.8584,2.2945,Eiffel Tower",
    ], {"eiffel_1.jpg": (200, 100, 50)})

    rows = load_anchor_source(tmp_path)

    assert len(rows) == 2
    assert rows[0].path == tmp_path / "images" / "eiffel_1.jpg"
    assert rows[1].url == "https://example.com/a.jpg"


def test_load_anchor_source_missing_metadata(tmp_path):
    with pytest.raises(SourceFetchFailed):
        load_anchor_source(tmp_path / "does-not-exist")


def test_manifest_digest_changes_with_content(tmp_path):
    a = [AnchorRow("u1", "X", 1.0, 2.0, url="u1")]
    b = [AnchorRow("u1", "X", 1.0, 2.5, url="u1")]
    assert manifest_digest(a) != manifest_digest(b)
    assert manifest_digest(a) == manifest_digest(list(a))


def _response(status, content=b"img"):
    response = MagicMock()
    response.status_code = status
    response.content = content
    return response


def test_fetch_remote_retries_then_succeeds():
    session = MagicMock()
    session.get.side_effect = [_response(503), _response(429), _response(200, b"payload")]
    sleep = MagicMock()

    data = fetch_remote("https://x/img.jpg", session=session, max_retries=3, sleep=sleep)

    assert data == b"payload"
    assert session.get.call_count == 3
    assert sleep.call_count == 2
    # Exponential backoff: second delay at least the doubled base
    first, second = (call.args[0] for call in sleep.call_args_list)
    assert 1.0 <= first < 1.2
    assert 2.0 <= second < 2.3


def test_fetch_remote_gives_up_after_retries():
    session = MagicMock()
    session.get.side_effect = requests.exceptions.ConnectionError("offline")
    sleep = MagicMock()

    with pytest.raises(SourceFetchFailed):
        fetch_remote("https://x/img.jpg", session=session, max_retries=3, sleep=sleep)

    assert session.get.call_count == 3
    assert sleep.call_count == 2


def test_fetch_remote_does_not_retry_client_errors():
    session = MagicMock()
    session.get.return_value = _response(404)
    sleep = MagicMock()

    with pytest.raises(SourceFetchFailed):
        fetch_remote("https://x/missing.jpg", session=session, sleep=sleep)

    assert session.get.call_count == 1
    sleep.assert_not_called()


def test_fetch_remote_passes_timeout():
    session = MagicMock()
    session.get.return_value = _response(200)
    fetch_remote("https://x/img.jpg", session=session, timeout=5.0)
    session.get.assert_called_once_with("https://x/img.jpg", timeout=5.0)


def test_embed_anchors_skips_failed_sources_and_curates():
    """Failing fetches and corrupt images are skipped; the rest become anchors."""
    good = {
        "a1": (make_image_bytes((10, 10, 10)), (10, 10, 10)),
        "a2": (make_image_bytes((20, 20, 20)), (20, 20, 20)),
    }

    def fetcher(row):
        if row.source_ref == "broken":
            raise SourceFetchFailed(row.source_ref, "HTTP 503")
        if row.source_ref == "corrupt":
            return b"not an image"
        return good[row.source_ref][0]

    target = (48.8584, 2.2945)
    backend = FakeGeoBackend(image_vectors={
        (10, 10, 10): geo_vector(*target),
        (20, 20, 20): geo_vector(48.0, 3.0),
    })
    extractor = make_extractor(primary=backend)
    rows = [
        AnchorRow(ref, "Eiffel Tower", target[0], target[1], url=ref)
        for ref in ["a1", "a2", "broken", "corrupt"]
    ]
    curator = AnchorCurator(keep_per_target=5, fetcher=fetcher)

    anchors = curator.embed_anchors(rows, extractor, EmbeddingTier.PRIMARY)

    assert len(anchors) == 2
    assert all(a.kind == ANCHOR for a in anchors)
    assert all(a.label == "Eiffel Tower (image-anchor)" for a in anchors)
    assert all(a.id.startswith("img_anchor_eiffel_tower_") for a in anchors)
    # Best-scoring candidate (exactly at the target) comes first
    assert np.allclose(anchors[0].vector, extractor.embed_coordinates(*target), atol=1e-5)


def test_embed_anchors_respects_per_target_keep():
    backend = FakeGeoBackend()
    extractor = make_extractor(primary=backend)
    colors = [(i * 20, 50, 50) for i in range(6)]
    images = {f"r{i}": make_image_bytes(c) for i, c in enumerate(colors)}
    rows = [AnchorRow(ref, "Louvre Museum", 48.86, 2.33, url=ref) for ref in images]
    curator = AnchorCurator(keep_per_target=3, fetcher=lambda row: images[row.source_ref])

    anchors = curator.embed_anchors(rows, extractor, EmbeddingTier.PRIMARY)

    assert len(anchors) == 3
    assert len({a.id for a in anchors}) == 3


if __name__ == "__main__":
    pytest.main([__file__])
