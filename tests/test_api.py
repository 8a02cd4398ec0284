"""
Test cases for the HTTP endpoints.
"""

import base64
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from geowraith.api.main import app, get_service
from geowraith.api.schemas import PredictOptions
from geowraith.core.config import VALID_MODES
from geowraith.core.errors import IndexBuildFailed, PredictionCancelled
from geowraith.core.retrieval import RetrievalEngine
from geowraith.core.service import GeolocationService
from geowraith.vector.anchors import AnchorCurator, AnchorRow
from geowraith.vector.builder import ReferenceIndexBuilder
from geowraith.vector.index import ExactVectorIndex
from fakes import make_image_bytes

EIFFEL_COLOR = (200, 30, 30)


class TestPredictAPI:
    """Test cases for /predict and /health."""

    @pytest.fixture
    def service(self, tmp_path, small_catalog, extractor):
        images = {"eiffel-1": make_image_bytes(EIFFEL_COLOR)}
        builder = ReferenceIndexBuilder(
            extractor,
            cache_dir=tmp_path / "cache",
            catalog_path=tmp_path / "catalog.json",
            anchor_dirs=[],
            curator=AnchorCurator(fetcher=lambda row: images[row.source_ref]),
            catalog=small_catalog,
            anchor_rows=[AnchorRow("eiffel-1", "Eiffel Tower", 48.8584, 2.2945, url="eiffel-1")],
        )
        engine = RetrievalEngine(builder, index_factory=ExactVectorIndex)
        return GeolocationService(extractor=extractor, builder=builder, engine=engine, review_mode=False)

    @pytest.fixture
    def client(self, service):
        """Create test client wired to the fake-backed service."""
        app.dependency_overrides[get_service] = lambda: service
        with TestClient(app) as test_client:
            yield test_client
        app.dependency_overrides.clear()

    @staticmethod
    def _b64(data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    def test_health_reports_readiness(self, client, service):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["ready"] is False

        service.warmup()
        body = client.get("/health").json()
        assert body["ready"] is True
        assert body["status"] == "healthy"
        assert body["anchor_vectors"] == 1
        assert body["index_tier"] == "geoclip"

    def test_predict_with_base64(self, client):
        response = client.post("/predict", json={
            "image_base64": self._b64(make_image_bytes(EIFFEL_COLOR)),
            "options": {"mode": "accurate"},
        })

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "confident"
        assert body["confidence_tier"] == "high"
        assert body["location"]["lat"] == pytest.approx(48.8584)
        assert body["scene_context"]["cohort_hint"] == "iconic_landmark"
        assert body["diagnostics"]["embedding_source"] == "geoclip"

    def test_predict_with_data_url(self, client):
        data_url = "data:image/png;base64," + self._b64(make_image_bytes(EIFFEL_COLOR))
        response = client.post("/predict", json={"image_url": data_url, "options": {"mode": "fast"}})

        assert response.status_code == 200
        assert response.json()["mode"] == "fast"

    def test_predict_defaults_to_accurate(self, client):
        response = client.post("/predict", json={"image_base64": self._b64(make_image_bytes())})
        assert response.status_code == 200
        assert response.json()["mode"] == "accurate"

    def test_predict_rejects_unknown_mode(self, client):
        response = client.post("/predict", json={
            "image_base64": self._b64(make_image_bytes()),
            "options": {"mode": "turbo"},
        })
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_predict_requires_an_image(self, client):
        response = client.post("/predict", json={"options": {"mode": "fast"}})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_predict_rejects_remote_url(self, client):
        response = client.post("/predict", json={"image_url": "https://example.com/photo.jpg"})
        assert response.status_code == 400

    def test_predict_rejects_bad_base64(self, client):
        response = client.post("/predict", json={"image_base64": "not*base64!"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_image"

    def test_predict_rejects_undecodable_image(self, client):
        response = client.post("/predict", json={"image_base64": self._b64(b"plain text, not pixels")})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_image"

    def test_low_confidence_result_has_null_location(self, client, service):
        """Withheld answers are 200 responses with location null."""
        response = client.post("/predict", json={"image_base64": self._b64(make_image_bytes((0, 0, 0)))})
        body = response.json()

        # Black maps to the south pole in the fake space; nearest reference is far below threshold
        assert response.status_code == 200
        assert body["location_visibility"] == "withheld"
        assert body["status"] == "withheld"
        assert body["location"] is None
        assert body["location_reason"] == "confidence_below_actionable_threshold"


class TestPredictAPIErrors:
    """Service failures mapped to HTTP errors."""

    @pytest.fixture
    def failing_service(self):
        return Mock(spec=GeolocationService)

    @pytest.fixture
    def client(self, failing_service):
        app.dependency_overrides[get_service] = lambda: failing_service
        with TestClient(app) as test_client:
            yield test_client
        app.dependency_overrides.clear()

    def _post(self, client):
        payload = base64.b64encode(make_image_bytes()).decode("ascii")
        return client.post("/predict", json={"image_base64": payload})

    def test_index_build_failure_is_503(self, client, failing_service):
        failing_service.predict.side_effect = IndexBuildFailed("no tier could build")

        response = self._post(client)

        assert response.status_code == 503
        assert response.json() == {"error": "index_unavailable", "message": "no tier could build"}

    def test_cancellation_is_499(self, client, failing_service):
        failing_service.predict.side_effect = PredictionCancelled("client went away")

        response = self._post(client)

        assert response.status_code == 499
        assert response.json()["error"] == "cancelled"


def test_predict_options_accept_configured_modes():
    """The request schema and the service agree on the mode names."""
    for mode in VALID_MODES:
        assert PredictOptions(mode=mode.upper()).mode == mode
    with pytest.raises(ValidationError):
        PredictOptions(mode="turbo")


if __name__ == "__main__":
    pytest.main([__file__])
