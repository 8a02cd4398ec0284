"""
GeolocationService: image bytes in, calibrated location out.
"""

from dataclasses import dataclass, field
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from .calibration import (
    GENERIC_SCENE,
    STATUS_CONFIDENT,
    Calibration,
    ConfidenceCalibrator,
    ConfidenceTier,
    SceneType,
    Visibility,
)
from .config import MAX_IMAGE_BYTES, REVIEW_MODE, get_embedding_extractor, top_k_for_mode
from .errors import InvalidImage, PredictionCancelled
from .retrieval import IndexSnapshot, RetrievalEngine
from ..vector.builder import ReferenceIndexBuilder
from ..vector.embeddings import EmbeddingExtractor
from ..vector.imaging import read_exif_location
from ..vector.types import EmbeddingTier, Match
from util.logging import logger

TOP_MATCHES_REPORTED = 8
EXIF_RADIUS_M = 25.0
EXIF_CONFIDENCE = 0.99
EXIF_SOURCE = "exif"


def normalize_mode(mode: Optional[str]) -> str:
    """Anything other than 'fast' runs in accurate mode."""
    return "fast" if (mode or "").strip().lower() == "fast" else "accurate"


@dataclass
class PredictionResult:
    """Per-request prediction. Not persisted."""

    request_id: str
    mode: str
    lat: Optional[float]
    lon: Optional[float]
    radius_m: float
    confidence: float
    tier: ConfidenceTier
    scene: SceneType
    cohort_hint: str
    calibration_note: str
    visibility: Visibility
    status: str
    location_reason: Optional[str] = None
    elapsed_ms: float = 0.0
    notes: List[str] = field(default_factory=list)
    top_matches: List[Dict[str, Any]] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lon is not None

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready response shape."""
        location = None
        if self.has_location:
            location = {
                "lat": round(self.lat, 6),
                "lon": round(self.lon, 6),
                "radius_m": round(self.radius_m, 1),
            }
        return {
            "request_id": self.request_id,
            "status": self.status,
            "mode": self.mode,
            "location": location,
            "location_visibility": self.visibility.value,
            "location_reason": self.location_reason,
            "confidence": self.confidence,
            "confidence_tier": self.tier.value,
            "scene_context": {
                "scene_type": self.scene.value,
                "cohort_hint": self.cohort_hint,
                "confidence_calibration": self.calibration_note,
            },
            "elapsed_ms": round(self.elapsed_ms, 1),
            "notes": list(self.notes),
            "top_matches": list(self.top_matches),
            "diagnostics": dict(self.diagnostics),
        }


def _match_summary(match: Match) -> Dict[str, Any]:
    ref = match.reference
    return {
        "id": ref.id,
        "label": ref.label,
        "lat": ref.lat,
        "lon": ref.lon,
        "kind": ref.kind,
        "similarity": round(match.similarity, 4),
    }


class GeolocationService:
    """
    Composes embedding, retrieval and calibration.

    Each instance owns its extractor, builder and engine, so tests can build
    isolated services with fake backends.
    """

    def __init__(self, extractor: EmbeddingExtractor = None, builder: ReferenceIndexBuilder = None,
                 engine: RetrievalEngine = None, calibrator: ConfidenceCalibrator = None,
                 review_mode: bool = None, max_image_bytes: int = None, use_exif: bool = True):
        self.extractor = extractor or get_embedding_extractor()
        self.builder = builder or ReferenceIndexBuilder(self.extractor)
        self.engine = engine or RetrievalEngine(self.builder)
        self.review_mode = REVIEW_MODE if review_mode is None else review_mode
        self.calibrator = calibrator or ConfidenceCalibrator(review_mode=self.review_mode)
        self.max_image_bytes = max_image_bytes or MAX_IMAGE_BYTES
        self.use_exif = use_exif

    def warmup(self) -> IndexSnapshot:
        """Force the one-shot index build/load."""
        return self.engine.ensure_ready()

    def health(self) -> Dict[str, Any]:
        if not self.engine.is_ready:
            return {"ready": False}
        store = self.engine.ensure_ready().store
        return {
            "ready": True,
            "vectors": len(store),
            "lattice_vectors": store.lattice_count,
            "anchor_vectors": store.anchor_count,
            "index_tier": store.tier.value,
            "reference_index_source": store.source,
        }

    def predict(self, image_bytes: bytes, mode: str = "accurate",
                cancel_event: Optional[threading.Event] = None,
                request_id: Optional[str] = None) -> PredictionResult:
        """
        Predict a location for an image.

        Raises:
            InvalidImage: empty, oversized or undecodable payload
            PredictionCancelled: cancel_event was set before embedding finished
            IndexBuildFailed: no reference index could be built at all
        """
        start = time.time()
        mode = normalize_mode(mode)
        request_id = request_id or uuid.uuid4().hex

        if not image_bytes:
            raise InvalidImage("Image payload is empty")
        if len(image_bytes) > self.max_image_bytes:
            raise InvalidImage(f"Image is {len(image_bytes)} bytes; limit is {self.max_image_bytes}")
        self._check_cancel(cancel_event)

        if self.use_exif:
            exif = read_exif_location(image_bytes)
            if exif is not None:
                return self._exif_result(request_id, mode, exif, start)

        snapshot = self.engine.ensure_ready()
        store = snapshot.store
        vector, tier = self.extractor.embed_image_with_fallback(
            image_bytes, mode=mode, start=store.tier, cancel_event=cancel_event
        )
        # Work that finished after cancellation is discarded
        self._check_cancel(cancel_event)

        matches = self.engine.query(vector, top_k_for_mode(mode))
        calibration = self.calibrator.calibrate(matches, embedding_tier=tier, index_tier=store.tier,
                                                review_mode=self.review_mode)

        notes = list(calibration.notes)
        if store.tier is not EmbeddingTier.PRIMARY:
            notes.append(f"Reference index was built with the '{store.tier.value}' tier.")
        if store.anchor_count == 0:
            notes.append("Reference index holds no image anchors (lattice only).")

        diagnostics = {
            "embedding_source": tier.value,
            "reference_index_source": store.source,
            "reference_image_anchors": store.anchor_count,
            "index_tier": store.tier.value,
            "index_origin": snapshot.index_origin,
            "estimate_method": calibration.method,
            "spread_m": round(calibration.spread_m, 1),
            "consensus": round(calibration.consensus, 3),
        }
        result = self._result(request_id, mode, calibration, notes, start,
                              [_match_summary(m) for m in matches[:TOP_MATCHES_REPORTED]], diagnostics)
        logger.log_prediction(request_id, result.status, {
            "mode": mode, "tier": result.tier.value, "embedding_source": tier.value,
            "elapsed_ms": round(result.elapsed_ms, 1),
        })
        return result

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PredictionCancelled("Prediction cancelled by caller")

    def _result(self, request_id: str, mode: str, calibration: Calibration, notes: List[str],
                start: float, top_matches, diagnostics) -> PredictionResult:
        return PredictionResult(
            request_id=request_id,
            mode=mode,
            lat=calibration.lat,
            lon=calibration.lon,
            radius_m=calibration.radius_m,
            confidence=calibration.confidence,
            tier=calibration.tier,
            scene=calibration.scene,
            cohort_hint=calibration.cohort_hint,
            calibration_note=calibration.calibration_note,
            visibility=calibration.visibility,
            status=calibration.status,
            location_reason=calibration.location_reason,
            elapsed_ms=(time.time() - start) * 1000,
            notes=notes,
            top_matches=top_matches,
            diagnostics=diagnostics,
        )

    def _exif_result(self, request_id: str, mode: str, location, start: float) -> PredictionResult:
        lat, lon = location
        store = self.engine.ensure_ready().store if self.engine.is_ready else None
        logger.log_prediction(request_id, STATUS_CONFIDENT, {"mode": mode, "embedding_source": EXIF_SOURCE})
        return PredictionResult(
            request_id=request_id,
            mode=mode,
            lat=lat,
            lon=lon,
            radius_m=EXIF_RADIUS_M,
            confidence=EXIF_CONFIDENCE,
            tier=ConfidenceTier.HIGH,
            scene=SceneType.UNKNOWN,
            cohort_hint=GENERIC_SCENE,
            calibration_note="Location read from the image's GPS metadata",
            visibility=Visibility.VISIBLE,
            status=STATUS_CONFIDENT,
            elapsed_ms=(time.time() - start) * 1000,
            notes=["EXIF GPS coordinates present; embedding retrieval skipped."],
            diagnostics={
                "embedding_source": EXIF_SOURCE,
                "reference_index_source": store.source if store else "unused",
                "reference_image_anchors": store.anchor_count if store else 0,
            },
        )
