"""
Request and response models for the HTTP surface.
"""

import base64
import binascii
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator, model_validator

from ..core.config import VALID_MODES

DATA_URL_RE = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,(?P<data>.+)$", re.S)


class PredictOptions(BaseModel):
    mode: str = "accurate"

    @field_validator('mode')
    @classmethod
    def mode_must_be_valid(cls, v):
        v = (v or "").strip().lower()
        if v not in VALID_MODES:
            raise ValueError(f'mode must be one of: {list(VALID_MODES)}')
        return v


class PredictRequest(BaseModel):
    image_base64: Optional[str] = None
    image_url: Optional[str] = None
    options: PredictOptions = PredictOptions()

    @field_validator('image_url')
    @classmethod
    def image_url_must_be_data_url(cls, v):
        if v is None:
            return v
        if not DATA_URL_RE.match(v.strip()):
            raise ValueError('image_url must be a base64 data URL (data:image/...;base64,...)')
        return v.strip()

    @model_validator(mode='after')
    def needs_an_image(self):
        if not (self.image_base64 or "").strip() and not self.image_url:
            raise ValueError('provide image_base64 or image_url')
        return self

    def image_bytes(self) -> bytes:
        """Decode the payload. Raises ValueError on malformed base64."""
        if self.image_base64 and self.image_base64.strip():
            data = self.image_base64.strip()
            match = DATA_URL_RE.match(data)
            if match:
                data = match.group("data")
        else:
            data = DATA_URL_RE.match(self.image_url).group("data")
        try:
            return base64.b64decode(re.sub(r"\s+", "", data), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"image payload is not valid base64: {e}") from e


class LocationModel(BaseModel):
    lat: float
    lon: float
    radius_m: float


class SceneContext(BaseModel):
    scene_type: str
    cohort_hint: str
    confidence_calibration: str


class PredictResponse(BaseModel):
    request_id: str
    status: str
    mode: str
    location: Optional[LocationModel] = None
    location_visibility: str
    location_reason: Optional[str] = None
    confidence: float
    confidence_tier: str
    scene_context: SceneContext
    elapsed_ms: float
    notes: List[str] = []
    top_matches: List[Dict[str, Any]] = []
    diagnostics: Dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    version: str
    ready: bool
    vectors: int = 0
    lattice_vectors: int = 0
    anchor_vectors: int = 0
    index_tier: Optional[str] = None
    reference_index_source: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    message: str
