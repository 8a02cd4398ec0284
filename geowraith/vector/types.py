"""
Reference index data model.
Vectors are float32 numpy arrays; records are immutable once built.
"""

from dataclasses import dataclass, field
from enum import Enum
import math
from typing import List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, field_validator


class EmbeddingTier(str, Enum):
    """Which backend produced an embedding. Values are the diagnostic tags."""

    PRIMARY = "geoclip"
    SECONDARY = "clip"
    DETERMINISTIC = "fallback"

    @property
    def rank(self) -> int:
        """Position in the degradation chain (0 is the most trusted)."""
        return TIER_ORDER.index(self)


TIER_ORDER = [EmbeddingTier.PRIMARY, EmbeddingTier.SECONDARY, EmbeddingTier.DETERMINISTIC]


LATTICE = "lattice"
ANCHOR = "anchor"


@dataclass(frozen=True)
class ReferenceVector:
    """A single reference embedding tied to a ground-truth coordinate."""

    id: str
    """Unique identifier within a store"""

    label: str
    """Human readable place name (informational, may repeat)"""

    lat: float
    """Latitude in degrees, [-90, 90]"""

    lon: float
    """Longitude in degrees, [-180, 180]"""

    vector: np.ndarray = field(compare=False, repr=False)
    """Unit-normalized float32 embedding of length D"""

    kind: str = LATTICE
    """'lattice' for coordinate embeddings, 'anchor' for image embeddings"""

    @property
    def is_anchor(self) -> bool:
        return self.kind == ANCHOR


@dataclass(frozen=True)
class Match:
    """A retrieval hit."""

    reference: ReferenceVector
    """The matched reference entry"""

    similarity: float
    """Cosine similarity to the query in [-1, 1]"""


@dataclass
class CandidateScore:
    """Transient anchor candidate used during curation. Never persisted."""

    source_ref: str
    """Stable reference to the source image (URL or path)"""

    vector: np.ndarray
    """Image embedding of the candidate"""

    score: float
    """Relevance of the candidate to its target location"""


@dataclass
class CacheEnvelope:
    """On-disk representation of a VectorStore."""

    version: str
    """Build signature the vectors were produced under"""

    tier: EmbeddingTier
    """Embedding tier shared by every vector"""

    vectors: List[ReferenceVector]
    """Lattice and anchor entries in store order"""


class CatalogRecord(BaseModel):
    """A coordinate catalog entry. Fails closed on any schema violation."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    label: str
    lat: float
    lon: float

    @field_validator('id')
    @classmethod
    def id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('id cannot be empty')
        return v

    @field_validator('lat')
    @classmethod
    def lat_must_be_in_range(cls, v):
        if not math.isfinite(v) or not -90.0 <= v <= 90.0:
            raise ValueError('lat must be within [-90, 90]')
        return v

    @field_validator('lon')
    @classmethod
    def lon_must_be_in_range(cls, v):
        if not math.isfinite(v) or not -180.0 <= v <= 180.0:
            raise ValueError('lon must be within [-180, 180]')
        return v


class ReferenceRecord(CatalogRecord):
    """A cached reference vector entry."""

    kind: str = LATTICE
    vector: List[float]

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        if v not in (LATTICE, ANCHOR):
            raise ValueError(f"kind must be one of: {[LATTICE, ANCHOR]}")
        return v

    @field_validator('vector')
    @classmethod
    def vector_must_be_finite(cls, v):
        if not v:
            raise ValueError('vector cannot be empty')
        if not all(math.isfinite(x) for x in v):
            raise ValueError('vector contains non-finite values')
        return v

    def to_reference(self, dimension: int, tolerance: float = 1e-3) -> ReferenceVector:
        """Convert to a ReferenceVector, checking length and unit norm."""
        vector = np.asarray(self.vector, dtype=np.float32)
        if vector.shape[0] != dimension:
            raise ValueError(f"vector has {vector.shape[0]} components, expected {dimension}")
        norm = float(np.linalg.norm(vector))
        if abs(norm - 1.0) > tolerance:
            raise ValueError(f"vector is not unit-normalized (norm={norm:.5f})")
        return ReferenceVector(
            id=self.id,
            label=self.label,
            lat=self.lat,
            lon=self.lon,
            vector=vector,
            kind=self.kind,
        )


def l2_normalize(vector: np.ndarray) -> Optional[np.ndarray]:
    """Return a float32 unit vector, or None when the input cannot be normalized."""
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    if not np.all(np.isfinite(vector)):
        return None
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not math.isfinite(norm):
        return None
    return (vector / norm).astype(np.float32)
