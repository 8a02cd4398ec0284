"""
Immutable reference vector store.
"""

from typing import Iterable, Iterator, Tuple

import numpy as np

from ..core.errors import InvalidRecord
from ..core.geo import is_valid_coordinate
from .types import ANCHOR, LATTICE, EmbeddingTier, ReferenceVector

# Source of a store: freshly embedded, loaded from the envelope cache, or built in the fallback tier
SOURCE_MODEL = "model"
SOURCE_CACHE = "cache"
SOURCE_FALLBACK = "fallback"


class VectorStore:
    """
    Ordered, immutable collection of reference vectors built in a single tier.

    Lattice entries come first, anchors after. Construction validates every
    entry; a store never holds duplicate ids or vectors of the wrong length.
    """

    def __init__(self, vectors: Iterable[ReferenceVector], tier: EmbeddingTier,
                 dimension: int = 512, source: str = SOURCE_MODEL, version: str = ""):
        vectors = tuple(vectors)
        seen = set()
        for ref in vectors:
            if ref.id in seen:
                raise InvalidRecord(ref.id, "duplicate id")
            seen.add(ref.id)
            if not is_valid_coordinate(ref.lat, ref.lon):
                raise InvalidRecord(ref.id, f"coordinate out of range ({ref.lat}, {ref.lon})")
            if ref.vector.shape != (dimension,):
                raise InvalidRecord(ref.id, f"vector shape {ref.vector.shape} != ({dimension},)")
            if ref.kind not in (LATTICE, ANCHOR):
                raise InvalidRecord(ref.id, f"unknown kind '{ref.kind}'")

        self._vectors = vectors
        self.tier = tier
        self.dimension = dimension
        self.source = source
        self.version = version

        if vectors:
            matrix = np.vstack([ref.vector for ref in vectors]).astype(np.float32)
        else:
            matrix = np.zeros((0, dimension), dtype=np.float32)
        matrix.setflags(write=False)
        self._matrix = matrix

    def __len__(self) -> int:
        return len(self._vectors)

    def __iter__(self) -> Iterator[ReferenceVector]:
        return iter(self._vectors)

    def get(self, position: int) -> ReferenceVector:
        return self._vectors[position]

    @property
    def vectors(self) -> Tuple[ReferenceVector, ...]:
        return self._vectors

    @property
    def matrix(self) -> np.ndarray:
        """Read-only (N, D) float32 matrix in store order."""
        return self._matrix

    @property
    def lattice_count(self) -> int:
        return sum(1 for ref in self._vectors if ref.kind == LATTICE)

    @property
    def anchor_count(self) -> int:
        return sum(1 for ref in self._vectors if ref.kind == ANCHOR)

    def anchor_positions(self) -> np.ndarray:
        return np.array([i for i, ref in enumerate(self._vectors) if ref.kind == ANCHOR], dtype=np.int64)
