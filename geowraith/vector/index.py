"""
ANN index interface and an exact (brute-force) implementation.
Indexes hold positions into a VectorStore snapshot, never the records themselves.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Tuple

import numpy as np

from ..core.errors import IndexSizeMismatch


class IVectorIndex(ABC):
    """Abstract interface for nearest-neighbour search over unit vectors."""

    @abstractmethod
    def build(self, matrix: np.ndarray) -> None:
        """Index an (N, D) float32 matrix of unit vectors, replacing any previous content."""
        pass

    @abstractmethod
    def search(self, query_vector: np.ndarray, top_k: int = 5) -> List[Tuple[int, float]]:
        """Return (position, cosine similarity) pairs, best first."""
        pass

    @abstractmethod
    def save(self, path: Path) -> None:
        """Persist the index to path."""
        pass

    @abstractmethod
    def load(self, path: Path, expected_count: int) -> None:
        """Load the index from path. Raises IndexSizeMismatch when the count differs."""
        pass

    @property
    @abstractmethod
    def ntotal(self) -> int:
        """Number of indexed vectors."""
        pass

    @property
    def params(self) -> Dict[str, Any]:
        """Build parameters, reported in diagnostics."""
        return {}

    @property
    def build_params(self) -> Dict[str, Any]:
        """Parameters that shape the persisted index; part of its file key."""
        return self.params

    @property
    def file_suffix(self) -> str:
        return ".idx"


class ExactVectorIndex(IVectorIndex):
    """Brute-force cosine search with numpy. Exact, O(N) per query."""

    def __init__(self, dimension: int = 512):
        self.dimension = dimension
        self._matrix = np.zeros((0, dimension), dtype=np.float32)

    def build(self, matrix: np.ndarray) -> None:
        matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension:
            raise ValueError(f"Vector dimension {matrix.shape[-1]} does not match expected dimension {self.dimension}")
        self._matrix = matrix

    def search(self, query_vector: np.ndarray, top_k: int = 5) -> List[Tuple[int, float]]:
        if not self.ntotal or top_k <= 0:
            return []
        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        scores = self._matrix @ query
        k = min(top_k, self.ntotal)
        # Stable sort keeps lower positions first on equal scores
        order = np.argsort(-scores, kind="stable")[:k]
        return [(int(i), float(scores[i])) for i in order]

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            np.save(f, self._matrix)

    def load(self, path: Path, expected_count: int) -> None:
        with open(path, "rb") as f:
            matrix = np.load(f)
        if matrix.shape[0] != expected_count:
            raise IndexSizeMismatch(expected_count, matrix.shape[0])
        self.build(matrix)

    @property
    def ntotal(self) -> int:
        return int(self._matrix.shape[0])

    @property
    def params(self) -> Dict[str, Any]:
        return {"type": "exact"}

    @property
    def file_suffix(self) -> str:
        return ".npy"
