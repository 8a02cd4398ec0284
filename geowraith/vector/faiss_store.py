"""
HNSW approximate nearest-neighbour index backed by FAISS.
"""

from pathlib import Path
from typing import Any, Dict, List, Tuple

import numpy as np

from ..core.errors import IndexSizeMismatch
from .index import IVectorIndex


class FaissHNSWIndex(IVectorIndex):
    """FAISS HNSW implementation of IVectorIndex."""

    def __init__(self, dimension: int = 512, m: int = 16, ef_construction: int = 200,
                 ef_search: int = 64, metric: str = "ip"):
        """
        Initialize FAISS HNSW index.

        Args:
            dimension: Dimension of the vectors
            m: Graph connectivity (neighbours per node)
            ef_construction: Candidate list size while building
            ef_search: Candidate list size while querying
            metric: 'ip' (inner product) or 'l2' (squared euclidean)
        """
        try:
            import faiss
            self.faiss = faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        if metric not in ("ip", "l2"):
            raise ValueError(f"Unsupported metric '{metric}', expected 'ip' or 'l2'")

        self.dimension = dimension
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.metric = metric
        self.index = self._new_index()

    def _faiss_metric(self) -> int:
        return self.faiss.METRIC_INNER_PRODUCT if self.metric == "ip" else self.faiss.METRIC_L2

    def _new_index(self):
        index = self.faiss.IndexHNSWFlat(self.dimension, self.m, self._faiss_metric())
        index.hnsw.efConstruction = self.ef_construction
        index.hnsw.efSearch = self.ef_search
        return index

    def to_similarity(self, distance: float) -> float:
        """Convert a FAISS distance into cosine similarity for unit vectors."""
        if self.metric == "ip":
            similarity = distance
        else:
            # |a - b|^2 = 2 - 2 cos(a, b) for unit vectors
            similarity = 1.0 - distance / 2.0
        return float(min(1.0, max(-1.0, similarity)))

    def build(self, matrix: np.ndarray) -> None:
        matrix = np.ascontiguousarray(matrix, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension:
            raise ValueError(f"Vector dimension {matrix.shape[-1]} does not match expected dimension {self.dimension}")

        self.index = self._new_index()
        if matrix.shape[0]:
            self.index.add(matrix)

    def search(self, query_vector: np.ndarray, top_k: int = 5) -> List[Tuple[int, float]]:
        if not self.index.ntotal or top_k <= 0:
            return []

        query = np.ascontiguousarray(query_vector, dtype=np.float32).reshape(1, -1)
        k = min(top_k, self.index.ntotal)
        # efSearch must cover k or HNSW returns fewer neighbours; passed per call, the index is shared
        search_params = self.faiss.SearchParametersHNSW(efSearch=max(self.ef_search, k))
        distances, positions = self.index.search(query, k, params=search_params)

        results = []
        for distance, position in zip(distances[0], positions[0]):
            if position < 0:
                continue
            results.append((int(position), self.to_similarity(float(distance))))
        return results

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        self.faiss.write_index(self.index, str(tmp_path))
        tmp_path.replace(path)

    def load(self, path: Path, expected_count: int) -> None:
        """
        Load a persisted HNSW index.

        Raises:
            IndexSizeMismatch: the file holds a different number of vectors
            ValueError: the file was built with another dimension, metric or graph parameters
        """
        # read_index returns the concrete IndexHNSWFlat and owns it
        index = self.faiss.read_index(str(path))
        if index.ntotal != expected_count:
            raise IndexSizeMismatch(expected_count, index.ntotal)
        if index.d != self.dimension or not hasattr(index, "hnsw"):
            raise ValueError(f"Index at {path} is not a {self.dimension}-d HNSW index")
        if index.metric_type != self._faiss_metric():
            raise ValueError(f"Index at {path} was built with metric type {index.metric_type}, expected '{self.metric}'")
        if index.hnsw.nb_neighbors(1) != self.m or index.hnsw.efConstruction != self.ef_construction:
            raise ValueError(
                f"Index at {path} was built with M={index.hnsw.nb_neighbors(1)}, "
                f"efConstruction={index.hnsw.efConstruction}; expected M={self.m}, efConstruction={self.ef_construction}"
            )
        index.hnsw.efSearch = self.ef_search
        self.index = index

    @property
    def ntotal(self) -> int:
        return int(self.index.ntotal)

    @property
    def params(self) -> Dict[str, Any]:
        return {
            "type": "hnsw",
            "M": self.m,
            "efConstruction": self.ef_construction,
            "efSearch": self.ef_search,
            "metric": self.metric,
        }

    @property
    def build_params(self) -> Dict[str, Any]:
        # efSearch is a query-time setting and does not change the stored graph
        return {key: value for key, value in self.params.items() if key != "efSearch"}

    @property
    def file_suffix(self) -> str:
        return ".faiss"
