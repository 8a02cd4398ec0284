"""
Retrieval engine: lazy one-shot index build-or-load and top-k search.
"""

from dataclasses import dataclass, field
import threading
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from .config import CACHE_DIR
from .errors import EmbeddingDimensionMismatch, IndexSizeMismatch
from ..vector.builder import ReferenceIndexBuilder
from ..vector.cache import ann_path
from ..vector.index import IVectorIndex
from ..vector.store import VectorStore
from ..vector.types import Match
from util.logging import logger

INDEX_LOADED = "disk"
INDEX_BUILT = "built"


@dataclass(frozen=True)
class IndexSnapshot:
    """A store and the ANN index built over it. Never mutated after publication."""

    store: VectorStore
    index: IVectorIndex
    index_origin: str
    anchor_positions: np.ndarray = field(repr=False)


class RetrievalEngine:
    """
    Nearest-neighbour retrieval over the reference store.

    The first query (or warmup) builds or loads the snapshot exactly once;
    concurrent first callers block on the same lock and reuse the result.
    refresh() builds a replacement off to the side and swaps it in by reference.
    """

    def __init__(self, builder: ReferenceIndexBuilder,
                 index_factory: Optional[Callable[[int], IVectorIndex]] = None,
                 cache_dir: Path = None, persist_index: bool = True):
        if index_factory is None:
            from .config import get_vector_index
            index_factory = get_vector_index
        self.builder = builder
        self.index_factory = index_factory
        self.cache_dir = Path(cache_dir or builder.cache_dir or CACHE_DIR)
        self.persist_index = persist_index
        self._snapshot = None
        self._init_lock = threading.Lock()
        self._refresh_lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    def ensure_ready(self) -> IndexSnapshot:
        """Return the current snapshot, building or loading it on first use."""
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with self._init_lock:
            if self._snapshot is None:
                self._snapshot = self._prepare(self.builder.build())
            return self._snapshot

    def refresh(self) -> IndexSnapshot:
        """Rebuild store and index, then publish them atomically."""
        with self._refresh_lock:
            self.builder.invalidate()
            snapshot = self._prepare(self.builder.build())
            with self._init_lock:
                self._snapshot = snapshot
            logger.log_operation("retrieval.refresh", "success", {"vectors": len(snapshot.store), "version": snapshot.store.version[:16]})
            return snapshot

    def _prepare(self, store: VectorStore) -> IndexSnapshot:
        index = self.index_factory(store.dimension)
        anchors = store.anchor_positions()
        path = None
        if self.persist_index and store.version:
            path = ann_path(self.cache_dir, store.version, index.file_suffix, index.build_params)

        if path is not None and path.exists():
            try:
                index.load(path, expected_count=len(store))
                logger.log_operation("retrieval.index_load", "success", {"path": str(path), "vectors": index.ntotal})
                return IndexSnapshot(store, index, INDEX_LOADED, anchors)
            except IndexSizeMismatch as e:
                logger.log_operation("retrieval.index_load", "rebuild", {"path": str(path), "reason": str(e)})
            except (OSError, RuntimeError, ValueError) as e:
                logger.log_operation("retrieval.index_load", "rebuild", {"path": str(path), "reason": f"unreadable: {e}"})
            index = self.index_factory(store.dimension)

        index.build(store.matrix)
        if index.ntotal != len(store):
            raise IndexSizeMismatch(len(store), index.ntotal)

        if path is not None:
            try:
                index.save(path)
            except (OSError, RuntimeError) as e:
                logger.warning(f"Could not persist ANN index to {path}: {e}")

        logger.log_operation("retrieval.index_build", "success", {"vectors": index.ntotal, **index.params})
        return IndexSnapshot(store, index, INDEX_BUILT, anchors)

    def query(self, embedding: np.ndarray, k: int = 20) -> List[Match]:
        """
        Top-k references for a unit query vector.

        Returns:
            Matches sorted by descending similarity, ties broken by reference id
        """
        snapshot = self.ensure_ready()
        store = snapshot.store
        query = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if query.shape[0] != store.dimension:
            raise EmbeddingDimensionMismatch(store.dimension, query.shape[0], "query")
        if k <= 0 or not len(store):
            return []

        best = {}
        for position, similarity in snapshot.index.search(query, k):
            best[position] = similarity

        # Exact pass over anchors so graph approximation never hides an anchor hit
        if snapshot.anchor_positions.size:
            anchor_sims = store.matrix[snapshot.anchor_positions] @ query
            top = np.argsort(-anchor_sims, kind="stable")[:k]
            for i in top:
                position = int(snapshot.anchor_positions[i])
                similarity = float(min(1.0, max(-1.0, anchor_sims[i])))
                if similarity > best.get(position, -2.0):
                    best[position] = similarity

        matches = [Match(store.get(position), similarity) for position, similarity in best.items()]
        matches.sort(key=lambda m: (-m.similarity, m.reference.id))
        return matches[:k]
