"""
Reference index builder: coordinate lattice plus curated image anchors.

Builds are memoized in-process and cached on disk under a content-derived
build signature. A store is always produced in exactly one embedding tier.
"""

import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.config import (
    ANCHOR_DIRS,
    ANCHOR_DIVERSITY_THRESHOLD,
    CACHE_DIR,
    CATALOG_PATH,
    EMBED_BATCH_SIZE,
    LATTICE_TARGET_COUNT,
    MAX_ANCHOR_IMAGES,
    MAX_ANCHORS_PER_TARGET,
)
from ..core.errors import (
    EmbeddingDimensionMismatch,
    IndexBuildFailed,
    InvalidRecord,
    ModelUnavailable,
    SourceFetchFailed,
)
from .anchors import AnchorCurator, AnchorRow, load_anchor_source, manifest_digest, unique_rows
from .cache import build_signature, envelope_from_vectors, load_envelope, prune_stale, save_envelope
from .catalog import catalog_digest, load_or_generate_catalog
from .embeddings import EmbeddingExtractor, tier_sequence
from .store import SOURCE_CACHE, SOURCE_FALLBACK, SOURCE_MODEL, VectorStore
from .types import LATTICE, CatalogRecord, EmbeddingTier, ReferenceVector
from util.logging import logger


class ReferenceIndexBuilder:
    """
    Produces the merged VectorStore.

    build() is idempotent: the first call embeds (or loads the cache), later
    calls return the same store until invalidate() is called.
    """

    def __init__(self, extractor: EmbeddingExtractor, cache_dir: Path = None,
                 catalog_path: Path = None, anchor_dirs: Sequence[str] = None,
                 lattice_target: int = None, curator: AnchorCurator = None,
                 catalog: Optional[List[CatalogRecord]] = None,
                 anchor_rows: Optional[List[AnchorRow]] = None,
                 batch_size: int = EMBED_BATCH_SIZE):
        self.extractor = extractor
        self.dimension = extractor.dimension
        self.cache_dir = Path(cache_dir or CACHE_DIR)
        self.catalog_path = Path(catalog_path or CATALOG_PATH)
        self.anchor_dirs = list(ANCHOR_DIRS if anchor_dirs is None else anchor_dirs)
        self.lattice_target = lattice_target or LATTICE_TARGET_COUNT
        self.curator = curator or AnchorCurator(
            threshold=ANCHOR_DIVERSITY_THRESHOLD,
            keep_per_target=MAX_ANCHORS_PER_TARGET,
            max_anchors=MAX_ANCHOR_IMAGES,
        )
        self.batch_size = batch_size
        self._catalog = catalog
        self._anchor_rows = anchor_rows
        self._store = None
        self._lock = threading.Lock()

    def build(self) -> VectorStore:
        """Return the reference store, building or loading it on first use."""
        with self._lock:
            if self._store is None:
                self._store = self._build()
            return self._store

    def invalidate(self) -> None:
        """Forget the memoized store; the next build() re-checks the disk cache."""
        with self._lock:
            self._store = None

    def load_catalog(self) -> List[CatalogRecord]:
        if self._catalog is None:
            try:
                self._catalog = load_or_generate_catalog(self.catalog_path, self.lattice_target)
            except (OSError, ValueError) as e:
                # JSONDecodeError is a ValueError; a damaged catalog is never overwritten
                logger.log_index_build("catalog", "failed", {"path": str(self.catalog_path), "reason": str(e)})
                raise IndexBuildFailed(f"Coordinate catalog {self.catalog_path} is unreadable: {e}") from e
        return self._catalog

    def load_anchor_rows(self) -> List[AnchorRow]:
        if self._anchor_rows is None:
            rows = []
            for directory in self.anchor_dirs:
                try:
                    rows.extend(load_anchor_source(Path(directory)))
                except SourceFetchFailed as e:
                    logger.log_anchor_skipped(e.source_ref, e.reason)
            self._anchor_rows = unique_rows(rows)
        return self._anchor_rows

    def signature(self, tier: EmbeddingTier, catalog: List[CatalogRecord], rows: List[AnchorRow]) -> str:
        return build_signature(
            backend_identity=self.extractor.identity(tier),
            tier=tier,
            dimension=self.dimension,
            catalog_digest=catalog_digest(catalog),
            lattice_count=len(catalog),
            anchor_digest=manifest_digest(rows),
        )

    def _build(self) -> VectorStore:
        start = time.time()
        catalog = self.load_catalog()
        if not catalog:
            logger.log_index_build("catalog", "failed", {"reason": "coordinate catalog is empty"})
            raise IndexBuildFailed("Coordinate catalog is empty; no reference lattice can be built")
        rows = self.load_anchor_rows()

        failures = []
        for tier in tier_sequence("accurate"):
            if not self.extractor.is_available(tier):
                failures.append(f"{tier.value}: unavailable")
                logger.log_index_build("tier_probe", "degraded", {"tier": tier.value})
                continue

            version = self.signature(tier, catalog, rows)
            store = self._from_cache(version, tier)
            if store is not None:
                logger.log_index_build("complete", "success", {
                    "source": store.source, "tier": tier.value, "vectors": len(store),
                    "anchors": store.anchor_count, "elapsed_s": round(time.time() - start, 2),
                })
                return store

            try:
                store = self._embed_all(tier, catalog, rows, version)
            except ModelUnavailable as e:
                # Restart the whole pass in the next tier; tiers never mix
                failures.append(f"{tier.value}: {e}")
                logger.log_index_build("embed_pass", "degraded", {"tier": tier.value, "reason": str(e)})
                continue
            except EmbeddingDimensionMismatch as e:
                logger.log_index_build("embed_pass", "failed", {"tier": tier.value, "reason": str(e)})
                raise IndexBuildFailed(str(e)) from e

            save_envelope(self.cache_dir, envelope_from_vectors(version, tier, store.vectors))
            prune_stale(self.cache_dir, version)
            logger.log_index_build("complete", "success", {
                "source": store.source, "tier": tier.value, "vectors": len(store),
                "anchors": store.anchor_count, "elapsed_s": round(time.time() - start, 2),
            })
            return store

        logger.log_index_build("complete", "failed", {"failures": failures})
        raise IndexBuildFailed("No embedding tier could build the reference index: " + "; ".join(failures))

    def _from_cache(self, version: str, tier: EmbeddingTier) -> Optional[VectorStore]:
        envelope = load_envelope(self.cache_dir, version, self.dimension)
        if envelope is None or envelope.tier != tier:
            return None
        try:
            return VectorStore(envelope.vectors, tier, self.dimension, source=SOURCE_CACHE, version=version)
        except InvalidRecord as e:
            logger.log_cache_event("invalidated", version, {"reason": str(e)})
            return None

    def _embed_lattice(self, tier: EmbeddingTier, catalog: List[CatalogRecord]) -> List[ReferenceVector]:
        vectors = []
        for offset in range(0, len(catalog), self.batch_size):
            chunk = catalog[offset:offset + self.batch_size]
            embedded = self.extractor.embed_coordinates_batch(
                [(record.lat, record.lon, record.label) for record in chunk], tier=tier
            )
            for record, vector in zip(chunk, embedded):
                vectors.append(ReferenceVector(
                    id=record.id,
                    label=record.label,
                    lat=record.lat,
                    lon=record.lon,
                    vector=vector,
                    kind=LATTICE,
                ))
        logger.log_index_build("lattice", "success", {"tier": tier.value, "vectors": len(vectors)})
        return vectors

    def _embed_all(self, tier: EmbeddingTier, catalog: List[CatalogRecord],
                   rows: List[AnchorRow], version: str) -> VectorStore:
        lattice = self._embed_lattice(tier, catalog)
        anchors = self.curator.embed_anchors(rows, self.extractor, tier) if rows else []
        if not anchors:
            logger.log_index_build("anchors", "empty", {"tier": tier.value, "sources": len(rows)})

        source = SOURCE_FALLBACK if tier is EmbeddingTier.DETERMINISTIC else SOURCE_MODEL
        try:
            return VectorStore(lattice + anchors, tier, self.dimension, source=source, version=version)
        except InvalidRecord as e:
            raise IndexBuildFailed(f"Built store failed validation: {e}") from e
