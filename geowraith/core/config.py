"""
Runtime configuration for the geolocation engine.
All values come from GEOWRAITH_* environment variables (optionally via .env).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Version string
VERSION = "0.3.0"

# Shared embedding dimension for every backend (GeoCLIP and CLIP ViT-B/32 are both 512-d)
EMBEDDING_DIM = int(os.getenv("GEOWRAITH_EMBEDDING_DIM", "512"))

# Bumped whenever the cache envelope or record layout changes
SCHEMA_REVISION = "3"

# Storage
CACHE_DIR = Path(os.getenv("GEOWRAITH_CACHE_DIR", "./.cache/geowraith"))
CATALOG_PATH = Path(os.getenv("GEOWRAITH_CATALOG_PATH", str(CACHE_DIR / "coordinates.json")))
ANCHOR_DIRS = [p for p in os.getenv("GEOWRAITH_ANCHOR_DIRS", "").split(os.pathsep) if p.strip()]
LATTICE_TARGET_COUNT = int(os.getenv("GEOWRAITH_LATTICE_TARGET_COUNT", "20000"))

# Embedding backends
GEOCLIP_ENABLED = os.getenv("GEOWRAITH_GEOCLIP_ENABLED", "true").lower() == "true"
CLIP_MODEL_NAME = os.getenv("GEOWRAITH_CLIP_MODEL_NAME", "clip-ViT-B-32")
TORCH_DEVICE = os.getenv("GEOWRAITH_DEVICE", "cpu")
EMBED_BATCH_SIZE = int(os.getenv("GEOWRAITH_EMBED_BATCH_SIZE", "256"))

# ANN index
VECTOR_PROVIDER = os.getenv("GEOWRAITH_VECTOR_PROVIDER", "faiss")  # faiss|exact
ANN_METRIC = os.getenv("GEOWRAITH_ANN_METRIC", "ip")  # ip|l2
HNSW_M = int(os.getenv("GEOWRAITH_HNSW_M", "16"))
HNSW_EF_CONSTRUCTION = int(os.getenv("GEOWRAITH_HNSW_EF_CONSTRUCTION", "200"))
HNSW_EF_SEARCH = int(os.getenv("GEOWRAITH_HNSW_EF_SEARCH", "64"))

# Anchor curation and fetching
ANCHOR_DIVERSITY_THRESHOLD = float(os.getenv("GEOWRAITH_ANCHOR_DIVERSITY_THRESHOLD", "0.995"))
MAX_ANCHORS_PER_TARGET = int(os.getenv("GEOWRAITH_MAX_ANCHORS_PER_TARGET", "24"))
MAX_ANCHOR_IMAGES = int(os.getenv("GEOWRAITH_MAX_ANCHOR_IMAGES", "200"))
FETCH_TIMEOUT_SEC = float(os.getenv("GEOWRAITH_FETCH_TIMEOUT_SEC", "20"))
FETCH_MAX_RETRIES = int(os.getenv("GEOWRAITH_FETCH_MAX_RETRIES", "3"))
FETCH_BACKOFF_BASE_SEC = float(os.getenv("GEOWRAITH_FETCH_BACKOFF_BASE_SEC", "1.0"))
FETCH_BACKOFF_MAX_SEC = float(os.getenv("GEOWRAITH_FETCH_BACKOFF_MAX_SEC", "30.0"))

# Prediction
MAX_IMAGE_BYTES = int(os.getenv("GEOWRAITH_MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
TOP_K_FAST = int(os.getenv("GEOWRAITH_TOP_K_FAST", "8"))
TOP_K_ACCURATE = int(os.getenv("GEOWRAITH_TOP_K_ACCURATE", "20"))
REVIEW_MODE = os.getenv("GEOWRAITH_REVIEW_MODE", "false").lower() == "true"

# Calibration thresholds
HIGH_SIMILARITY = float(os.getenv("GEOWRAITH_HIGH_SIMILARITY", "0.85"))
MEDIUM_SIMILARITY = float(os.getenv("GEOWRAITH_MEDIUM_SIMILARITY", "0.60"))
TIGHT_SPREAD_M = float(os.getenv("GEOWRAITH_TIGHT_SPREAD_M", "25000"))
PARTIAL_SPREAD_M = float(os.getenv("GEOWRAITH_PARTIAL_SPREAD_M", "300000"))
MIN_RADIUS_M = float(os.getenv("GEOWRAITH_MIN_RADIUS_M", "100"))
MAX_RADIUS_M = float(os.getenv("GEOWRAITH_MAX_RADIUS_M", "2000000"))
REVIEW_RADIUS_FLOOR_M = float(os.getenv("GEOWRAITH_REVIEW_RADIUS_FLOOR_M", "1000000"))

VALID_MODES = ("fast", "accurate")


def top_k_for_mode(mode: str) -> int:
    """Number of neighbours retrieved for a prediction mode."""
    return TOP_K_FAST if mode == "fast" else TOP_K_ACCURATE


def get_vector_index(dimension: int = None):
    """Get configured ANN index implementation."""
    dimension = dimension or EMBEDDING_DIM
    if VECTOR_PROVIDER == "exact":
        from geowraith.vector.index import ExactVectorIndex
        return ExactVectorIndex(dimension=dimension)
    elif VECTOR_PROVIDER == "faiss":
        from geowraith.vector.faiss_store import FaissHNSWIndex
        return FaissHNSWIndex(
            dimension=dimension,
            m=HNSW_M,
            ef_construction=HNSW_EF_CONSTRUCTION,
            ef_search=HNSW_EF_SEARCH,
            metric=ANN_METRIC,
        )
    else:
        raise ValueError(f"Unknown vector provider: {VECTOR_PROVIDER}")


def get_embedding_extractor():
    """Get an extractor wired with the configured backends."""
    from geowraith.vector.embeddings import (
        EmbeddingExtractor,
        GeoCLIPBackend,
        ClipBackend,
        DeterministicFallbackBackend,
        EmbeddingTier,
    )

    backends = {
        EmbeddingTier.SECONDARY: ClipBackend(CLIP_MODEL_NAME),
        EmbeddingTier.DETERMINISTIC: DeterministicFallbackBackend(EMBEDDING_DIM),
    }
    if GEOCLIP_ENABLED:
        backends[EmbeddingTier.PRIMARY] = GeoCLIPBackend(device=TORCH_DEVICE)
    return EmbeddingExtractor(backends, dimension=EMBEDDING_DIM)


def validate_config():
    """
    Validate configuration values.

    Returns:
        List of issue descriptions (empty when configuration is usable)
    """
    issues = []

    if EMBEDDING_DIM <= 0:
        issues.append(f"GEOWRAITH_EMBEDDING_DIM must be positive, got {EMBEDDING_DIM}")

    if VECTOR_PROVIDER not in ("faiss", "exact"):
        issues.append(f"GEOWRAITH_VECTOR_PROVIDER must be 'faiss' or 'exact', got '{VECTOR_PROVIDER}'")

    if ANN_METRIC not in ("ip", "l2"):
        issues.append(f"GEOWRAITH_ANN_METRIC must be 'ip' or 'l2', got '{ANN_METRIC}'")

    if HNSW_M < 2:
        issues.append("GEOWRAITH_HNSW_M must be at least 2")

    if HNSW_EF_SEARCH < TOP_K_ACCURATE:
        issues.append("GEOWRAITH_HNSW_EF_SEARCH should not be smaller than GEOWRAITH_TOP_K_ACCURATE")

    if not 0.0 < ANCHOR_DIVERSITY_THRESHOLD <= 1.0:
        issues.append("GEOWRAITH_ANCHOR_DIVERSITY_THRESHOLD must be in (0, 1]")

    if MEDIUM_SIMILARITY > HIGH_SIMILARITY:
        issues.append("GEOWRAITH_MEDIUM_SIMILARITY must not exceed GEOWRAITH_HIGH_SIMILARITY")

    if TIGHT_SPREAD_M > PARTIAL_SPREAD_M:
        issues.append("GEOWRAITH_TIGHT_SPREAD_M must not exceed GEOWRAITH_PARTIAL_SPREAD_M")

    if MIN_RADIUS_M <= 0 or MIN_RADIUS_M > MAX_RADIUS_M:
        issues.append("GEOWRAITH_MIN_RADIUS_M must be positive and below GEOWRAITH_MAX_RADIUS_M")

    for anchor_dir in ANCHOR_DIRS:
        if not Path(anchor_dir).is_dir():
            issues.append(f"Anchor directory does not exist: {anchor_dir}")

    return issues
