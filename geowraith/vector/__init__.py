"""
Reference vector layer: embeddings, the reference store, ANN indexes and the index builder.
"""

# Package initialization for vector module
from .types import (
    EmbeddingTier,
    ReferenceVector,
    Match,
    CandidateScore,
    CacheEnvelope,
    CatalogRecord,
    ReferenceRecord,
)
from .store import VectorStore
from .index import IVectorIndex, ExactVectorIndex
from .faiss_store import FaissHNSWIndex
from .embeddings import (
    IEmbeddingBackend,
    GeoCLIPBackend,
    ClipBackend,
    DeterministicFallbackBackend,
    EmbeddingExtractor,
    tier_sequence,
    next_tier,
)
from .anchors import AnchorCurator, AnchorRow
from .builder import ReferenceIndexBuilder

__all__ = [
    'EmbeddingTier',
    'ReferenceVector',
    'Match',
    'CandidateScore',
    'CacheEnvelope',
    'CatalogRecord',
    'ReferenceRecord',
    'VectorStore',
    'IVectorIndex',
    'ExactVectorIndex',
    'FaissHNSWIndex',
    'IEmbeddingBackend',
    'GeoCLIPBackend',
    'ClipBackend',
    'DeterministicFallbackBackend',
    'EmbeddingExtractor',
    'tier_sequence',
    'next_tier',
    'AnchorCurator',
    'AnchorRow',
    'ReferenceIndexBuilder',
]
