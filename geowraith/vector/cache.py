"""
Versioned on-disk cache for reference stores and ANN index files.

The build signature is the single place where cache validity is decided:
every persisted artifact is keyed by it, and a mismatch always means a full
rebuild, never a partial merge.
"""

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ..core.config import SCHEMA_REVISION
from ..core.errors import InvalidRecord
from .types import CacheEnvelope, EmbeddingTier, ReferenceRecord, ReferenceVector
from util.logging import logger

ENVELOPE_PREFIX = "reference_vectors."
ANN_PREFIX = "ann."


def digest_of(items: Iterable[str]) -> str:
    """Order-sensitive sha256 over a sequence of strings."""
    h = hashlib.sha256()
    for item in items:
        h.update(item.encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()


def build_signature(backend_identity: str, tier: EmbeddingTier, dimension: int,
                    catalog_digest: str, lattice_count: int, anchor_digest: str,
                    schema_revision: str = SCHEMA_REVISION) -> str:
    """
    Content-derived version for a reference store.

    Changes whenever the embedding backend, the coordinate catalog, the anchor
    manifest or the record schema changes.
    """
    payload = json.dumps({
        "backend": backend_identity,
        "tier": tier.value,
        "dimension": dimension,
        "catalog": catalog_digest,
        "lattice_count": lattice_count,
        "anchors": anchor_digest,
        "schema": schema_revision,
    }, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def envelope_path(cache_dir: Path, version: str) -> Path:
    return Path(cache_dir) / f"{ENVELOPE_PREFIX}{version[:16]}.json"


def ann_path(cache_dir: Path, version: str, suffix: str = ".faiss", build_params: Optional[dict] = None) -> Path:
    """ANN file for a store version, keyed also by the parameters the graph was built with."""
    name = f"{ANN_PREFIX}{version[:16]}"
    if build_params:
        name += "." + hashlib.sha256(json.dumps(build_params, sort_keys=True).encode("utf-8")).hexdigest()[:8]
    return Path(cache_dir) / f"{name}{suffix}"


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def save_envelope(cache_dir: Path, envelope: CacheEnvelope) -> Path:
    """Write an envelope atomically. Returns the file path."""
    payload = {
        "version": envelope.version,
        "tier": envelope.tier.value,
        "vectors": [
            {
                "id": ref.id,
                "label": ref.label,
                "lat": ref.lat,
                "lon": ref.lon,
                "kind": ref.kind,
                "vector": [float(x) for x in ref.vector],
            }
            for ref in envelope.vectors
        ],
    }
    path = envelope_path(cache_dir, envelope.version)
    atomic_write_text(path, json.dumps(payload))
    logger.log_cache_event("write", envelope.version, {"path": str(path), "count": len(envelope.vectors)})
    return path


def parse_envelope(payload: dict, dimension: int) -> CacheEnvelope:
    """
    Validate a decoded envelope.

    Raises:
        InvalidRecord: on the first malformed entry (the whole envelope is rejected)
    """
    try:
        version = str(payload["version"])
        tier = EmbeddingTier(payload["tier"])
        raw_vectors = payload["vectors"]
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidRecord("<envelope>", f"malformed header: {e}") from e

    if not isinstance(raw_vectors, list):
        raise InvalidRecord("<envelope>", "vectors must be a list")

    vectors = []
    seen = set()
    for position, raw in enumerate(raw_vectors):
        record_id = raw.get("id", f"#{position}") if isinstance(raw, dict) else f"#{position}"
        try:
            record = ReferenceRecord.model_validate(raw)
            ref = record.to_reference(dimension)
        except (ValidationError, ValueError) as e:
            raise InvalidRecord(str(record_id), str(e)) from e
        if ref.id in seen:
            raise InvalidRecord(ref.id, "duplicate id")
        seen.add(ref.id)
        vectors.append(ref)

    return CacheEnvelope(version=version, tier=tier, vectors=vectors)


def load_envelope(cache_dir: Path, expected_version: str, dimension: int) -> Optional[CacheEnvelope]:
    """
    Load the envelope for expected_version.

    Returns:
        The envelope, or None when it is missing, stale or corrupt
    """
    path = envelope_path(cache_dir, expected_version)
    if not path.exists():
        logger.log_cache_event("miss", expected_version, {"path": str(path)})
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.log_cache_event("invalidated", expected_version, {"reason": f"unreadable: {e}"})
        return None

    if not isinstance(payload, dict) or payload.get("version") != expected_version:
        found = payload.get("version") if isinstance(payload, dict) else None
        logger.log_cache_event("invalidated", expected_version, {"reason": "version mismatch", "found": found})
        return None

    try:
        envelope = parse_envelope(payload, dimension)
    except InvalidRecord as e:
        logger.log_cache_event("invalidated", expected_version, {"reason": str(e)})
        return None

    logger.log_cache_event("hit", expected_version, {"count": len(envelope.vectors)})
    return envelope


def prune_stale(cache_dir: Path, keep_version: str) -> int:
    """Delete envelope and ANN files written under other versions. Returns count removed."""
    cache_dir = Path(cache_dir)
    if not cache_dir.is_dir():
        return 0

    keep = keep_version[:16]
    removed = 0
    for path in cache_dir.iterdir():
        if not path.is_file():
            continue
        for prefix in (ENVELOPE_PREFIX, ANN_PREFIX):
            if path.name.startswith(prefix) and not path.name.startswith(prefix + keep):
                path.unlink()
                removed += 1
                break
    if removed:
        logger.log_cache_event("pruned", keep_version, {"removed": removed})
    return removed


def envelope_from_vectors(version: str, tier: EmbeddingTier, vectors: Iterable[ReferenceVector]) -> CacheEnvelope:
    return CacheEnvelope(version=version, tier=tier, vectors=list(vectors))


def clear_cache(cache_dir: Path) -> int:
    """Delete every envelope and ANN file. Returns count removed."""
    cache_dir = Path(cache_dir)
    if not cache_dir.is_dir():
        return 0

    removed = 0
    for path in cache_dir.iterdir():
        if path.is_file() and path.name.startswith((ENVELOPE_PREFIX, ANN_PREFIX)):
            path.unlink()
            removed += 1
    return removed
