"""
Image anchors: source manifests, remote fetching and diversity-aware curation.

An anchor source is a directory holding metadata.csv (filename or url, lat,
lon, label) and an images/ folder. Several photos of one target location are
scored against the target's coordinate embedding and reduced to a bounded,
diverse subset before they enter the reference store.
"""

import csv
import hashlib
import random
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import requests
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from ..core.config import FETCH_BACKOFF_BASE_SEC, FETCH_BACKOFF_MAX_SEC, FETCH_MAX_RETRIES, FETCH_TIMEOUT_SEC
from ..core.errors import InvalidImage, SourceFetchFailed
from .cache import digest_of
from .embeddings import EmbeddingExtractor
from .types import ANCHOR, CandidateScore, EmbeddingTier, ReferenceVector
from util.logging import logger

DIVERSITY_THRESHOLD = 0.995

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

ANCHOR_LABEL_SUFFIX = " (image-anchor)"


class AnchorManifestRow(BaseModel):
    """One row of an anchor source's metadata.csv."""

    filename: Optional[str] = None
    url: Optional[str] = None
    lat: float
    lon: float
    label: str

    @field_validator('lat')
    @classmethod
    def lat_must_be_in_range(cls, v):
        if not -90.0 <= v <= 90.0:
            raise ValueError('lat must be within [-90, 90]')
        return v

    @field_validator('lon')
    @classmethod
    def lon_must_be_in_range(cls, v):
        if not -180.0 <= v <= 180.0:
            raise ValueError('lon must be within [-180, 180]')
        return v

    @field_validator('label')
    @classmethod
    def label_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('label cannot be empty')
        return v.strip()

    @model_validator(mode='after')
    def needs_a_location(self):
        if not (self.filename or "").strip() and not (self.url or "").strip():
            raise ValueError('row needs a filename or a url')
        return self


@dataclass(frozen=True)
class AnchorRow:
    """A validated anchor image reference."""

    source_ref: str
    label: str
    lat: float
    lon: float
    path: Optional[Path] = None
    url: Optional[str] = None

    @property
    def target_key(self) -> Tuple[str, float, float]:
        """Rows sharing a target are curated together."""
        return (self.label, round(self.lat, 4), round(self.lon, 4))


def load_anchor_source(directory: Path) -> List[AnchorRow]:
    """
    Read an anchor source directory.

    Invalid rows are skipped and logged. A missing metadata.csv makes the whole
    source unusable and raises SourceFetchFailed.
    """
    directory = Path(directory)
    metadata = directory / "metadata.csv"
    images_dir = directory / "images"
    try:
        with open(metadata, "r", encoding="utf-8", newline="") as f:
            raw_rows = list(csv.DictReader(f))
    except OSError as e:
        raise SourceFetchFailed(str(directory), f"cannot read metadata.csv: {e}") from e

    rows = []
    seen = set()
    for line_no, raw in enumerate(raw_rows, start=2):
        cleaned = {k.strip(): (v.strip() if isinstance(v, str) else v) for k, v in raw.items() if k}
        cleaned = {k: v for k, v in cleaned.items() if v not in ("", None)}
        try:
            row = AnchorManifestRow.model_validate(cleaned)
        except ValidationError as e:
            logger.log_anchor_skipped(f"{metadata}:{line_no}", "; ".join(err["msg"] for err in e.errors()))
            continue

        if row.filename:
            path = images_dir / row.filename
            source_ref = str(path)
            anchor = AnchorRow(source_ref=source_ref, label=row.label, lat=row.lat, lon=row.lon, path=path)
        else:
            anchor = AnchorRow(source_ref=row.url, label=row.label, lat=row.lat, lon=row.lon, url=row.url)

        if anchor.source_ref in seen:
            continue
        seen.add(anchor.source_ref)
        rows.append(anchor)
    return rows


def unique_rows(rows: Sequence[AnchorRow]) -> List[AnchorRow]:
    """Drop repeated source_refs, keeping the first occurrence. Later copies are logged as skipped."""
    unique = []
    seen = set()
    for row in rows:
        if row.source_ref in seen:
            logger.log_anchor_skipped(row.source_ref, "duplicate source across anchor manifests")
            continue
        seen.add(row.source_ref)
        unique.append(row)
    return unique


def manifest_digest(rows: Sequence[AnchorRow]) -> str:
    """Content digest of an anchor manifest, part of the build signature."""
    parts = []
    for row in sorted(rows, key=lambda r: r.source_ref):
        stamp = ""
        if row.path is not None:
            try:
                stat = row.path.stat()
                stamp = f"{stat.st_size}:{stat.st_mtime_ns}"
            except OSError:
                stamp = "missing"
        parts.append(f"{row.source_ref}|{row.label}|{row.lat:.6f}|{row.lon:.6f}|{stamp}")
    return digest_of(parts)


def backoff_delay(attempt: int, base: float = 1.0, maximum: float = 30.0) -> float:
    """Exponential backoff with jitter for the given 0-based attempt."""
    delay = min(maximum, base * (2 ** attempt))
    return delay + random.uniform(0, delay * 0.1)


def fetch_remote(url: str, session: Optional[requests.Session] = None, timeout: float = 20.0,
                 max_retries: int = 3, backoff_base: float = 1.0, backoff_max: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep) -> bytes:
    """
    Download an anchor image with bounded retries.

    Connection errors, timeouts, 429 and 5xx responses are retried with
    exponential backoff. Other HTTP errors fail immediately.

    Raises:
        SourceFetchFailed: when retries are exhausted or the response is not retryable
    """
    http = session or requests
    last_reason = ""
    for attempt in range(max_retries):
        try:
            response = http.get(url, timeout=timeout)
        except requests.exceptions.RequestException as e:
            last_reason = f"{type(e).__name__}: {e}"
        else:
            if response.status_code == 200:
                if not response.content:
                    raise SourceFetchFailed(url, "empty response body")
                return response.content
            last_reason = f"HTTP {response.status_code}"
            if response.status_code not in RETRYABLE_STATUS:
                raise SourceFetchFailed(url, last_reason)

        if attempt < max_retries - 1:
            delay = backoff_delay(attempt, backoff_base, backoff_max)
            logger.log_operation("anchors.fetch_retry", "retrying", {"url": url[:120], "attempt": attempt + 1, "delay_s": round(delay, 2), "reason": last_reason})
            sleep(delay)

    raise SourceFetchFailed(url, f"gave up after {max_retries} attempts ({last_reason})")


def _anchor_id(row: AnchorRow) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", row.label.lower()).strip("_") or "anchor"
    digest = hashlib.sha1(row.source_ref.encode("utf-8")).hexdigest()[:10]
    return f"img_anchor_{slug}_{digest}"


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


class AnchorCurator:
    """Selects diverse anchor subsets and turns anchor sources into reference vectors."""

    def __init__(self, threshold: float = DIVERSITY_THRESHOLD, keep_per_target: int = 24,
                 max_anchors: int = 200, fetcher: Optional[Callable[[AnchorRow], bytes]] = None):
        self.threshold = threshold
        self.keep_per_target = keep_per_target
        self.max_anchors = max_anchors
        self.fetcher = fetcher or self.read_row

    def partition(self, candidates: Sequence[CandidateScore], keep: int) -> Tuple[List[CandidateScore], List[CandidateScore]]:
        """
        Two-phase selection.

        Returns:
            (diverse, backfill) where every pair in diverse has cosine below the
            threshold and backfill tops the result up to keep
        """
        if keep <= 0:
            return [], []

        ordered = sorted(candidates, key=lambda c: (-c.score, c.source_ref))

        diverse = []
        for candidate in ordered:
            if len(diverse) >= keep:
                break
            if all(_cosine(candidate.vector, kept.vector) < self.threshold for kept in diverse):
                diverse.append(candidate)

        backfill = []
        if len(diverse) < keep:
            chosen = {id(c) for c in diverse}
            for candidate in ordered:
                if len(diverse) + len(backfill) >= keep:
                    break
                if id(candidate) not in chosen:
                    backfill.append(candidate)
        return diverse, backfill

    def select_diverse(self, candidates: Sequence[CandidateScore], keep: int) -> List[CandidateScore]:
        """Diversity-first selection of at most keep candidates, backfilled by score."""
        diverse, backfill = self.partition(candidates, keep)
        return diverse + backfill

    def read_row(self, row: AnchorRow) -> bytes:
        """Default fetcher: local file or remote URL."""
        if row.path is not None:
            try:
                return row.path.read_bytes()
            except OSError as e:
                raise SourceFetchFailed(row.source_ref, str(e)) from e
        return fetch_remote(
            row.url,
            timeout=FETCH_TIMEOUT_SEC,
            max_retries=FETCH_MAX_RETRIES,
            backoff_base=FETCH_BACKOFF_BASE_SEC,
            backoff_max=FETCH_BACKOFF_MAX_SEC,
        )

    def embed_anchors(self, rows: Sequence[AnchorRow], extractor: EmbeddingExtractor,
                      tier: EmbeddingTier) -> List[ReferenceVector]:
        """
        Embed anchor rows in a single tier and curate them per target.

        Rows that cannot be fetched or decoded are skipped and logged.
        ModelUnavailable propagates so the caller can degrade the whole pass.
        """
        groups: Dict[Tuple[str, float, float], List[AnchorRow]] = {}
        for row in unique_rows(rows):
            groups.setdefault(row.target_key, []).append(row)

        anchors = []
        for key in sorted(groups):
            if len(anchors) >= self.max_anchors:
                break
            group = groups[key]
            label, lat, lon = key
            target_vector = extractor.embed_coordinates(lat, lon, label, tier=tier)

            by_ref = {}
            candidates = []
            for row in group:
                try:
                    image_bytes = self.fetcher(row)
                    vector = extractor.embed_image(image_bytes, tier=tier)
                except (SourceFetchFailed, InvalidImage) as e:
                    logger.log_anchor_skipped(row.source_ref, str(e))
                    continue
                by_ref[row.source_ref] = row
                candidates.append(CandidateScore(
                    source_ref=row.source_ref,
                    vector=vector,
                    score=float(np.dot(vector, target_vector)),
                ))

            keep = min(self.keep_per_target, self.max_anchors - len(anchors))
            for candidate in self.select_diverse(candidates, keep):
                row = by_ref[candidate.source_ref]
                anchors.append(ReferenceVector(
                    id=_anchor_id(row),
                    label=f"{row.label}{ANCHOR_LABEL_SUFFIX}",
                    lat=row.lat,
                    lon=row.lon,
                    vector=candidate.vector,
                    kind=ANCHOR,
                ))

        logger.log_index_build("anchors", "success", {"targets": len(groups), "anchors": len(anchors), "tier": tier.value})
        return anchors
