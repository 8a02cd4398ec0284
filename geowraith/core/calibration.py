"""
Confidence calibration: coordinate estimate, radius, tier, scene context and visibility.

Coordinate policy:
    1. If the best hit has similarity >= NEAR_EXACT_SIMILARITY its coordinate is used.
    2. Otherwise each of the first CLUSTER_SEEDS hits seeds a cluster of hits
       within CLUSTER_RADIUS_M. Clusters are scored by the sum of squared
       scores times a density factor; the earliest seed wins ties. The estimate
       is the similarity-weighted spherical centroid of the winning cluster.

Radius is the softmax-weighted mean distance of the contending hits from the
estimate, floored and capped. Tier is min(similarity level, agreement level),
capped by the embedding tier. Scene and cohort only change the explanation.
"""

from dataclasses import dataclass, field
from enum import Enum
import math
import re
from typing import List, Optional, Sequence

from .config import (
    HIGH_SIMILARITY,
    MAX_RADIUS_M,
    MEDIUM_SIMILARITY,
    MIN_RADIUS_M,
    PARTIAL_SPREAD_M,
    REVIEW_RADIUS_FLOOR_M,
    TIGHT_SPREAD_M,
)
from .geo import continent_spread_penalty, haversine_m, weighted_centroid
from ..vector.types import EmbeddingTier, Match

NEAR_EXACT_SIMILARITY = 0.99
CLUSTER_RADIUS_M = 30_000.0
CLUSTER_SEEDS = 10
CONTENDER_MARGIN = 0.05
SOFTMAX_TEMPERATURE = 0.05
CONSENSUS_CHECK = 5
FALLBACK_CONFIDENCE_PENALTY = 0.55

SCENE_PATTERNS = [
    ("landmark", re.compile(r"tower|bridge|cathedral|temple|castle|palace|mosque|pyramids|colosseum|acropolis|opera|statue|capitol|white house|forbidden city|stonehenge|museum|taj mahal|eiffel|sagrada", re.I)),
    ("nature", re.compile(r"beach|coast|reef|mountain|point|crater|sound|glacier|falls|park|bay|alps|canyon|cliff|valley|island", re.I)),
    ("urban", re.compile(r"city|downtown|skyline|district|street|avenue|square|plaza|market", re.I)),
    ("rural", re.compile(r"village|countryside|rural|farm|field|country", re.I)),
]

SCENE_NOTES = {
    "landmark": "High precision expected for distinctive landmarks",
    "nature": "Wider uncertainty typical for natural scenes",
    "urban": "Moderate precision for urban areas",
    "rural": "Regional-level accuracy for rural scenes",
    "unknown": "Confidence varies by scene distinctiveness",
}


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


TIER_BY_LEVEL = {2: ConfidenceTier.HIGH, 1: ConfidenceTier.MEDIUM, 0: ConfidenceTier.LOW}


class SceneType(str, Enum):
    LANDMARK = "landmark"
    NATURE = "nature"
    URBAN = "urban"
    RURAL = "rural"
    UNKNOWN = "unknown"


class Visibility(str, Enum):
    VISIBLE = "visible"
    WITHHELD = "withheld"


ICONIC_LANDMARK = "iconic_landmark"
GENERIC_SCENE = "generic_scene"

STATUS_CONFIDENT = "confident"
STATUS_LOW_CONFIDENCE = "low_confidence"
STATUS_WITHHELD = "withheld"


@dataclass
class Calibration:
    """Outcome of calibrating one top-k result set."""

    lat: Optional[float]
    lon: Optional[float]
    radius_m: float
    confidence: float
    tier: ConfidenceTier
    scene: SceneType
    cohort_hint: str
    calibration_note: str
    visibility: Visibility
    status: str
    location_reason: Optional[str] = None
    method: str = "none"
    spread_m: float = 0.0
    consensus: float = 0.0
    notes: List[str] = field(default_factory=list)


def to_score(similarity: float) -> float:
    """Map cosine similarity [-1, 1] to [0, 1]."""
    return max(0.0, min(1.0, (similarity + 1.0) / 2.0))


def similarity_level(similarity: float) -> int:
    if similarity >= HIGH_SIMILARITY:
        return 2
    if similarity >= MEDIUM_SIMILARITY:
        return 1
    return 0


def agreement_level(spread_m: float) -> int:
    if spread_m <= TIGHT_SPREAD_M:
        return 2
    if spread_m <= PARTIAL_SPREAD_M:
        return 1
    return 0


def clean_label(label: str) -> str:
    return label.replace("(image-anchor)", "").strip()


def classify_scene(matches: Sequence[Match]) -> SceneType:
    """Scene hint from the top three labels; an unhinted anchor winner counts as a landmark."""
    if not matches:
        return SceneType.UNKNOWN
    labels = " ".join(clean_label(m.reference.label) for m in matches[:3])
    for name, pattern in SCENE_PATTERNS:
        if pattern.search(labels):
            return SceneType(name)
    if matches[0].reference.is_anchor:
        return SceneType.LANDMARK
    return SceneType.UNKNOWN


class ConfidenceCalibrator:
    """Turns a top-k match list into a reportable (or withheld) location."""

    def __init__(self, review_mode: bool = False):
        self.review_mode = review_mode

    def estimate_location(self, matches: Sequence[Match]):
        """
        Coordinate estimate for a non-empty match list.

        Returns:
            (lat, lon, method)
        """
        best = matches[0]
        if best.similarity >= NEAR_EXACT_SIMILARITY:
            return best.reference.lat, best.reference.lon, "best_hit"

        points = [(m.reference.lat, m.reference.lon) for m in matches]
        scores = [to_score(m.similarity) for m in matches]

        best_members = None
        best_value = -1.0
        for seed in range(min(CLUSTER_SEEDS, len(matches))):
            members = [
                i for i, (lat, lon) in enumerate(points)
                if haversine_m(points[seed][0], points[seed][1], lat, lon) <= CLUSTER_RADIUS_M
            ]
            density = len(members) / len(matches)
            value = sum(scores[i] ** 2 for i in members) * (1.0 + density)
            # Strictly greater keeps the earliest seed on ties
            if value > best_value:
                best_value = value
                best_members = members

        if len(best_members) == 1:
            only = best_members[0]
            return points[only][0], points[only][1], "best_hit"

        lat, lon = weighted_centroid(
            [points[i] for i in best_members],
            [max(1e-6, matches[i].similarity) for i in best_members],
        )
        return lat, lon, "consensus_cluster"

    def spread(self, matches: Sequence[Match], lat: float, lon: float) -> float:
        """Softmax-weighted mean distance of the contending hits from the estimate."""
        top = matches[0].similarity
        contenders = [m for m in matches if m.similarity >= top - CONTENDER_MARGIN]
        weights = [math.exp((m.similarity - top) / SOFTMAX_TEMPERATURE) for m in contenders]
        total = sum(weights)
        distance = sum(
            w * haversine_m(lat, lon, m.reference.lat, m.reference.lon)
            for w, m in zip(weights, contenders)
        )
        return distance / total if total > 0 else 0.0

    def consensus(self, matches: Sequence[Match], lat: float, lon: float) -> float:
        """Score share of the leading hits that sit within the cluster radius of the estimate."""
        head = matches[:CONSENSUS_CHECK]
        total = sum(to_score(m.similarity) for m in head)
        if total <= 0:
            return 0.0
        near = sum(
            to_score(m.similarity) for m in head
            if haversine_m(lat, lon, m.reference.lat, m.reference.lon) <= CLUSTER_RADIUS_M
        )
        return near / total

    def calibrate(self, matches: Sequence[Match],
                  embedding_tier: EmbeddingTier = EmbeddingTier.PRIMARY,
                  index_tier: Optional[EmbeddingTier] = None,
                  review_mode: Optional[bool] = None) -> Calibration:
        review_mode = self.review_mode if review_mode is None else review_mode
        matches = sorted(matches, key=lambda m: (-m.similarity, m.reference.id))

        if not matches:
            return self._withheld_empty(review_mode)

        lat, lon, method = self.estimate_location(matches)
        spread_m = self.spread(matches, lat, lon)
        radius_m = min(MAX_RADIUS_M, max(MIN_RADIUS_M, spread_m))
        consensus = self.consensus(matches, lat, lon)

        best = matches[0]
        sim_level = similarity_level(best.similarity)
        agree_level = agreement_level(spread_m)
        level = min(sim_level, agree_level)

        tier_mismatch = index_tier is not None and index_tier != embedding_tier
        if embedding_tier is EmbeddingTier.DETERMINISTIC or tier_mismatch:
            level = 0
        elif embedding_tier is EmbeddingTier.SECONDARY:
            level = min(level, 1)
        tier = TIER_BY_LEVEL[level]

        top_score = to_score(best.similarity)
        margin = top_score - to_score(matches[1].similarity) if len(matches) > 1 else top_score
        penalty = continent_spread_penalty((m.reference.lat, m.reference.lon) for m in matches[:CONSENSUS_CHECK])
        confidence = 0.1 + top_score * 0.5 + margin * 0.25 + consensus * 0.15 - penalty
        confidence = min(0.97, max(0.05, confidence))
        if embedding_tier is EmbeddingTier.DETERMINISTIC or tier_mismatch:
            confidence *= FALLBACK_CONFIDENCE_PENALTY

        scene = classify_scene(matches)
        cohort = ICONIC_LANDMARK if best.reference.is_anchor else GENERIC_SCENE
        note = SCENE_NOTES[scene.value]
        if cohort == ICONIC_LANDMARK:
            note = f"Matched curated landmark imagery. {note}"

        notes = []
        reason = None
        if tier is ConfidenceTier.LOW:
            if embedding_tier is EmbeddingTier.DETERMINISTIC:
                reason = "model_fallback_active"
            elif tier_mismatch:
                reason = "embedding_tier_mismatch"
            elif agree_level == 0:
                reason = "candidate_spread_too_wide"
            else:
                reason = "confidence_below_actionable_threshold"
        if embedding_tier is not EmbeddingTier.PRIMARY:
            notes.append(f"Embedding produced by the '{embedding_tier.value}' tier; confidence is discounted.")

        if tier is not ConfidenceTier.LOW:
            visibility = Visibility.VISIBLE
            status = STATUS_CONFIDENT
        elif review_mode:
            visibility = Visibility.WITHHELD
            status = STATUS_LOW_CONFIDENCE
            radius_m = max(radius_m, REVIEW_RADIUS_FLOOR_M)
            notes.append("Low-confidence estimate shown for review only; not actionable.")
        else:
            visibility = Visibility.WITHHELD
            status = STATUS_WITHHELD
            notes.append("Location withheld: no actionable answer for this image.")
            lat = lon = None

        return Calibration(
            lat=lat,
            lon=lon,
            radius_m=radius_m,
            confidence=round(confidence, 4),
            tier=tier,
            scene=scene,
            cohort_hint=cohort,
            calibration_note=note,
            visibility=visibility,
            status=status,
            location_reason=reason,
            method=method,
            spread_m=spread_m,
            consensus=consensus,
            notes=notes,
        )

    def _withheld_empty(self, review_mode: bool) -> Calibration:
        return Calibration(
            lat=None,
            lon=None,
            radius_m=MAX_RADIUS_M,
            confidence=0.05,
            tier=ConfidenceTier.LOW,
            scene=SceneType.UNKNOWN,
            cohort_hint=GENERIC_SCENE,
            calibration_note=SCENE_NOTES["unknown"],
            visibility=Visibility.WITHHELD,
            status=STATUS_LOW_CONFIDENCE if review_mode else STATUS_WITHHELD,
            location_reason="no_reference_matches",
            notes=["No reference matches were found."],
        )
