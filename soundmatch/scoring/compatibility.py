"""
Compatibility scorer for pairs of analysis records.

Pure function of two records (plus optional declared attributes) and the
configured weights. Every sub-score lies in [0, 1] and is symmetric in its
arguments, so the weighted blend is symmetric too.

Factors:
- tempo:    1 - min(1, |dBPM| / tempo_tolerance)
- key:      circle-of-fifths distance between relative-major tonics
- spectral: MFCC timbre distance blended with centroid brightness ratio
- rhythmic: beat strength and tempo stability agreement
- declared: Jaccard overlap of declared genres and tags
"""

import hashlib
import json
import logging
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from soundmatch.core.models import (
    AnalysisRecord,
    CompatibilityScore,
    DeclaredAttributes,
)
from soundmatch.utils.errors import ConfigurationError

SCORER_VERSION = "1.0.0"

FACTORS = ("tempo", "key", "spectral", "rhythmic", "declared")

DEFAULT_WEIGHTS: Dict[str, float] = {
    "tempo": 0.20,
    "key": 0.15,
    "spectral": 0.25,
    "rhythmic": 0.20,
    "declared": 0.20,
}

WEIGHT_SUM_TOLERANCE = 1e-6

# Similarity by circle-of-fifths distance 0..6
FIFTHS_SIMILARITY = (1.0, 0.8, 0.55, 0.35, 0.2, 0.1, 0.0)
MODE_MISMATCH_FACTOR = 0.9

TIMBRE_SCALE = 25.0  # MFCC units
TIMBRE_WEIGHT = 0.7
BRIGHTNESS_WEIGHT = 0.3

GENRE_WEIGHT = 0.6
TAG_WEIGHT = 0.4


def validate_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """
    Check a weight set and return it as a plain dict.

    Raises:
        ConfigurationError: Unknown factor, negative weight or sum != 1
    """
    unknown = set(weights) - set(FACTORS)
    if unknown:
        raise ConfigurationError(
            f"Unknown scoring factors: {sorted(unknown)}",
            config_key="scoring.scoring_weights"
        )

    checked: Dict[str, float] = {}
    for name in FACTORS:
        value = weights.get(name, 0.0)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(
                f"Weight for {name!r} must be a number, got {value!r}",
                config_key=f"scoring.scoring_weights.{name}"
            )
        if value < 0:
            raise ConfigurationError(
                f"Weight for {name!r} must not be negative, got {value}",
                config_key=f"scoring.scoring_weights.{name}"
            )
        checked[name] = float(value)

    total = sum(checked.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ConfigurationError(
            f"Scoring weights must sum to 1.0, got {total:.6f}",
            config_key="scoring.scoring_weights"
        )
    return checked


def weights_digest(weights: Mapping[str, float]) -> str:
    payload = json.dumps({k: float(v) for k, v in weights.items()}, sort_keys=True)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()[:8]


# Sub-scores

def tempo_similarity(tempo_a: float, tempo_b: float, tolerance: float) -> float:
    if tolerance <= 0:
        return 1.0 if tempo_a == tempo_b else 0.0
    return 1.0 - min(1.0, abs(tempo_a - tempo_b) / tolerance)


def fifths_distance(pitch_class_a: int, pitch_class_b: int) -> int:
    """Steps between two tonics around the circle of fifths (0..6)."""
    pos_a = (pitch_class_a * 7) % 12
    pos_b = (pitch_class_b * 7) % 12
    diff = abs(pos_a - pos_b)
    return min(diff, 12 - diff)


def key_similarity(a: AnalysisRecord, b: AnalysisRecord) -> float:
    key_a, key_b = a.basic.key, b.basic.key
    similarity = FIFTHS_SIMILARITY[fifths_distance(key_a.relative_major, key_b.relative_major)]
    if key_a.mode != key_b.mode:
        similarity *= MODE_MISMATCH_FACTOR
    return similarity


def spectral_similarity(a: AnalysisRecord, b: AnalysisRecord) -> float:
    # Coefficient 0 tracks loudness, not timbre
    mfcc_a = np.asarray(a.spectral.mfcc[1:13], dtype=float)
    mfcc_b = np.asarray(b.spectral.mfcc[1:13], dtype=float)
    n = min(len(mfcc_a), len(mfcc_b))
    if n:
        timbre = float(np.sqrt(np.mean((mfcc_a[:n] - mfcc_b[:n]) ** 2))) / TIMBRE_SCALE
    else:
        timbre = 0.0

    centroid_a = a.spectral.spectral_centroid
    centroid_b = b.spectral.spectral_centroid
    peak = max(centroid_a, centroid_b)
    brightness = abs(centroid_a - centroid_b) / peak if peak > 0 else 0.0

    distance = TIMBRE_WEIGHT * timbre + BRIGHTNESS_WEIGHT * brightness
    return 1.0 - min(1.0, distance)


def rhythmic_similarity(a: AnalysisRecord, b: AnalysisRecord) -> float:
    strength_diff = abs(a.rhythmic.beat_strength - b.rhythmic.beat_strength)
    stability_diff = abs(a.rhythmic.tempo_stability - b.rhythmic.tempo_stability)
    return float(np.clip(1.0 - 0.5 * strength_diff - 0.5 * stability_diff, 0.0, 1.0))


def _jaccard(x: frozenset, y: frozenset) -> float:
    union = x | y
    return len(x & y) / len(union) if union else 0.0


def declared_similarity(
    declared_a: Optional[DeclaredAttributes],
    declared_b: Optional[DeclaredAttributes],
) -> Optional[float]:
    """
    Jaccard blend of genres and tags.

    None when either side supplied nothing or both sides are empty. A facet
    declared by only one side counts as a mismatch.
    """
    if declared_a is None or declared_b is None:
        return None
    if declared_a.is_empty() and declared_b.is_empty():
        return None

    facets: List[Tuple[float, float]] = []
    if declared_a.genres or declared_b.genres:
        facets.append((GENRE_WEIGHT, _jaccard(declared_a.genres, declared_b.genres)))
    if declared_a.tags or declared_b.tags:
        facets.append((TAG_WEIGHT, _jaccard(declared_a.tags, declared_b.tags)))

    total = sum(weight for weight, _ in facets)
    return sum(weight * value for weight, value in facets) / total


class CompatibilityScorer:
    """
    Scores how well two analysed entities go together.

    Stateless after construction; safe to share between threads.
    """

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        tempo_tolerance: float = 20.0,
        notable_threshold: float = 0.8,
        min_confidence: float = 0.3,
    ):
        """
        Args:
            weights: Factor weights summing to 1 (defaults if None)
            tempo_tolerance: BPM difference at which tempo similarity reaches 0
            notable_threshold: Sub-scores above this produce a reason
            min_confidence: Records below this confidence flag the score

        Raises:
            ConfigurationError: Invalid weights or tolerance
        """
        if tempo_tolerance < 0:
            raise ConfigurationError(
                f"tempo_tolerance must not be negative, got {tempo_tolerance}",
                config_key="scoring.tempo_tolerance"
            )
        self.weights = validate_weights(weights if weights is not None else DEFAULT_WEIGHTS)
        self.tempo_tolerance = float(tempo_tolerance)
        self.notable_threshold = notable_threshold
        self.min_confidence = min_confidence
        self.algorithm_version = f"compat/{SCORER_VERSION}+w{weights_digest(self.weights)}"
        self.logger = logging.getLogger("scorer")

    def score(
        self,
        a: AnalysisRecord,
        b: AnalysisRecord,
        declared_a: Optional[DeclaredAttributes] = None,
        declared_b: Optional[DeclaredAttributes] = None,
    ) -> CompatibilityScore:
        """Compute the compatibility of two records."""
        sub_scores: Dict[str, float] = {
            "tempo": tempo_similarity(a.basic.tempo, b.basic.tempo, self.tempo_tolerance),
            "key": key_similarity(a, b),
            "spectral": spectral_similarity(a, b),
            "rhythmic": rhythmic_similarity(a, b),
        }
        declared = declared_similarity(declared_a, declared_b)
        if declared is not None:
            sub_scores["declared"] = declared

        sub_scores = {name: float(np.clip(value, 0.0, 1.0)) for name, value in sub_scores.items()}
        weights = self._effective_weights(sub_scores)

        overall = sum(weights[name] * sub_scores[name] for name in FACTORS if name in sub_scores)
        overall = float(np.clip(overall, 0.0, 1.0))

        low_confidence = min(a.confidence, b.confidence) < self.min_confidence
        if low_confidence:
            self.logger.debug(
                f"Low confidence comparison: {a.confidence:.2f} / {b.confidence:.2f}"
            )

        return CompatibilityScore(
            overall=overall,
            sub_scores=sub_scores,
            reasons=self._reasons(a, b, sub_scores, weights, declared_a, declared_b),
            low_confidence=low_confidence,
            weights=weights,
            algorithm_version=self.algorithm_version,
        )

    def _effective_weights(self, sub_scores: Mapping[str, float]) -> Dict[str, float]:
        """Configured weights over the present factors, renormalised to sum 1."""
        present = {name: self.weights[name] for name in FACTORS if name in sub_scores}
        total = sum(present.values())
        if total <= 0:
            # Every present factor carries zero weight: treat them equally
            return {name: 1.0 / len(present) for name in present}
        return {name: weight / total for name, weight in present.items()}

    def _reasons(
        self,
        a: AnalysisRecord,
        b: AnalysisRecord,
        sub_scores: Mapping[str, float],
        weights: Mapping[str, float],
        declared_a: Optional[DeclaredAttributes],
        declared_b: Optional[DeclaredAttributes],
    ) -> List[str]:
        notable = [
            name for name, value in sub_scores.items()
            if value > self.notable_threshold
        ]
        notable.sort(key=lambda name: (-weights[name] * sub_scores[name], name))
        return [self._describe(name, a, b, declared_a, declared_b) for name in notable]

    def _describe(
        self,
        factor: str,
        a: AnalysisRecord,
        b: AnalysisRecord,
        declared_a: Optional[DeclaredAttributes],
        declared_b: Optional[DeclaredAttributes],
    ) -> str:
        # Pair values are sorted so the text does not depend on argument order
        if factor == "tempo":
            low, high = sorted((a.basic.tempo, b.basic.tempo))
            if round(low, 1) == round(high, 1):
                return f"Matching tempo ({low:.1f} BPM)"
            return f"Close tempos ({low:.1f} and {high:.1f} BPM)"
        if factor == "key":
            names = sorted({a.basic.key.name, b.basic.key.name})
            if len(names) == 1:
                return f"Same key ({names[0]})"
            return f"Harmonically related keys ({names[0]} and {names[1]})"
        if factor == "spectral":
            return "Similar timbre and brightness"
        if factor == "rhythmic":
            return "Similar rhythmic feel and beat strength"
        if factor == "declared":
            shared = sorted(
                (declared_a.genres & declared_b.genres) | (declared_a.tags & declared_b.tags)
            )
            if shared:
                return f"Shared declared attributes: {', '.join(shared)}"
            return "Overlapping declared attributes"
        return f"High {factor} similarity"


def create_scorer(config: Optional[Dict] = None) -> CompatibilityScorer:
    """
    Factory function to create a scorer from the ``scoring`` config section.
    """
    if config is None:
        config = {}

    thresholds = config.get('similarity_thresholds') or {}
    return CompatibilityScorer(
        weights=config.get('scoring_weights', DEFAULT_WEIGHTS),
        tempo_tolerance=config.get('tempo_tolerance', 20.0),
        notable_threshold=thresholds.get('notable', 0.8),
        min_confidence=thresholds.get('min_confidence', 0.3),
    )
