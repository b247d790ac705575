"""Deterministic duplicate-likelihood scoring between candidates and catalog records."""

from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Tuple

from rapidfuzz import fuzz

from import_schema import (
    VERDICT_DISTINCT,
    VERDICT_EXACT,
    VERDICT_LIKELY,
    VERDICT_POSSIBLE,
    ExistingRecord,
    ImportCandidate,
    SimilarityResult,
    is_valid_coordinate,
    normalize_title,
)
from pipelines.config import ScoringConfig

logger = logging.getLogger(__name__)

# Scores are rounded so that reruns compare bit-identical.
_SCORE_DIGITS = 6

SIGNAL_DISTANCE = "distance"
SIGNAL_TITLE = "title"
SIGNAL_TAGS = "tags"


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return haversine distance in meters."""
    radius = 6_371_000  # meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return radius * c


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class SimilarityScorer:
    """Scores (candidate, existing) pairs from four independent signals.

    Title similarity uses rapidfuzz ``token_set_ratio`` on normalized titles
    with stop words removed, so word order and extra filler words ("The") do
    not count against a match.
    """

    def __init__(self, config: Optional[ScoringConfig] = None) -> None:
        self.config = config or ScoringConfig()
        self._stop_words = frozenset(self.config.stop_words)

    # -- individual signals -------------------------------------------------

    def external_id_match(self, candidate: ImportCandidate, existing: ExistingRecord) -> bool:
        if not candidate.external_id or not existing.external_id:
            return False
        if not candidate.source or not existing.source:
            return False
        return (candidate.source, candidate.external_id) == (existing.source, existing.external_id)

    def distance_signal(
        self, candidate: ImportCandidate, existing: ExistingRecord
    ) -> Tuple[Optional[float], Optional[float]]:
        """Return (distance_m, score), or (None, None) when coordinates are unusable."""
        if not is_valid_coordinate(candidate.lat, candidate.lon):
            return None, None
        if not is_valid_coordinate(existing.lat, existing.lon):
            return None, None
        distance = haversine_m(float(candidate.lat), float(candidate.lon), float(existing.lat), float(existing.lon))
        cutoff = self.config.cutoff_radius_m
        return distance, max(0.0, 1.0 - distance / cutoff)

    def _title_tokens(self, title: Optional[str]) -> str:
        try:
            normalized = normalize_title(title)
        except (TypeError, ValueError):
            return ""
        words = [word for word in normalized.split() if word not in self._stop_words]
        # A title made only of stop words is still a title.
        return " ".join(words) if words else normalized

    def title_signal(self, candidate: ImportCandidate, existing: ExistingRecord) -> Optional[float]:
        left = self._title_tokens(candidate.title)
        right = self._title_tokens(existing.title)
        min_len = self.config.min_title_length
        if len(left) < min_len or len(right) < min_len:
            return None
        return fuzz.token_set_ratio(left, right) / 100.0

    def tag_signal(self, candidate: ImportCandidate, existing: ExistingRecord) -> Optional[float]:
        if not candidate.tags:
            return None
        existing_pairs = {(key, _norm_value(value)) for key, value in existing.tags.items()}
        matched = sum(1 for key, value in candidate.tags.items() if (key, _norm_value(value)) in existing_pairs)
        return matched / len(candidate.tags)

    # -- composite ----------------------------------------------------------

    def verdict_for(self, composite: float) -> str:
        thresholds = self.config.thresholds
        if composite >= thresholds.high:
            return VERDICT_LIKELY
        if composite >= thresholds.warn:
            return VERDICT_POSSIBLE
        return VERDICT_DISTINCT

    def score(self, candidate: ImportCandidate, existing: ExistingRecord) -> SimilarityResult:
        """Score one pair. Never raises on partial data."""
        neutral = self.config.neutral_score
        weights = self.config.weights
        degraded: List[str] = []

        id_match = self.external_id_match(candidate, existing)

        distance_m, distance_score = self.distance_signal(candidate, existing)
        if distance_score is None:
            distance_score = neutral
            degraded.append(SIGNAL_DISTANCE)

        title_score = self.title_signal(candidate, existing)
        if title_score is None:
            title_score = neutral
            degraded.append(SIGNAL_TITLE)

        tag_score = self.tag_signal(candidate, existing)
        if tag_score is None:
            tag_score = neutral
            degraded.append(SIGNAL_TAGS)

        composite = (
            weights.external_id * (1.0 if id_match else 0.0)
            + weights.distance * distance_score
            + weights.title * title_score
            + weights.tags * tag_score
        )
        composite = round(_clamp(composite), _SCORE_DIGITS)
        verdict = VERDICT_EXACT if id_match else self.verdict_for(composite)

        return SimilarityResult(
            existing_id=existing.id,
            external_id_match=id_match,
            distance_meters=None if distance_m is None else round(distance_m, 3),
            distance_score=round(distance_score, _SCORE_DIGITS),
            title_score=round(title_score, _SCORE_DIGITS),
            tag_overlap_score=round(tag_score, _SCORE_DIGITS),
            composite_score=composite,
            verdict=verdict,
            degraded_signals=tuple(degraded),
        )

    def best_match(
        self, candidate: ImportCandidate, existing_records: Iterable[ExistingRecord]
    ) -> Optional[SimilarityResult]:
        """Highest-scoring existing record; exact ids first, ties go to the smaller id."""
        results = [self.score(candidate, existing) for existing in existing_records]
        if not results:
            return None
        results.sort(key=lambda res: (not res.external_id_match, -res.composite_score, res.existing_id))
        best = results[0]
        if len(results) > 1:
            logger.debug(
                "Best of %s candidates for %r: %s (%.3f, %s)",
                len(results),
                candidate.title,
                best.existing_id,
                best.composite_score,
                best.verdict,
            )
        return best


def _norm_value(value: str) -> str:
    return " ".join(str(value).split()).lower()
