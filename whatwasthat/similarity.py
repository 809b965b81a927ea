"""Similarity engine: weighted, temporally aligned fingerprint comparison."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

import numpy as np

from .config import (
    DECAY,
    FREQ_FLOOR,
    PEAK_FEATURES,
    PEAK_TOLERANCE,
    VALUE_FLOOR,
    MatchingConfig,
)
from .features import FEATURE_NAMES, N_FEATURES

log = logging.getLogger(__name__)

_PEAK_MASK = np.array([name in PEAK_FEATURES for name in FEATURE_NAMES])


@dataclass(frozen=True)
class Score:
    id: str
    score: float
    owner_id: str | None


@dataclass(frozen=True)
class MatchResult:
    """Outcome of one match call. best_id is None when nothing clears the threshold."""

    best_id: str | None
    confidence: float
    ranked_scores: list[Score] = field(default_factory=list)
    threshold: float = MatchingConfig.match_threshold
    notify_floor: float = MatchingConfig.notify_confidence_floor

    @property
    def matched(self) -> bool:
        return self.best_id is not None

    @property
    def should_notify(self) -> bool:
        """Stricter gate used before alerting anyone about a match."""
        return self.matched and self.confidence >= self.notify_floor


def weight_vector(weights: Mapping[str, float]) -> np.ndarray:
    """Weights in fingerprint column order."""
    missing = set(FEATURE_NAMES) - set(weights)
    unknown = set(weights) - set(FEATURE_NAMES)
    if missing or unknown:
        raise ValueError(f"weight table mismatch: missing={sorted(missing)} unknown={sorted(unknown)}")
    return np.array([weights[name] for name in FEATURE_NAMES], dtype=np.float64)


def feature_similarity(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Per-feature similarity of aligned frames, each in (0, 1].
    a, b: [T × N_FEATURES]
    Peak frequencies decay with their distance relative to the higher peak
    (about 10% tolerance); every other field decays steeply with the
    normalized difference.
    """
    diff = np.abs(a - b)
    generic_scale = np.maximum(np.maximum(np.abs(a), np.abs(b)), VALUE_FLOOR)
    generic = np.exp(-(diff / generic_scale) * DECAY)
    peak_scale = np.maximum(np.maximum(a, b), FREQ_FLOOR) * PEAK_TOLERANCE
    peak = np.exp(-diff / peak_scale)
    return np.where(_PEAK_MASK, peak, generic)


def frame_similarities(fp1: np.ndarray, fp2: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted similarity of each aligned frame pair over the common length."""
    n = min(len(fp1), len(fp2))
    return feature_similarity(fp1[:n], fp2[:n]) @ weights


def compare_fingerprints(
    fp1: np.ndarray,
    fp2: np.ndarray,
    config: MatchingConfig | None = None,
    weights: np.ndarray | None = None,
) -> float:
    """
    Similarity of two fingerprints in [0, 1].

    Frames are compared position by position (no sliding), so only sounds
    with the same temporal shape score well. Two penalties apply:
      - fewer than min_consistent_frame_fraction of frames above
        good_frame_threshold → mean similarity times consistency_penalty
      - length ratio below length_ratio_penalty_floor → times
        length_ratio_penalty_factor
    """
    config = config or MatchingConfig()
    if weights is None:
        weights = weight_vector(config.weights)

    len1, len2 = len(fp1), len(fp2)
    shortest = min(len1, len2)
    if shortest < config.min_frames or shortest == 0:
        return 0.0

    sims = frame_similarities(fp1, fp2, weights)
    score = float(sims.mean())
    if config.require_temporal_consistency:
        good = np.count_nonzero(sims > config.good_frame_threshold) / len(sims)
        if good < config.min_consistent_frame_fraction:
            score *= config.consistency_penalty

    if shortest / max(len1, len2) < config.length_ratio_penalty_floor:
        score *= config.length_ratio_penalty_factor
    return min(max(score, 0.0), 1.0)


def rank(scores: Iterable[Score]) -> list[Score]:
    """Sort descending by score; equal scores keep their input order."""
    return sorted(scores, key=lambda s: s.score, reverse=True)


def match(
    unknown: np.ndarray,
    candidates: Sequence,
    threshold: float | None = None,
    owner_filter: str | None = None,
    config: MatchingConfig | None = None,
) -> MatchResult:
    """
    Score an unknown fingerprint against every candidate entry (anything with
    .id, .fingerprint and .owner_id), optionally restricted to one owner.
    """
    config = config or MatchingConfig()
    threshold = config.match_threshold if threshold is None else threshold
    if unknown.ndim != 2 or unknown.shape[1] != N_FEATURES:
        raise ValueError(f"fingerprint must be [T × {N_FEATURES}], got {unknown.shape}")

    pool = [c for c in candidates if owner_filter is None or c.owner_id == owner_filter]
    weights = weight_vector(config.weights)

    def _score(entry) -> float:
        return compare_fingerprints(unknown, entry.fingerprint, config, weights)

    if config.max_workers > 1 and len(pool) > 1:
        # Each comparison only reads its inputs; map() keeps candidate order.
        with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
            values = list(executor.map(_score, pool))
    else:
        values = [_score(entry) for entry in pool]

    best_id = None
    best_score = 0.0
    scores = []
    for entry, value in zip(pool, values):
        scores.append(Score(entry.id, value, entry.owner_id))
        if value > best_score:
            best_score = value
            best_id = entry.id

    ranked = rank(scores)
    matched = best_id if best_score >= threshold else None
    result = MatchResult(
        best_id=matched,
        confidence=best_score,
        ranked_scores=ranked,
        threshold=threshold,
        notify_floor=config.notify_confidence_floor,
    )
    if config.log_matching:
        _log_result(result)
    return result


def _log_result(result: MatchResult):
    log.info(
        "match: threshold=%.1f%% best=%.1f%% matched=%s candidates=%d",
        result.threshold * 100, result.confidence * 100,
        "yes" if result.matched else "no", len(result.ranked_scores),
    )
    for i, s in enumerate(result.ranked_scores[:3], 1):
        mark = "+" if s.score >= result.threshold else "-"
        log.info("  %d. [%s] %s: %.1f%% (owner: %s)", i, mark, s.id, s.score * 100, s.owner_id)
