"""
Deciding whether the learned object is present in the query image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from keypose_app.config import DetectionMethod
from keypose_app.errors import NoMatchesError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionDecision:
    present: bool
    mean_distance: float
    score: float


def detection_score(num_matches: int, mean_distance: float) -> float:
    """
    Presence score: number of matches divided by their mean descriptor distance.

    Grows with the match count and shrinks with the mean distance; a zero
    mean distance (perfect matches) gives an infinite score.
    """
    if mean_distance <= 0.0:
        return float("inf")
    return num_matches / mean_distance


def decide_presence(
    distances: np.ndarray,
    method: DetectionMethod,
    threshold: float,
    score_threshold: float,
) -> DetectionDecision:
    """
    Apply the configured detection rule to the surviving match distances.

    Args:
        distances: Descriptor distances of the filtered matches.
        method: THRESHOLD (mean distance below `threshold`) or SCORE
                (`detection_score` above `score_threshold`).
        threshold: Mean distance threshold.
        score_threshold: Score threshold.

    Returns:
        DetectionDecision with both statistics filled in.

    Raises:
        NoMatchesError: No match to compute statistics from.
    """
    distances = np.asarray(distances, dtype=np.float64).ravel()
    if distances.size == 0:
        raise NoMatchesError("No match survived filtering")

    mean_distance = float(distances.mean())
    score = detection_score(distances.size, mean_distance)
    if method == DetectionMethod.THRESHOLD:
        present = mean_distance < threshold
    else:
        present = score > score_threshold

    logger.debug(
        "[detect] %d matches, mean distance %.3f, score %.3f -> %s",
        distances.size,
        mean_distance,
        score,
        "present" if present else "absent",
    )
    return DetectionDecision(present=bool(present), mean_distance=mean_distance, score=score)


__all__ = ["DetectionDecision", "detection_score", "decide_presence"]
