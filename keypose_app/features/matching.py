"""
Descriptor matching with brute-force or FLANN matchers, and the filters
that discard unreliable matches.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from keypose_app.config import FilterType
from keypose_app.errors import InvalidParameterError, PreconditionError
from keypose_app.model.data_structures import MatchSet

logger = logging.getLogger(__name__)

_BRUTE_FORCE_NORMS = {
    "BruteForce": cv2.NORM_L2,
    "BruteForce-L1": cv2.NORM_L1,
    "BruteForce-SL2": cv2.NORM_L2SQR,
    "BruteForce-Hamming": cv2.NORM_HAMMING,
    "BruteForce-Hamming(2)": cv2.NORM_HAMMING2,
}

MATCHER_NAMES = sorted(list(_BRUTE_FORCE_NORMS) + ["FlannBased"])


def create_matcher(
    matcher_name: str,
    is_float: bool,
    cross_check: bool = False,
) -> cv2.DescriptorMatcher:
    """
    Create an OpenCV descriptor matcher from its name.

    Args:
        matcher_name: One of MATCHER_NAMES.
        is_float: True for float descriptors (SIFT), False for binary ones (ORB).
        cross_check: Keep only mutual best matches (brute-force, k=1 only).

    Returns:
        A cv2.DescriptorMatcher instance.
    """
    if matcher_name == "FlannBased":
        if is_float:
            # FLANN matcher for SIFT (float descriptors)
            FLANN_INDEX_KDTREE = 1
            index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
        else:
            FLANN_INDEX_LSH = 6
            index_params = dict(algorithm=FLANN_INDEX_LSH, table_number=6, key_size=12)
        search_params = dict(checks=50)
        return cv2.FlannBasedMatcher(index_params, search_params)

    if matcher_name not in _BRUTE_FORCE_NORMS:
        raise InvalidParameterError(
            f"Unknown matcher {matcher_name!r}; expected one of {MATCHER_NAMES}"
        )
    return cv2.BFMatcher(_BRUTE_FORCE_NORMS[matcher_name], crossCheck=cross_check)


def match_descriptors(
    train_descriptors: np.ndarray,
    query_descriptors: np.ndarray,
    matcher_name: str = "BruteForce-Hamming",
    k: int = 1,
    cross_check: bool = False,
) -> MatchSet:
    """
    Match query descriptors against the train descriptors.

    Args:
        train_descriptors: Descriptors of the reference model (N_train, D).
        query_descriptors: Descriptors of the current image (N_query, D).
        matcher_name: Matcher name, see `create_matcher`.
        k: 1 for direct matching, 2 to keep the second nearest neighbour
           needed by the ratio filters.
        cross_check: Brute-force cross check, honoured only when k == 1.

    Returns:
        MatchSet whose query_idx / train_idx index the given arrays.
    """
    if k not in (1, 2):
        raise InvalidParameterError(f"k must be 1 or 2, got {k}")
    knn = k == 2
    if len(train_descriptors) == 0 or len(query_descriptors) == 0:
        return MatchSet.empty(knn=knn)

    is_float = train_descriptors.dtype != np.uint8
    if cross_check and knn:
        logger.warning("[match] Cross check is ignored with k-NN matching")
        cross_check = False
    matcher = create_matcher(matcher_name, is_float, cross_check=cross_check)

    if is_float:
        train_descriptors = train_descriptors.astype(np.float32, copy=False)
        query_descriptors = query_descriptors.astype(np.float32, copy=False)

    if knn:
        raw = matcher.knnMatch(query_descriptors, train_descriptors, k=2)
    else:
        raw = matcher.match(query_descriptors, train_descriptors)
    return MatchSet.from_dmatches(raw, knn=knn)


def _check_factor(factor: float) -> None:
    if not factor > 0.0:
        raise InvalidParameterError(f"The factor must be positive, got {factor}")


def _check_ratio(ratio: float) -> None:
    if not 0.0 < ratio <= 1.0:
        raise InvalidParameterError(f"The ratio must be in the interval ]0 ; 1], got {ratio}")


def _std_mask(distance: np.ndarray) -> np.ndarray:
    threshold = distance.min() + distance.std()
    return distance <= threshold


def _ratio_mask(matches: MatchSet, ratio: float) -> np.ndarray:
    d1 = matches.distance
    d2 = matches.second_distance
    has_two = ~np.isnan(d2)
    # Two zero distances are as ambiguous as two equal ones.
    with np.errstate(divide="ignore", invalid="ignore"):
        dist_ratio = np.where(d2 > 0, d1 / d2, 1.0)
    return has_two & (dist_ratio <= ratio)


def filter_matches(
    matches: MatchSet,
    filter_type: FilterType,
    factor: float = 2.0,
    ratio: float = 0.85,
) -> MatchSet:
    """
    Discard unreliable matches.

    Policies:
        - CONSTANT_FACTOR_DISTANCE_THRESHOLD: keep distance <= d_min * factor.
        - STD_DISTANCE_THRESHOLD: keep distance <= d_min + std(distances).
        - RATIO_DISTANCE_THRESHOLD: keep d_1 / d_2 <= ratio (needs k=2 matches).
        - STD_AND_RATIO_DISTANCE_THRESHOLD: keep matches passing either test.
        - NO_FILTER_MATCHING: keep everything.

    The thresholds are inclusive: factor == 1 keeps the matches at the
    minimum distance and ratio == 1 keeps every match with two neighbours.
    A train index may survive in several matches.

    Args:
        matches: Raw matches from `match_descriptors`.
        filter_type: Filtering policy.
        factor: Factor for the constant factor policy, > 0.
        ratio: Ratio for the ratio policies, in ]0, 1].

    Returns:
        The surviving subset of `matches`, query and train indices untouched.

    Raises:
        InvalidParameterError: factor or ratio out of range.
        PreconditionError: ratio policy on matches without a second neighbour pass.
    """
    if filter_type == FilterType.CONSTANT_FACTOR_DISTANCE_THRESHOLD:
        _check_factor(factor)
    if filter_type.needs_knn:
        _check_ratio(ratio)
        if not matches.knn:
            raise PreconditionError(
                f"{filter_type.value} needs the two nearest neighbours; match with k=2"
            )

    if filter_type == FilterType.NO_FILTER_MATCHING or len(matches) == 0:
        return matches

    distance = matches.distance
    if filter_type == FilterType.CONSTANT_FACTOR_DISTANCE_THRESHOLD:
        keep = distance <= distance.min() * factor
    elif filter_type == FilterType.STD_DISTANCE_THRESHOLD:
        keep = _std_mask(distance)
    elif filter_type == FilterType.RATIO_DISTANCE_THRESHOLD:
        keep = _ratio_mask(matches, ratio)
    elif filter_type == FilterType.STD_AND_RATIO_DISTANCE_THRESHOLD:
        keep = _std_mask(distance) | _ratio_mask(matches, ratio)
    else:
        raise InvalidParameterError(f"Unknown filter type: {filter_type}")

    logger.debug(
        "[filter] %s kept %d of %d matches",
        filter_type.value,
        int(keep.sum()),
        len(matches),
    )
    return matches.subset(np.flatnonzero(keep))


__all__ = ["MATCHER_NAMES", "create_matcher", "match_descriptors", "filter_matches"]
