"""
Configuration for the keypoint matching and pose estimation pipeline.

Policies are closed enums dispatched in code; their string names are only
used when reading or writing YAML configuration files.
"""

from __future__ import annotations

import enum
import logging
import numbers
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from keypose_app.errors import InvalidParameterError

logger = logging.getLogger(__name__)


class FilterType(enum.Enum):
    """Policies used to discard unreliable matches."""

    CONSTANT_FACTOR_DISTANCE_THRESHOLD = "constantFactorDistanceThreshold"
    STD_DISTANCE_THRESHOLD = "stdDistanceThreshold"
    RATIO_DISTANCE_THRESHOLD = "ratioDistanceThreshold"
    STD_AND_RATIO_DISTANCE_THRESHOLD = "stdAndRatioDistanceThreshold"
    NO_FILTER_MATCHING = "noFilterMatching"

    @property
    def needs_knn(self) -> bool:
        return self in (
            FilterType.RATIO_DISTANCE_THRESHOLD,
            FilterType.STD_AND_RATIO_DISTANCE_THRESHOLD,
        )


class PoseMethod(enum.Enum):
    """RANSAC scoring / refinement variant."""

    # Pixel reprojection error, Levenberg-Marquardt refinement in OpenCV.
    OPENCV = "opencv"
    # Normalized image-plane error, virtual visual servoing refinement.
    VVS = "vvs"


class DetectionMethod(enum.Enum):
    """Rule deciding whether the learned object is present."""

    THRESHOLD = "detectionThreshold"
    SCORE = "detectionScore"


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value == member.value or value.upper() == member.name:
                return member
    raise InvalidParameterError(f"Unknown {enum_cls.__name__}: {value!r}")


def _positive(name: str, value) -> None:
    if not value > 0:
        raise InvalidParameterError(f"{name} must be positive, got {value}")


def _positive_int(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value <= 0:
        raise InvalidParameterError(f"{name} must be a positive integer, got {value!r}")


def _check_ratio(name: str, value) -> None:
    if not 0.0 < value <= 1.0:
        raise InvalidParameterError(f"{name} must be in the interval ]0 ; 1], got {value}")


def _check_percentage(name: str, value) -> None:
    if not 0.0 < value <= 100.0:
        raise InvalidParameterError(f"{name} must be in the interval ]0 ; 100], got {value}")


def _check_names(name: str, value) -> None:
    if isinstance(value, str) or len(value) == 0:
        raise InvalidParameterError(f"{name} must be a non-empty list of names")


_VALIDATORS = {
    "detector_names": _check_names,
    "extractor_names": _check_names,
    "matching_factor_threshold": _positive,
    "matching_ratio_threshold": _check_ratio,
    "ransac_iterations": _positive_int,
    "ransac_reprojection_error": _positive,
    "ransac_threshold": _positive,
    "ransac_min_inlier_count": _positive_int,
    "ransac_consensus_percentage": _check_percentage,
    "detection_threshold": _positive,
    "detection_score": _positive,
}

_ENUM_FIELDS = {
    "filter_type": FilterType,
    "pose_method": PoseMethod,
    "detection_method": DetectionMethod,
}


@dataclass
class MatcherConfig:
    """
    All tunables of the keypoint matcher.

    Every field is validated when the config is built and again whenever it
    is assigned, so a bad value is reported before any image is processed.
    """

    detector_names: List[str] = field(default_factory=lambda: ["ORB"])
    # Several extractors concatenate their descriptors; they must share a type.
    extractor_names: List[str] = field(default_factory=lambda: ["ORB"])
    matcher_name: str = "BruteForce-Hamming"
    use_brute_force_cross_check: bool = False

    filter_type: FilterType = FilterType.RATIO_DISTANCE_THRESHOLD
    matching_factor_threshold: float = 2.0
    matching_ratio_threshold: float = 0.85

    pose_method: PoseMethod = PoseMethod.OPENCV
    ransac_iterations: int = 200
    # Pixels, used by PoseMethod.OPENCV.
    ransac_reprojection_error: float = 6.0
    # Normalized image-plane units, used by PoseMethod.VVS.
    ransac_threshold: float = 0.001
    ransac_min_inlier_count: int = 100
    use_consensus_percentage: bool = False
    ransac_consensus_percentage: float = 20.0
    ransac_seed: Optional[int] = None
    compute_covariance: bool = False

    detection_method: DetectionMethod = DetectionMethod.THRESHOLD
    detection_threshold: float = 100.0
    detection_score: float = 0.15

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _ENUM_FIELDS:
            value = _parse_enum(_ENUM_FIELDS[name], value)
        if name in ("detector_names", "extractor_names") and not isinstance(value, str):
            value = list(value)
        validator = _VALIDATORS.get(name)
        if validator is not None:
            validator(name, value)
        super().__setattr__(name, value)

    @property
    def use_knn(self) -> bool:
        """Whether matching must return the two nearest neighbours."""
        return self.filter_type.needs_knn

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _ENUM_FIELDS:
            data[name] = getattr(self, name).value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatcherConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidParameterError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MatcherConfig":
        """
        Load a configuration from a YAML mapping.

        Args:
            path: YAML file whose keys are MatcherConfig field names.

        Returns:
            Validated MatcherConfig.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise InvalidParameterError(f"Configuration file {path} must contain a mapping")
        logger.info("[config] Loaded %d keys from %s", len(data), path)
        return cls.from_dict(data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)


__all__ = ["FilterType", "PoseMethod", "DetectionMethod", "MatcherConfig"]
