import numpy as np
import pytest
import yaml

from keypose_app.config import DetectionMethod, FilterType, MatcherConfig, PoseMethod
from keypose_app.errors import InvalidParameterError


def test_defaults():
    config = MatcherConfig()
    assert config.detector_names == ["ORB"]
    assert config.extractor_names == ["ORB"]
    assert config.filter_type == FilterType.RATIO_DISTANCE_THRESHOLD
    assert config.use_knn
    assert config.pose_method == PoseMethod.OPENCV
    assert config.detection_method == DetectionMethod.THRESHOLD


@pytest.mark.parametrize(
    "field, value",
    [
        ("matching_factor_threshold", 0.0),
        ("matching_ratio_threshold", 0.0),
        ("matching_ratio_threshold", 1.01),
        ("ransac_iterations", 0),
        ("ransac_iterations", 2.5),
        ("ransac_iterations", True),
        ("ransac_reprojection_error", -1.0),
        ("ransac_threshold", 0.0),
        ("ransac_min_inlier_count", 0),
        ("ransac_min_inlier_count", 1.5),
        ("ransac_min_inlier_count", True),
        ("ransac_consensus_percentage", 0.0),
        ("ransac_consensus_percentage", 100.5),
        ("detection_threshold", 0.0),
        ("detection_score", -0.1),
        ("detector_names", []),
        ("detector_names", "ORB"),
        ("extractor_names", []),
        ("filter_type", "bestMatchOnly"),
    ],
)
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(InvalidParameterError):
        MatcherConfig(**{field: value})

    config = MatcherConfig()
    with pytest.raises(InvalidParameterError):
        setattr(config, field, value)


def test_invalid_parameter_is_a_value_error():
    with pytest.raises(ValueError):
        MatcherConfig(matching_ratio_threshold=2.0)


def test_boundary_values_are_accepted():
    config = MatcherConfig(matching_ratio_threshold=1.0, ransac_consensus_percentage=100.0)
    assert config.matching_ratio_threshold == 1.0


def test_enum_names_and_values_are_parsed():
    config = MatcherConfig(filter_type="stdDistanceThreshold", pose_method="VVS")
    assert config.filter_type == FilterType.STD_DISTANCE_THRESHOLD
    assert config.pose_method == PoseMethod.VVS
    assert not config.use_knn

    config.filter_type = "stdAndRatioDistanceThreshold"
    assert config.use_knn
    config.detection_method = "detectionScore"
    assert config.detection_method == DetectionMethod.SCORE


def test_yaml_round_trip(tmp_path):
    config = MatcherConfig(
        detector_names=["FAST", "ORB"],
        filter_type=FilterType.CONSTANT_FACTOR_DISTANCE_THRESHOLD,
        pose_method=PoseMethod.VVS,
        ransac_seed=3,
        compute_covariance=True,
    )
    path = tmp_path / "config.yaml"
    config.to_yaml(path)

    raw = yaml.safe_load(path.read_text())
    assert raw["filter_type"] == "constantFactorDistanceThreshold"
    assert raw["pose_method"] == "vvs"

    assert MatcherConfig.from_yaml(path) == config


def test_partial_yaml_keeps_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("ransac_iterations: 500\nfilter_type: noFilterMatching\n")
    config = MatcherConfig.from_yaml(path)
    assert config.ransac_iterations == 500
    assert config.filter_type == FilterType.NO_FILTER_MATCHING
    assert config.matcher_name == "BruteForce-Hamming"


def test_unknown_keys_are_rejected(tmp_path):
    with pytest.raises(InvalidParameterError):
        MatcherConfig.from_dict({"ransac_iterations": 10, "ransacIterations": 10})

    path = tmp_path / "config.yaml"
    path.write_text("- not\n- a mapping\n")
    with pytest.raises(InvalidParameterError):
        MatcherConfig.from_yaml(path)


def test_numpy_integers_are_accepted_as_counts():
    config = MatcherConfig(ransac_iterations=np.int64(50), ransac_min_inlier_count=np.int32(8))
    assert config.ransac_iterations == 50
    assert config.ransac_min_inlier_count == 8
