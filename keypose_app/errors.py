"""
Exception hierarchy for the keypoint matching and pose estimation pipeline.
"""

from __future__ import annotations


class KeyPoseError(Exception):
    """Base class for every error raised by keypose_app."""


class SizeMismatchError(KeyPoseError):
    """Keypoint, descriptor and object point collections disagree in length."""


class InvalidParameterError(KeyPoseError, ValueError):
    """A configuration value is out of its allowed range."""


class PreconditionError(KeyPoseError):
    """A required prior step was not executed (e.g. ratio filter without k=2 matching)."""


class InsufficientCorrespondencesError(KeyPoseError):
    """Fewer 2D/3D correspondences than the minimal sample size."""


class PoseNotFoundError(KeyPoseError):
    """RANSAC did not reach the consensus floor."""


class NoMatchesError(KeyPoseError):
    """No match survived filtering, so no presence score can be computed."""


class CorruptFormatError(KeyPoseError):
    """A learning data file could not be parsed."""


__all__ = [
    "KeyPoseError",
    "SizeMismatchError",
    "InvalidParameterError",
    "PreconditionError",
    "InsufficientCorrespondencesError",
    "PoseNotFoundError",
    "NoMatchesError",
    "CorruptFormatError",
]
