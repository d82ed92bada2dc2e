"""Detector modules for proctoring"""

from .head_pose import HeadPoseEstimator
from .gaze_estimator import GazeEstimator
from .environment import EnvironmentAnalyzer
from .secondary_objects import SecondaryObjectDetector, RegionTracker

__all__ = [
    "HeadPoseEstimator",
    "GazeEstimator",
    "EnvironmentAnalyzer",
    "SecondaryObjectDetector",
    "RegionTracker"
]
