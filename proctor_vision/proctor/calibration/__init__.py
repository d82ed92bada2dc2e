"""Gaze calibration"""

from .homography import CalibrationModel, solve_homography
from .store import CalibrationProfile, CalibrationProfileStore

__all__ = [
    "CalibrationModel",
    "solve_homography",
    "CalibrationProfile",
    "CalibrationProfileStore"
]
