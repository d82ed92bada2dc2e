"""Utility modules"""

from .frame_quality import check_frame_quality, ensure_frame, to_luma, sobel_magnitude
from .logging import log_proctor_event
from .stability import StabilityTracker, StabilitySample, TrackedSample

__all__ = [
    "check_frame_quality",
    "ensure_frame",
    "to_luma",
    "sobel_magnitude",
    "log_proctor_event",
    "StabilityTracker",
    "StabilitySample",
    "TrackedSample"
]
