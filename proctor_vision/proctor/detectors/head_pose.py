"""
Head Pose Estimator - Estimates head orientation from face mesh landmarks

Closed-form approximation over 8 canonical landmarks instead of a full PnP
solve, so a frame costs a handful of arithmetic operations.
"""

import math
import time
import logging
import numpy as np
from typing import Dict, Any, Optional, Tuple, Union

from ..types import (
    HeadPose,
    LandmarkInput,
    NotDetected,
    PoseValidation,
    coerce_landmarks
)
from ..utils.stability import StabilitySample, StabilityTracker

logger = logging.getLogger(__name__)


class HeadPoseEstimator:
    """
    Estimates head pose (yaw, pitch, roll) from a 468/478-point face mesh.
    
    Uses 8 key facial points:
    - Nose tip (1)
    - Chin (152)
    - Left eye corner (33)
    - Right eye corner (362)
    - Left mouth corner (61)
    - Right mouth corner (291)
    - Left ear approximation (234)
    - Right ear approximation (454)
    
    Yaw comes from horizontal eye-centre asymmetry, pitch from the nose-to-chin
    distance against a reference, roll from the eye line angle. Output angles
    are exponentially smoothed against the previous estimate.
    """
    
    # Landmark indices for the 8 key points (order matters)
    LANDMARK_INDICES = [1, 152, 33, 362, 61, 291, 234, 454]
    
    # Angles (degrees) beyond which confidence is penalized
    EXTREME_ANGLES: Dict[str, float] = {
        "yaw": 28.6,
        "pitch": 22.9,
        "roll": 17.2
    }
    EXTREME_ANGLE_PENALTY = 0.8
    
    # RMS landmark distance from the centroid (pixels) for a plausible face
    SPREAD_BAND: Tuple[float, float] = (20.0, 200.0)
    SPREAD_PENALTY = 0.6
    
    # Nose tip to chin distance (pixels) for a level, frontal face
    REFERENCE_NOSE_CHIN = 110.0
    
    DEFAULT_SMOOTHING = 0.7
    
    # Acceptance thresholds used by validate_pose
    VALIDATION_THRESHOLDS: Dict[str, float] = {
        "min_confidence": 0.6,
        "max_yaw": 90.0,
        "max_pitch": 60.0,
        "max_roll": 45.0
    }
    
    def __init__(
        self,
        smoothing: float = DEFAULT_SMOOTHING,
        principal_point: Optional[Tuple[float, float]] = None,
        reference_nose_chin: float = REFERENCE_NOSE_CHIN,
        thresholds: Dict[str, float] = None,
        stability_window: int = StabilityTracker.DEFAULT_WINDOW_SIZE,
        extreme_angles: Dict[str, float] = None,
        spread_band: Optional[Tuple[float, float]] = None
    ):
        """
        Initialize head pose estimator.
        
        Args:
            smoothing: Weight of the previous pose in [0, 1] (0 disables smoothing)
            principal_point: Optical centre (x, y) in pixels (defaults to image centre)
            reference_nose_chin: Frontal nose-to-chin distance in pixels
            thresholds: Optional dict overriding VALIDATION_THRESHOLDS
            stability_window: History size for pose stability
            extreme_angles: Optional dict overriding EXTREME_ANGLES
            spread_band: Optional (min, max) overriding SPREAD_BAND
        """
        if not 0.0 <= smoothing <= 1.0:
            raise ValueError("smoothing must be within [0, 1]")
        
        self.smoothing = smoothing
        self.principal_point = principal_point
        self.reference_nose_chin = reference_nose_chin
        
        self.thresholds = self.VALIDATION_THRESHOLDS.copy()
        if thresholds:
            self.thresholds.update(thresholds)
        
        self.extreme_angles = self.EXTREME_ANGLES.copy()
        if extreme_angles:
            self.extreme_angles.update(extreme_angles)
        if any(v <= 0 for v in self.extreme_angles.values()):
            raise ValueError("extreme angles must be positive")
        
        self.spread_band = tuple(spread_band) if spread_band else self.SPREAD_BAND
        
        self._previous: Optional[HeadPose] = None
        self._stability = StabilityTracker(window_size=stability_window, level_scale=10.0)
    
    @property
    def stability(self) -> float:
        """Stability of recent poses (1.0 until enough history exists)"""
        latest = self._stability.latest
        return latest.stability if latest else 1.0
    
    def estimate_pose(
        self,
        landmarks: LandmarkInput,
        image_w: int,
        image_h: int,
        timestamp: Optional[float] = None
    ) -> Union[HeadPose, NotDetected]:
        """
        Estimate head pose from facial landmarks.
        
        Args:
            landmarks: Face mesh landmarks, or None when no face was found
            image_w: Frame width in pixels
            image_h: Frame height in pixels
            timestamp: Frame timestamp in seconds (defaults to now)
            
        Returns:
            HeadPose, or NotDetected when landmarks are absent
            
        Raises:
            InvalidLandmarksError: if landmarks are present but malformed
        """
        timestamp = time.time() if timestamp is None else timestamp
        landmark_set = coerce_landmarks(landmarks)
        
        if landmark_set is None:
            return NotDetected(timestamp=timestamp)
        
        if image_w <= 0 or image_h <= 0:
            raise ValueError(f"Invalid image dimensions: {image_w}x{image_h}")
        
        points = landmark_set.to_pixels(self.LANDMARK_INDICES, image_w, image_h)
        yaw, pitch, roll, spread = self._solve_angles(points, image_w, image_h)
        confidence = self.compute_confidence(yaw, pitch, roll, spread)
        
        raw = HeadPose(yaw=yaw, pitch=pitch, roll=roll, confidence=confidence, timestamp=timestamp)
        pose = self._smooth(raw)
        
        self._previous = pose
        self._stability.observe(StabilitySample(level=np.array([pose.yaw, pose.pitch, pose.roll])))
        
        return pose
    
    def _solve_angles(
        self,
        points: np.ndarray,
        image_w: int,
        image_h: int
    ) -> Tuple[float, float, float, float]:
        """
        Closed-form yaw/pitch/roll (degrees) plus landmark spread (pixels).
        """
        centroid = points.mean(axis=0)
        nose, chin, left_eye, right_eye = points[0], points[1], points[2], points[3]
        
        principal_x = self.principal_point[0] if self.principal_point else image_w / 2
        
        eye_center_x = (left_eye[0] + right_eye[0]) / 2
        asymmetry = (eye_center_x - centroid[0]) / principal_x
        yaw = math.atan(asymmetry * 2) * 0.5
        
        nose_to_chin = chin[1] - nose[1]
        pitch_factor = (nose_to_chin - self.reference_nose_chin) / self.reference_nose_chin
        pitch = math.atan(pitch_factor) * 0.3
        
        eye_angle = math.atan2(right_eye[1] - left_eye[1], right_eye[0] - left_eye[0])
        roll = eye_angle * 0.8
        
        spread = float(np.sqrt(np.mean(np.sum((points - centroid) ** 2, axis=1))))
        
        return math.degrees(yaw), math.degrees(pitch), math.degrees(roll), spread
    
    def compute_confidence(self, yaw: float, pitch: float, roll: float, spread: float) -> float:
        """
        Confidence in [0, 1] for a pose estimate.
        
        Each angle past its extreme threshold multiplies confidence by a
        factor that keeps shrinking as the angle grows; a landmark spread
        outside SPREAD_BAND applies a fixed penalty.
        """
        confidence = 1.0
        
        for name, angle in (("yaw", yaw), ("pitch", pitch), ("roll", roll)):
            threshold = self.extreme_angles[name]
            excess = abs(angle) - threshold
            if excess > 0:
                confidence *= self.EXTREME_ANGLE_PENALTY / (1.0 + excess / threshold)
        
        low, high = self.spread_band
        if spread < low or spread > high:
            confidence *= self.SPREAD_PENALTY
        
        return float(min(1.0, max(0.0, confidence)))
    
    def _smooth(self, current: HeadPose) -> HeadPose:
        """smoothed = a * previous + (1 - a) * current, angles only"""
        if self._previous is None:
            return current
        
        alpha = self.smoothing
        previous = self._previous
        
        return HeadPose(
            yaw=alpha * previous.yaw + (1 - alpha) * current.yaw,
            pitch=alpha * previous.pitch + (1 - alpha) * current.pitch,
            roll=alpha * previous.roll + (1 - alpha) * current.roll,
            confidence=current.confidence,
            timestamp=current.timestamp
        )
    
    def validate_pose(
        self,
        pose: Union[HeadPose, NotDetected],
        thresholds: Dict[str, float] = None
    ) -> PoseValidation:
        """
        Check a pose against acceptance thresholds.
        
        Args:
            pose: Result from estimate_pose()
            thresholds: Optional per-call overrides
            
        Returns:
            PoseValidation with pass/fail, human-readable issues and accuracy
        """
        limits = self.thresholds.copy()
        if thresholds:
            limits.update(thresholds)
        
        if not pose.detected:
            return PoseValidation(is_valid=False, issues=["No face detected"], accuracy=0.0)
        
        issues = []
        
        if pose.confidence < limits["min_confidence"]:
            issues.append(f"Low confidence: {pose.confidence:.3f}")
        if abs(pose.yaw) > limits["max_yaw"]:
            issues.append(f"Extreme yaw angle: {pose.yaw:.1f}°")
        if abs(pose.pitch) > limits["max_pitch"]:
            issues.append(f"Extreme pitch angle: {pose.pitch:.1f}°")
        if abs(pose.roll) > limits["max_roll"]:
            issues.append(f"Extreme roll angle: {pose.roll:.1f}°")
        
        return PoseValidation(is_valid=not issues, issues=issues, accuracy=pose.confidence)
    
    def update_camera_parameters(
        self,
        principal_point: Optional[Tuple[float, float]] = None
    ):
        """Update the optical centre used by subsequent estimates (None = image centre)"""
        self.principal_point = principal_point
        logger.debug(f"Camera principal point updated: {self.principal_point}")
    
    def reset(self):
        """Forget the previous pose and pose history"""
        self._previous = None
        self._stability.reset()
