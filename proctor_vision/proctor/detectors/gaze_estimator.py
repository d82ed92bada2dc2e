"""
Gaze Estimator - Maps eye geometry to an on-screen gaze point

Per eye: landmark centroid, iris centre and radius, iris confidence.
The iris-to-eye-centre displacement becomes an angular offset and then a
unit 3D direction; both eyes are fused by confidence and projected onto the
screen geometrically or through a calibrated homography.
"""

import math
import time
import logging
import numpy as np
from typing import Dict, Any, Optional, Tuple, Union

from ..calibration import CalibrationModel, CalibrationProfile
from ..types import (
    EyeObservation,
    FORWARD_GAZE,
    GazePoint,
    GazeValidation,
    GazeVector,
    LandmarkInput,
    LandmarkSet,
    NotDetected,
    coerce_landmarks
)

logger = logging.getLogger(__name__)


class GazeEstimator:
    """
    Estimates where on the screen the user is looking.
    
    Works on the 468-point face mesh; when the 478-point refined mesh is
    supplied, the measured iris landmarks replace the iris estimate.
    """
    
    LEFT_EYE_INDICES = [33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246]
    RIGHT_EYE_INDICES = [362, 382, 381, 380, 374, 373, 390, 249, 263, 466, 388, 387, 386, 385, 384, 398]
    
    # Refined mesh only
    LEFT_IRIS_INDICES = [468, 469, 470, 471, 472]
    RIGHT_IRIS_INDICES = [473, 474, 475, 476, 477]
    
    IRIS_RADIUS_RATIO = 0.35
    
    # Per-eye iris confidence below which the eye is ignored
    MIN_EYE_CONFIDENCE = 0.3
    
    # Screen-plane geometry for the uncalibrated projection (millimetres)
    VIEWING_DISTANCE_MM = 600.0
    HALF_PLANE_MM: Tuple[float, float] = (300.0, 200.0)
    UNCALIBRATED_PENALTY = 0.7
    
    DEFAULT_PIXELS_PER_DEGREE = 0.5
    DEFAULT_SMOOTHING = 0.3
    DEFAULT_CONFIDENCE_THRESHOLD = 0.5
    
    # Error (pixels) accepted by validate_gaze
    VALIDATION_TOLERANCE_PX = 100.0
    
    def __init__(
        self,
        screen_width: int = 1920,
        screen_height: int = 1080,
        smoothing: float = DEFAULT_SMOOTHING,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        pixels_per_degree: float = DEFAULT_PIXELS_PER_DEGREE,
        calibration: Optional[CalibrationModel] = None,
        viewing_distance_mm: float = VIEWING_DISTANCE_MM,
        uncalibrated_penalty: float = UNCALIBRATED_PENALTY
    ):
        """
        Initialize gaze estimator.
        
        Args:
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            smoothing: Weight of the previous gaze point in [0, 1]
            confidence_threshold: Minimum confidence for a gaze to count as on-screen
            pixels_per_degree: Iris displacement (pixels) per degree of eye rotation
            calibration: Optional pre-built calibration model
            viewing_distance_mm: Eye-to-screen distance for the uncalibrated projection
            uncalibrated_penalty: Confidence multiplier applied without calibration
        """
        if not 0.0 <= smoothing <= 1.0:
            raise ValueError("smoothing must be within [0, 1]")
        if pixels_per_degree <= 0:
            raise ValueError("pixels_per_degree must be positive")
        if viewing_distance_mm <= 0:
            raise ValueError("viewing_distance_mm must be positive")
        if not 0.0 <= uncalibrated_penalty <= 1.0:
            raise ValueError("uncalibrated_penalty must be within [0, 1]")
        
        self.screen_width = screen_width
        self.screen_height = screen_height
        self.smoothing = smoothing
        self.confidence_threshold = confidence_threshold
        self.pixels_per_degree = pixels_per_degree
        self.viewing_distance_mm = viewing_distance_mm
        self.uncalibrated_penalty = uncalibrated_penalty
        self.calibration = calibration or CalibrationModel()
        
        self._previous: Optional[GazePoint] = None
        self.last_eyes: Tuple[Optional[EyeObservation], Optional[EyeObservation]] = (None, None)
    
    @property
    def is_calibrated(self) -> bool:
        return self.calibration.is_calibrated
    
    @property
    def calibration_point_count(self) -> int:
        return self.calibration.point_count
    
    @property
    def screen_center(self) -> Tuple[float, float]:
        return (self.screen_width / 2, self.screen_height / 2)
    
    def estimate_gaze(
        self,
        landmarks: LandmarkInput,
        image_w: int,
        image_h: int,
        timestamp: Optional[float] = None
    ) -> Union[GazePoint, NotDetected]:
        """
        Estimate the on-screen gaze point.
        
        Args:
            landmarks: Face mesh landmarks, or None when no face was found
            image_w: Frame width in pixels
            image_h: Frame height in pixels
            timestamp: Frame timestamp in seconds (defaults to now)
            
        Returns:
            GazePoint (with the fused gaze vector attached), or NotDetected
            
        Raises:
            InvalidLandmarksError: if landmarks are present but malformed
        """
        timestamp = time.time() if timestamp is None else timestamp
        landmark_set = coerce_landmarks(landmarks)
        
        if landmark_set is None:
            return NotDetected(timestamp=timestamp)
        
        if image_w <= 0 or image_h <= 0:
            raise ValueError(f"Invalid image dimensions: {image_w}x{image_h}")
        
        left = self._observe_eye(landmark_set, self.LEFT_EYE_INDICES, self.LEFT_IRIS_INDICES, image_w, image_h)
        right = self._observe_eye(landmark_set, self.RIGHT_EYE_INDICES, self.RIGHT_IRIS_INDICES, image_w, image_h)
        self.last_eyes = (left, right)
        
        vector = self._combine(self.eye_gaze_vector(left), self.eye_gaze_vector(right))
        point = self.map_to_screen(vector, timestamp)
        point = self._smooth(point)
        
        self._previous = point
        return point
    
    def _observe_eye(
        self,
        landmark_set: LandmarkSet,
        eye_indices,
        iris_indices,
        image_w: int,
        image_h: int
    ) -> EyeObservation:
        points = landmark_set.to_pixels(eye_indices, image_w, image_h)
        center = points.mean(axis=0)
        x_min, y_min = points.min(axis=0)
        x_max, y_max = points.max(axis=0)
        width, height = float(x_max - x_min), float(y_max - y_min)
        
        if landmark_set.has_iris:
            iris_center = landmark_set.to_pixels(iris_indices, image_w, image_h).mean(axis=0)
        else:
            # Without iris points the iris sits at the middle of the eye opening
            iris_center = np.array([(x_min + x_max) / 2, (y_min + y_max) / 2])
        
        iris_radius = min(width, height) * self.IRIS_RADIUS_RATIO
        confidence = self._iris_confidence(points, iris_center)
        
        return EyeObservation(
            center=(float(center[0]), float(center[1])),
            iris_center=(float(iris_center[0]), float(iris_center[1])),
            iris_radius=float(iris_radius),
            width=width,
            height=height,
            confidence=confidence
        )
    
    @staticmethod
    def _iris_confidence(points: np.ndarray, iris_center: np.ndarray) -> float:
        """
        Penalize iris centres outside the eye box and degenerate eyes,
        otherwise score by how compact the eye contour is.
        """
        x_min, y_min = points.min(axis=0)
        x_max, y_max = points.max(axis=0)
        
        within = x_min <= iris_center[0] <= x_max and y_min <= iris_center[1] <= y_max
        if not within:
            return 0.2
        
        if (x_max - x_min) < 1 or (y_max - y_min) < 1:
            return 0.1
        
        box_center = np.array([(x_min + x_max) / 2, (y_min + y_max) / 2])
        spread = float(np.sqrt(np.mean(np.sum((points - box_center) ** 2, axis=1))))
        return max(0.2, 1.0 - min(spread / 100.0, 1.0))
    
    def eye_gaze_vector(self, eye: EyeObservation) -> GazeVector:
        """Unit gaze direction for one eye (forward with zero confidence if unreliable)"""
        if eye.confidence < self.MIN_EYE_CONFIDENCE:
            return GazeVector(*FORWARD_GAZE, confidence=0.0)
        
        dx = eye.iris_center[0] - eye.center[0]
        dy = eye.iris_center[1] - eye.center[1]
        
        angle_x = math.radians(dx / self.pixels_per_degree)
        angle_y = math.radians(dy / self.pixels_per_degree)
        
        direction = np.array([
            math.sin(angle_x),
            math.sin(angle_y),
            -math.cos(math.sqrt(angle_x ** 2 + angle_y ** 2))
        ])
        return self._normalized(direction, eye.confidence)
    
    def _combine(self, left: GazeVector, right: GazeVector) -> GazeVector:
        """Confidence-weighted average of both eyes, renormalized"""
        total = left.confidence + right.confidence
        if total <= 0:
            return GazeVector(*FORWARD_GAZE, confidence=0.0)
        
        combined = (left.as_array() * left.confidence + right.as_array() * right.confidence) / total
        return self._normalized(combined, min(1.0, total / 2))
    
    @staticmethod
    def _normalized(direction: np.ndarray, confidence: float) -> GazeVector:
        magnitude = float(np.linalg.norm(direction))
        if magnitude < 1e-12 or not math.isfinite(magnitude):
            logger.debug("Degenerate gaze direction, falling back to forward gaze")
            return GazeVector(*FORWARD_GAZE, confidence=0.0)
        x, y, z = direction / magnitude
        return GazeVector(float(x), float(y), float(z), confidence=confidence)
    
    def map_to_screen(self, vector: GazeVector, timestamp: float) -> GazePoint:
        """Project a gaze vector to screen pixels (calibrated when available)"""
        if self.calibration.is_calibrated:
            mapped = self.calibration.map((vector.x, vector.y))
            if mapped is None:
                cx, cy = self.screen_center
                return GazePoint(cx, cy, 0.0, timestamp, vector=vector, calibrated=True)
            return GazePoint(
                mapped[0], mapped[1], vector.confidence, timestamp,
                vector=vector, calibrated=True
            )
        
        return self._project_geometric(vector, timestamp)
    
    def _project_geometric(self, vector: GazeVector, timestamp: float) -> GazePoint:
        """
        Intersect the gaze ray with a screen plane at VIEWING_DISTANCE_MM.
        """
        if abs(vector.z) < 0.01:
            cx, cy = self.screen_center
            return GazePoint(cx, cy, 0.0, timestamp, vector=vector)
        
        t = self.viewing_distance_mm / abs(vector.z)
        plane_x = vector.x * t
        plane_y = vector.y * t
        
        half_w, half_h = self.HALF_PLANE_MM
        screen_x = (plane_x / half_w) * (self.screen_width / 2) + self.screen_width / 2
        screen_y = (plane_y / half_h) * (self.screen_height / 2) + self.screen_height / 2
        
        return GazePoint(
            screen_x=float(np.clip(screen_x, 0, self.screen_width)),
            screen_y=float(np.clip(screen_y, 0, self.screen_height)),
            confidence=vector.confidence * self.uncalibrated_penalty,
            timestamp=timestamp,
            vector=vector
        )
    
    def _smooth(self, current: GazePoint) -> GazePoint:
        """smoothed = a * previous + (1 - a) * current, position only"""
        if self._previous is None:
            return current
        
        alpha = self.smoothing
        return GazePoint(
            screen_x=alpha * self._previous.screen_x + (1 - alpha) * current.screen_x,
            screen_y=alpha * self._previous.screen_y + (1 - alpha) * current.screen_y,
            confidence=current.confidence,
            timestamp=current.timestamp,
            vector=current.vector,
            calibrated=current.calibrated
        )
    
    def is_gaze_on_screen(self, point: Union[GazePoint, NotDetected]) -> bool:
        """Gaze is on screen when it lies within bounds with enough confidence"""
        if not point.detected:
            return False
        within = 0 <= point.screen_x <= self.screen_width and 0 <= point.screen_y <= self.screen_height
        return within and point.confidence >= self.confidence_threshold
    
    def validate_gaze(
        self,
        point: Union[GazePoint, NotDetected],
        target: Tuple[float, float],
        tolerance_px: float = VALIDATION_TOLERANCE_PX
    ) -> GazeValidation:
        """
        Compare a gaze point against a known target (e.g. a calibration dot).
        """
        if not point.detected:
            return GazeValidation(is_valid=False, error_px=float("inf"), accuracy=0.0)
        
        error = math.hypot(point.screen_x - target[0], point.screen_y - target[1])
        diagonal = math.hypot(self.screen_width, self.screen_height)
        accuracy = max(0.0, 1.0 - error / diagonal)
        is_valid = error <= tolerance_px and point.confidence >= self.confidence_threshold
        
        return GazeValidation(is_valid=is_valid, error_px=error, accuracy=accuracy)
    
    def add_calibration_point(
        self,
        screen_point: Tuple[float, float],
        gaze_vector: Union[GazeVector, Tuple[float, float]]
    ) -> bool:
        """
        Record a (screen point, gaze vector) pair.
        
        Returns:
            Whether the estimator is calibrated after this point
        """
        if isinstance(gaze_vector, GazeVector):
            gaze_xy = (gaze_vector.x, gaze_vector.y)
        else:
            gaze_xy = gaze_vector
        return self.calibration.add_point(screen_point, gaze_xy)
    
    def reset_calibration(self):
        """Return to the geometric mapping"""
        self.calibration.reset()
        logger.info("Gaze calibration reset")
    
    def load_calibration(self, profile: CalibrationProfile) -> bool:
        """Replace the calibration with a stored profile"""
        self.calibration = CalibrationModel.from_profile(profile)
        return self.calibration.is_calibrated
    
    def export_calibration(self, profile_id: str) -> CalibrationProfile:
        return self.calibration.to_profile(profile_id)
    
    def update_screen_dimensions(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid screen dimensions: {width}x{height}")
        self.screen_width = width
        self.screen_height = height
        self._previous = None
    
    def reset(self):
        """Forget the previous gaze point"""
        self._previous = None
        self.last_eyes = (None, None)
    
    def get_diagnostics(self) -> Dict[str, Any]:
        """Calibration and per-eye state for debugging"""
        left, right = self.last_eyes
        return {
            "is_calibrated": self.is_calibrated,
            "calibration_points": self.calibration_point_count,
            "calibration_quality": round(self.calibration.quality, 3),
            "left_eye_confidence": left.confidence if left else 0.0,
            "right_eye_confidence": right.confidence if right else 0.0,
            "screen": (self.screen_width, self.screen_height)
        }
