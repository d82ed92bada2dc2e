"""
Proctoring Types - Data model shared by the analyzers and the flagging engine
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from .exceptions import InvalidLandmarksError

# Face mesh point counts (the refined mesh appends 10 iris points)
LANDMARK_COUNT = 468
REFINED_LANDMARK_COUNT = 478


class LandmarkSet:
    """
    Immutable set of facial landmarks for one frame.
    
    Points are normalized image coordinates (x, y in [0, 1]) plus a relative
    depth z. Only complete face-mesh sets are accepted: 468 points, or 478
    when iris refinement is enabled.
    """
    
    VALID_COUNTS = (LANDMARK_COUNT, REFINED_LANDMARK_COUNT)
    
    def __init__(self, points: np.ndarray):
        self._points = points
        self._points.setflags(write=False)
    
    @classmethod
    def from_array(cls, data: Any) -> "LandmarkSet":
        """
        Validate and wrap raw landmark data.
        
        Args:
            data: Array-like of shape (N, 3) or (N, 2)
            
        Raises:
            InvalidLandmarksError: if the shape or point count is wrong
        """
        try:
            points = np.array(data, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidLandmarksError(f"Landmarks are not numeric: {e}") from e
        
        if points.ndim != 2 or points.shape[1] not in (2, 3):
            raise InvalidLandmarksError(
                f"Landmarks must have shape (N, 3), got {points.shape}"
            )
        if points.shape[0] not in cls.VALID_COUNTS:
            raise InvalidLandmarksError(
                f"Expected {LANDMARK_COUNT} or {REFINED_LANDMARK_COUNT} landmarks, "
                f"got {points.shape[0]}"
            )
        if not np.all(np.isfinite(points)):
            raise InvalidLandmarksError("Landmarks contain non-finite values")
        
        if points.shape[1] == 2:
            points = np.hstack([points, np.zeros((points.shape[0], 1))])
        
        return cls(points)
    
    @property
    def points(self) -> np.ndarray:
        return self._points
    
    @property
    def has_iris(self) -> bool:
        return len(self._points) == REFINED_LANDMARK_COUNT
    
    def __len__(self) -> int:
        return len(self._points)
    
    def to_pixels(self, indices, image_w: int, image_h: int) -> np.ndarray:
        """Return (k, 2) pixel coordinates for the given landmark indices"""
        selected = self._points[list(indices), :2]
        return selected * np.array([image_w, image_h], dtype=np.float64)
    
    def bounding_box(self, image_w: int, image_h: int) -> "BoundingBox":
        """Pixel bounding box enclosing every landmark"""
        pixels = self._points[:, :2] * np.array([image_w, image_h], dtype=np.float64)
        return BoundingBox.from_points(pixels)


LandmarkInput = Union[None, LandmarkSet, np.ndarray, List[Any]]


def coerce_landmarks(landmarks: LandmarkInput) -> Optional[LandmarkSet]:
    """None stays None (no face); anything else must be a complete set."""
    if landmarks is None or isinstance(landmarks, LandmarkSet):
        return landmarks
    return LandmarkSet.from_array(landmarks)


@dataclass(frozen=True)
class NotDetected:
    """Explicit absence of a face (distinct from a low-confidence detection)"""
    timestamp: float
    reason: str = "no_landmarks"
    confidence: float = 0.0
    
    @property
    def detected(self) -> bool:
        return False


@dataclass(frozen=True)
class HeadPose:
    """Head orientation in degrees"""
    yaw: float
    pitch: float
    roll: float
    confidence: float
    timestamp: float
    
    @property
    def detected(self) -> bool:
        return True
    
    def to_dict(self) -> Dict[str, float]:
        return {
            "yaw": round(self.yaw, 2),
            "pitch": round(self.pitch, 2),
            "roll": round(self.roll, 2),
            "confidence": round(self.confidence, 3)
        }


@dataclass(frozen=True)
class PoseValidation:
    """Result of checking a pose against acceptance thresholds"""
    is_valid: bool
    issues: List[str]
    accuracy: float


@dataclass(frozen=True)
class GazeVector:
    """Unit gaze direction in camera space (z points away from the screen)"""
    x: float
    y: float
    z: float
    confidence: float
    
    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)


# Looking straight at the camera
FORWARD_GAZE = (0.0, 0.0, -1.0)


@dataclass(frozen=True)
class EyeObservation:
    """Per-eye geometry measured in pixel space"""
    center: Tuple[float, float]
    iris_center: Tuple[float, float]
    iris_radius: float
    width: float
    height: float
    confidence: float


@dataclass(frozen=True)
class GazePoint:
    """Gaze position on the screen in screen pixels"""
    screen_x: float
    screen_y: float
    confidence: float
    timestamp: float
    vector: Optional[GazeVector] = None
    calibrated: bool = False
    
    @property
    def detected(self) -> bool:
        return True


@dataclass(frozen=True)
class GazeValidation:
    """Distance between an estimated gaze point and a known target"""
    is_valid: bool
    error_px: float
    accuracy: float


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in pixel coordinates"""
    x: float
    y: float
    width: float
    height: float
    
    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingBox":
        x_min, y_min = points.min(axis=0)
        x_max, y_max = points.max(axis=0)
        return cls(float(x_min), float(y_min), float(x_max - x_min), float(y_max - y_min))
    
    @property
    def area(self) -> float:
        return self.width * self.height
    
    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)
    
    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height > 0 else 0.0
    
    def overlap_fraction(self, other: "BoundingBox") -> float:
        """Intersection area relative to the smaller of the two boxes"""
        ix = max(0.0, min(self.x + self.width, other.x + other.width) - max(self.x, other.x))
        iy = max(0.0, min(self.y + self.height, other.y + other.height) - max(self.y, other.y))
        smaller = min(self.area, other.area)
        if smaller <= 0:
            return 0.0
        return (ix * iy) / smaller
    
    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class LightingAnalysis:
    """Luminance statistics for one frame"""
    histogram: np.ndarray
    mean: float
    variance: float
    stability: float
    backlighting_severity: float


@dataclass(frozen=True)
class ShadowAnalysis:
    """Gradient statistics for one frame"""
    gradient_magnitude: float
    spatial_variance: float
    stability: float
    anomaly_detected: bool


@dataclass(frozen=True)
class EnvironmentSummary:
    """The part of an environment analysis the flagging engine consumes"""
    overall_score: float
    shadow_anomaly: bool
    lighting_stability: float = 1.0
    shadow_stability: float = 1.0
    backlighting_severity: float = 0.0


@dataclass(frozen=True)
class EnvironmentAnalysis:
    """Lighting and shadow analysis plus a composite trust score"""
    lighting: LightingAnalysis
    shadow: ShadowAnalysis
    overall_score: float
    warnings: List[str]
    timestamp: float
    
    def summary(self) -> EnvironmentSummary:
        return EnvironmentSummary(
            overall_score=self.overall_score,
            shadow_anomaly=self.shadow.anomaly_detected,
            lighting_stability=self.lighting.stability,
            shadow_stability=self.shadow.stability,
            backlighting_severity=self.lighting.backlighting_severity
        )


class RegionKind(str, Enum):
    FACE = "face"
    DEVICE = "device"


@dataclass
class DetectedRegion:
    """
    A tracked face or device candidate.
    
    Owned and mutated by the region tracker only; callers receive
    ObjectDetection snapshots.
    """
    track_id: int
    kind: RegionKind
    bounding_box: BoundingBox
    confidence: float
    consecutive_frames_seen: int
    last_seen_frame: int
    motion_history: List[float] = field(default_factory=list)
    highlight_history: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class ObjectDetection:
    """Snapshot of a tracked region as reported to callers"""
    track_id: int
    kind: RegionKind
    bounding_box: BoundingBox
    confidence: float
    frames_seen: int
    detected: bool
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "track_id": self.track_id,
            "kind": self.kind.value,
            "bounding_box": self.bounding_box.to_dict(),
            "confidence": round(self.confidence, 3),
            "frames_seen": self.frames_seen,
            "detected": self.detected
        }


@dataclass(frozen=True)
class ObjectDetectionResult:
    """Regions observed in one frame"""
    secondary_faces: List[ObjectDetection]
    device_like_objects: List[ObjectDetection]
    frame_index: int
    
    @property
    def secondary_face_count(self) -> int:
        return sum(1 for d in self.secondary_faces if d.detected)
    
    @property
    def device_count(self) -> int:
        return sum(1 for d in self.device_like_objects if d.detected)


class FlagType(str, Enum):
    EYES_OFF = "EYES_OFF"
    HEAD_POSE = "HEAD_POSE"
    FACE_MISSING = "FACE_MISSING"
    SHADOW_ANOMALY = "SHADOW_ANOMALY"
    SECONDARY_FACE = "SECONDARY_FACE"
    DEVICE_LIKE = "DEVICE_LIKE"
    TAB_HIDDEN = "TAB_HIDDEN"
    DOWN_GLANCE = "DOWN_GLANCE"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"


class Severity(str, Enum):
    SOFT = "soft"
    HARD = "hard"


@dataclass(frozen=True)
class FlagEvent:
    """An integrity flag. Never mutated after emission."""
    id: str
    timestamp: float
    type: FlagType
    severity: Severity
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 3),
            "details": dict(self.details)
        }


def _opt_bool(value: Any) -> Optional[bool]:
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    return None


def _opt_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _opt_count(value: Any) -> Optional[int]:
    number = _opt_float(value)
    if number is None or number < 0:
        return None
    return int(number)


def _opt_head_pose(value: Any) -> Optional[HeadPose]:
    if isinstance(value, HeadPose):
        value = vars(value)
    if not isinstance(value, Mapping):
        return None
    yaw = _opt_float(value.get("yaw"))
    pitch = _opt_float(value.get("pitch"))
    roll = _opt_float(value.get("roll"))
    if yaw is None or pitch is None:
        return None
    confidence = _opt_float(value.get("confidence"))
    return HeadPose(
        yaw=yaw,
        pitch=pitch,
        roll=roll if roll is not None else 0.0,
        confidence=confidence if confidence is not None else 1.0,
        timestamp=_opt_float(value.get("timestamp")) or 0.0
    )


def _opt_gaze(value: Any) -> Optional[GazeVector]:
    if isinstance(value, GazeVector):
        value = vars(value)
    if not isinstance(value, Mapping):
        return None
    components = [_opt_float(value.get(k)) for k in ("x", "y", "z")]
    confidence = _opt_float(value.get("confidence"))
    if any(c is None for c in components) or confidence is None:
        return None
    return GazeVector(*components, confidence=confidence)


def _opt_environment(value: Any) -> Optional[EnvironmentSummary]:
    if isinstance(value, EnvironmentAnalysis):
        return value.summary()
    if isinstance(value, EnvironmentSummary):
        value = vars(value)
    if not isinstance(value, Mapping):
        return None
    anomaly = _opt_bool(value.get("shadow_anomaly"))
    score = _opt_float(value.get("overall_score"))
    if anomaly is None or score is None:
        return None
    extras = {
        k: _opt_float(value.get(k))
        for k in ("lighting_stability", "shadow_stability", "backlighting_severity")
    }
    return EnvironmentSummary(
        overall_score=score,
        shadow_anomaly=anomaly,
        **{k: v for k, v in extras.items() if v is not None}
    )


@dataclass(frozen=True)
class SignalBundle:
    """
    Per-frame fused input to the flagging engine.
    
    Every field is optional. A missing or malformed field means "no
    information" and never counts as a violation.
    """
    timestamp: Optional[float] = None
    face_detected: Optional[bool] = None
    head_pose: Optional[HeadPose] = None
    gaze: Optional[GazeVector] = None
    eyes_on_screen: Optional[bool] = None
    environment: Optional[EnvironmentSummary] = None
    secondary_faces: Optional[int] = None
    device_like_objects: Optional[int] = None
    tab_hidden: Optional[bool] = None
    fullscreen_exited: Optional[bool] = None
    
    @classmethod
    def from_mapping(cls, data: Any) -> "SignalBundle":
        """Build a bundle from loosely-typed input, dropping anything malformed"""
        if isinstance(data, SignalBundle):
            data = {name: getattr(data, name) for name in cls.__dataclass_fields__}
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            timestamp=_opt_float(data.get("timestamp")),
            face_detected=_opt_bool(data.get("face_detected")),
            head_pose=_opt_head_pose(data.get("head_pose")),
            gaze=_opt_gaze(data.get("gaze")),
            eyes_on_screen=_opt_bool(data.get("eyes_on_screen")),
            environment=_opt_environment(data.get("environment")),
            secondary_faces=_opt_count(data.get("secondary_faces")),
            device_like_objects=_opt_count(data.get("device_like_objects")),
            tab_hidden=_opt_bool(data.get("tab_hidden")),
            fullscreen_exited=_opt_bool(data.get("fullscreen_exited"))
        )


@dataclass(frozen=True)
class LogRecord:
    """Flattened per-frame record for the logging/export sink"""
    timestamp: float
    eyes_on: Optional[bool]
    gaze_confidence: float
    head_pose: Optional[Dict[str, float]]
    shadow_score: Optional[float]
    secondary_face_present: bool
    device_like_present: bool
    tab_hidden: bool
    face_present: bool
    flag_type: Optional[str]
    risk_score: float
    
    @classmethod
    def from_bundle(
        cls,
        bundle: SignalBundle,
        flags: List[FlagEvent],
        risk_score: float
    ) -> "LogRecord":
        pose = bundle.head_pose
        environment = bundle.environment
        return cls(
            timestamp=bundle.timestamp if bundle.timestamp is not None else 0.0,
            eyes_on=bundle.eyes_on_screen,
            gaze_confidence=bundle.gaze.confidence if bundle.gaze else 0.0,
            head_pose=(
                {"yaw": pose.yaw, "pitch": pose.pitch, "roll": pose.roll}
                if pose else None
            ),
            shadow_score=environment.shadow_stability if environment else None,
            secondary_face_present=bool(bundle.secondary_faces),
            device_like_present=bool(bundle.device_like_objects),
            tab_hidden=bool(bundle.tab_hidden),
            face_present=bool(bundle.face_detected),
            flag_type=flags[-1].type.value if flags else None,
            risk_score=risk_score
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "eyes_on": self.eyes_on,
            "gaze_confidence": round(self.gaze_confidence, 3),
            "head_pose": self.head_pose,
            "shadow_score": self.shadow_score,
            "secondary_face_present": self.secondary_face_present,
            "device_like_present": self.device_like_present,
            "tab_hidden": self.tab_hidden,
            "face_present": self.face_present,
            "flag_type": self.flag_type,
            "risk_score": round(self.risk_score, 2)
        }


@dataclass(frozen=True)
class EngineState:
    """Lifecycle and score snapshot of the flagging engine"""
    is_running: bool
    risk_score: float
    under_review: bool
    active_conditions: List[str]
    flags_emitted: int
