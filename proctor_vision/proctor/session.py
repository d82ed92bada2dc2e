"""
Proctor Session - Manages a single proctoring session
"""

import asyncio
import time
import uuid
import logging
import numpy as np
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import Settings, settings as default_settings
from .calibration import CalibrationProfile, CalibrationProfileStore
from .detectors import (
    EnvironmentAnalyzer,
    GazeEstimator,
    HeadPoseEstimator,
    SecondaryObjectDetector
)
from .metrics import MetricsAggregator
from .scoring import ProctorEngine, RiskScore
from .sinks import InMemoryFlagSink, InMemoryLogSink
from .types import (
    FlagType,
    GazePoint,
    LandmarkInput,
    LogRecord,
    SignalBundle,
    coerce_landmarks
)
from .utils.frame_quality import check_frame_quality
from ..utils import log_exceptions, session_logger
from .utils.logging import (
    log_calibration_event,
    log_flag_emitted,
    log_frame_processed,
    log_session_end,
    log_session_start
)

logger = logging.getLogger(__name__)

LandmarkDetector = Callable[[np.ndarray], Awaitable[LandmarkInput]]


class ProctorSession:
    """
    Manages a single proctoring session.
    
    Runs every frame through the pose, gaze, environment and secondary-object
    analyzers, fuses the results into one SignalBundle, feeds the flagging
    engine, and writes flags and per-frame records to the sinks.
    """
    
    def __init__(
        self,
        assessment_id: str,
        student_id: str,
        session_id: Optional[str] = None,
        config: Optional[Settings] = None,
        flag_sink=None,
        log_sink=None,
        profile_store: Optional[CalibrationProfileStore] = None
    ):
        """
        Initialize a new proctoring session.
        
        Args:
            assessment_id: ID of the assessment being proctored
            student_id: ID of the student being proctored
            session_id: Optional custom session ID (auto-generated if not provided)
            config: Settings to use (defaults to the module-level settings)
            flag_sink: Receives every emitted FlagEvent
            log_sink: Receives one LogRecord per processed frame
            profile_store: Calibration profile store
        """
        self.id = session_id or f"EXM_{uuid.uuid4().hex[:6].upper()}"
        self.log = session_logger(logger, self.id)
        self.assessment_id = assessment_id
        self.student_id = student_id
        self.config = config or default_settings
        self.started_at = datetime.utcnow()
        self.is_active = True
        self.tab_hidden = False
        self.fullscreen_exited = False
        
        # Analyzers (lazy loaded)
        self._head_pose: Optional[HeadPoseEstimator] = None
        self._gaze_estimator: Optional[GazeEstimator] = None
        self._environment: Optional[EnvironmentAnalyzer] = None
        self._object_detector: Optional[SecondaryObjectDetector] = None
        
        self.engine = self._build_engine()
        self.engine.start()
        
        self.metrics = MetricsAggregator(session_id=self.id)
        self.flag_sink = flag_sink if flag_sink is not None else InMemoryFlagSink()
        self.log_sink = log_sink if log_sink is not None else InMemoryLogSink(self.config.MAX_LOG_ENTRIES)
        self.profile_store = profile_store if profile_store is not None else CalibrationProfileStore()
        
        self.last_gaze: Optional[GazePoint] = None
        self._result: Optional[Dict[str, Any]] = None
        
        # One outstanding landmark request at a time
        self._landmark_lock = asyncio.Lock()
        
        log_session_start(self.id, assessment_id, student_id)
        
        self.log.info("Proctoring session started")
    
    def _build_engine(self) -> ProctorEngine:
        cfg = self.config
        hard_penalty = cfg.HARD_EVENT_PENALTY
        risk = RiskScore(
            penalties={
                FlagType.EYES_OFF: cfg.EYES_OFF_PENALTY,
                FlagType.HEAD_POSE: cfg.HEAD_POSE_PENALTY,
                FlagType.FACE_MISSING: cfg.FACE_MISSING_PENALTY,
                FlagType.SHADOW_ANOMALY: cfg.SHADOW_ANOMALY_PENALTY,
                FlagType.DOWN_GLANCE: cfg.DOWN_GLANCE_PENALTY,
                FlagType.SECONDARY_FACE: hard_penalty,
                FlagType.DEVICE_LIKE: hard_penalty,
                FlagType.TAB_HIDDEN: hard_penalty,
                FlagType.FULLSCREEN_EXIT: hard_penalty,
                FlagType.INTEGRITY_VIOLATION: hard_penalty
            },
            decay_per_second=cfg.RISK_DECAY_PER_SECOND,
            max_score=cfg.MAX_RISK_SCORE,
            review_threshold=cfg.REVIEW_THRESHOLD,
            accrual_rates={
                FlagType.EYES_OFF: cfg.EYES_OFF_PENALTY_PER_SECOND,
                FlagType.FACE_MISSING: cfg.FACE_MISSING_PENALTY_PER_SECOND
            },
            hard_multiplier=cfg.HARD_SEVERITY_MULTIPLIER,
            clean_window=cfg.CLEAN_BEHAVIOR_SECONDS
        )
        return ProctorEngine(
            soft_debounce=cfg.SOFT_DEBOUNCE_SECONDS,
            hard_debounce=cfg.HARD_DEBOUNCE_SECONDS,
            soft_durations={
                FlagType.EYES_OFF: cfg.EYES_OFF_SECONDS,
                FlagType.FACE_MISSING: cfg.FACE_MISSING_SECONDS,
                FlagType.SHADOW_ANOMALY: cfg.SHADOW_ANOMALY_SECONDS
            },
            hard_durations={
                FlagType.EYES_OFF: cfg.EYES_OFF_HARD_SECONDS,
                FlagType.HEAD_POSE: cfg.HEAD_POSE_HARD_SECONDS,
                FlagType.FACE_MISSING: cfg.FACE_MISSING_HARD_SECONDS,
                FlagType.SHADOW_ANOMALY: cfg.SHADOW_ANOMALY_HARD_SECONDS,
                FlagType.TAB_HIDDEN: cfg.TAB_HIDDEN_SECONDS,
                FlagType.FULLSCREEN_EXIT: cfg.FULLSCREEN_EXIT_SECONDS
            },
            grace_period=cfg.GRACE_PERIOD_SECONDS,
            limits={
                "head_yaw": cfg.HEAD_YAW_LIMIT,
                "head_pitch": cfg.HEAD_PITCH_LIMIT,
                "gaze_confidence": cfg.GAZE_CONFIDENCE_THRESHOLD,
                "down_glance_pitch": cfg.DOWN_GLANCE_PITCH,
                "down_glance_count": cfg.DOWN_GLANCE_COUNT,
                "down_glance_window": cfg.DOWN_GLANCE_WINDOW_SECONDS
            },
            risk=risk
        )
    
    @property
    def head_pose(self) -> HeadPoseEstimator:
        """Lazy load head pose estimator"""
        if self._head_pose is None:
            cfg = self.config
            self._head_pose = HeadPoseEstimator(
                smoothing=cfg.HEAD_POSE_SMOOTHING,
                thresholds={
                    "min_confidence": cfg.HEAD_POSE_MIN_CONFIDENCE,
                    "max_yaw": cfg.HEAD_POSE_MAX_YAW,
                    "max_pitch": cfg.HEAD_POSE_MAX_PITCH,
                    "max_roll": cfg.HEAD_POSE_MAX_ROLL
                },
                stability_window=cfg.STABILITY_WINDOW_SIZE,
                extreme_angles={
                    "yaw": cfg.HEAD_POSE_EXTREME_YAW,
                    "pitch": cfg.HEAD_POSE_EXTREME_PITCH,
                    "roll": cfg.HEAD_POSE_EXTREME_ROLL
                },
                spread_band=(cfg.HEAD_POSE_SPREAD_MIN, cfg.HEAD_POSE_SPREAD_MAX)
            )
        return self._head_pose
    
    @property
    def gaze_estimator(self) -> GazeEstimator:
        """Lazy load gaze estimator"""
        if self._gaze_estimator is None:
            self._gaze_estimator = GazeEstimator(
                screen_width=self.config.SCREEN_WIDTH,
                screen_height=self.config.SCREEN_HEIGHT,
                smoothing=self.config.GAZE_SMOOTHING,
                confidence_threshold=self.config.GAZE_CONFIDENCE_THRESHOLD,
                pixels_per_degree=self.config.GAZE_PIXELS_PER_DEGREE,
                viewing_distance_mm=self.config.GAZE_VIEWING_DISTANCE_MM,
                uncalibrated_penalty=self.config.GAZE_UNCALIBRATED_PENALTY
            )
        return self._gaze_estimator
    
    @property
    def environment(self) -> EnvironmentAnalyzer:
        """Lazy load environment analyzer"""
        if self._environment is None:
            self._environment = EnvironmentAnalyzer(
                window_size=self.config.STABILITY_WINDOW_SIZE,
                recent_samples=self.config.STABILITY_RECENT_SAMPLES,
                thresholds={
                    "gradient_mean": self.config.SHADOW_GRADIENT_THRESHOLD,
                    "spatial_variance": self.config.SHADOW_VARIANCE_THRESHOLD,
                    "shadow_stability_floor": self.config.SHADOW_STABILITY_FLOOR,
                    "backlighting_warning": self.config.BACKLIGHTING_WARNING,
                    "lighting_stability_warning": self.config.LIGHTING_STABILITY_WARNING,
                    "shadow_stability_warning": self.config.SHADOW_STABILITY_WARNING,
                    "variance_warning": self.config.LIGHTING_VARIANCE_WARNING
                }
            )
        return self._environment
    
    @property
    def object_detector(self) -> SecondaryObjectDetector:
        """Lazy load secondary object detector"""
        if self._object_detector is None:
            self._object_detector = SecondaryObjectDetector(
                min_consecutive_frames=self.config.MIN_CONSECUTIVE_FRAMES,
                max_age=self.config.TRACK_MAX_AGE_FRAMES,
                thresholds={
                    "face_confidence": self.config.FACE_CONFIDENCE_THRESHOLD,
                    "device_confidence": self.config.DEVICE_CONFIDENCE_THRESHOLD,
                    "min_area_fraction": self.config.OBJECT_MIN_AREA_FRACTION,
                    "max_area_fraction": self.config.OBJECT_MAX_AREA_FRACTION,
                    "device_aspect_min": self.config.DEVICE_ASPECT_MIN,
                    "device_aspect_max": self.config.DEVICE_ASPECT_MAX,
                    "motion": self.config.DEVICE_MOTION_THRESHOLD,
                    "highlight": self.config.DEVICE_HIGHLIGHT_THRESHOLD
                }
            )
        return self._object_detector
    
    def process_frame(
        self,
        frame: np.ndarray,
        landmarks: LandmarkInput = None,
        timestamp: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Process a single frame through the detection pipeline.
        
        Args:
            frame: BGR image from webcam
            landmarks: Face mesh landmarks for this frame, or None when no face was found
            timestamp: Frame timestamp in seconds (defaults to now)
            
        Returns:
            Dict with risk_score, emitted flags, and detection details
            
        Raises:
            InvalidLandmarksError: if landmarks are present but malformed
        """
        if not self.is_active:
            return {"error": "Session is not active"}
        
        quality = check_frame_quality(frame)
        if not quality["is_valid"]:
            self.log.debug(f"Frame quality issues: {quality['issues']}")
            self.metrics.add_skipped_frame()
            return {
                "processed": False,
                "quality_issues": quality["issues"],
                "risk_score": self.engine.get_risk_score(),
                "flags": []
            }
        
        started = time.perf_counter()
        timestamp = time.time() if timestamp is None else timestamp
        bundle, detections = self._collect_signals(frame, landmarks, timestamp)
        
        flags = self.engine.process_signals(bundle)
        risk_score = self.engine.get_risk_score()
        
        for flag in flags:
            self.flag_sink.write(flag)
            log_flag_emitted(self.id, flag.type.value, flag.severity.value, risk_score)
        
        self.log_sink.write(LogRecord.from_bundle(bundle, flags, risk_score))
        self.metrics.update(bundle, flags, risk_score)
        log_frame_processed(self.id, (time.perf_counter() - started) * 1000, len(flags), risk_score)
        
        return {
            "processed": True,
            "risk_score": risk_score,
            "flags": [flag.to_dict() for flag in flags],
            "detections": detections,
            "quality_issues": quality["issues"],
            "frame_count": self.metrics.frame_count
        }
    
    async def process_frame_async(
        self,
        frame: np.ndarray,
        detect_landmarks: LandmarkDetector,
        timestamp: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Run the upstream landmark detector, then process the frame.
        
        Concurrent callers wait for the previous detection to resolve, so at
        most one detector call is in flight.
        """
        async with self._landmark_lock:
            landmarks = await detect_landmarks(frame)
            return self.process_frame(frame, landmarks, timestamp)
    
    def _collect_signals(
        self,
        frame: np.ndarray,
        landmarks: LandmarkInput,
        timestamp: float
    ):
        """
        Run all analyzers on a frame.
        
        Returns:
            (SignalBundle for the engine, detection details for callers)
        """
        height, width = frame.shape[:2]
        landmark_set = coerce_landmarks(landmarks)
        
        pose = self.head_pose.estimate_pose(landmark_set, width, height, timestamp)
        gaze = self.gaze_estimator.estimate_gaze(landmark_set, width, height, timestamp)
        environment = self.environment.analyze_frame(frame, timestamp)
        
        primary_bounds = landmark_set.bounding_box(width, height) if landmark_set else None
        objects = self.object_detector.detect_objects(frame, primary_bounds)
        
        eyes_on_screen = None
        if gaze.detected:
            self.last_gaze = gaze
            eyes_on_screen = self.gaze_estimator.is_gaze_on_screen(gaze)
        
        bundle = SignalBundle(
            timestamp=timestamp,
            face_detected=landmark_set is not None,
            head_pose=pose if pose.detected else None,
            gaze=gaze.vector if gaze.detected else None,
            eyes_on_screen=eyes_on_screen,
            environment=environment.summary(),
            secondary_faces=objects.secondary_face_count,
            device_like_objects=objects.device_count,
            tab_hidden=self.tab_hidden,
            fullscreen_exited=self.fullscreen_exited
        )
        
        detections = {
            "face_present": landmark_set is not None,
            "head_pose": pose.to_dict() if pose.detected else None,
            "gaze": {
                "screen_x": round(gaze.screen_x, 1),
                "screen_y": round(gaze.screen_y, 1),
                "confidence": round(gaze.confidence, 3),
                "on_screen": eyes_on_screen
            } if gaze.detected else None,
            "environment_score": round(environment.overall_score, 3),
            "environment_warnings": environment.warnings,
            "secondary_faces": [d.to_dict() for d in objects.secondary_faces],
            "device_like_objects": [d.to_dict() for d in objects.device_like_objects]
        }
        
        return bundle, detections
    
    def set_tab_hidden(self, hidden: bool):
        """Record a tab visibility change reported by the frontend"""
        self.tab_hidden = hidden
        self.log.info(f"Tab {'hidden' if hidden else 'visible'}")
    
    def set_fullscreen(self, active: bool):
        """Record entering or leaving fullscreen mode"""
        self.fullscreen_exited = not active
        self.log.info(f"Fullscreen {'entered' if active else 'exited'}")
    
    def report_integrity_violation(
        self,
        violation_type: str,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Flag a browser-side integrity violation reported by the frontend.
        
        Returns:
            The emitted flag as a dict, or None when the session is inactive
        """
        if not self.is_active:
            return None
        
        timestamp = time.time() if timestamp is None else timestamp
        flag = self.engine.report_integrity_violation(violation_type, timestamp, details)
        if flag is None:
            return None
        
        risk_score = self.engine.get_risk_score()
        self.flag_sink.write(flag)
        self.metrics.record_flags([flag], risk_score)
        log_flag_emitted(self.id, flag.type.value, flag.severity.value, risk_score)
        return flag.to_dict()
    
    def add_calibration_point(
        self,
        screen_x: float,
        screen_y: float,
        gaze_xy: Optional[tuple] = None
    ) -> Dict[str, Any]:
        """
        Add a calibration pair for the dot shown at (screen_x, screen_y).
        
        Uses the most recent gaze vector when gaze_xy is not given.
        """
        if gaze_xy is None:
            if self.last_gaze is None or self.last_gaze.vector is None:
                return {"accepted": False, "calibrated": self.gaze_estimator.is_calibrated, "points": self.gaze_estimator.calibration_point_count}
            gaze_xy = (self.last_gaze.vector.x, self.last_gaze.vector.y)
        
        calibrated = self.gaze_estimator.add_calibration_point((screen_x, screen_y), gaze_xy)
        points = self.gaze_estimator.calibration_point_count
        log_calibration_event(self.id, points, calibrated, self.gaze_estimator.calibration.quality)
        
        return {"accepted": True, "calibrated": calibrated, "points": points}
    
    def save_calibration(self, profile_id: Optional[str] = None) -> CalibrationProfile:
        """Store the current calibration in the profile store"""
        profile = self.gaze_estimator.export_calibration(profile_id or f"{self.student_id}_{self.id}")
        self.profile_store.save(profile)
        return profile
    
    def load_calibration(self, profile_id: Optional[str] = None) -> bool:
        """Load a stored profile (the most recent one when no ID is given)"""
        profile = (
            self.profile_store.get(profile_id) if profile_id
            else self.profile_store.most_recent()
        )
        if profile is None:
            return False
        return self.gaze_estimator.load_calibration(profile)
    
    def get_status(self) -> Dict[str, Any]:
        """Current session status"""
        state = self.engine.get_current_state()
        return {
            "session_id": self.id,
            "is_active": self.is_active,
            "frames_processed": self.metrics.frame_count,
            "risk_score": state.risk_score,
            "under_review": state.under_review,
            "active_conditions": state.active_conditions,
            "calibrated": self.gaze_estimator.is_calibrated,
            "duration_seconds": (datetime.utcnow() - self.started_at).total_seconds()
        }
    
    @log_exceptions(logger)
    def finalize(self) -> Dict[str, Any]:
        """
        Finalize the session and return final results.
        
        Returns:
            Final proctoring results with risk score and flag counts
        """
        if not self.is_active:
            return self._result
        
        self.is_active = False
        
        state = self.engine.get_current_state()
        summary = self.metrics.get_summary()
        
        log_session_end(self.id, state.risk_score, self.metrics.flag_counts, self.metrics.frame_count)
        
        self._cleanup()
        
        self._result = {
            "session_id": self.id,
            "assessment_id": self.assessment_id,
            "student_id": self.student_id,
            "risk_score": state.risk_score,
            "peak_risk_score": self.metrics.peak_risk_score,
            "risk_level": self.engine.risk.get_level(),
            "flag_counts": dict(self.metrics.flag_counts),
            "review_required": state.under_review,
            "frames_processed": self.metrics.frame_count,
            "duration_seconds": (datetime.utcnow() - self.started_at).total_seconds(),
            "metrics_summary": summary
        }
        
        self.log.info(f"Session finalized: risk={state.risk_score:.1f}, flags={self.metrics.flag_counts}")
        
        return self._result
    
    def _cleanup(self):
        """Stop the engine and release analyzer history"""
        self.engine.dispose()
        if self._environment is not None:
            self._environment.dispose()
        if self._object_detector is not None:
            self._object_detector.dispose()
