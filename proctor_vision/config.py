"""
Proctor Vision Configuration Settings

Every numeric threshold used by the analyzers and the flagging engine has a
documented default here and can be overridden from the environment or `.env`.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Configuration for the proctor vision service."""
    
    # API Settings
    APP_NAME: str = "Proctor Vision Service"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_DIR: Optional[str] = None
    
    # Stability tracking
    STABILITY_WINDOW_SIZE: int = 30
    STABILITY_RECENT_SAMPLES: int = 5
    
    # Head pose
    HEAD_POSE_SMOOTHING: float = 0.7
    HEAD_POSE_MIN_CONFIDENCE: float = 0.6
    HEAD_POSE_MAX_YAW: float = 90.0
    HEAD_POSE_MAX_PITCH: float = 60.0
    HEAD_POSE_MAX_ROLL: float = 45.0
    HEAD_POSE_EXTREME_YAW: float = 28.6
    HEAD_POSE_EXTREME_PITCH: float = 22.9
    HEAD_POSE_EXTREME_ROLL: float = 17.2
    HEAD_POSE_SPREAD_MIN: float = 20.0
    HEAD_POSE_SPREAD_MAX: float = 200.0
    
    # Gaze
    SCREEN_WIDTH: int = 1920
    SCREEN_HEIGHT: int = 1080
    GAZE_SMOOTHING: float = 0.3
    GAZE_CONFIDENCE_THRESHOLD: float = 0.5
    GAZE_PIXELS_PER_DEGREE: float = 0.5
    GAZE_VIEWING_DISTANCE_MM: float = 600.0
    GAZE_UNCALIBRATED_PENALTY: float = 0.7
    
    # Environment
    SHADOW_GRADIENT_THRESHOLD: float = 10.0
    SHADOW_VARIANCE_THRESHOLD: float = 500.0
    SHADOW_STABILITY_FLOOR: float = 0.6
    BACKLIGHTING_WARNING: float = 0.7
    LIGHTING_STABILITY_WARNING: float = 0.5
    SHADOW_STABILITY_WARNING: float = 0.5
    LIGHTING_VARIANCE_WARNING: float = 2000.0
    
    # Secondary objects
    MIN_CONSECUTIVE_FRAMES: int = 5
    TRACK_MAX_AGE_FRAMES: int = 30
    FACE_CONFIDENCE_THRESHOLD: float = 0.6
    DEVICE_CONFIDENCE_THRESHOLD: float = 0.5
    OBJECT_MIN_AREA_FRACTION: float = 0.02
    OBJECT_MAX_AREA_FRACTION: float = 0.3
    DEVICE_ASPECT_MIN: float = 0.4
    DEVICE_ASPECT_MAX: float = 0.8
    DEVICE_MOTION_THRESHOLD: float = 0.3
    DEVICE_HIGHLIGHT_THRESHOLD: float = 0.7
    
    # Flag debounce (seconds)
    SOFT_DEBOUNCE_SECONDS: float = 0.3
    HARD_DEBOUNCE_SECONDS: float = 0.15
    EYES_OFF_SECONDS: float = 0.6
    FACE_MISSING_SECONDS: float = 1.0
    SHADOW_ANOMALY_SECONDS: float = 0.8
    TAB_HIDDEN_SECONDS: float = 0.0
    FULLSCREEN_EXIT_SECONDS: float = 0.0
    
    # Sustained soft conditions escalate to hard flags (seconds)
    EYES_OFF_HARD_SECONDS: float = 10.0
    HEAD_POSE_HARD_SECONDS: float = 15.0
    FACE_MISSING_HARD_SECONDS: float = 10.0
    SHADOW_ANOMALY_HARD_SECONDS: float = 30.0
    
    GRACE_PERIOD_SECONDS: float = 0.5
    HEAD_YAW_LIMIT: float = 20.0
    HEAD_PITCH_LIMIT: float = 15.0
    
    # Down-glance frequency flag
    DOWN_GLANCE_PITCH: float = -15.0
    DOWN_GLANCE_COUNT: int = 3
    DOWN_GLANCE_WINDOW_SECONDS: float = 10.0
    
    # Risk score
    EYES_OFF_PENALTY: float = 3.0
    HEAD_POSE_PENALTY: float = 2.0
    FACE_MISSING_PENALTY: float = 4.0
    SHADOW_ANOMALY_PENALTY: float = 3.0
    DOWN_GLANCE_PENALTY: float = 2.0
    HARD_EVENT_PENALTY: float = 25.0
    EYES_OFF_PENALTY_PER_SECOND: float = 3.0
    FACE_MISSING_PENALTY_PER_SECOND: float = 4.0
    HARD_SEVERITY_MULTIPLIER: float = 1.5
    CLEAN_BEHAVIOR_SECONDS: float = 5.0
    RISK_DECAY_PER_SECOND: float = 1.0
    MAX_RISK_SCORE: float = 100.0
    REVIEW_THRESHOLD: float = 60.0
    
    # Downstream sinks
    MAX_LOG_ENTRIES: int = 10000
    
    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
