"""
Metrics Aggregator - Aggregates per-frame signals and flags for a session
"""

import logging
from typing import Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime

from ..types import FlagEvent, SignalBundle

logger = logging.getLogger(__name__)


@dataclass
class MetricsAggregator:
    """
    Aggregates signal counts for a proctoring session.
    
    Counts frames showing each condition and flags emitted by type, and
    computes normalized ratios (0-100) for the session summary.
    """
    
    session_id: str
    
    # Frame counters
    frame_count: int = 0
    skipped_frame_count: int = 0
    
    # Per-condition frame counters
    face_absent_count: int = 0
    eyes_off_count: int = 0
    shadow_anomaly_count: int = 0
    secondary_face_count: int = 0
    device_count: int = 0
    tab_hidden_count: int = 0
    fullscreen_exit_count: int = 0
    
    # Flags by type
    flag_counts: Dict[str, int] = field(default_factory=dict)
    
    peak_risk_score: float = 0.0
    
    # Timestamps
    started_at: datetime = field(default_factory=datetime.utcnow)
    last_frame_at: datetime = field(default_factory=datetime.utcnow)
    
    def update(self, bundle: SignalBundle, flags: List[FlagEvent], risk_score: float):
        """
        Update metrics from one processed frame.
        
        Args:
            bundle: Signals fed to the engine
            flags: Flags emitted for this frame
            risk_score: Risk score after the frame
        """
        self.frame_count += 1
        self.last_frame_at = datetime.utcnow()
        
        if bundle.face_detected is False:
            self.face_absent_count += 1
        if bundle.eyes_on_screen is False:
            self.eyes_off_count += 1
        if bundle.environment is not None and bundle.environment.shadow_anomaly:
            self.shadow_anomaly_count += 1
        if bundle.secondary_faces:
            self.secondary_face_count += 1
        if bundle.device_like_objects:
            self.device_count += 1
        if bundle.tab_hidden:
            self.tab_hidden_count += 1
        if bundle.fullscreen_exited:
            self.fullscreen_exit_count += 1
        
        self.record_flags(flags, risk_score)
    
    def record_flags(self, flags: List[FlagEvent], risk_score: float):
        """Count flags raised outside the frame loop (e.g. reported violations)"""
        for flag in flags:
            key = flag.type.value
            self.flag_counts[key] = self.flag_counts.get(key, 0) + 1
        
        self.peak_risk_score = max(self.peak_risk_score, risk_score)
    
    def add_skipped_frame(self):
        """Record a frame that could not be analyzed"""
        self.skipped_frame_count += 1
    
    def get_ratios(self) -> Dict[str, float]:
        """
        Calculate normalized ratios (0-100) for all per-frame conditions.
        """
        total = max(1, self.frame_count)
        
        return {
            "face_absence": (self.face_absent_count / total) * 100,
            "eyes_off": (self.eyes_off_count / total) * 100,
            "shadow_anomaly": (self.shadow_anomaly_count / total) * 100,
            "secondary_face": (self.secondary_face_count / total) * 100,
            "device_like": (self.device_count / total) * 100,
            "tab_hidden": (self.tab_hidden_count / total) * 100,
            "fullscreen_exit": (self.fullscreen_exit_count / total) * 100
        }
    
    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of session metrics"""
        return {
            "session_id": self.session_id,
            "frame_count": self.frame_count,
            "skipped_frames": self.skipped_frame_count,
            "ratios": {k: round(v, 2) for k, v in self.get_ratios().items()},
            "flag_counts": dict(self.flag_counts),
            "total_flags": sum(self.flag_counts.values()),
            "peak_risk_score": round(self.peak_risk_score, 2),
            "duration_seconds": (self.last_frame_at - self.started_at).total_seconds()
        }
    
    def reset(self):
        """Reset all counters"""
        self.frame_count = 0
        self.skipped_frame_count = 0
        self.face_absent_count = 0
        self.eyes_off_count = 0
        self.shadow_anomaly_count = 0
        self.secondary_face_count = 0
        self.device_count = 0
        self.tab_hidden_count = 0
        self.fullscreen_exit_count = 0
        self.flag_counts = {}
        self.peak_risk_score = 0.0
        self.started_at = datetime.utcnow()
        self.last_frame_at = self.started_at
