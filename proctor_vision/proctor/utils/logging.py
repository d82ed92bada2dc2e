"""
Proctoring Logger - Logs proctoring events and results

Session ID, flag type and frame timing travel as record attributes (see
proctor_vision.utils.logging_config) so handlers can filter on them.
"""

import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


def log_proctor_event(
    session_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info",
    flag_type: Optional[str] = None,
    frame_ms: Optional[float] = None
):
    """
    Log a proctoring event.
    
    Args:
        session_id: Proctoring session ID
        event_type: Type of event (session_start, flag, calibration, ...)
        details: Optional event details
        level: Log level (debug, info, warning, error)
        flag_type: Flag type when the event is an emitted flag
        frame_ms: Frame processing time when the event describes a frame
    """
    message = f"[PROCTOR] event={event_type}"
    
    if details:
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        message += f" {detail_str}"
    
    extra = {"session_id": session_id}
    if flag_type is not None:
        extra["flag_type"] = flag_type
    if frame_ms is not None:
        extra["frame_ms"] = f"{frame_ms:.1f}"
    
    log = getattr(logger, level, logger.info)
    log(message, extra=extra)


def log_session_start(session_id: str, assessment_id: str, student_id: str):
    """Log session start event"""
    log_proctor_event(
        session_id=session_id,
        event_type="session_start",
        details={
            "assessment_id": assessment_id,
            "student_id": student_id
        }
    )


def log_session_end(session_id: str, risk_score: float, flag_counts: Dict[str, int], frames: int):
    """Log session end event"""
    flags = ",".join(f"{k}:{v}" for k, v in flag_counts.items()) if flag_counts else "none"
    log_proctor_event(
        session_id=session_id,
        event_type="session_end",
        details={
            "risk_score": round(risk_score, 2),
            "flags": flags,
            "frames_processed": frames
        }
    )


def log_flag_emitted(session_id: str, flag_type: str, severity: str, risk_score: float):
    """Log when a flag is emitted"""
    log_proctor_event(
        session_id=session_id,
        event_type="flag_emitted",
        details={
            "severity": severity,
            "risk_score": round(risk_score, 2)
        },
        level="warning",
        flag_type=flag_type
    )


def log_frame_processed(session_id: str, frame_ms: float, flag_count: int, risk_score: float):
    """Log per-frame processing time"""
    log_proctor_event(
        session_id=session_id,
        event_type="frame",
        details={
            "flags": flag_count,
            "risk_score": round(risk_score, 2)
        },
        level="debug",
        frame_ms=frame_ms
    )


def log_calibration_event(session_id: str, points: int, calibrated: bool, quality: float = 0.0):
    """Log a calibration update"""
    log_proctor_event(
        session_id=session_id,
        event_type="calibration",
        details={
            "points": points,
            "calibrated": calibrated,
            "quality": round(quality, 3)
        }
    )
