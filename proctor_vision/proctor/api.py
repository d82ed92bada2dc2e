"""
Proctoring API - FastAPI endpoints for exam proctoring

Endpoints:
- POST /api/proctor/start - Start a proctoring session
- POST /api/proctor/stream - Stream a frame (and its face landmarks) for processing
- POST /api/proctor/tab-visibility - Record a tab visibility change
- POST /api/proctor/fullscreen - Record a fullscreen change
- POST /api/proctor/integrity-violation - Flag a browser-side integrity violation
- POST /api/proctor/calibration/point - Add a gaze calibration point
- POST /api/proctor/calibration/save - Store the current calibration profile
- POST /api/proctor/stop - Stop session and get results
- GET /api/proctor/status/{session_id} - Get session status
- GET /api/proctor/health - Module health
"""

import base64
import binascii
import logging
from typing import Dict, List, Optional, Any

import cv2
import numpy as np
from fastapi import APIRouter, HTTPException, BackgroundTasks
from pydantic import BaseModel, Field

from .calibration import CalibrationProfileStore
from .exceptions import InvalidFrameError, InvalidLandmarksError
from .session import ProctorSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proctor", tags=["Proctoring"])

# In-memory session storage
_sessions: Dict[str, ProctorSession] = {}

# Calibration profiles shared across sessions
_profile_store = CalibrationProfileStore()


# ============== Request/Response Models ==============

class StartSessionRequest(BaseModel):
    """Request to start a proctoring session"""
    assessment_id: str = Field(..., description="ID of the assessment")
    student_id: str = Field(..., description="ID of the student")
    calibration_profile_id: Optional[str] = Field(None, description="Stored calibration to load")


class StartSessionResponse(BaseModel):
    """Response after starting a session"""
    session_id: str
    status: str
    message: str
    calibrated: bool = False


class StreamFrameRequest(BaseModel):
    """Request to process a webcam frame"""
    session_id: str = Field(..., description="Session ID from /start")
    frame_base64: str = Field(..., description="Base64 encoded JPEG frame")
    landmarks: Optional[List[List[float]]] = Field(
        None, description="Normalized face mesh landmarks (468 or 478 x 3), null when no face"
    )
    timestamp: Optional[float] = Field(None, description="Frame timestamp in seconds")


class StreamFrameResponse(BaseModel):
    """Response after processing a frame"""
    processed: bool
    risk_score: float
    flags: List[Dict[str, Any]]
    frame_count: Optional[int] = None
    quality_issues: Optional[List[str]] = None
    detections: Optional[Dict[str, Any]] = None


class TabVisibilityRequest(BaseModel):
    """Request to record a tab visibility change"""
    session_id: str
    hidden: bool


class TabVisibilityResponse(BaseModel):
    """Response after recording tab visibility"""
    recorded: bool
    tab_hidden: bool


class FullscreenRequest(BaseModel):
    """Request to record entering or leaving fullscreen"""
    session_id: str
    active: bool


class FullscreenResponse(BaseModel):
    """Response after recording fullscreen state"""
    recorded: bool
    fullscreen_exited: bool


class IntegrityViolationRequest(BaseModel):
    """A browser-side violation such as copy-paste or opening dev tools"""
    session_id: str
    violation_type: str = Field(..., min_length=1)
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[float] = None


class IntegrityViolationResponse(BaseModel):
    """Flag raised for a reported violation"""
    flag: Optional[Dict[str, Any]] = None
    risk_score: float


class CalibrationPointRequest(BaseModel):
    """A calibration dot and, optionally, the gaze observed while it was shown"""
    session_id: str
    screen_x: float
    screen_y: float
    gaze_x: Optional[float] = None
    gaze_y: Optional[float] = None


class CalibrationPointResponse(BaseModel):
    accepted: bool
    calibrated: bool
    points: int


class SaveCalibrationRequest(BaseModel):
    session_id: str
    profile_id: Optional[str] = None


class SaveCalibrationResponse(BaseModel):
    profile_id: str
    calibrated: bool
    quality_score: float
    point_count: int


class StopSessionRequest(BaseModel):
    """Request to stop a proctoring session"""
    session_id: str


class StopSessionResponse(BaseModel):
    """Final proctoring results"""
    session_id: str
    risk_score: float
    peak_risk_score: float
    risk_level: str
    flag_counts: Dict[str, int]
    review_required: bool
    frames_processed: int
    duration_seconds: float


class SessionStatusResponse(BaseModel):
    """Current session status"""
    session_id: str
    is_active: bool
    frames_processed: int
    risk_score: float
    under_review: bool
    active_conditions: List[str]
    calibrated: bool
    duration_seconds: float


# ============== Helpers ==============

def _get_active_session(session_id: str) -> ProctorSession:
    session = _sessions.get(session_id)
    
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    
    if not session.is_active:
        raise HTTPException(status_code=400, detail="Session is not active")
    
    return session


def _decode_frame(frame_base64: str) -> np.ndarray:
    """Decode a base64 JPEG/PNG into a BGR image"""
    try:
        frame_bytes = base64.b64decode(frame_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid frame data")
    
    if not frame_bytes:
        raise HTTPException(status_code=400, detail="Invalid frame data")
    
    frame_array = np.frombuffer(frame_bytes, dtype=np.uint8)
    frame = cv2.imdecode(frame_array, cv2.IMREAD_COLOR)
    
    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid frame data")
    
    return frame


# ============== API Endpoints ==============

@router.post("/start", response_model=StartSessionResponse)
async def start_session(request: StartSessionRequest):
    """
    Start a new proctoring session.
    
    Creates a session that fuses per-frame signals into flags and a
    risk score as frames are streamed from the webcam.
    """
    try:
        session = ProctorSession(
            assessment_id=request.assessment_id,
            student_id=request.student_id,
            profile_store=_profile_store
        )
        
        calibrated = False
        if request.calibration_profile_id:
            calibrated = session.load_calibration(request.calibration_profile_id)
        
        _sessions[session.id] = session
        
        logger.info(f"Started proctoring session: {session.id}")
        
        return StartSessionResponse(
            session_id=session.id,
            status="active",
            message="Proctoring session started successfully",
            calibrated=calibrated
        )
        
    except Exception as e:
        logger.error(f"Failed to start proctoring session: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/stream", response_model=StreamFrameResponse)
async def stream_frame(request: StreamFrameRequest):
    """
    Process a single webcam frame.
    
    Decodes the base64 frame, runs the analyzers and the flagging engine,
    and returns the current risk score and any flags emitted by this frame.
    """
    session = _get_active_session(request.session_id)
    frame = _decode_frame(request.frame_base64)
    
    try:
        result = session.process_frame(frame, request.landmarks, request.timestamp)
    except InvalidLandmarksError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidFrameError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Frame processing error: {e}")
        raise HTTPException(status_code=500, detail=f"Frame processing error: {str(e)}")
    
    return StreamFrameResponse(
        processed=result.get("processed", False),
        risk_score=result.get("risk_score", 0.0),
        flags=result.get("flags", []),
        frame_count=result.get("frame_count"),
        quality_issues=result.get("quality_issues"),
        detections=result.get("detections")
    )


@router.post("/tab-visibility", response_model=TabVisibilityResponse)
async def record_tab_visibility(request: TabVisibilityRequest):
    """
    Record a tab visibility change.
    
    Called when the frontend detects that the exam tab was hidden or shown
    again. The state is applied to every following frame.
    """
    session = _get_active_session(request.session_id)
    session.set_tab_hidden(request.hidden)
    
    return TabVisibilityResponse(recorded=True, tab_hidden=session.tab_hidden)


@router.post("/fullscreen", response_model=FullscreenResponse)
async def record_fullscreen(request: FullscreenRequest):
    """
    Record a fullscreen change.
    
    Leaving fullscreen counts as a violation on every following frame until
    the frontend reports fullscreen again.
    """
    session = _get_active_session(request.session_id)
    session.set_fullscreen(request.active)
    
    return FullscreenResponse(recorded=True, fullscreen_exited=session.fullscreen_exited)


@router.post("/integrity-violation", response_model=IntegrityViolationResponse)
async def report_integrity_violation(request: IntegrityViolationRequest):
    """Flag a browser-side integrity violation immediately"""
    session = _get_active_session(request.session_id)
    flag = session.report_integrity_violation(
        request.violation_type,
        details=request.details,
        timestamp=request.timestamp
    )
    
    return IntegrityViolationResponse(flag=flag, risk_score=session.engine.get_risk_score())


@router.post("/calibration/point", response_model=CalibrationPointResponse)
async def add_calibration_point(request: CalibrationPointRequest):
    """
    Add a calibration point.
    
    Without gaze_x/gaze_y the most recent gaze estimate of the session is used.
    """
    session = _get_active_session(request.session_id)
    
    gaze_xy = None
    if request.gaze_x is not None and request.gaze_y is not None:
        gaze_xy = (request.gaze_x, request.gaze_y)
    
    result = session.add_calibration_point(request.screen_x, request.screen_y, gaze_xy)
    
    return CalibrationPointResponse(**result)


@router.post("/calibration/save", response_model=SaveCalibrationResponse)
async def save_calibration(request: SaveCalibrationRequest):
    """Store the session's calibration so later sessions can load it"""
    session = _get_active_session(request.session_id)
    
    if not session.gaze_estimator.is_calibrated:
        raise HTTPException(status_code=400, detail="Session is not calibrated")
    
    profile = session.save_calibration(request.profile_id)
    
    return SaveCalibrationResponse(
        profile_id=profile.id,
        calibrated=True,
        quality_score=profile.quality_score,
        point_count=profile.point_count
    )


@router.post("/stop", response_model=StopSessionResponse)
async def stop_session(request: StopSessionRequest, background_tasks: BackgroundTasks):
    """
    Stop a proctoring session and get final results.
    
    Stops the engine, returns the final risk score and flag counts, and
    cleans up session resources.
    """
    session = _sessions.get(request.session_id)
    
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    
    try:
        result = session.finalize()
        
        background_tasks.add_task(_cleanup_session, request.session_id)
        
        return StopSessionResponse(
            session_id=result["session_id"],
            risk_score=result["risk_score"],
            peak_risk_score=result["peak_risk_score"],
            risk_level=result["risk_level"],
            flag_counts=result["flag_counts"],
            review_required=result["review_required"],
            frames_processed=result["frames_processed"],
            duration_seconds=result["duration_seconds"]
        )
        
    except Exception as e:
        logger.error(f"Error stopping session: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status/{session_id}", response_model=SessionStatusResponse)
async def get_session_status(session_id: str):
    """
    Get current status of a proctoring session.
    """
    session = _sessions.get(session_id)
    
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    
    return SessionStatusResponse(**session.get_status())


@router.get("/health")
async def health():
    """Proctoring module health"""
    return {
        "status": "healthy",
        "active_sessions": sum(1 for s in _sessions.values() if s.is_active),
        "calibration_profiles": len(_profile_store)
    }


def _cleanup_session(session_id: str):
    """Drop a finalized session from memory"""
    if _sessions.pop(session_id, None) is not None:
        logger.info(f"Cleaned up session: {session_id}")
