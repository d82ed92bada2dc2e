"""
Proctor Vision Module

Fuses per-frame facial signals into exam-integrity flags:
- Head pose (yaw, pitch, roll) from face mesh landmarks
- Gaze direction and on-screen point, with optional calibration
- Lighting and shadow stability of the environment
- Secondary faces and device-like objects
- Tab visibility reported by the client

Produces a decaying risk score (0-100) for each session.
"""

from .api import router
from .scoring import ProctorEngine, RiskScore
from .session import ProctorSession
from .types import FlagEvent, FlagType, Severity, SignalBundle

__all__ = [
    "router",
    "ProctorEngine",
    "RiskScore",
    "ProctorSession",
    "FlagEvent",
    "FlagType",
    "Severity",
    "SignalBundle"
]
