"""
Calibration Profile Store - In-memory profiles keyed by identifier
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CalibrationProfile:
    """Serialized gaze calibration"""
    id: str
    homography: List[List[float]]
    validity_bounds: Dict[str, List[float]] = field(default_factory=dict)
    quality_score: float = 0.0
    timestamp: float = 0.0
    point_count: int = 0
    
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationProfile":
        return cls(
            id=str(data["id"]),
            homography=data["homography"],
            validity_bounds=dict(data.get("validity_bounds") or {}),
            quality_score=float(data.get("quality_score", 0.0)),
            timestamp=float(data.get("timestamp", 0.0)),
            point_count=int(data.get("point_count", 0))
        )


class CalibrationProfileStore:
    """
    Keeps calibration profiles in memory (replace with Redis/DB for production).
    """
    
    def __init__(self):
        self._profiles: Dict[str, CalibrationProfile] = {}
    
    def save(self, profile: CalibrationProfile):
        self._profiles[profile.id] = profile
        logger.info(f"Stored calibration profile {profile.id} (quality={profile.quality_score:.2f})")
    
    def get(self, profile_id: str) -> Optional[CalibrationProfile]:
        return self._profiles.get(profile_id)
    
    def most_recent(self) -> Optional[CalibrationProfile]:
        """Profile with the latest timestamp, or None when the store is empty"""
        if not self._profiles:
            return None
        return max(self._profiles.values(), key=lambda p: p.timestamp)
    
    def delete(self, profile_id: str) -> bool:
        return self._profiles.pop(profile_id, None) is not None
    
    def __len__(self) -> int:
        return len(self._profiles)
