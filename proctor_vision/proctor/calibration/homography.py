"""
Gaze Calibration Model - Homography from gaze-vector space to screen pixels

Solved with a normalized direct linear transform (SVD least squares) over
every collected pair. The solve is a single decomposition, never an
open-ended iteration.
"""

import time
import logging
import numpy as np
from typing import Dict, List, Optional, Tuple

from .store import CalibrationProfile

logger = logging.getLogger(__name__)


def _normalizing_transform(points: np.ndarray) -> Optional[np.ndarray]:
    """Similarity transform moving points to the origin with mean distance sqrt(2)"""
    centroid = points.mean(axis=0)
    mean_distance = np.mean(np.linalg.norm(points - centroid, axis=1))
    if not np.isfinite(mean_distance) or mean_distance < 1e-12:
        return None
    scale = np.sqrt(2) / mean_distance
    return np.array([
        [scale, 0, -scale * centroid[0]],
        [0, scale, -scale * centroid[1]],
        [0, 0, 1]
    ], dtype=np.float64)


def _apply(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    homogeneous = np.hstack([points, np.ones((len(points), 1))])
    projected = homogeneous @ matrix.T
    return projected[:, :2] / projected[:, 2:3]


def solve_homography(
    source: np.ndarray,
    target: np.ndarray,
    singular_ratio: float = 1e-9
) -> Optional[np.ndarray]:
    """
    Least-squares homography mapping source (n, 2) onto target (n, 2).
    
    Returns None when fewer than 4 pairs are given or the configuration is
    degenerate (coincident or collinear points, non-finite result).
    """
    if len(source) < 4 or len(source) != len(target):
        return None
    
    t_src = _normalizing_transform(source)
    t_dst = _normalizing_transform(target)
    if t_src is None or t_dst is None:
        return None
    
    src = _apply(t_src, source)
    dst = _apply(t_dst, target)
    
    rows = []
    for (x, y), (u, v) in zip(src, dst):
        rows.append([-x, -y, -1, 0, 0, 0, u * x, u * y, u])
        rows.append([0, 0, 0, -x, -y, -1, v * x, v * y, v])
    a = np.array(rows, dtype=np.float64)
    
    _, singular_values, vt = np.linalg.svd(a)
    # Second-smallest singular value near zero means the solution is not unique
    if singular_values[7] <= singular_ratio * singular_values[0]:
        return None
    
    normalized = vt[-1].reshape(3, 3)
    matrix = np.linalg.inv(t_dst) @ normalized @ t_src
    
    if abs(matrix[2, 2]) > 1e-12:
        matrix = matrix / matrix[2, 2]
    if not np.all(np.isfinite(matrix)) or abs(np.linalg.det(matrix)) < 1e-12:
        return None
    
    return matrix


class CalibrationModel:
    """
    Accumulates (screen point, gaze vector) pairs and maintains the homography.
    
    Becomes calibrated only once MIN_POINTS pairs exist and a solve succeeds.
    A failed solve keeps the previous homography and clears is_calibrated.
    Nothing here raises on bad calibration input.
    """
    
    MIN_POINTS = 4
    MAX_POINTS = 64
    
    # RMS reprojection error (pixels) at which quality reaches 0
    QUALITY_ERROR_SCALE = 50.0
    
    # Head orientation range (degrees) the calibration is trusted for
    DEFAULT_VALIDITY_BOUNDS: Dict[str, Tuple[float, float]] = {
        "yaw": (-25.0, 25.0),
        "pitch": (-20.0, 20.0)
    }
    
    def __init__(
        self,
        min_points: int = MIN_POINTS,
        max_points: int = MAX_POINTS,
        validity_bounds: Dict[str, Tuple[float, float]] = None
    ):
        self.min_points = max(self.MIN_POINTS, min_points)
        self.max_points = max(self.min_points, max_points)
        
        self.validity_bounds = dict(self.DEFAULT_VALIDITY_BOUNDS)
        if validity_bounds:
            self.validity_bounds.update(validity_bounds)
        
        self.homography = np.eye(3)
        self.is_calibrated = False
        self.quality = 0.0
        self.rms_error: Optional[float] = None
        self.timestamp: Optional[float] = None
        
        self._screen_points: List[Tuple[float, float]] = []
        self._gaze_points: List[Tuple[float, float]] = []
    
    @property
    def point_count(self) -> int:
        return len(self._screen_points)
    
    def add_point(self, screen_point: Tuple[float, float], gaze_xy: Tuple[float, float]) -> bool:
        """
        Record a calibration pair and re-solve once enough pairs exist.
        
        Args:
            screen_point: Target (x, y) in screen pixels
            gaze_xy: Gaze vector (x, y) components observed for that target
            
        Returns:
            Whether the model is calibrated after this point
        """
        try:
            sx, sy = float(screen_point[0]), float(screen_point[1])
            gx, gy = float(gaze_xy[0]), float(gaze_xy[1])
        except (TypeError, ValueError, IndexError) as e:
            logger.debug(f"Ignoring malformed calibration point: {e}")
            return self.is_calibrated
        
        if not all(np.isfinite([sx, sy, gx, gy])):
            logger.debug("Ignoring non-finite calibration point")
            return self.is_calibrated
        
        if len(self._screen_points) >= self.max_points:
            self._screen_points.pop(0)
            self._gaze_points.pop(0)
        
        self._screen_points.append((sx, sy))
        self._gaze_points.append((gx, gy))
        
        if self.point_count >= self.min_points:
            self._solve()
        
        return self.is_calibrated
    
    def _solve(self):
        source = np.array(self._gaze_points, dtype=np.float64)
        target = np.array(self._screen_points, dtype=np.float64)
        
        matrix = solve_homography(source, target)
        
        if matrix is None:
            logger.debug(f"Calibration solve failed with {self.point_count} points")
            self.is_calibrated = False
            return
        
        with np.errstate(divide="ignore", invalid="ignore"):
            errors = np.linalg.norm(_apply(matrix, source) - target, axis=1)
        rms_error = float(np.sqrt(np.mean(errors ** 2)))
        if not np.isfinite(rms_error):
            logger.debug("Calibration solve produced a non-finite reprojection")
            self.is_calibrated = False
            return

        self.rms_error = rms_error
        self.quality = max(0.0, 1.0 - self.rms_error / self.QUALITY_ERROR_SCALE)
        self.homography = matrix
        self.is_calibrated = True
        self.timestamp = time.time()
        
        logger.info(
            f"Calibration solved: points={self.point_count}, "
            f"rms_error={self.rms_error:.2f}px, quality={self.quality:.2f}"
        )
    
    def map(self, gaze_xy: Tuple[float, float]) -> Optional[Tuple[float, float]]:
        """
        Apply the homography to [x, y, 1] and de-homogenize.
        
        Returns None when the projective scale is degenerate.
        """
        vector = np.array([gaze_xy[0], gaze_xy[1], 1.0], dtype=np.float64)
        x, y, w = self.homography @ vector
        if abs(w) < 1e-9 or not np.isfinite([x, y, w]).all():
            return None
        return float(x / w), float(y / w)
    
    def reset(self):
        """Drop all pairs and return to the identity mapping"""
        self._screen_points.clear()
        self._gaze_points.clear()
        self.homography = np.eye(3)
        self.is_calibrated = False
        self.quality = 0.0
        self.rms_error = None
        self.timestamp = None
    
    def to_profile(self, profile_id: str) -> CalibrationProfile:
        """Serialize the current calibration"""
        return CalibrationProfile(
            id=profile_id,
            homography=self.homography.tolist(),
            validity_bounds={k: list(v) for k, v in self.validity_bounds.items()},
            quality_score=self.quality,
            timestamp=self.timestamp if self.timestamp is not None else time.time(),
            point_count=self.point_count
        )
    
    @classmethod
    def from_profile(cls, profile: CalibrationProfile) -> "CalibrationModel":
        """
        Restore a calibration from a stored profile.
        
        A profile with a malformed or singular homography yields an
        uncalibrated model.
        """
        model = cls(validity_bounds={
            k: (float(v[0]), float(v[1])) for k, v in profile.validity_bounds.items()
        })
        try:
            matrix = np.array(profile.homography, dtype=np.float64)
        except (TypeError, ValueError):
            matrix = None
        
        if (
            matrix is None
            or matrix.shape != (3, 3)
            or not np.all(np.isfinite(matrix))
            or abs(np.linalg.det(matrix)) < 1e-12
        ):
            logger.warning(f"Calibration profile {profile.id} has an unusable homography")
            return model
        
        model.homography = matrix
        model.is_calibrated = True
        model.quality = profile.quality_score
        model.timestamp = profile.timestamp
        return model
