"""
Frame Quality Checker - Validates frames and provides shared pixel helpers
"""

import cv2
import numpy as np
import logging
from typing import Dict, Any, Tuple

from ..exceptions import InvalidFrameError

logger = logging.getLogger(__name__)

# Issues that make a frame unusable for analysis
BLOCKING_ISSUES = ("empty_frame", "too_small")


def ensure_frame(frame: Any) -> np.ndarray:
    """
    Check that a frame is a non-empty grayscale, BGR or BGRA image.
    
    Raises:
        InvalidFrameError: if the frame cannot be analyzed
    """
    if frame is None or not isinstance(frame, np.ndarray):
        raise InvalidFrameError("Frame must be a numpy array")
    if frame.size == 0:
        raise InvalidFrameError("Frame is empty")
    if frame.ndim == 3 and frame.shape[2] in (3, 4):
        return frame
    if frame.ndim == 2:
        return frame
    raise InvalidFrameError(f"Unsupported frame shape: {frame.shape}")


def to_luma(frame: np.ndarray) -> np.ndarray:
    """
    Convert a frame to 8-bit luminance.
    
    Uses the standard luma weights (0.299 R, 0.587 G, 0.114 B) with rounding.
    """
    frame = ensure_frame(frame)
    if frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)
    if frame.ndim == 2:
        return frame
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


def sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """Sobel gradient magnitude with the 1px border removed"""
    gray = gray.astype(np.float32)
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    magnitude = cv2.magnitude(gx, gy)
    return magnitude[1:-1, 1:-1]


def check_frame_quality(
    frame: np.ndarray,
    min_brightness: float = 40,
    max_brightness: float = 220,
    min_blur_score: float = 50,
    min_size: Tuple[int, int] = (32, 32)
) -> Dict[str, Any]:
    """
    Check frame quality for proctoring.
    
    Args:
        frame: BGR image from OpenCV
        min_brightness: Minimum average brightness (0-255)
        max_brightness: Maximum average brightness (0-255)
        min_blur_score: Minimum Laplacian variance for blur detection
        min_size: Minimum (width, height) dimensions
        
    Returns:
        Dict with:
            - is_valid: bool (no blocking issues)
            - issues: List of quality issues
            - brightness: float (0-255)
            - blur_score: float
            - dimensions: Tuple[int, int]
    """
    try:
        frame = ensure_frame(frame)
    except InvalidFrameError:
        return {
            "is_valid": False,
            "issues": ["empty_frame"],
            "brightness": 0.0,
            "blur_score": 0.0,
            "dimensions": (0, 0)
        }
    
    issues = []
    height, width = frame.shape[:2]
    dimensions = (width, height)
    
    if width < min_size[0] or height < min_size[1]:
        issues.append("too_small")
    
    gray = to_luma(frame)
    
    brightness = float(np.mean(gray))
    if brightness < min_brightness:
        issues.append("too_dark")
    elif brightness > max_brightness:
        issues.append("too_bright")
    
    blur_score = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    if blur_score < min_blur_score:
        issues.append("too_blurry")
    
    return {
        "is_valid": not any(issue in BLOCKING_ISSUES for issue in issues),
        "issues": issues,
        "brightness": brightness,
        "blur_score": blur_score,
        "dimensions": dimensions
    }
