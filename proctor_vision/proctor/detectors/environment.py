"""
Environment Analyzer - Lighting and shadow trust scoring for a video frame

Lighting: luminance histogram, mean, variance and a bimodal backlighting test.
Shadow: Sobel gradient statistics. Both keep a rolling stability history.
"""

import time
import logging
import numpy as np
from typing import Dict, Any, List, Optional

from ..types import EnvironmentAnalysis, LightingAnalysis, ShadowAnalysis
from ..utils.frame_quality import sobel_magnitude, to_luma
from ..utils.stability import StabilitySample, StabilityTracker

logger = logging.getLogger(__name__)


class EnvironmentAnalyzer:
    """
    Scores how trustworthy the capture environment is.
    
    overall = 0.4 * (1 - backlighting)
            + 0.3 * (0.3 if shadow anomaly else 1.0)
            + 0.3 * mean(lighting stability, shadow stability)
    """
    
    HISTOGRAM_BINS = 256
    
    # Backlighting: luminance bands and peak/valley parameters
    DARK_BAND_MAX = 85
    BRIGHT_BAND_MIN = 170
    PEAK_MIN_FRACTION = 0.01
    VALLEY_BASELINE = 0.3
    
    SCORE_WEIGHTS: Dict[str, float] = {
        "lighting": 0.4,
        "shadow": 0.3,
        "stability": 0.3
    }
    ANOMALY_SHADOW_SCORE = 0.3
    
    # Anomaly triggers and warning thresholds
    THRESHOLDS: Dict[str, float] = {
        "gradient_mean": 10.0,
        "spatial_variance": 500.0,
        "shadow_stability_floor": 0.6,
        "backlighting_warning": 0.7,
        "lighting_stability_warning": 0.5,
        "shadow_stability_warning": 0.5,
        "variance_warning": 2000.0
    }
    
    BASELINE_MIN_STABILITY = 0.7
    
    def __init__(
        self,
        window_size: int = StabilityTracker.DEFAULT_WINDOW_SIZE,
        recent_samples: int = StabilityTracker.DEFAULT_RECENT_SAMPLES,
        thresholds: Dict[str, float] = None
    ):
        """
        Initialize environment analyzer.
        
        Args:
            window_size: Lighting/shadow history size
            recent_samples: Samples compared by the stability score
            thresholds: Optional dict overriding THRESHOLDS
        """
        self.thresholds = self.THRESHOLDS.copy()
        if thresholds:
            self.thresholds.update(thresholds)
        
        self._lighting = StabilityTracker(
            window_size=window_size,
            recent_samples=recent_samples,
            level_scale=50.0,
            spread_scale=1000.0,
            histogram_scale=10000.0
        )
        self._shadow = StabilityTracker(
            window_size=window_size,
            recent_samples=recent_samples,
            level_scale=20.0,
            spread_scale=100.0
        )
        self._disposed = False
    
    def analyze_frame(self, frame: np.ndarray, timestamp: Optional[float] = None) -> EnvironmentAnalysis:
        """
        Analyze lighting and shadows in a frame.
        
        Args:
            frame: BGR (or grayscale) image
            timestamp: Frame timestamp in seconds (defaults to now)
            
        Returns:
            EnvironmentAnalysis
            
        Raises:
            InvalidFrameError: if the frame is missing or not an image
        """
        timestamp = time.time() if timestamp is None else timestamp
        gray = to_luma(frame)
        
        lighting = self._analyze_lighting(gray)
        shadow = self._analyze_shadow(gray)
        
        overall = self._overall_score(lighting, shadow)
        warnings = self._generate_warnings(lighting, shadow)
        
        if warnings:
            logger.debug(f"Environment warnings: {warnings}")
        
        return EnvironmentAnalysis(
            lighting=lighting,
            shadow=shadow,
            overall_score=overall,
            warnings=warnings,
            timestamp=timestamp
        )
    
    def _analyze_lighting(self, gray: np.ndarray) -> LightingAnalysis:
        histogram = np.bincount(gray.ravel(), minlength=self.HISTOGRAM_BINS).astype(np.float64)
        mean = float(gray.mean())
        variance = float(gray.var())
        
        sample = StabilitySample(level=mean, spread=variance, histogram=histogram)
        stability = self._lighting.score(sample)
        
        analysis = LightingAnalysis(
            histogram=histogram,
            mean=mean,
            variance=variance,
            stability=stability,
            backlighting_severity=self.backlighting_severity(histogram)
        )
        
        if not self._disposed:
            self._lighting.observe(sample, payload=analysis)
        
        return analysis
    
    def _analyze_shadow(self, gray: np.ndarray) -> ShadowAnalysis:
        magnitude = sobel_magnitude(gray)
        
        if magnitude.size == 0:
            gradient_mean, spatial_variance = 0.0, 0.0
        else:
            gradient_mean = float(magnitude.mean())
            spatial_variance = float(magnitude.var())
        
        sample = StabilitySample(level=gradient_mean, spread=spatial_variance)
        stability = self._shadow.score(sample)
        if not self._disposed:
            self._shadow.observe(sample)
        
        anomaly = (
            gradient_mean > self.thresholds["gradient_mean"]
            or spatial_variance > self.thresholds["spatial_variance"]
            or stability < self.thresholds["shadow_stability_floor"]
        )
        
        return ShadowAnalysis(
            gradient_magnitude=gradient_mean,
            spatial_variance=spatial_variance,
            stability=stability,
            anomaly_detected=bool(anomaly)
        )
    
    def backlighting_severity(self, histogram: np.ndarray) -> float:
        """
        Severity in [0, 1] of a bimodal (dark foreground, bright background)
        luminance distribution.
        """
        total = float(histogram.sum())
        if total <= 0:
            return 0.0
        
        center = histogram[1:-1]
        is_peak = (
            (center > histogram[:-2])
            & (center > histogram[2:])
            & (center > total * self.PEAK_MIN_FRACTION)
        )
        peaks = np.nonzero(is_peak)[0] + 1
        
        dark = peaks[peaks < self.DARK_BAND_MAX]
        bright = peaks[peaks > self.BRIGHT_BAND_MIN]
        if len(dark) == 0 or len(bright) == 0:
            return 0.0
        
        dark_peak = histogram[dark].max()
        bright_peak = histogram[bright].max()
        peak_ratio = min(dark_peak, bright_peak) / max(dark_peak, bright_peak)
        
        mid_range = histogram[self.DARK_BAND_MAX:self.BRIGHT_BAND_MIN].sum()
        valley_depth = 1.0 - (mid_range / total) / self.VALLEY_BASELINE
        
        return float(min(1.0, max(0.0, peak_ratio * valley_depth * 2)))
    
    def _overall_score(self, lighting: LightingAnalysis, shadow: ShadowAnalysis) -> float:
        shadow_score = self.ANOMALY_SHADOW_SCORE if shadow.anomaly_detected else 1.0
        stability = (lighting.stability + shadow.stability) / 2
        
        score = (
            self.SCORE_WEIGHTS["lighting"] * (1.0 - lighting.backlighting_severity)
            + self.SCORE_WEIGHTS["shadow"] * shadow_score
            + self.SCORE_WEIGHTS["stability"] * stability
        )
        return float(min(1.0, max(0.0, score)))
    
    def _generate_warnings(self, lighting: LightingAnalysis, shadow: ShadowAnalysis) -> List[str]:
        warnings = []
        
        if lighting.backlighting_severity > self.thresholds["backlighting_warning"]:
            warnings.append("Severe backlighting detected. Please adjust your position or lighting.")
        
        if lighting.stability < self.thresholds["lighting_stability_warning"]:
            warnings.append("Unstable lighting conditions. Please ensure consistent lighting.")
        
        if shadow.anomaly_detected:
            warnings.append("Shadow anomalies detected. Please check for objects casting shadows.")
        
        if shadow.stability < self.thresholds["shadow_stability_warning"]:
            warnings.append("Unstable shadow conditions. Please minimize movement of objects around you.")
        
        if lighting.variance > self.thresholds["variance_warning"]:
            warnings.append("High lighting variance detected. Please ensure even lighting across your face.")
        
        return warnings
    
    def get_baseline_lighting(self) -> Optional[LightingAnalysis]:
        """
        Average of stored lighting analyses with stability above 0.7.
        
        Falls back to the most recent analysis when none qualifies and
        returns None when there is no history.
        """
        history: List[LightingAnalysis] = [entry.payload for entry in self._lighting.history]
        if not history:
            return None
        
        stable = [h for h in history if h.stability > self.BASELINE_MIN_STABILITY]
        if not stable:
            return history[-1]
        
        return LightingAnalysis(
            histogram=np.mean([h.histogram for h in stable], axis=0),
            mean=float(np.mean([h.mean for h in stable])),
            variance=float(np.mean([h.variance for h in stable])),
            stability=float(np.mean([h.stability for h in stable])),
            backlighting_severity=float(np.mean([h.backlighting_severity for h in stable]))
        )
    
    def get_stats(self) -> Dict[str, Any]:
        return {
            "lighting_history": len(self._lighting),
            "shadow_history": len(self._shadow),
            "disposed": self._disposed
        }
    
    def reset(self):
        """Clear lighting and shadow history"""
        self._lighting.reset()
        self._shadow.reset()
    
    def dispose(self):
        """Clear history and stop recording further frames"""
        self.reset()
        self._disposed = True
