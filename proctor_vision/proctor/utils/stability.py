"""
Stability Tracker - Bounded rolling history with a normalized stability score

One implementation serves lighting (histogram + mean + variance), shadow
(gradient mean + variance) and head pose (angle vector), so a stability of
0.8 means the same thing everywhere.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

Level = Union[float, np.ndarray]


@dataclass(frozen=True)
class StabilitySample:
    """
    One measurement fed to a tracker.
    
    level: scalar mean or vector (e.g. yaw/pitch/roll)
    spread: optional variance-like measure
    histogram: optional distribution compared bin-by-bin
    """
    level: Level
    spread: Optional[float] = None
    histogram: Optional[np.ndarray] = None


@dataclass(frozen=True)
class TrackedSample:
    """History entry: the sample, the stability it scored, and caller payload"""
    sample: StabilitySample
    stability: float
    payload: Any = None


def chi_square_distance(current: np.ndarray, previous: np.ndarray) -> float:
    """Chi-square-like distance between two histograms of equal length"""
    a = np.asarray(current, dtype=np.float64)
    b = np.asarray(previous, dtype=np.float64)
    total = a + b
    mask = total > 0
    return float(np.sum((a[mask] - b[mask]) ** 2 / total[mask]))


class StabilityTracker:
    """
    Keeps the last `window_size` samples and scores how much a new sample
    departs from the recent ones.
    
    Score components, each saturating as max(0, 1 - diff / scale):
    - level: mean distance to the last `recent_samples` levels
    - spread: mean distance to the last `recent_samples` spreads
    - histogram: chi-square distance to the most recent histogram
    
    Components missing from either side are skipped and the remaining
    weights renormalized. With fewer than two stored samples the score is 1.0.
    """
    
    DEFAULT_WINDOW_SIZE = 30
    DEFAULT_RECENT_SAMPLES = 5
    
    DEFAULT_WEIGHTS: Dict[str, float] = {
        "level": 1.0,
        "spread": 1.0,
        "histogram": 1.0
    }
    
    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        recent_samples: int = DEFAULT_RECENT_SAMPLES,
        level_scale: float = 50.0,
        spread_scale: float = 1000.0,
        histogram_scale: float = 10000.0,
        weights: Dict[str, float] = None
    ):
        """
        Initialize tracker.
        
        Args:
            window_size: Maximum number of stored samples (FIFO eviction)
            recent_samples: How many recent samples the level/spread terms use
            level_scale: Level difference that drives the level term to 0
            spread_scale: Spread difference that drives the spread term to 0
            histogram_scale: Chi-square distance that drives the histogram term to 0
            weights: Optional dict overriding component weights
        """
        if window_size < 2:
            raise ValueError("window_size must be at least 2")
        
        self.window_size = window_size
        self.recent_samples = max(1, recent_samples)
        self.level_scale = level_scale
        self.spread_scale = spread_scale
        self.histogram_scale = histogram_scale
        
        self.weights = self.DEFAULT_WEIGHTS.copy()
        if weights:
            self.weights.update(weights)
        
        self._history: Deque[TrackedSample] = deque(maxlen=window_size)
    
    def __len__(self) -> int:
        return len(self._history)
    
    @property
    def history(self) -> List[TrackedSample]:
        return list(self._history)
    
    @property
    def latest(self) -> Optional[TrackedSample]:
        return self._history[-1] if self._history else None
    
    def score(self, sample: Union[StabilitySample, float]) -> float:
        """Score a sample against the stored history without storing it"""
        sample = self._as_sample(sample)
        
        if len(self._history) < 2:
            return 1.0
        
        recent = list(self._history)[-self.recent_samples:]
        terms: Dict[str, float] = {}
        
        level_diffs = [
            self._distance(sample.level, entry.sample.level) for entry in recent
        ]
        terms["level"] = self._saturate(float(np.mean(level_diffs)), self.level_scale)
        
        spreads = [e.sample.spread for e in recent if e.sample.spread is not None]
        if sample.spread is not None and spreads:
            spread_diff = float(np.mean([abs(sample.spread - s) for s in spreads]))
            terms["spread"] = self._saturate(spread_diff, self.spread_scale)
        
        previous_histogram = recent[-1].sample.histogram
        if sample.histogram is not None and previous_histogram is not None:
            distance = chi_square_distance(sample.histogram, previous_histogram)
            terms["histogram"] = self._saturate(distance, self.histogram_scale)
        
        total_weight = sum(self.weights.get(name, 0.0) for name in terms)
        if total_weight <= 0:
            return 1.0
        
        stability = sum(self.weights.get(name, 0.0) * value for name, value in terms.items())
        return float(min(1.0, max(0.0, stability / total_weight)))
    
    def observe(self, sample: Union[StabilitySample, float], payload: Any = None) -> float:
        """
        Score a sample, then append it to the history.
        
        Args:
            sample: New measurement
            payload: Optional caller data stored alongside the sample
            
        Returns:
            Stability score in [0, 1]
        """
        sample = self._as_sample(sample)
        stability = self.score(sample)
        self._history.append(TrackedSample(sample, stability, payload))
        return stability
    
    def reset(self):
        """Drop all stored samples"""
        self._history.clear()
    
    @staticmethod
    def _as_sample(sample: Union[StabilitySample, float]) -> StabilitySample:
        if isinstance(sample, StabilitySample):
            return sample
        return StabilitySample(level=sample)
    
    @staticmethod
    def _distance(a: Level, b: Level) -> float:
        diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
        return float(np.linalg.norm(diff))
    
    @staticmethod
    def _saturate(diff: float, scale: float) -> float:
        if scale <= 0:
            return 1.0 if diff == 0 else 0.0
        return max(0.0, 1.0 - diff / scale)
