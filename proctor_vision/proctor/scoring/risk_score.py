"""
Risk Score - Decaying penalty accumulator owned by the flagging engine
"""

import logging
from typing import Dict, Optional

from ..types import FlagType, Severity

logger = logging.getLogger(__name__)


class RiskScore:
    """
    Risk score in [0, max_score].
    
    Each emitted flag adds its type's penalty once, scaled by severity and
    confidence. Ongoing soft conditions additionally accrue points per second
    while their episode lasts. Once `clean_window` seconds pass without any
    penalty, the score decays linearly at `decay_per_second`. Crossing the
    review threshold marks the session for human review (sticky until reset).
    """
    
    # Penalty configuration (points per flag)
    PENALTIES: Dict[FlagType, float] = {
        FlagType.EYES_OFF: 3.0,
        FlagType.HEAD_POSE: 2.0,
        FlagType.FACE_MISSING: 4.0,
        FlagType.SHADOW_ANOMALY: 3.0,
        FlagType.DOWN_GLANCE: 2.0,
        FlagType.SECONDARY_FACE: 25.0,
        FlagType.DEVICE_LIKE: 25.0,
        FlagType.TAB_HIDDEN: 25.0,
        FlagType.FULLSCREEN_EXIT: 25.0,
        FlagType.INTEGRITY_VIOLATION: 25.0
    }
    
    # Points per second while an emitted episode is still violating
    ACCRUAL_RATES: Dict[FlagType, float] = {
        FlagType.EYES_OFF: 3.0,
        FlagType.FACE_MISSING: 4.0
    }
    
    HARD_MULTIPLIER = 1.5
    DEFAULT_DECAY_PER_SECOND = 1.0
    DEFAULT_MAX_SCORE = 100.0
    REVIEW_THRESHOLD = 60.0
    CLEAN_WINDOW = 5.0
    
    def __init__(
        self,
        penalties: Dict[FlagType, float] = None,
        decay_per_second: float = DEFAULT_DECAY_PER_SECOND,
        max_score: float = DEFAULT_MAX_SCORE,
        review_threshold: float = REVIEW_THRESHOLD,
        accrual_rates: Dict[FlagType, float] = None,
        hard_multiplier: float = HARD_MULTIPLIER,
        clean_window: float = CLEAN_WINDOW
    ):
        """
        Initialize risk score with optional custom penalties.
        
        Args:
            penalties: Optional dict overriding default penalties
            decay_per_second: Points removed per second of clean behavior
            max_score: Upper clamp
            review_threshold: Score at which review becomes required
            accrual_rates: Optional dict overriding per-second accrual rates
            hard_multiplier: Penalty multiplier for hard-severity flags
            clean_window: Seconds without penalties before decay starts
        """
        if decay_per_second < 0:
            raise ValueError("decay_per_second must not be negative")
        if max_score <= 0:
            raise ValueError("max_score must be positive")
        if clean_window < 0:
            raise ValueError("clean_window must not be negative")
        
        self.penalties = self.PENALTIES.copy()
        if penalties:
            self.penalties.update(penalties)
        
        self.accrual_rates = self.ACCRUAL_RATES.copy()
        if accrual_rates:
            self.accrual_rates.update(accrual_rates)
        
        self.decay_per_second = decay_per_second
        self.max_score = max_score
        self.review_threshold = review_threshold
        self.hard_multiplier = hard_multiplier
        self.clean_window = clean_window
        
        self._value = 0.0
        self._last_timestamp: Optional[float] = None
        self._last_penalty_at: Optional[float] = None
        self._peak = 0.0
        self._under_review = False
    
    @property
    def value(self) -> float:
        return self._value
    
    @property
    def peak(self) -> float:
        return self._peak
    
    @property
    def requires_review(self) -> bool:
        return self._under_review
    
    def decay_to(self, timestamp: float) -> float:
        """
        Apply decay for the clean time elapsed since the last call.
        
        Timestamps that go backwards are ignored.
        """
        if self._last_timestamp is not None and timestamp > self._last_timestamp:
            decay_from = self._last_timestamp
            if self._last_penalty_at is not None:
                decay_from = max(decay_from, self._last_penalty_at + self.clean_window)
            elapsed = timestamp - decay_from
            if elapsed > 0:
                self._value = max(0.0, self._value - self.decay_per_second * elapsed)
        if self._last_timestamp is None or timestamp > self._last_timestamp:
            self._last_timestamp = timestamp
        return self._value
    
    def penalty_for(
        self,
        flag_type: FlagType,
        severity: Severity = Severity.SOFT,
        confidence: float = 1.0
    ) -> float:
        """Points a flag is worth before clamping"""
        base = max(0.0, self.penalties.get(flag_type, 0.0))
        multiplier = self.hard_multiplier if severity is Severity.HARD else 1.0
        confidence = min(1.0, max(0.0, confidence))
        return base * multiplier * (0.5 + 0.5 * confidence)
    
    def apply(
        self,
        flag_type: FlagType,
        severity: Severity = Severity.SOFT,
        confidence: float = 1.0
    ) -> float:
        """
        Add the penalty for one flag.
        
        Returns:
            The penalty actually applied after clamping
        """
        return self._add(self.penalty_for(flag_type, severity, confidence))
    
    def accrue(self, flag_type: FlagType, seconds: float) -> float:
        """
        Add the per-second penalty of an ongoing condition.
        
        Returns:
            The penalty actually applied after clamping
        """
        rate = max(0.0, self.accrual_rates.get(flag_type, 0.0))
        if rate == 0.0 or seconds <= 0:
            return 0.0
        return self._add(rate * seconds)
    
    def _add(self, points: float) -> float:
        before = self._value
        self._value = min(self.max_score, self._value + points)
        self._peak = max(self._peak, self._value)
        self._last_penalty_at = self._last_timestamp
        
        if not self._under_review and self._value >= self.review_threshold:
            self._under_review = True
            logger.warning(f"Risk score {self._value:.1f} reached review threshold {self.review_threshold}")
        
        return self._value - before
    
    def get_level(self) -> str:
        """
        Get risk level for the current score.
        
        Returns:
            'low', 'medium', 'high', or 'critical'
        """
        if self._value >= self.review_threshold:
            return "critical"
        elif self._value >= self.review_threshold * 2 / 3:
            return "high"
        elif self._value >= self.review_threshold / 3:
            return "medium"
        return "low"
    
    def reset(self):
        self._value = 0.0
        self._last_timestamp = None
        self._last_penalty_at = None
        self._peak = 0.0
        self._under_review = False
