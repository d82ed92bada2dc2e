"""
Proctor Engine - Fuses per-frame signals into debounced integrity flags

Each monitored condition runs its own small state machine: a trigger
predicate, a violating-duration clock, a soft and a hard duration
threshold, and hysteresis so each severity tier fires at most once per
episode. Down-glances are counted by frequency instead of duration.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from ..types import EngineState, FlagEvent, FlagType, Severity, SignalBundle
from .risk_score import RiskScore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConditionRule:
    """
    Static configuration of one monitored condition.
    
    A tier whose duration is None is never emitted for this condition.
    """
    flag_type: FlagType
    soft_duration: Optional[float]
    hard_duration: Optional[float]
    
    def tier_for(self, duration: float) -> Optional[Severity]:
        if self.hard_duration is not None and duration >= self.hard_duration:
            return Severity.HARD
        if self.soft_duration is not None and duration >= self.soft_duration:
            return Severity.SOFT
        return None


@dataclass
class ConditionState:
    """Episode tracking for one monitored condition"""
    episode_start: Optional[float] = None
    last_violation: Optional[float] = None
    tier: Optional[Severity] = None
    last_accrual: Optional[float] = None
    
    @property
    def active(self) -> bool:
        return self.episode_start is not None
    
    @property
    def emitted(self) -> bool:
        return self.tier is not None
    
    def clear(self):
        self.episode_start = None
        self.last_violation = None
        self.tier = None
        self.last_accrual = None


class ProctorEngine:
    """
    Signal-fusion and flagging engine.
    
    Consumes one SignalBundle per frame and returns the FlagEvents emitted
    by that frame. Missing or malformed bundle fields leave the matching
    conditions untouched; a bundle without a usable timestamp is ignored.
    """
    
    SOFT_CONDITIONS = (
        FlagType.EYES_OFF,
        FlagType.HEAD_POSE,
        FlagType.FACE_MISSING,
        FlagType.SHADOW_ANOMALY
    )
    HARD_CONDITIONS = (
        FlagType.SECONDARY_FACE,
        FlagType.DEVICE_LIKE,
        FlagType.TAB_HIDDEN,
        FlagType.FULLSCREEN_EXIT
    )
    
    # Debounce per tier (seconds), overridden per condition below
    SOFT_DEBOUNCE = 0.3
    HARD_DEBOUNCE = 0.15
    
    SOFT_DURATIONS: Dict[FlagType, float] = {
        FlagType.EYES_OFF: 0.6,
        FlagType.FACE_MISSING: 1.0,
        FlagType.SHADOW_ANOMALY: 0.8
    }
    
    # Soft conditions escalate to a hard flag once sustained this long
    HARD_DURATIONS: Dict[FlagType, Optional[float]] = {
        FlagType.EYES_OFF: 10.0,
        FlagType.HEAD_POSE: 15.0,
        FlagType.FACE_MISSING: 10.0,
        FlagType.SHADOW_ANOMALY: 30.0,
        FlagType.TAB_HIDDEN: 0.0,
        FlagType.FULLSCREEN_EXIT: 0.0
    }
    
    # Clear time (seconds) before an emitted episode ends
    GRACE_PERIOD = 0.5
    
    LIMITS: Dict[str, float] = {
        "head_yaw": 20.0,
        "head_pitch": 15.0,
        "gaze_confidence": 0.5,
        "down_glance_pitch": -15.0,
        "down_glance_count": 3,
        "down_glance_window": 10.0
    }
    
    # Client-reported violations; anything unlisted is soft
    INTEGRITY_SEVERITIES: Dict[str, Severity] = {
        "copy-paste": Severity.HARD,
        "dev-tools": Severity.HARD,
        "right-click": Severity.SOFT
    }
    
    MAX_FLAG_HISTORY = 1000
    
    def __init__(
        self,
        soft_debounce: float = SOFT_DEBOUNCE,
        hard_debounce: float = HARD_DEBOUNCE,
        soft_durations: Dict[FlagType, float] = None,
        hard_durations: Dict[FlagType, Optional[float]] = None,
        grace_period: float = GRACE_PERIOD,
        limits: Dict[str, float] = None,
        risk: Optional[RiskScore] = None
    ):
        """
        Initialize the engine.
        
        Args:
            soft_debounce: Default violating duration before a soft flag
            hard_debounce: Default violating duration before a hard-tier condition flags
            soft_durations: Optional per-condition soft duration overrides
            hard_durations: Optional per-condition hard duration overrides
                (None disables escalation for a soft condition)
            grace_period: Clear time that ends an emitted episode
            limits: Optional dict overriding LIMITS
            risk: Risk score accumulator (a default one is created if omitted)
        """
        soft = self.SOFT_DURATIONS.copy()
        if soft_durations:
            soft.update(soft_durations)
        hard = self.HARD_DURATIONS.copy()
        if hard_durations:
            hard.update(hard_durations)
        
        self.rules: Dict[FlagType, ConditionRule] = {}
        for flag_type in self.SOFT_CONDITIONS:
            self.rules[flag_type] = ConditionRule(
                flag_type=flag_type,
                soft_duration=_non_negative(soft.get(flag_type, soft_debounce)),
                hard_duration=_non_negative(hard.get(flag_type))
            )
        for flag_type in self.HARD_CONDITIONS:
            self.rules[flag_type] = ConditionRule(
                flag_type=flag_type,
                soft_duration=None,
                hard_duration=_non_negative(hard.get(flag_type, hard_debounce))
            )
        
        self.grace_period = grace_period
        self.limits = self.LIMITS.copy()
        if limits:
            self.limits.update(limits)
        
        self.risk = risk or RiskScore()
        
        self._predicates: Dict[FlagType, Callable[[SignalBundle], Optional[bool]]] = {
            FlagType.EYES_OFF: self._eyes_off,
            FlagType.HEAD_POSE: self._head_pose_extreme,
            FlagType.FACE_MISSING: self._face_missing,
            FlagType.SHADOW_ANOMALY: self._shadow_anomaly,
            FlagType.SECONDARY_FACE: self._secondary_face,
            FlagType.DEVICE_LIKE: self._device_like,
            FlagType.TAB_HIDDEN: self._tab_hidden,
            FlagType.FULLSCREEN_EXIT: self._fullscreen_exited
        }
        self._states: Dict[FlagType, ConditionState] = {t: ConditionState() for t in self.rules}
        
        self._down_glances: Deque[float] = deque()
        self._looking_down = False
        
        self._history: Deque[FlagEvent] = deque(maxlen=self.MAX_FLAG_HISTORY)
        self._flag_count = 0
        self._last_timestamp: Optional[float] = None
        self._running = False
        self._disposed = False
    
    # ============== Lifecycle ==============
    
    @property
    def is_running(self) -> bool:
        return self._running
    
    def start(self):
        if self._disposed:
            logger.warning("Cannot start a disposed engine")
            return
        if self._running:
            return
        self._clear_conditions()
        self._running = True
        logger.info("Proctor engine started")
    
    def stop(self):
        if self._running:
            self._running = False
            logger.info("Proctor engine stopped")
    
    def dispose(self):
        """Stop and release all state. Safe to call repeatedly."""
        if self._disposed:
            return
        self.stop()
        self._clear_conditions()
        self._history.clear()
        self._disposed = True
    
    def _clear_conditions(self):
        for state in self._states.values():
            state.clear()
        self._down_glances.clear()
        self._looking_down = False
    
    # ============== Processing ==============
    
    def process_signals(self, bundle: Any) -> List[FlagEvent]:
        """
        Advance every condition with one frame's signals.
        
        Args:
            bundle: SignalBundle or a mapping with the same keys
            
        Returns:
            Flags emitted by this frame (usually empty)
        """
        if not self._running:
            return []
        
        bundle = SignalBundle.from_mapping(bundle)
        timestamp = bundle.timestamp
        
        if timestamp is None:
            logger.debug("Ignoring signal bundle without a timestamp")
            return []
        if self._last_timestamp is not None and timestamp < self._last_timestamp:
            logger.debug(f"Ignoring out-of-order bundle at {timestamp}")
            return []
        
        self._last_timestamp = timestamp
        self.risk.decay_to(timestamp)
        
        flags = []
        for flag_type, predicate in self._predicates.items():
            violating = predicate(bundle)
            if violating is None:
                continue
            event = self._advance(flag_type, violating, timestamp, bundle)
            if event is not None:
                flags.append(event)
        
        glance = self._count_down_glance(timestamp, bundle)
        if glance is not None:
            flags.append(glance)
        
        return flags
    
    def _advance(
        self,
        flag_type: FlagType,
        violating: bool,
        timestamp: float,
        bundle: SignalBundle
    ) -> Optional[FlagEvent]:
        state = self._states[flag_type]
        rule = self.rules[flag_type]
        
        if not violating:
            if state.active and (
                not state.emitted or timestamp - state.last_violation >= self.grace_period
            ):
                state.clear()
            state.last_accrual = None
            return None
        
        if not state.active:
            state.episode_start = timestamp
        state.last_violation = timestamp
        
        if state.emitted:
            self._accrue(flag_type, state, timestamp)
        
        duration = timestamp - state.episode_start
        tier = rule.tier_for(duration)
        if tier is None or state.tier is Severity.HARD or tier == state.tier:
            return None
        
        state.tier = tier
        state.last_accrual = timestamp
        return self._emit(flag_type, tier, timestamp, bundle, {"duration": round(duration, 3)})
    
    def _accrue(self, flag_type: FlagType, state: ConditionState, timestamp: float):
        """Charge an ongoing episode for the violating time since the last charge"""
        if state.last_accrual is not None:
            self.risk.accrue(flag_type, timestamp - state.last_accrual)
        state.last_accrual = timestamp
    
    def _count_down_glance(self, timestamp: float, bundle: SignalBundle) -> Optional[FlagEvent]:
        """Flag repeated downward glances within a sliding window"""
        pose = bundle.head_pose
        if pose is None:
            return None
        
        looking_down = pose.pitch < self.limits["down_glance_pitch"]
        if looking_down and not self._looking_down:
            self._down_glances.append(timestamp)
        self._looking_down = looking_down
        
        window = self.limits["down_glance_window"]
        while self._down_glances and self._down_glances[0] < timestamp - window:
            self._down_glances.popleft()
        
        if len(self._down_glances) < self.limits["down_glance_count"]:
            return None
        
        count = len(self._down_glances)
        self._down_glances.clear()
        return self._emit(
            FlagType.DOWN_GLANCE,
            Severity.SOFT,
            timestamp,
            bundle,
            {"glances": count, "window": window, "pitch": round(pose.pitch, 1)}
        )
    
    def report_integrity_violation(
        self,
        violation_type: str,
        timestamp: float,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[FlagEvent]:
        """
        Flag a browser-side integrity violation (copy-paste, dev-tools, ...).
        
        Each report is its own event; there is no debounce.
        
        Returns:
            The emitted FlagEvent, or None when the engine is not running
            or the timestamp is unusable
        """
        if not self._running:
            return None
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
            logger.debug(f"Ignoring integrity violation without a usable timestamp: {violation_type}")
            return None
        
        severity = self.INTEGRITY_SEVERITIES.get(violation_type, Severity.SOFT)
        self.risk.decay_to(timestamp)
        
        extra = dict(details or {})
        extra["violation_type"] = violation_type
        return self._emit(
            FlagType.INTEGRITY_VIOLATION,
            severity,
            float(timestamp),
            SignalBundle(timestamp=float(timestamp)),
            extra
        )
    
    def _emit(
        self,
        flag_type: FlagType,
        severity: Severity,
        timestamp: float,
        bundle: SignalBundle,
        extra: Optional[Dict[str, Any]] = None
    ) -> FlagEvent:
        self._flag_count += 1
        confidence = self._confidence(flag_type, bundle)
        penalty = self.risk.apply(flag_type, severity, confidence)
        
        details = self._details(flag_type, bundle)
        details.update(extra or {})
        details["penalty"] = round(penalty, 2)
        
        event = FlagEvent(
            id=f"flag_{self._flag_count}_{int(timestamp * 1000)}",
            timestamp=timestamp,
            type=flag_type,
            severity=severity,
            confidence=confidence,
            details=details
        )
        self._history.append(event)
        
        logger.info(
            f"Flag emitted: {event.type.value} ({event.severity.value}) "
            f"risk={self.risk.value:.1f}"
        )
        return event
    
    # ============== Condition predicates ==============
    # None means "no information this frame"
    
    def _eyes_off(self, bundle: SignalBundle) -> Optional[bool]:
        if bundle.face_detected is False:
            return False
        if bundle.eyes_on_screen is None and bundle.gaze is None:
            return None
        if bundle.eyes_on_screen is False:
            return True
        return bundle.gaze is not None and bundle.gaze.confidence < self.limits["gaze_confidence"]
    
    def _head_pose_extreme(self, bundle: SignalBundle) -> Optional[bool]:
        pose = bundle.head_pose
        if pose is None:
            return None
        return abs(pose.yaw) > self.limits["head_yaw"] or abs(pose.pitch) > self.limits["head_pitch"]
    
    def _face_missing(self, bundle: SignalBundle) -> Optional[bool]:
        if bundle.face_detected is None:
            return None
        return not bundle.face_detected
    
    def _shadow_anomaly(self, bundle: SignalBundle) -> Optional[bool]:
        if bundle.environment is None:
            return None
        return bundle.environment.shadow_anomaly
    
    def _secondary_face(self, bundle: SignalBundle) -> Optional[bool]:
        if bundle.secondary_faces is None:
            return None
        return bundle.secondary_faces > 0
    
    def _device_like(self, bundle: SignalBundle) -> Optional[bool]:
        if bundle.device_like_objects is None:
            return None
        return bundle.device_like_objects > 0
    
    def _tab_hidden(self, bundle: SignalBundle) -> Optional[bool]:
        return bundle.tab_hidden
    
    def _fullscreen_exited(self, bundle: SignalBundle) -> Optional[bool]:
        return bundle.fullscreen_exited
    
    def _confidence(self, flag_type: FlagType, bundle: SignalBundle) -> float:
        if flag_type in (FlagType.HEAD_POSE, FlagType.DOWN_GLANCE) and bundle.head_pose is not None:
            return bundle.head_pose.confidence
        if flag_type is FlagType.EYES_OFF and bundle.gaze is not None:
            return max(0.5, 1.0 - bundle.gaze.confidence)
        if flag_type is FlagType.SHADOW_ANOMALY and bundle.environment is not None:
            return min(1.0, max(0.0, 1.0 - bundle.environment.overall_score))
        return 1.0
    
    def _details(self, flag_type: FlagType, bundle: SignalBundle) -> Dict[str, Any]:
        if flag_type is FlagType.HEAD_POSE and bundle.head_pose is not None:
            return {"yaw": round(bundle.head_pose.yaw, 1), "pitch": round(bundle.head_pose.pitch, 1)}
        if flag_type is FlagType.SECONDARY_FACE:
            return {"count": bundle.secondary_faces}
        if flag_type is FlagType.DEVICE_LIKE:
            return {"count": bundle.device_like_objects}
        if flag_type is FlagType.SHADOW_ANOMALY and bundle.environment is not None:
            return {"environment_score": round(bundle.environment.overall_score, 3)}
        return {}
    
    # ============== State ==============
    
    def get_risk_score(self) -> float:
        return self.risk.value
    
    @property
    def flag_history(self) -> List[FlagEvent]:
        return list(self._history)
    
    def get_current_state(self) -> EngineState:
        return EngineState(
            is_running=self._running,
            risk_score=self.risk.value,
            under_review=self.risk.requires_review,
            active_conditions=[t.value for t, s in self._states.items() if s.active],
            flags_emitted=self._flag_count
        )


def _non_negative(duration: Optional[float]) -> Optional[float]:
    return None if duration is None else max(0.0, float(duration))
