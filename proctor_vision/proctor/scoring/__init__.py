"""Scoring modules"""

from .risk_score import RiskScore
from .engine import ProctorEngine, ConditionRule, ConditionState

__all__ = ["RiskScore", "ProctorEngine", "ConditionRule", "ConditionState"]
