from .cluster import BuyerClusterDetector, ClusterDetection, FundingClusterDetector
from .engine import DecisionRecorder, RuleEngine, enhanced_risk_penalty
from .rules import SYNC_RULES, check_data_completeness
from .types import (
    BuyerInfo,
    EvaluationContext,
    ExecutionMode,
    GateDecision,
    GateInput,
    GateRuleResult,
    LiquidityThresholds,
    OutcomeKind,
)

__all__ = [
    "BuyerClusterDetector",
    "BuyerInfo",
    "ClusterDetection",
    "DecisionRecorder",
    "EvaluationContext",
    "ExecutionMode",
    "FundingClusterDetector",
    "GateDecision",
    "GateInput",
    "GateRuleResult",
    "LiquidityThresholds",
    "OutcomeKind",
    "RuleEngine",
    "SYNC_RULES",
    "check_data_completeness",
    "enhanced_risk_penalty",
]
