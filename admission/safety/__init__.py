from .circuit_breaker import CircuitBreaker, drawdown_pct, is_rug_exit
from .reputation import DeployerReputationService, calculate_reputation_score, is_rug_indicator
from .types import (
    AdminAuthorizationError,
    AdminDirectory,
    CircuitBreakerCheck,
    CircuitBreakerSettings,
    CircuitBreakerState,
    CircuitBreakerStore,
    ClosedPosition,
    CounterKind,
    DeployerCheckResult,
    DeployerReputation,
    ReputationStore,
    TriggerEvaluation,
    TriggerType,
)

__all__ = [
    "AdminAuthorizationError",
    "AdminDirectory",
    "CircuitBreaker",
    "CircuitBreakerCheck",
    "CircuitBreakerSettings",
    "CircuitBreakerState",
    "CircuitBreakerStore",
    "ClosedPosition",
    "CounterKind",
    "DeployerCheckResult",
    "DeployerReputation",
    "DeployerReputationService",
    "ReputationStore",
    "TriggerEvaluation",
    "TriggerType",
    "calculate_reputation_score",
    "drawdown_pct",
    "is_rug_exit",
    "is_rug_indicator",
]
