from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol

from admission.common.values import parse_timestamp, to_bool, to_float, to_int, to_optional_float


class TriggerType(str, Enum):
    DRAWDOWN = "drawdown"
    RUG_STREAK = "rug_streak"
    HIDDEN_TAX = "hidden_tax"
    FROZEN_TOKEN = "frozen_token"
    MANUAL = "manual"


class CounterKind(str, Enum):
    RUG = "rug"
    TAX = "tax"
    FREEZE = "freeze"


class AdminAuthorizationError(PermissionError):
    pass


@dataclass(slots=True, frozen=True)
class CircuitBreakerSettings:
    enabled: bool = True
    cooldown_minutes: int = 60
    drawdown_threshold: float = 20.0
    drawdown_window_minutes: int = 30
    rug_threshold: int = 3
    hidden_tax_threshold: int = 2
    frozen_token_threshold: int = 2
    requires_admin_override: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerSettings":
        return cls(
            enabled=to_bool(os.getenv("CIRCUIT_BREAKER_ENABLED"), True),
            cooldown_minutes=max(1, to_int(os.getenv("CIRCUIT_BREAKER_COOLDOWN_MINUTES"), 60)),
            drawdown_threshold=max(0.1, to_float(os.getenv("CIRCUIT_BREAKER_DRAWDOWN_THRESHOLD"), 20.0)),
            drawdown_window_minutes=max(1, to_int(os.getenv("CIRCUIT_BREAKER_DRAWDOWN_WINDOW_MINUTES"), 30)),
            rug_threshold=max(1, to_int(os.getenv("CIRCUIT_BREAKER_RUG_THRESHOLD"), 3)),
            hidden_tax_threshold=max(1, to_int(os.getenv("CIRCUIT_BREAKER_HIDDEN_TAX_THRESHOLD"), 2)),
            frozen_token_threshold=max(1, to_int(os.getenv("CIRCUIT_BREAKER_FROZEN_TOKEN_THRESHOLD"), 2)),
            requires_admin_override=to_bool(os.getenv("CIRCUIT_BREAKER_REQUIRES_ADMIN_OVERRIDE"), True),
        )

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Any],
        defaults: "CircuitBreakerSettings | None" = None,
    ) -> "CircuitBreakerSettings":
        base = defaults or cls()
        return cls(
            enabled=to_bool(mapping.get("enabled"), base.enabled),
            cooldown_minutes=to_int(mapping.get("cooldown_minutes"), base.cooldown_minutes),
            drawdown_threshold=to_float(mapping.get("drawdown_threshold"), base.drawdown_threshold),
            drawdown_window_minutes=to_int(mapping.get("drawdown_window_minutes"), base.drawdown_window_minutes),
            rug_threshold=to_int(mapping.get("rug_threshold"), base.rug_threshold),
            hidden_tax_threshold=to_int(mapping.get("hidden_tax_threshold"), base.hidden_tax_threshold),
            frozen_token_threshold=to_int(mapping.get("frozen_token_threshold"), base.frozen_token_threshold),
            requires_admin_override=to_bool(
                mapping.get("requires_admin_override"),
                base.requires_admin_override,
            ),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "cooldown_minutes": self.cooldown_minutes,
            "drawdown_threshold": self.drawdown_threshold,
            "drawdown_window_minutes": self.drawdown_window_minutes,
            "rug_threshold": self.rug_threshold,
            "hidden_tax_threshold": self.hidden_tax_threshold,
            "frozen_token_threshold": self.frozen_token_threshold,
            "requires_admin_override": self.requires_admin_override,
        }


@dataclass(slots=True, frozen=True)
class CircuitBreakerState:
    triggered_at: datetime | None = None
    trigger_type: TriggerType | None = None
    trigger_reason: str | None = None
    cooldown_expires_at: datetime | None = None
    requires_admin_override: bool = False
    last_event_id: str | None = None
    rug_counter: int = 0
    tax_counter: int = 0
    freeze_counter: int = 0

    @property
    def triggered(self) -> bool:
        return self.triggered_at is not None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "CircuitBreakerState":
        raw_type = mapping.get("trigger_type")
        try:
            trigger_type = TriggerType(raw_type) if raw_type else None
        except ValueError:
            trigger_type = TriggerType.MANUAL
        return cls(
            triggered_at=parse_timestamp(mapping.get("triggered_at")),
            trigger_type=trigger_type,
            trigger_reason=mapping.get("trigger_reason") or None,
            cooldown_expires_at=parse_timestamp(mapping.get("cooldown_expires_at")),
            requires_admin_override=to_bool(mapping.get("state_requires_admin_override"), False),
            last_event_id=mapping.get("last_event_id") or None,
            rug_counter=to_int(mapping.get("counter_rug"), 0),
            tax_counter=to_int(mapping.get("counter_tax"), 0),
            freeze_counter=to_int(mapping.get("counter_freeze"), 0),
        )

    def trigger_fields(self) -> dict[str, Any]:
        return {
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "trigger_reason": self.trigger_reason,
            "cooldown_expires_at": self.cooldown_expires_at.isoformat() if self.cooldown_expires_at else None,
            "state_requires_admin_override": self.requires_admin_override,
            "last_event_id": self.last_event_id,
        }


@dataclass(slots=True, frozen=True)
class ClosedPosition:
    closed_at: datetime
    entry_value: float
    pnl: float
    exit_reason: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ClosedPosition | None":
        closed_at = parse_timestamp(record.get("closed_at"))
        if closed_at is None:
            return None
        return cls(
            closed_at=closed_at,
            entry_value=to_float(record.get("entry_value"), 0.0),
            pnl=to_float(record.get("pnl") if record.get("pnl") is not None else record.get("profit_loss"), 0.0),
            exit_reason=record.get("exit_reason") or None,
        )


@dataclass(slots=True, frozen=True)
class TriggerEvaluation:
    should_trigger: bool
    trigger_type: TriggerType | None = None
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CircuitBreakerCheck:
    blocked: bool
    reason: str | None = None
    trigger_type: TriggerType | None = None
    cooldown_expires_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class DeployerReputation:
    wallet_address: str
    total_tokens_created: int = 0
    total_rugs: int = 0
    rug_ratio: float | None = None
    avg_liquidity_survival_seconds: float | None = None
    cluster_id: str | None = None
    reputation_score: int = 100
    tokens_last_7d: int | None = None
    avg_lp_lifespan_seconds: float | None = None
    cluster_association_score: float | None = None
    rapid_deploy_flag: bool = False
    last_updated: datetime | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DeployerReputation":
        tokens_last_7d = record.get("tokens_last_7d")
        return cls(
            wallet_address=str(record.get("wallet_address") or ""),
            total_tokens_created=to_int(record.get("total_tokens_created"), 0),
            total_rugs=to_int(record.get("total_rugs"), 0),
            rug_ratio=to_optional_float(record.get("rug_ratio")),
            avg_liquidity_survival_seconds=to_optional_float(record.get("avg_liquidity_survival_seconds")),
            cluster_id=record.get("cluster_id") or None,
            reputation_score=to_int(record.get("reputation_score"), 100),
            tokens_last_7d=to_int(tokens_last_7d, 0) if tokens_last_7d is not None else None,
            avg_lp_lifespan_seconds=to_optional_float(record.get("avg_lp_lifespan_seconds")),
            cluster_association_score=to_optional_float(record.get("cluster_association_score")),
            rapid_deploy_flag=to_bool(record.get("rapid_deploy_flag"), False),
            last_updated=parse_timestamp(record.get("last_updated")),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "total_tokens_created": self.total_tokens_created,
            "total_rugs": self.total_rugs,
            "rug_ratio": self.rug_ratio,
            "avg_liquidity_survival_seconds": self.avg_liquidity_survival_seconds,
            "cluster_id": self.cluster_id,
            "reputation_score": self.reputation_score,
            "tokens_last_7d": self.tokens_last_7d,
            "avg_lp_lifespan_seconds": self.avg_lp_lifespan_seconds,
            "cluster_association_score": self.cluster_association_score,
            "rapid_deploy_flag": self.rapid_deploy_flag,
            "last_updated": self.last_updated,
        }


@dataclass(slots=True, frozen=True)
class DeployerCheckResult:
    passed: bool
    reason: str
    penalty: int = 0
    reputation_score: int = 100
    is_new_deployer: bool = False
    data_missing: bool = False
    record: DeployerReputation | None = None


class CircuitBreakerStore(Protocol):
    async def load_circuit_breaker(
        self,
        user_id: str,
    ) -> tuple[CircuitBreakerSettings, CircuitBreakerState]:
        ...

    async def save_circuit_breaker_state(self, user_id: str, state: CircuitBreakerState) -> None:
        ...

    async def increment_circuit_breaker_counter(self, user_id: str, kind: CounterKind) -> int:
        ...

    async def reset_circuit_breaker_counters(self, user_id: str) -> None:
        ...

    async def append_circuit_breaker_event(self, event_id: str, payload: dict[str, Any]) -> None:
        ...

    async def mark_circuit_breaker_event_reset(
        self,
        event_id: str,
        *,
        reset_by: str,
        reset_reason: str,
    ) -> None:
        ...

    async def list_closed_positions(
        self,
        user_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ClosedPosition]:
        ...


class AdminDirectory(Protocol):
    async def is_admin(self, user_id: str) -> bool:
        ...


class ReputationStore(Protocol):
    async def get_deployer_reputation(self, wallet_address: str) -> DeployerReputation | None:
        ...

    async def save_deployer_reputation(self, record: DeployerReputation) -> None:
        ...

    async def list_low_score_clusters(self, max_score: int) -> list[str]:
        ...
