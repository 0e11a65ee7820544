from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from admission.common.values import parse_timestamp, to_bool, to_float, to_int, to_optional_float

BONDING_CURVE_SOURCES = {"Pump.fun", "pumpfun", "PumpSwap"}
HIGH_LIQUIDITY_USD = 50_000.0
DEFAULT_MAX_SLIPPAGE = 0.15

PROTECTED_SYMBOLS = frozenset(
    {
        "SOL",
        "USDC",
        "USDT",
        "BTC",
        "ETH",
        "TRX",
        "BNB",
        "XRP",
        "DOGE",
        "SHIB",
        "MATIC",
        "AVAX",
        "DOT",
        "LINK",
        "UNI",
        "WBTC",
        "WETH",
        "WSOL",
    }
)

OFFICIAL_MINTS = {
    "SOL": "So11111111111111111111111111111111111111112",
    "WSOL": "So11111111111111111111111111111111111111112",
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
}


class ExecutionMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: Any) -> "ExecutionMode":
        if isinstance(value, cls):
            return value
        return cls.AUTO if str(value or "").strip().lower() == "auto" else cls.MANUAL


class OutcomeKind(str, Enum):
    PASS = "PASS"
    PASS_WITH_CAUTION = "PASS_WITH_CAUTION"
    FAIL = "FAIL"
    HARD_FAIL = "HARD_FAIL"


@dataclass(slots=True, frozen=True)
class LiquidityThresholds:
    auto_min_usd: float = 10_000.0
    manual_min_usd: float = 5_000.0

    def floor_for(self, mode: ExecutionMode) -> float:
        return self.auto_min_usd if mode is ExecutionMode.AUTO else self.manual_min_usd


@dataclass(slots=True, frozen=True)
class BuyerInfo:
    address: str
    timestamp_ms: float
    funding_wallet: str | None = None
    amount: float | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BuyerInfo":
        return cls(
            address=str(payload.get("address") or ""),
            timestamp_ms=to_float(payload.get("timestamp_ms", payload.get("timestamp")), 0.0),
            funding_wallet=payload.get("funding_wallet") or payload.get("fundingWallet") or None,
            amount=to_optional_float(payload.get("amount")),
        )


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return to_bool(value, False)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return to_int(value, 0)


def _pick(payload: Mapping[str, Any], snake: str, camel: str) -> Any:
    if snake in payload:
        return payload[snake]
    return payload.get(camel)


@dataclass(slots=True, frozen=True)
class GateInput:
    token_address: str
    liquidity: float = 0.0
    token_symbol: str | None = None
    token_name: str | None = None
    pool_created_at: datetime | None = None
    price_usd: float | None = None
    previous_price_usd: float | None = None
    lifetime_high_price: float | None = None
    deployer_wallet: str | None = None
    liquidity_adder_wallet: str | None = None
    first_buyer_wallet: str | None = None
    buyer_wallets: tuple[str, ...] | None = None
    recent_buyers: tuple[BuyerInfo, ...] | None = None
    unique_buyer_count: int | None = None
    holder_count: int | None = None
    buyer_position: int | None = None
    target_buyer_positions: tuple[int, ...] = ()
    has_jupiter_route: bool | None = None
    jupiter_slippage: float | None = None
    has_remove_liquidity_tx: bool = False
    has_freeze_authority: bool | None = None
    source: str | None = None
    is_pump_fun: bool = False
    execution_mode: ExecutionMode = ExecutionMode.MANUAL
    liquidity_thresholds: LiquidityThresholds = field(default_factory=LiquidityThresholds)
    buy_amount_sol: float | None = None
    max_slippage: float | None = None
    sol_price_usd: float | None = None
    lp_holder_concentration: float | None = None
    lp_owner_is_deployer: bool | None = None
    lp_recently_minted: bool = False
    lp_recently_transferred: bool = False
    liquidity_age_seconds: float | None = None
    validation_toggles: Mapping[str, bool] | None = None

    @property
    def is_bonding_curve(self) -> bool:
        return self.is_pump_fun or (self.source or "") in BONDING_CURVE_SOURCES

    @property
    def effective_max_slippage(self) -> float:
        return self.max_slippage if self.max_slippage else DEFAULT_MAX_SLIPPAGE

    def is_rule_enabled(self, rule: str) -> bool:
        if not self.validation_toggles:
            return True
        return self.validation_toggles.get(rule) is not False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "GateInput":
        """Build from a signal payload using either snake_case or camelCase keys."""
        thresholds_raw = _pick(payload, "liquidity_thresholds", "liquidityThresholds") or {}
        thresholds = LiquidityThresholds(
            auto_min_usd=to_float(_pick(thresholds_raw, "auto_min_usd", "autoMinUsd"), 10_000.0),
            manual_min_usd=to_float(_pick(thresholds_raw, "manual_min_usd", "manualMinUsd"), 5_000.0),
        )
        buyer_wallets = _pick(payload, "buyer_wallets", "buyerWallets")
        recent_buyers = _pick(payload, "recent_buyers", "recentBuyers")
        targets = _pick(payload, "target_buyer_positions", "targetBuyerPositions") or ()

        return cls(
            token_address=str(_pick(payload, "token_address", "tokenAddress") or ""),
            liquidity=to_float(payload.get("liquidity"), 0.0),
            token_symbol=_pick(payload, "token_symbol", "tokenSymbol"),
            token_name=_pick(payload, "token_name", "tokenName"),
            pool_created_at=parse_timestamp(_pick(payload, "pool_created_at", "poolCreatedAt")),
            price_usd=to_optional_float(_pick(payload, "price_usd", "priceUsd")),
            previous_price_usd=to_optional_float(_pick(payload, "previous_price_usd", "previousPriceUsd")),
            lifetime_high_price=to_optional_float(_pick(payload, "lifetime_high_price", "lifetimeHighPrice")),
            deployer_wallet=_pick(payload, "deployer_wallet", "deployerWallet"),
            liquidity_adder_wallet=_pick(payload, "liquidity_adder_wallet", "liquidityAdderWallet"),
            first_buyer_wallet=_pick(payload, "first_buyer_wallet", "firstBuyerWallet"),
            buyer_wallets=tuple(str(wallet) for wallet in buyer_wallets) if buyer_wallets is not None else None,
            recent_buyers=(
                tuple(BuyerInfo.from_dict(item) for item in recent_buyers) if recent_buyers is not None else None
            ),
            unique_buyer_count=_optional_int(_pick(payload, "unique_buyer_count", "uniqueBuyerCount")),
            holder_count=_optional_int(_pick(payload, "holder_count", "holderCount")),
            buyer_position=_optional_int(_pick(payload, "buyer_position", "buyerPosition")),
            target_buyer_positions=tuple(to_int(position, 0) for position in targets),
            has_jupiter_route=_optional_bool(_pick(payload, "has_jupiter_route", "hasJupiterRoute")),
            jupiter_slippage=to_optional_float(_pick(payload, "jupiter_slippage", "jupiterSlippage")),
            has_remove_liquidity_tx=to_bool(_pick(payload, "has_remove_liquidity_tx", "hasRemoveLiquidityTx"), False),
            has_freeze_authority=_optional_bool(_pick(payload, "has_freeze_authority", "hasFreezeAuthority")),
            source=payload.get("source"),
            is_pump_fun=to_bool(_pick(payload, "is_pump_fun", "isPumpFun"), False),
            execution_mode=ExecutionMode.parse(_pick(payload, "execution_mode", "executionMode")),
            liquidity_thresholds=thresholds,
            buy_amount_sol=to_optional_float(_pick(payload, "buy_amount_sol", "buyAmountSol")),
            max_slippage=to_optional_float(_pick(payload, "max_slippage", "maxSlippage")),
            sol_price_usd=to_optional_float(_pick(payload, "sol_price_usd", "solPriceUsd")),
            lp_holder_concentration=to_optional_float(_pick(payload, "lp_holder_concentration", "lpHolderConcentration")),
            lp_owner_is_deployer=_optional_bool(_pick(payload, "lp_owner_is_deployer", "lpOwnerIsDeployer")),
            lp_recently_minted=to_bool(_pick(payload, "lp_recently_minted", "lpRecentlyMinted"), False),
            lp_recently_transferred=to_bool(_pick(payload, "lp_recently_transferred", "lpRecentlyTransferred"), False),
            liquidity_age_seconds=to_optional_float(_pick(payload, "liquidity_age_seconds", "liquidityAgeSeconds")),
            validation_toggles=_pick(payload, "validation_toggles", "validationToggles"),
        )


@dataclass(slots=True, frozen=True)
class GateRuleResult:
    rule: str
    outcome: OutcomeKind
    reason: str
    penalty: int = 0
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.outcome in {OutcomeKind.PASS, OutcomeKind.PASS_WITH_CAUTION}

    @property
    def labeled_reason(self) -> str:
        return f"[{self.rule}] {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "passed": self.passed,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "penalty": self.penalty,
            "details": dict(self.details),
        }


@dataclass(slots=True, frozen=True)
class GateDecision:
    token_address: str
    passed: bool
    results: tuple[GateRuleResult, ...]
    total_penalty: int
    enhanced_penalty: int = 0

    @property
    def failed_rules(self) -> tuple[str, ...]:
        return tuple(result.rule for result in self.results if not result.passed)

    @property
    def reasons(self) -> tuple[str, ...]:
        return tuple(result.labeled_reason for result in self.results)

    @property
    def block_reasons(self) -> tuple[str, ...]:
        return tuple(result.labeled_reason for result in self.results if not result.passed)

    def result_for(self, rule: str) -> GateRuleResult | None:
        for result in self.results:
            if result.rule == rule:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address,
            "passed": self.passed,
            "total_penalty": self.total_penalty,
            "enhanced_penalty": self.enhanced_penalty,
            "failed_rules": list(self.failed_rules),
            "reasons": list(self.reasons),
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class EvaluationContext:
    """Per-evaluation accumulator shared by the rule stages."""

    now: datetime
    results: list[GateRuleResult] = field(default_factory=list)
    cluster_detected: bool = False
    double_quote_deviation_pct: float | None = None

    def add(self, result: GateRuleResult) -> GateRuleResult:
        self.results.append(result)
        return result

    def caution_rules(self) -> list[str]:
        return [result.rule for result in self.results if result.outcome is OutcomeKind.PASS_WITH_CAUTION]
