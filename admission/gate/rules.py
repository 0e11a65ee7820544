from __future__ import annotations

from typing import Any, Callable

from .types import (
    HIGH_LIQUIDITY_USD,
    OFFICIAL_MINTS,
    PROTECTED_SYMBOLS,
    EvaluationContext,
    ExecutionMode,
    GateInput,
    GateRuleResult,
    OutcomeKind,
)

SyncRule = Callable[[GateInput, EvaluationContext], GateRuleResult]

INSTANT_BLOCK_SECONDS = 15.0
MIN_TOKEN_AGE_SECONDS = 20.0
HIGH_SELL_SLIPPAGE = 0.35
MAX_PRICE_MULTIPLE = 50.0
NEAR_ATH_PCT = 95.0
MIN_UNIQUE_HOLDERS = 3
SUSPICIOUS_NAME_PATTERNS = (
    "elon",
    "trump",
    "biden",
    "musk",
    "official",
    "real",
    "verified",
    "original",
    "authentic",
    "legit",
)


def passed(rule: str, reason: str, penalty: int = 0, **details: Any) -> GateRuleResult:
    return GateRuleResult(rule, OutcomeKind.PASS, reason, penalty, details)


def cautioned(rule: str, reason: str, penalty: int = 0, **details: Any) -> GateRuleResult:
    return GateRuleResult(rule, OutcomeKind.PASS_WITH_CAUTION, reason, penalty, details)


def failed(rule: str, reason: str, penalty: int = 0, **details: Any) -> GateRuleResult:
    return GateRuleResult(rule, OutcomeKind.FAIL, reason, penalty, details)


def hard_failed(rule: str, reason: str, penalty: int = 0, **details: Any) -> GateRuleResult:
    return GateRuleResult(rule, OutcomeKind.HARD_FAIL, reason, penalty, details)


def disabled(rule: str) -> GateRuleResult:
    return passed(rule, f"{rule} check disabled by user")


def check_time_buffer(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "TIME_BUFFER"
    if gate_input.pool_created_at is None:
        return cautioned(rule, "Pool creation time unknown - token age unverified")

    age_seconds = (context.now - gate_input.pool_created_at).total_seconds()
    if age_seconds < INSTANT_BLOCK_SECONDS:
        return failed(
            rule,
            f"Token too new ({age_seconds:.1f}s) - instant execution blocked (<{INSTANT_BLOCK_SECONDS:.0f}s)",
        )
    if age_seconds < MIN_TOKEN_AGE_SECONDS:
        return failed(rule, f"Token age {age_seconds:.1f}s below minimum {MIN_TOKEN_AGE_SECONDS:.0f}s buffer")
    return passed(rule, f"Token age {age_seconds:.1f}s meets {MIN_TOKEN_AGE_SECONDS:.0f}s minimum")


def check_liquidity_reality(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "LIQUIDITY_REALITY"
    mode = gate_input.execution_mode
    floor = gate_input.liquidity_thresholds.floor_for(mode)
    label = mode.value.upper()

    if gate_input.liquidity < floor:
        return failed(rule, f"Liquidity ${gate_input.liquidity:.0f} below {label} minimum ${floor:.0f}", 40)

    adder = gate_input.liquidity_adder_wallet
    if adder and gate_input.deployer_wallet and adder == gate_input.deployer_wallet:
        return failed(rule, "Liquidity adder same as deployer - high rug risk", 30)

    if gate_input.has_remove_liquidity_tx:
        return failed(rule, "RemoveLiquidity transaction detected before buy - likely rug", 50)

    return passed(rule, f"Liquidity ${gate_input.liquidity:.0f} meets {label} minimum (${floor:.0f})")


def check_executable_sell(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "EXECUTABLE_SELL"
    if gate_input.is_bonding_curve:
        return passed(rule, "Bonding curve token - sell via launchpad curve")

    if gate_input.has_jupiter_route is None:
        return failed(
            rule,
            (
                "Route validation required - sell route must be confirmed before trading "
                f"(liquidity: ${gate_input.liquidity:.0f})"
            ),
            40,
        )
    if gate_input.has_jupiter_route is False:
        return failed(
            rule,
            f"No Jupiter/Raydium sell route confirmed - token cannot be sold (liquidity: ${gate_input.liquidity:.0f})",
            60,
        )

    slippage = gate_input.jupiter_slippage
    if slippage is not None and slippage > HIGH_SELL_SLIPPAGE:
        return passed(rule, f"High sell slippage {slippage * 100:.1f}% - sell route thin")
    if slippage is not None:
        return passed(rule, f"Swap route verified with {slippage * 100:.1f}% slippage")
    return passed(rule, "Swap route verified (Jupiter or Raydium)")


def _max_position(holder_count: int, mode: ExecutionMode) -> int:
    is_auto = mode is ExecutionMode.AUTO
    if holder_count >= 50:
        return 200 if is_auto else 500
    if holder_count >= 10:
        return 50 if is_auto else 100
    return 20 if is_auto else 50


def check_buyer_position(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "BUYER_POSITION"
    targets = gate_input.target_buyer_positions
    position = gate_input.buyer_position
    is_auto = gate_input.execution_mode is ExecutionMode.AUTO

    if targets:
        target_text = ", ".join(str(target) for target in targets)
        if position is None:
            return failed(rule, f"Buyer position unknown - cannot confirm match with target positions [{target_text}]", 30)
        if position not in targets:
            return failed(rule, f"Buyer position #{position} not in target positions [{target_text}]", 25)
        return passed(rule, f"Buyer position #{position} matches target positions")

    if gate_input.is_bonding_curve:
        return passed(rule, "Bonding curve fair launch - position check exempt")
    if gate_input.liquidity >= HIGH_LIQUIDITY_USD:
        return passed(rule, f"High liquidity (${gate_input.liquidity:.0f}) - position check exempt")
    if position is None:
        return cautioned(rule, "Buyer position unknown - entry timing unverified", 10 if is_auto else 5)

    holder_count = gate_input.holder_count or gate_input.unique_buyer_count or 0
    max_position = _max_position(holder_count, gate_input.execution_mode)
    if position > max_position:
        overshoot_penalty = min(20, ((position - max_position) // 5) * 5)
        return failed(
            rule,
            (
                f"Buyer position #{position} exceeds {'AUTO' if is_auto else 'MANUAL'} limit "
                f"(>#{max_position}, holders: {holder_count})"
            ),
            20 + overshoot_penalty,
        )

    unique_buyers = gate_input.unique_buyer_count
    if unique_buyers is not None and unique_buyers < MIN_UNIQUE_HOLDERS:
        return failed(rule, f"Only {unique_buyers} unique holders - thin market participation", 15)

    if position <= 5:
        return passed(rule, f"Top-5 buyer position #{position} - excellent entry")
    if position <= 10:
        return passed(rule, f"Early buyer position #{position} - strong entry", 5 if is_auto else 0)
    if position <= 20:
        penalty = 10 + ((position - 10) // 5) * 5 if is_auto else 5
        return passed(rule, f"Buyer position #{position} - acceptable range", penalty)
    return passed(
        rule,
        f"Buyer position #{position} - late entry risk",
        min(10 + ((position - 20) // 10) * 5, 25),
    )


def check_price_sanity(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "PRICE_SANITY"
    price = gate_input.price_usd
    if not price:
        return cautioned(rule, "Price data unavailable - price sanity unverified")

    previous = gate_input.previous_price_usd
    if previous and previous > 0:
        multiple = price / previous
        if multiple > MAX_PRICE_MULTIPLE:
            return failed(rule, f"Price jumped {multiple:.0f}x recently (>{MAX_PRICE_MULTIPLE:.0f}x blocked)", 20)

    high = gate_input.lifetime_high_price
    if high and high > 0:
        percent_of_high = price / high * 100
        if percent_of_high > NEAR_ATH_PCT:
            return passed(rule, f"Price at {percent_of_high:.0f}% of ATH - high entry risk")

    return passed(rule, f"Price ${price:.8f} passes sanity checks")


def check_symbol_spoofing(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "SYMBOL_SPOOFING"
    symbol = (gate_input.token_symbol or "").strip().upper()

    if symbol in PROTECTED_SYMBOLS:
        official_mint = OFFICIAL_MINTS.get(symbol)
        if official_mint is None:
            return failed(rule, f'Symbol "{symbol}" is protected - likely spoofing', 15)
        if gate_input.token_address != official_mint:
            return failed(rule, f'Symbol "{symbol}" spoofing detected - not official mint', 15)

    name = (gate_input.token_name or "").lower()
    if name and not gate_input.is_bonding_curve:
        for pattern in SUSPICIOUS_NAME_PATTERNS:
            if pattern in name:
                return passed(rule, f'Token name contains "{pattern}" - verify authenticity')

    return passed(rule, "Symbol/name verification passed")


def check_freeze_authority(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "FREEZE_AUTHORITY"
    if gate_input.has_freeze_authority is None:
        return cautioned(rule, "Freeze authority status unknown")
    if gate_input.has_freeze_authority:
        return hard_failed(rule, "Token has active freeze authority - owner can lock all transfers", 50)
    return passed(rule, "No freeze authority")


def check_lp_ownership_distribution(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    rule = "LP_OWNERSHIP_DISTRIBUTION"
    concentration = gate_input.lp_holder_concentration
    is_auto = gate_input.execution_mode is ExecutionMode.AUTO

    if concentration is not None:
        if concentration > 85:
            return hard_failed(rule, f"HARD BLOCK: {concentration:.1f}% LP tokens held by single wallet (>85%)", 50)
        if concentration > 75:
            if is_auto:
                return failed(
                    rule,
                    f"BLOCKED (AUTO): {concentration:.1f}% LP concentration too high for auto execution (>75%)",
                    40,
                )
            return passed(rule, f"HIGH RISK: {concentration:.1f}% LP concentration (>75%)", 30)
        if concentration > 60:
            return passed(rule, f"LP concentration {concentration:.1f}% elevated (>60%)", 15)

    if gate_input.lp_owner_is_deployer and not gate_input.is_bonding_curve:
        return failed(rule, "LP owner is the deployer - high rug pull risk", 35)
    if gate_input.lp_recently_minted:
        return failed(rule, "LP tokens minted within last 60 seconds - possible fake liquidity injection", 25)
    if gate_input.lp_recently_transferred:
        return passed(rule, "LP tokens recently transferred - monitor closely", 20)

    if concentration is None and gate_input.lp_owner_is_deployer is None:
        return cautioned(rule, "LP distribution data unavailable", 10 if is_auto else 5)

    suffix = f" (top holder: {concentration:.1f}%)" if concentration is not None else ""
    return passed(rule, f"LP distribution OK{suffix}")


def check_data_completeness(gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
    """Meta-rule over everything evaluated so far: too many data gaps is itself a block."""
    rule = "DATA_COMPLETENESS"
    caution_rules = context.caution_rules()
    count = len(caution_rules)

    if count >= 6:
        return hard_failed(
            rule,
            (
                f"HARD BLOCK: {count} rules passed only due to missing data "
                f"({', '.join(caution_rules[:4])}...) - cannot verify token"
            ),
            40,
            caution_rules=tuple(caution_rules),
        )
    if count >= 4:
        return failed(
            rule,
            f"BLOCKED: {count} rules had missing data ({', '.join(caution_rules)})",
            30,
            caution_rules=tuple(caution_rules),
        )
    if count >= 2:
        return passed(
            rule,
            f"{count} rules had partial data - elevated caution",
            10 + count * 3,
            caution_rules=tuple(caution_rules),
        )
    return passed(rule, f"Data completeness OK - {count} rules with missing data")


SYNC_RULES: tuple[tuple[str, SyncRule], ...] = (
    ("TIME_BUFFER", check_time_buffer),
    ("LIQUIDITY_REALITY", check_liquidity_reality),
    ("EXECUTABLE_SELL", check_executable_sell),
    ("BUYER_POSITION", check_buyer_position),
    ("PRICE_SANITY", check_price_sanity),
    ("SYMBOL_SPOOFING", check_symbol_spoofing),
    ("FREEZE_AUTHORITY", check_freeze_authority),
    ("LP_OWNERSHIP_DISTRIBUTION", check_lp_ownership_distribution),
)
