from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from admission.common import log_event, short_address

from .client import QuoteClient
from .types import LAMPORTS_PER_SOL, SOL_MINT, DepthValidationInput, QuoteResult

BONDING_CURVE_SOURCES = {"Pump.fun", "pumpfun", "PumpSwap"}
DEFAULT_SOL_PRICE_USD = 150.0
LIQUIDITY_MULTIPLE = 5.0
REFERENCE_AMOUNT_SOL = 0.001
MIN_OUTPUT_RATIO = 0.9
DOUBLE_QUOTE_DELAY_SECONDS = 2.5
DOUBLE_QUOTE_MAX_DEVIATION_PCT = 5.0


@dataclass(slots=True, frozen=True)
class DepthCheckResult:
    rule: str
    passed: bool
    reason: str
    penalty: int = 0
    degraded: bool = False
    details: dict[str, Any] = field(default_factory=dict)


def _is_bonding_curve(is_pump_fun: bool, source: str | None) -> bool:
    return is_pump_fun or (source or "") in BONDING_CURVE_SOURCES


def quote_deviation_pct(first_output: int, second_output: int) -> float:
    average = (first_output + second_output) / 2
    if average <= 0:
        return 0.0
    return abs(first_output - second_output) / average * 100


class QuoteDepthValidator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        quote_client: QuoteClient,
        default_sol_price_usd: float = DEFAULT_SOL_PRICE_USD,
        double_quote_delay_seconds: float = DOUBLE_QUOTE_DELAY_SECONDS,
        max_deviation_pct: float = DOUBLE_QUOTE_MAX_DEVIATION_PCT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._quote_client = quote_client
        self._default_sol_price_usd = default_sol_price_usd
        self._double_quote_delay_seconds = max(0.0, double_quote_delay_seconds)
        self._max_deviation_pct = max_deviation_pct
        self._sleep = sleep

    async def _buy_quote(self, token_address: str, amount_sol: float, max_slippage: float) -> QuoteResult:
        return await self._quote_client.fetch_quote(
            SOL_MINT,
            token_address,
            int(amount_sol * LAMPORTS_PER_SOL),
            int(max_slippage * 10_000),
            skip_cache=True,
        )

    async def validate_quote_depth(self, depth_input: DepthValidationInput) -> DepthCheckResult:
        rule = "QUOTE_DEPTH"
        if _is_bonding_curve(depth_input.is_pump_fun, depth_input.source):
            return DepthCheckResult(rule, True, "Bonding curve token - depth check skipped")

        sol_price = depth_input.sol_price_usd or self._default_sol_price_usd
        buy_amount_usd = depth_input.buy_amount_sol * sol_price
        required_liquidity = buy_amount_usd * LIQUIDITY_MULTIPLE
        liquidity_ratio = depth_input.pool_liquidity_usd / required_liquidity if required_liquidity > 0 else 0.0

        if depth_input.pool_liquidity_usd < required_liquidity:
            return DepthCheckResult(
                rule,
                False,
                (
                    f"Pool liquidity ${depth_input.pool_liquidity_usd:.0f} < required "
                    f"${required_liquidity:.0f} (buy amount x {LIQUIDITY_MULTIPLE:.0f})"
                ),
                penalty=25,
                details={"liquidity_ratio": liquidity_ratio},
            )

        quote = await self._buy_quote(
            depth_input.token_address,
            depth_input.buy_amount_sol,
            depth_input.max_slippage,
        )
        if not quote.ok:
            if quote.rate_limited:
                return DepthCheckResult(
                    rule,
                    True,
                    "Quote provider rate limited - depth check skipped",
                    penalty=5,
                    degraded=True,
                    details={"liquidity_ratio": liquidity_ratio},
                )
            return DepthCheckResult(
                rule,
                False,
                f"Quote failed for buy amount {depth_input.buy_amount_sol} SOL: {quote.message}",
                penalty=30,
                details={"liquidity_ratio": liquidity_ratio},
            )

        price_impact = quote.price_impact_pct
        if price_impact / 100 > depth_input.max_slippage:
            return DepthCheckResult(
                rule,
                False,
                (
                    f"Price impact {price_impact:.2f}% exceeds configured slippage "
                    f"{depth_input.max_slippage * 100:.1f}%"
                ),
                penalty=20,
                details={
                    "price_impact": price_impact,
                    "liquidity_ratio": liquidity_ratio,
                    "quote_output": quote.out_amount,
                },
            )

        output_ratio: float | None = None
        reference = await self._buy_quote(
            depth_input.token_address,
            REFERENCE_AMOUNT_SOL,
            depth_input.max_slippage,
        )
        if reference.ok and reference.out_amount > 0:
            theoretical = reference.out_amount * (depth_input.buy_amount_sol / REFERENCE_AMOUNT_SOL)
            output_ratio = quote.out_amount / theoretical if theoretical > 0 else None
            if output_ratio is not None and output_ratio < MIN_OUTPUT_RATIO:
                return DepthCheckResult(
                    rule,
                    False,
                    f"Output {output_ratio * 100:.1f}% of theoretical (< {MIN_OUTPUT_RATIO * 100:.0f}%) - thin liquidity",
                    penalty=20,
                    details={
                        "price_impact": price_impact,
                        "output_ratio": output_ratio,
                        "liquidity_ratio": liquidity_ratio,
                        "quote_output": quote.out_amount,
                    },
                )

        ratio_text = f"{output_ratio * 100:.1f}%" if output_ratio is not None else "n/a"
        return DepthCheckResult(
            rule,
            True,
            (
                f"Depth OK: impact {price_impact:.2f}%, output ratio {ratio_text}, "
                f"liquidity ratio {liquidity_ratio:.1f}x"
            ),
            details={
                "price_impact": price_impact,
                "output_ratio": output_ratio,
                "liquidity_ratio": liquidity_ratio,
                "quote_output": quote.out_amount,
            },
        )

    async def double_quote_verification(
        self,
        token_address: str,
        buy_amount_sol: float,
        max_slippage: float = 0.15,
        *,
        is_pump_fun: bool = False,
        source: str | None = None,
    ) -> DepthCheckResult:
        rule = "DOUBLE_QUOTE"
        if _is_bonding_curve(is_pump_fun, source):
            return DepthCheckResult(rule, True, "Bonding curve token - double quote skipped")

        first = await self._buy_quote(token_address, buy_amount_sol, max_slippage)
        if not first.ok:
            if first.rate_limited:
                return DepthCheckResult(
                    rule,
                    True,
                    "Quote provider rate limited - double-quote skipped",
                    degraded=True,
                )
            return DepthCheckResult(rule, False, f"First quote failed: {first.message}", penalty=25)

        await self._sleep(self._double_quote_delay_seconds)

        second = await self._buy_quote(token_address, buy_amount_sol, max_slippage)
        if not second.ok:
            return DepthCheckResult(
                rule,
                False,
                f"Second quote failed: {second.message}",
                penalty=25,
                details={"quote1_output": first.out_amount},
            )

        deviation = quote_deviation_pct(first.out_amount, second.out_amount)
        details = {
            "deviation_pct": deviation,
            "quote1_output": first.out_amount,
            "quote2_output": second.out_amount,
        }
        if deviation > self._max_deviation_pct:
            log_event(
                self._logger,
                level="warning",
                event="double_quote_deviation",
                message="Quote output moved between samples",
                token=short_address(token_address),
                deviation_pct=round(deviation, 2),
            )
            return DepthCheckResult(
                rule,
                False,
                (
                    f"Quote deviation {deviation:.1f}% > {self._max_deviation_pct:.0f}% - "
                    "possible flash liquidity trap"
                ),
                penalty=20,
                details=details,
            )

        return DepthCheckResult(
            rule,
            True,
            f"Double-quote verified: {deviation:.2f}% deviation (< {self._max_deviation_pct:.0f}%)",
            details=details,
        )
