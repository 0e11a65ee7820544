from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Protocol, Sequence

from admission.common import guarded_call, log_event, short_address
from admission.common.values import utc_now
from admission.quotes import DepthCheckResult, DepthValidationInput, QuoteDepthValidator
from admission.safety import CircuitBreaker, DeployerReputationService

from .cluster import BuyerClusterDetector, FundingClusterDetector
from .rules import SYNC_RULES, cautioned, check_data_completeness, disabled, failed, hard_failed, passed
from .types import (
    HIGH_LIQUIDITY_USD,
    EvaluationContext,
    GateDecision,
    GateInput,
    GateRuleResult,
    OutcomeKind,
)

DEFAULT_BATCH_SIZE = 5


class DecisionRecorder(Protocol):
    async def record_risk_check(
        self,
        *,
        user_id: str | None,
        gate_input: GateInput,
        decision: GateDecision,
    ) -> None:
        ...


def enhanced_risk_penalty(gate_input: GateInput, context: EvaluationContext) -> int:
    penalty = 0
    if gate_input.lp_holder_concentration is not None and gate_input.lp_holder_concentration > 80:
        penalty += 30
    if gate_input.liquidity_age_seconds is not None and gate_input.liquidity_age_seconds < 30:
        penalty += 25
    if context.cluster_detected:
        penalty += 20
    if context.double_quote_deviation_pct is not None and context.double_quote_deviation_pct > 3:
        penalty += 20
    return penalty


def _from_depth(result: DepthCheckResult) -> GateRuleResult:
    if not result.passed:
        return failed(result.rule, result.reason, result.penalty, **result.details)
    if result.degraded:
        return cautioned(result.rule, result.reason, result.penalty, **result.details)
    return passed(result.rule, result.reason, result.penalty, **result.details)


class RuleEngine:
    """Runs the admission rules in three stages and folds them into one decision.

    Stage 1 runs the synchronous rules, stage 2 issues the collaborator-backed
    rules concurrently, and stage 3 applies the data-completeness meta-rule and
    aggregates. The decision passes only when every rule passes; penalties are
    ranking information.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        reputation: DeployerReputationService | None = None,
        depth_validator: QuoteDepthValidator | None = None,
        cluster_detector: BuyerClusterDetector | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        recorder: DecisionRecorder | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._logger = logger
        self._reputation = reputation
        self._depth_validator = depth_validator
        self._cluster_detector = cluster_detector or FundingClusterDetector()
        self._circuit_breaker = circuit_breaker
        self._recorder = recorder
        self._clock = clock

    async def evaluate(self, gate_input: GateInput, *, user_id: str | None = None) -> GateDecision:
        context = EvaluationContext(now=self._clock())

        if self._circuit_breaker is not None and user_id:
            check = await self._circuit_breaker.run_checks(user_id)
            if check.blocked:
                context.add(
                    hard_failed(
                        "CIRCUIT_BREAKER",
                        check.reason or "Circuit breaker active",
                        trigger_type=check.trigger_type.value if check.trigger_type else None,
                    )
                )

        for rule, check_rule in SYNC_RULES:
            if not gate_input.is_rule_enabled(rule):
                context.add(disabled(rule))
                continue
            context.add(check_rule(gate_input, context))

        deployer_result, cluster_result, quote_results = await asyncio.gather(
            self._guarded_rule("DEPLOYER_REPUTATION", lambda: self._deployer_rule(gate_input)),
            self._guarded_rule("BUYER_CLUSTER", lambda: self._cluster_rule(gate_input, context)),
            self._quote_rules(gate_input, context),
        )
        context.add(deployer_result)
        context.add(cluster_result)
        for result in quote_results:
            context.add(result)

        if gate_input.is_rule_enabled("DATA_COMPLETENESS"):
            context.add(check_data_completeness(gate_input, context))
        else:
            context.add(disabled("DATA_COMPLETENESS"))

        results = tuple(context.results)
        decision = GateDecision(
            token_address=gate_input.token_address,
            passed=all(result.passed for result in results),
            results=results,
            total_penalty=sum(result.penalty for result in results),
            enhanced_penalty=enhanced_risk_penalty(gate_input, context),
        )

        log_event(
            self._logger,
            level="info" if decision.passed else "warning",
            event="gate_decision",
            message="Admission gate passed" if decision.passed else "Admission gate blocked trade",
            token=short_address(gate_input.token_address),
            passed=decision.passed,
            failed_rules=list(decision.failed_rules),
            total_penalty=decision.total_penalty,
            enhanced_penalty=decision.enhanced_penalty,
        )

        if self._recorder is not None:
            await guarded_call(
                lambda: self._recorder.record_risk_check(
                    user_id=user_id,
                    gate_input=gate_input,
                    decision=decision,
                ),
                logger=self._logger,
                event="risk_check_log_failed",
                message="Failed to record gate decision",
                token=short_address(gate_input.token_address),
            )

        return decision

    async def evaluate_batch(
        self,
        inputs: Sequence[GateInput],
        *,
        user_id: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> list[GateDecision]:
        size = max(1, batch_size)
        decisions: list[GateDecision] = []
        for start in range(0, len(inputs), size):
            batch = inputs[start : start + size]
            outcomes = await asyncio.gather(
                *(self.evaluate(gate_input, user_id=user_id) for gate_input in batch),
                return_exceptions=True,
            )
            for gate_input, outcome in zip(batch, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    log_event(
                        self._logger,
                        level="error",
                        event="gate_evaluation_failed",
                        message="Gate evaluation raised; blocking token",
                        token=short_address(gate_input.token_address),
                        error=str(outcome),
                    )
                    error_result = hard_failed("GATE_ERROR", f"Gate evaluation failed: {outcome}")
                    decisions.append(
                        GateDecision(
                            token_address=gate_input.token_address,
                            passed=False,
                            results=(error_result,),
                            total_penalty=0,
                        )
                    )
                    continue
                decisions.append(outcome)
        return decisions

    async def _guarded_rule(
        self,
        rule: str,
        action: Callable[[], Awaitable[GateRuleResult]],
    ) -> GateRuleResult:
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="gate_rule_error",
                message="Gate rule raised; treating as failure",
                rule=rule,
                error=str(error),
            )
            return failed(rule, f"Rule check errored: {error}")

    async def _deployer_rule(self, gate_input: GateInput) -> GateRuleResult:
        rule = "DEPLOYER_REPUTATION"
        if not gate_input.is_rule_enabled(rule):
            return disabled(rule)
        if self._reputation is None:
            return cautioned(rule, "Deployer reputation service not configured - deployer unverified")

        check = await self._reputation.check(gate_input.deployer_wallet)
        details = {"reputation_score": check.reputation_score, "is_new_deployer": check.is_new_deployer}
        if not check.passed:
            return failed(rule, check.reason, check.penalty, **details)
        if check.data_missing:
            return cautioned(rule, check.reason, check.penalty, **details)
        return passed(rule, check.reason, check.penalty, **details)

    async def _cluster_rule(self, gate_input: GateInput, context: EvaluationContext) -> GateRuleResult:
        rule = "BUYER_CLUSTER"
        if not gate_input.is_rule_enabled(rule):
            return disabled(rule)
        detection = await self._cluster_detector.detect(gate_input)
        context.cluster_detected = detection.cluster_detected
        return detection.result

    async def _quote_rules(self, gate_input: GateInput, context: EvaluationContext) -> list[GateRuleResult]:
        depth_enabled = gate_input.is_rule_enabled("QUOTE_DEPTH")
        double_enabled = gate_input.is_rule_enabled("DOUBLE_QUOTE")

        if not depth_enabled and not double_enabled:
            return [disabled("QUOTE_DEPTH"), disabled("DOUBLE_QUOTE")]

        buy_amount = gate_input.buy_amount_sol
        if not buy_amount or buy_amount <= 0:
            skipped = "Buy amount not configured - quote checks skipped"
            return [
                cautioned("QUOTE_DEPTH", skipped) if depth_enabled else disabled("QUOTE_DEPTH"),
                cautioned("DOUBLE_QUOTE", skipped) if double_enabled else disabled("DOUBLE_QUOTE"),
            ]

        if gate_input.liquidity >= HIGH_LIQUIDITY_USD:
            thousands = gate_input.liquidity / 1000
            return [
                passed("QUOTE_DEPTH", f"High liquidity ${thousands:.0f}k - depth check skipped")
                if depth_enabled
                else disabled("QUOTE_DEPTH"),
                passed("DOUBLE_QUOTE", "High liquidity - double-quote skipped")
                if double_enabled
                else disabled("DOUBLE_QUOTE"),
            ]

        validator = self._depth_validator
        if validator is None:
            missing = "Quote depth validator not configured - depth unverified"
            return [
                cautioned("QUOTE_DEPTH", missing) if depth_enabled else disabled("QUOTE_DEPTH"),
                cautioned("DOUBLE_QUOTE", missing) if double_enabled else disabled("DOUBLE_QUOTE"),
            ]

        max_slippage = gate_input.effective_max_slippage
        if depth_enabled:
            depth_input = DepthValidationInput(
                token_address=gate_input.token_address,
                buy_amount_sol=buy_amount,
                max_slippage=max_slippage,
                pool_liquidity_usd=gate_input.liquidity,
                sol_price_usd=gate_input.sol_price_usd,
                is_pump_fun=gate_input.is_pump_fun,
                source=gate_input.source,
            )

            async def run_depth() -> GateRuleResult:
                return _from_depth(await validator.validate_quote_depth(depth_input))

            depth_result = await self._guarded_rule("QUOTE_DEPTH", run_depth)
        else:
            depth_result = disabled("QUOTE_DEPTH")

        if not double_enabled:
            return [depth_result, disabled("DOUBLE_QUOTE")]
        if not depth_enabled:
            return [depth_result, passed("DOUBLE_QUOTE", "Quote depth disabled - double-quote not run")]
        if depth_result.outcome in {OutcomeKind.FAIL, OutcomeKind.HARD_FAIL}:
            return [depth_result, passed("DOUBLE_QUOTE", "Depth check failed - double-quote not run")]

        async def run_double() -> GateRuleResult:
            result = await validator.double_quote_verification(
                gate_input.token_address,
                buy_amount,
                max_slippage,
                is_pump_fun=gate_input.is_pump_fun,
                source=gate_input.source,
            )
            deviation = result.details.get("deviation_pct")
            if deviation is not None:
                context.double_quote_deviation_pct = float(deviation)
            return _from_depth(result)

        return [depth_result, await self._guarded_rule("DOUBLE_QUOTE", run_double)]
