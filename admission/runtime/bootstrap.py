from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Sequence

from admission.common import guarded_call, log_event
from admission.gate import GateDecision, GateInput, RuleEngine
from admission.onchain import SolDeltaParser
from admission.quotes import QuoteClient, QuoteDepthValidator, RouteValidator
from admission.safety import CircuitBreaker, DeployerReputationService
from admission.storage import StorageGateway, StorageSettings

from .settings import EngineSettings


@dataclass(slots=True)
class AdmissionRuntime:
    settings: EngineSettings
    logger: logging.Logger
    quote_client: QuoteClient
    route_validator: RouteValidator
    depth_validator: QuoteDepthValidator
    sol_delta_parser: SolDeltaParser
    engine: RuleEngine
    storage: StorageGateway | None = None
    circuit_breaker: CircuitBreaker | None = None
    reputation: DeployerReputationService | None = None

    async def connect(self) -> None:
        if self.storage is not None:
            await self.storage.connect()
        await self.quote_client.connect()
        await self.sol_delta_parser.connect()
        if self.reputation is not None:
            await self.reputation.load_known_clusters()
        log_event(
            self.logger,
            level="info",
            event="runtime_connected",
            message="Admission runtime ready",
            storage=self.storage is not None,
            quote_endpoints=len(self.settings.quote_endpoints),
        )

    async def close(self) -> None:
        await guarded_call(
            self.quote_client.close,
            logger=self.logger,
            event="quote_client_close_failed",
            message="Failed to close quote client",
        )
        await guarded_call(
            self.sol_delta_parser.close,
            logger=self.logger,
            event="sol_delta_close_failed",
            message="Failed to close RPC session",
        )
        if self.storage is not None:
            await guarded_call(
                self.storage.close,
                logger=self.logger,
                event="storage_close_failed",
                message="Failed to close storage",
            )

    def build_input(self, payload: Mapping[str, Any]) -> GateInput:
        gate_input = GateInput.from_dict(payload)
        if "liquidity_thresholds" in payload or "liquidityThresholds" in payload:
            return gate_input
        return replace(gate_input, liquidity_thresholds=self.settings.liquidity_thresholds)

    async def evaluate(self, payload: Mapping[str, Any], *, user_id: str | None = None) -> GateDecision:
        return await self.engine.evaluate(self.build_input(payload), user_id=user_id)

    async def evaluate_many(
        self,
        payloads: Sequence[Mapping[str, Any]],
        *,
        user_id: str | None = None,
    ) -> list[GateDecision]:
        inputs = [self.build_input(payload) for payload in payloads]
        return await self.engine.evaluate_batch(inputs, user_id=user_id, batch_size=self.settings.batch_size)


def bootstrap_engine(
    settings: EngineSettings,
    logger: logging.Logger,
    storage_settings: StorageSettings | None = None,
) -> AdmissionRuntime:
    quote_client = QuoteClient(
        logger=logger,
        endpoints=settings.quote_endpoints,
        raydium_url=settings.raydium_quote_url,
        api_key=settings.jupiter_api_key,
        timeout_seconds=settings.quote_timeout_seconds,
        cache_ttl_seconds=settings.quote_cache_ttl_seconds,
        max_retries=settings.quote_max_retries,
        critical_extra_retries=settings.quote_critical_extra_retries,
        backoff_base_seconds=settings.quote_backoff_base_seconds,
        breaker_threshold=settings.quote_breaker_threshold,
        breaker_reset_seconds=settings.quote_breaker_reset_seconds,
    )
    route_validator = RouteValidator(
        logger=logger,
        quote_client=quote_client,
        raydium_url=settings.raydium_quote_url,
        token_index_url=settings.token_index_url,
        timeout_seconds=settings.route_timeout_seconds,
    )
    depth_validator = QuoteDepthValidator(
        logger=logger,
        quote_client=quote_client,
        default_sol_price_usd=settings.default_sol_price_usd,
        double_quote_delay_seconds=settings.double_quote_delay_seconds,
        max_deviation_pct=settings.double_quote_max_deviation_pct,
    )
    sol_delta_parser = SolDeltaParser(
        logger=logger,
        primary_rpc_url=settings.primary_rpc_url,
        secondary_rpc_url=settings.secondary_rpc_url,
        timeout_seconds=settings.rpc_timeout_seconds,
    )

    storage: StorageGateway | None = None
    circuit_breaker: CircuitBreaker | None = None
    reputation: DeployerReputationService | None = None
    if settings.storage_enabled and storage_settings is not None:
        storage = StorageGateway(storage_settings, logger)
        reputation = DeployerReputationService(logger=logger, store=storage)
        if settings.circuit_breaker_enabled:
            circuit_breaker = CircuitBreaker(logger=logger, store=storage, admin_directory=storage)

    engine = RuleEngine(
        logger=logger,
        reputation=reputation,
        depth_validator=depth_validator,
        circuit_breaker=circuit_breaker,
        recorder=storage,
    )
    return AdmissionRuntime(
        settings=settings,
        logger=logger,
        quote_client=quote_client,
        route_validator=route_validator,
        depth_validator=depth_validator,
        sol_delta_parser=sol_delta_parser,
        engine=engine,
        storage=storage,
        circuit_breaker=circuit_breaker,
        reputation=reputation,
    )
