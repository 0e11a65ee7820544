from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from admission.common.values import to_bool, to_float, to_int
from admission.gate.types import LiquidityThresholds
from admission.onchain.sol_delta import DEFAULT_PRIMARY_RPC_URL, DEFAULT_SECONDARY_RPC_URL
from admission.quotes.types import DEFAULT_QUOTE_ENDPOINTS, DEFAULT_RAYDIUM_QUOTE_URL, DEFAULT_TOKEN_INDEX_URL
from admission.storage import StorageSettings


def parse_endpoints(value: str | None) -> tuple[str, ...]:
    if not value:
        return DEFAULT_QUOTE_ENDPOINTS
    endpoints = tuple(part.strip() for part in value.split(",") if part.strip())
    return endpoints or DEFAULT_QUOTE_ENDPOINTS


@dataclass(slots=True)
class EngineSettings:
    quote_endpoints: tuple[str, ...]
    raydium_quote_url: str
    token_index_url: str
    jupiter_api_key: str
    quote_timeout_seconds: float
    quote_cache_ttl_seconds: float
    quote_max_retries: int
    quote_critical_extra_retries: int
    quote_backoff_base_seconds: float
    quote_breaker_threshold: int
    quote_breaker_reset_seconds: float
    route_timeout_seconds: float
    primary_rpc_url: str
    secondary_rpc_url: str
    rpc_timeout_seconds: float
    liquidity_thresholds: LiquidityThresholds
    default_sol_price_usd: float
    double_quote_delay_seconds: float
    double_quote_max_deviation_pct: float
    batch_size: int
    circuit_breaker_enabled: bool
    storage_enabled: bool

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            quote_endpoints=parse_endpoints(os.getenv("JUPITER_QUOTE_ENDPOINTS")),
            raydium_quote_url=os.getenv("RAYDIUM_QUOTE_URL", DEFAULT_RAYDIUM_QUOTE_URL).strip(),
            token_index_url=os.getenv("TOKEN_INDEX_URL", DEFAULT_TOKEN_INDEX_URL).strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            quote_timeout_seconds=max(0.5, to_float(os.getenv("QUOTE_TIMEOUT_SECONDS"), 8.0)),
            quote_cache_ttl_seconds=max(0.0, to_float(os.getenv("QUOTE_CACHE_TTL_SECONDS"), 60.0)),
            quote_max_retries=max(0, to_int(os.getenv("QUOTE_MAX_RETRIES"), 2)),
            quote_critical_extra_retries=max(0, to_int(os.getenv("QUOTE_CRITICAL_EXTRA_RETRIES"), 2)),
            quote_backoff_base_seconds=max(0.0, to_float(os.getenv("QUOTE_BACKOFF_BASE_SECONDS"), 0.6)),
            quote_breaker_threshold=max(1, to_int(os.getenv("QUOTE_BREAKER_THRESHOLD"), 2)),
            quote_breaker_reset_seconds=max(1.0, to_float(os.getenv("QUOTE_BREAKER_RESET_SECONDS"), 15.0)),
            route_timeout_seconds=max(0.5, to_float(os.getenv("ROUTE_TIMEOUT_SECONDS"), 5.0)),
            primary_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip() or DEFAULT_PRIMARY_RPC_URL,
            secondary_rpc_url=os.getenv("SOLANA_SECONDARY_RPC_URL", "").strip() or DEFAULT_SECONDARY_RPC_URL,
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            liquidity_thresholds=LiquidityThresholds(
                auto_min_usd=max(0.0, to_float(os.getenv("AUTO_MIN_LIQUIDITY_USD"), 10_000.0)),
                manual_min_usd=max(0.0, to_float(os.getenv("MANUAL_MIN_LIQUIDITY_USD"), 5_000.0)),
            ),
            default_sol_price_usd=max(1.0, to_float(os.getenv("DEFAULT_SOL_PRICE_USD"), 150.0)),
            double_quote_delay_seconds=max(0.0, to_float(os.getenv("DOUBLE_QUOTE_DELAY_SECONDS"), 2.5)),
            double_quote_max_deviation_pct=max(
                0.1,
                to_float(os.getenv("DOUBLE_QUOTE_MAX_DEVIATION_PCT"), 5.0),
            ),
            batch_size=max(1, to_int(os.getenv("GATE_BATCH_SIZE"), 5)),
            circuit_breaker_enabled=to_bool(os.getenv("CIRCUIT_BREAKER_CHECKS_ENABLED"), True),
            storage_enabled=to_bool(os.getenv("STORAGE_ENABLED"), True),
        )


def load_settings() -> tuple[EngineSettings, StorageSettings]:
    load_dotenv()
    return EngineSettings.from_env(), StorageSettings.from_env()
