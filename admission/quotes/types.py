from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from admission.common.values import to_float, to_int

SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_QUOTE_ENDPOINTS = (
    "https://lite-api.jup.ag/swap/v1/quote",
    "https://quote-api.jup.ag/v6/quote",
)
DEFAULT_RAYDIUM_QUOTE_URL = "https://transaction-v1.raydium.io/compute/swap-base-in"
DEFAULT_TOKEN_INDEX_URL = "https://tokens.jup.ag/token"
RAYDIUM_FALLBACK_ENDPOINT = "raydium-fallback"


class QuoteErrorKind(str, Enum):
    NO_ROUTE = "NO_ROUTE"
    RATE_LIMITED = "RATE_LIMITED"
    HTTP_ERROR = "HTTP_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


class QuoteClientError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class QuoteResult:
    ok: bool
    quote: dict[str, Any] | None = None
    endpoint: str | None = None
    kind: QuoteErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, quote: dict[str, Any], endpoint: str) -> "QuoteResult":
        return cls(ok=True, quote=quote, endpoint=endpoint)

    @classmethod
    def failure(cls, kind: QuoteErrorKind, message: str) -> "QuoteResult":
        return cls(ok=False, kind=kind, message=message)

    @property
    def rate_limited(self) -> bool:
        return self.kind is QuoteErrorKind.RATE_LIMITED

    @property
    def no_route(self) -> bool:
        return self.kind is QuoteErrorKind.NO_ROUTE

    @property
    def out_amount(self) -> int:
        if not self.quote:
            return 0
        return to_int(self.quote.get("outAmount"), 0)

    @property
    def price_impact_pct(self) -> float:
        if not self.quote:
            return 0.0
        return abs(to_float(self.quote.get("priceImpactPct"), 0.0))


@dataclass(slots=True, frozen=True)
class RouteValidationResult:
    has_route: bool
    awaiting_indexing: bool = False
    source: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class DepthValidationInput:
    token_address: str
    buy_amount_sol: float
    max_slippage: float = 0.15
    pool_liquidity_usd: float = 0.0
    sol_price_usd: float | None = None
    is_pump_fun: bool = False
    source: str | None = None
