from .client import QuoteClient, classify_quote_response
from .depth import DepthCheckResult, QuoteDepthValidator, quote_deviation_pct
from .routes import RouteValidator, is_indexing_error, is_valid_mint
from .types import (
    SOL_MINT,
    DepthValidationInput,
    QuoteClientError,
    QuoteErrorKind,
    QuoteResult,
    RouteValidationResult,
)

__all__ = [
    "DepthCheckResult",
    "DepthValidationInput",
    "QuoteClient",
    "QuoteClientError",
    "QuoteDepthValidator",
    "QuoteErrorKind",
    "QuoteResult",
    "RouteValidationResult",
    "RouteValidator",
    "SOL_MINT",
    "classify_quote_response",
    "is_indexing_error",
    "is_valid_mint",
    "quote_deviation_pct",
]
