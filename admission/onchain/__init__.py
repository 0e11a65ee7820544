from .sol_delta import (
    SolDeltaParser,
    analyze_instructions,
    extract_delta,
    find_wallet_index,
    has_integrity_warnings,
    integrity_summary,
    should_block_pnl_calculation,
)
from .types import (
    LAMPORTS_PER_SOL,
    TOKEN_ACCOUNT_RENT_LAMPORTS,
    WSOL_MINT,
    BalanceCheck,
    BalanceSnapshot,
    DeltaBreakdown,
    DeltaVerification,
    IntegrityFlags,
    RpcError,
    SolDeltaResult,
    TradeType,
)

__all__ = [
    "LAMPORTS_PER_SOL",
    "TOKEN_ACCOUNT_RENT_LAMPORTS",
    "WSOL_MINT",
    "BalanceCheck",
    "BalanceSnapshot",
    "DeltaBreakdown",
    "DeltaVerification",
    "IntegrityFlags",
    "RpcError",
    "SolDeltaParser",
    "SolDeltaResult",
    "TradeType",
    "analyze_instructions",
    "extract_delta",
    "find_wallet_index",
    "has_integrity_warnings",
    "integrity_summary",
    "should_block_pnl_calculation",
]
