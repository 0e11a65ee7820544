from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from spl.token.constants import TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT
from solders.system_program import ID as SYSTEM_PROGRAM_ID

LAMPORTS_PER_SOL = 1_000_000_000
WSOL_MINT = str(WRAPPED_SOL_MINT)
TOKEN_PROGRAM = str(TOKEN_PROGRAM_ID)
SYSTEM_PROGRAM = str(SYSTEM_PROGRAM_ID)

TOKEN_ACCOUNT_RENT_LAMPORTS = 2_039_280
DEFAULT_RPC_TIMEOUT_SECONDS = 10.0
DEVIATION_THRESHOLD_PCT = 1.0
IMPOSSIBLE_ROI_PCT = 1000.0


class RpcError(RuntimeError):
    pass


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Any) -> "TradeType":
        if isinstance(value, cls):
            return value
        return cls(str(value or "").strip().lower())


@dataclass(slots=True, frozen=True)
class IntegrityFlags:
    buy_with_no_spend: bool = False
    sell_with_no_receive: bool = False
    impossible_roi: bool = False
    wsol_noise_detected: bool = False
    rent_refund_detected: bool = False
    temp_account_detected: bool = False

    @property
    def economic_violation(self) -> bool:
        return self.buy_with_no_spend or self.sell_with_no_receive or self.impossible_roi

    @property
    def has_noise(self) -> bool:
        return self.wsol_noise_detected or self.rent_refund_detected or self.temp_account_detected


@dataclass(slots=True, frozen=True)
class DeltaBreakdown:
    """Per-transaction lamport accounting, expressed in SOL."""

    raw_balance_change: float = 0.0
    transaction_fee: float = 0.0
    wsol_wrapped: float = 0.0
    wsol_unwrapped: float = 0.0
    rent_paid: float = 0.0
    rent_refunded: float = 0.0
    temp_accounts_created: int = 0
    temp_accounts_closed: int = 0
    transfers_out: float = 0.0
    transfers_in: float = 0.0


@dataclass(slots=True, frozen=True)
class BalanceCheck:
    balance: float
    verified: bool
    deviation_pct: float


@dataclass(slots=True, frozen=True)
class BalanceSnapshot:
    balance: float
    verified: bool
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class DeltaVerification:
    verified: bool
    actual_delta: float
    deviation_pct: float


@dataclass(slots=True, frozen=True)
class SolDeltaResult:
    signature: str
    timestamp: datetime
    sol_spent: float = 0.0
    sol_received: float = 0.0
    net_delta: float = 0.0
    fee: float = 0.0
    is_valid: bool = False
    is_corrupted: bool = False
    corruption_reason: str | None = None
    wallet_balance_before: float | None = None
    wallet_balance_after: float | None = None
    deviation_pct: float | None = None
    integrity_flags: IntegrityFlags = field(default_factory=IntegrityFlags)
    breakdown: DeltaBreakdown | None = None

    @classmethod
    def corrupted(cls, signature: str, timestamp: datetime, reason: str) -> "SolDeltaResult":
        return cls(signature=signature, timestamp=timestamp, is_corrupted=True, corruption_reason=reason)
