from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey
from solders.signature import Signature

from admission.common import log_event, short_address
from admission.common.values import to_int, utc_now

from .types import (
    DEFAULT_RPC_TIMEOUT_SECONDS,
    DEVIATION_THRESHOLD_PCT,
    IMPOSSIBLE_ROI_PCT,
    LAMPORTS_PER_SOL,
    SYSTEM_PROGRAM,
    TOKEN_ACCOUNT_RENT_LAMPORTS,
    TOKEN_PROGRAM,
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

DEFAULT_PRIMARY_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_SECONDARY_RPC_URL = "https://rpc.ankr.com/solana"


@dataclass(slots=True)
class InstructionAnalysis:
    wallet_debits: int = 0
    wallet_credits: int = 0
    rent_paid: int = 0
    rent_refunded: int = 0
    temp_accounts_created: int = 0
    temp_accounts_closed: int = 0
    wsol_wrapped: int = 0
    wsol_unwrapped: int = 0

    @property
    def rent_net(self) -> int:
        return self.rent_refunded - self.rent_paid

    @property
    def wsol_net(self) -> int:
        return self.wsol_wrapped - self.wsol_unwrapped


def _lamports_to_sol(value: int) -> float:
    return value / LAMPORTS_PER_SOL


def _account_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, Mapping):
        return str(key.get("pubkey") or "")
    return str(key)


def find_wallet_index(account_keys: Sequence[Any], wallet: str) -> int:
    for index, key in enumerate(account_keys):
        if _account_key(key) == wallet:
            return index
    return -1


def _iter_parsed_instructions(tx: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for group in (tx.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(group.get("instructions") or [])
    return [item for item in instructions if isinstance(item, Mapping) and isinstance(item.get("parsed"), Mapping)]


def _wsol_amount(balances: Sequence[Mapping[str, Any]] | None, wallet: str) -> int:
    total = 0
    for balance in balances or []:
        if balance.get("mint") != WSOL_MINT or balance.get("owner") != wallet:
            continue
        total += to_int((balance.get("uiTokenAmount") or {}).get("amount"), 0)
    return total


def analyze_instructions(tx: Mapping[str, Any], wallet: str) -> InstructionAnalysis:
    """Collect wallet transfers, rent movements and WSOL wraps from a jsonParsed transaction."""
    analysis = InstructionAnalysis()

    for instruction in _iter_parsed_instructions(tx):
        parsed = instruction["parsed"]
        info = parsed.get("info") or {}
        kind = parsed.get("type")
        program = instruction.get("program")
        program_id = str(instruction.get("programId") or "")

        if program_id == SYSTEM_PROGRAM or program == "system":
            lamports = to_int(info.get("lamports"), 0)
            if kind == "transfer":
                if info.get("source") == wallet:
                    analysis.wallet_debits += lamports
                if info.get("destination") == wallet:
                    analysis.wallet_credits += lamports
            elif kind == "createAccount" and info.get("source") == wallet:
                analysis.rent_paid += lamports
                analysis.temp_accounts_created += 1

        if program_id == TOKEN_PROGRAM or program == "spl-token":
            if kind == "closeAccount" and info.get("destination") == wallet:
                analysis.rent_refunded += TOKEN_ACCOUNT_RENT_LAMPORTS
                analysis.temp_accounts_closed += 1

    meta = tx.get("meta") or {}
    wsol_delta = _wsol_amount(meta.get("postTokenBalances"), wallet) - _wsol_amount(
        meta.get("preTokenBalances"), wallet
    )
    if wsol_delta > 0:
        analysis.wsol_wrapped = wsol_delta
    elif wsol_delta < 0:
        analysis.wsol_unwrapped = -wsol_delta

    return analysis


@dataclass(slots=True, frozen=True)
class ExtractedDelta:
    sol_spent: float
    sol_received: float
    fee: float
    wallet_balance_before: float | None
    wallet_balance_after: float | None
    breakdown: DeltaBreakdown
    flags: IntegrityFlags


def extract_delta(tx: Mapping[str, Any], wallet: str) -> ExtractedDelta:
    meta = tx.get("meta")
    account_keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    wallet_index = find_wallet_index(account_keys, wallet)
    if not isinstance(meta, Mapping) or wallet_index < 0:
        return ExtractedDelta(0.0, 0.0, 0.0, None, None, DeltaBreakdown(), IntegrityFlags())

    pre_balances = meta.get("preBalances") or []
    post_balances = meta.get("postBalances") or []
    pre = to_int(pre_balances[wallet_index], 0) if wallet_index < len(pre_balances) else 0
    post = to_int(post_balances[wallet_index], 0) if wallet_index < len(post_balances) else 0
    fee = to_int(meta.get("fee"), 0)

    analysis = analyze_instructions(tx, wallet)
    raw_change = post - pre
    trade_delta = raw_change + fee - analysis.rent_net + analysis.wsol_net

    sol_spent = _lamports_to_sol(-trade_delta) if trade_delta < 0 else 0.0
    sol_received = _lamports_to_sol(trade_delta) if trade_delta > 0 else 0.0

    breakdown = DeltaBreakdown(
        raw_balance_change=_lamports_to_sol(raw_change),
        transaction_fee=_lamports_to_sol(fee),
        wsol_wrapped=_lamports_to_sol(analysis.wsol_wrapped),
        wsol_unwrapped=_lamports_to_sol(analysis.wsol_unwrapped),
        rent_paid=_lamports_to_sol(analysis.rent_paid),
        rent_refunded=_lamports_to_sol(analysis.rent_refunded),
        temp_accounts_created=analysis.temp_accounts_created,
        temp_accounts_closed=analysis.temp_accounts_closed,
        transfers_out=_lamports_to_sol(analysis.wallet_debits),
        transfers_in=_lamports_to_sol(analysis.wallet_credits),
    )
    flags = IntegrityFlags(
        wsol_noise_detected=analysis.wsol_wrapped > 0 or analysis.wsol_unwrapped > 0,
        rent_refund_detected=analysis.rent_refunded > 0,
        temp_account_detected=analysis.temp_accounts_created > 0 or analysis.temp_accounts_closed > 0,
    )
    return ExtractedDelta(
        sol_spent=sol_spent,
        sol_received=sol_received,
        fee=_lamports_to_sol(fee),
        wallet_balance_before=_lamports_to_sol(pre),
        wallet_balance_after=_lamports_to_sol(post),
        breakdown=breakdown,
        flags=flags,
    )


def should_block_pnl_calculation(result: SolDeltaResult) -> bool:
    if result.is_corrupted or not result.is_valid:
        return True
    if result.deviation_pct is not None and result.deviation_pct > DEVIATION_THRESHOLD_PCT:
        return True
    return result.integrity_flags.economic_violation


def has_integrity_warnings(result: SolDeltaResult) -> bool:
    return result.integrity_flags.has_noise


def integrity_summary(result: SolDeltaResult) -> list[str]:
    flags = result.integrity_flags
    warnings: list[str] = []
    if flags.buy_with_no_spend:
        warnings.append("BUY with no SOL spent")
    if flags.sell_with_no_receive:
        warnings.append("SELL with no SOL received")
    if flags.impossible_roi:
        warnings.append(f"Impossible ROI (>{IMPOSSIBLE_ROI_PCT:.0f}%)")
    if flags.wsol_noise_detected:
        warnings.append("WSOL wrap/unwrap detected")
    if flags.rent_refund_detected:
        warnings.append("Rent refund detected")
    if flags.temp_account_detected:
        warnings.append("Temporary accounts used")
    return warnings


class SolDeltaParser:
    """Recovers the SOL actually spent or received by a confirmed swap.

    Lamport balances come from ``getTransaction`` on the primary RPC. The
    wallet's current balance is then cross-checked against two independent
    endpoints; a disagreement above one percent marks the result corrupted.
    ``parse_sol_delta`` never raises: every failure becomes a corrupted result.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        primary_rpc_url: str = DEFAULT_PRIMARY_RPC_URL,
        secondary_rpc_url: str = DEFAULT_SECONDARY_RPC_URL,
        timeout_seconds: float = DEFAULT_RPC_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._logger = logger
        self._primary_rpc_url = primary_rpc_url
        self._secondary_rpc_url = secondary_rpc_url
        self._timeout_seconds = timeout_seconds
        self._http_session = session
        self._owns_session = session is None
        self._clock = clock

    async def connect(self) -> None:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RpcError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._primary_rpc_url, json=payload) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RpcError(f"RPC call failed: method={method} status={response.status}")

        if not isinstance(body, dict):
            raise RpcError(f"Invalid RPC response for {method}")
        if body.get("error"):
            raise RpcError(f"RPC error for {method}: {body['error']}")

        return body.get("result")

    async def fetch_transaction(self, signature: str) -> Mapping[str, Any] | None:
        Signature.from_string(signature)
        result = await self._rpc_call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": "confirmed",
                },
            ],
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RpcError(f"Unexpected getTransaction response: {type(result).__name__}")
        return result

    async def _fetch_balance_from_rpc(self, rpc_url: str, wallet: str) -> float | None:
        client = AsyncClient(rpc_url, timeout=self._timeout_seconds)
        try:
            response = await asyncio.wait_for(
                client.get_balance(Pubkey.from_string(wallet), commitment=Confirmed),
                timeout=self._timeout_seconds,
            )
            return _lamports_to_sol(int(response.value))
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="rpc_balance_fetch_failed",
                message="Balance lookup failed",
                rpc_url=rpc_url,
                wallet=short_address(wallet),
                error=str(error),
            )
            return None
        finally:
            await client.close()

    async def fetch_verified_balance(self, wallet: str) -> BalanceCheck:
        primary, secondary = await asyncio.gather(
            self._fetch_balance_from_rpc(self._primary_rpc_url, wallet),
            self._fetch_balance_from_rpc(self._secondary_rpc_url, wallet),
        )

        if primary is not None and secondary is not None:
            average = (primary + secondary) / 2
            deviation = abs(primary - secondary) / average * 100 if average > 0 else 0.0
            log_event(
                self._logger,
                level="debug",
                event="rpc_balance_compared",
                message="Dual RPC balance check",
                wallet=short_address(wallet),
                primary=round(primary, 9),
                secondary=round(secondary, 9),
                deviation_pct=round(deviation, 3),
            )
            return BalanceCheck(primary, deviation <= DEVIATION_THRESHOLD_PCT, deviation)
        if primary is not None:
            return BalanceCheck(primary, False, 0.0)
        if secondary is not None:
            return BalanceCheck(secondary, False, 0.0)
        return BalanceCheck(0.0, False, 100.0)

    async def get_pre_trade_balance_snapshot(self, wallet: str) -> BalanceSnapshot:
        check = await self.fetch_verified_balance(wallet)
        return BalanceSnapshot(balance=check.balance, verified=check.verified, timestamp=self._clock())

    async def verify_delta_with_balance(
        self,
        wallet: str,
        expected_delta: float,
        balance_before: float,
    ) -> DeltaVerification:
        check = await self.fetch_verified_balance(wallet)
        if not check.verified:
            log_event(
                self._logger,
                level="warning",
                event="delta_verification_unconfirmed",
                message="Balance verification incomplete; RPC endpoints disagree or are unavailable",
                wallet=short_address(wallet),
            )

        actual_delta = check.balance - balance_before
        diff = abs(actual_delta - expected_delta)
        if abs(expected_delta) > 0:
            deviation = diff / abs(expected_delta) * 100
        else:
            deviation = 100.0 if diff > 0 else 0.0

        return DeltaVerification(
            verified=deviation <= DEVIATION_THRESHOLD_PCT,
            actual_delta=actual_delta,
            deviation_pct=deviation,
        )

    async def parse_sol_delta(
        self,
        signature: str,
        wallet: str,
        trade_type: TradeType | str,
        *,
        entry_sol: float | None = None,
    ) -> SolDeltaResult:
        timestamp = self._clock()
        try:
            side = TradeType.parse(trade_type)
            tx = await self.fetch_transaction(signature)
            if tx is None:
                return self._corrupted(signature, timestamp, "Transaction not found on primary RPC")

            extracted = extract_delta(tx, wallet)
            sol_spent = extracted.sol_spent
            sol_received = extracted.sol_received

            impossible_roi = False
            if side is TradeType.SELL and entry_sol and entry_sol > 0:
                roi_pct = (sol_received - entry_sol) / entry_sol * 100
                impossible_roi = roi_pct > IMPOSSIBLE_ROI_PCT

            flags = IntegrityFlags(
                buy_with_no_spend=side is TradeType.BUY and sol_spent <= 0,
                sell_with_no_receive=side is TradeType.SELL and sol_received <= 0,
                impossible_roi=impossible_roi,
                wsol_noise_detected=extracted.flags.wsol_noise_detected,
                rent_refund_detected=extracted.flags.rent_refund_detected,
                temp_account_detected=extracted.flags.temp_account_detected,
            )

            balance = await self.fetch_verified_balance(wallet)

            reason: str | None = None
            deviation: float | None = None
            if not balance.verified and balance.deviation_pct > DEVIATION_THRESHOLD_PCT:
                reason = f"RPC balance mismatch: {balance.deviation_pct:.2f}% deviation"
                deviation = balance.deviation_pct
            elif flags.buy_with_no_spend:
                reason = "BUY transaction shows no SOL spent"
            elif flags.sell_with_no_receive:
                reason = "SELL transaction shows no SOL received"
            elif flags.impossible_roi:
                reason = f"Impossible ROI detected (>{IMPOSSIBLE_ROI_PCT:.0f}%)"

            corrupted = reason is not None
            result = SolDeltaResult(
                signature=signature,
                timestamp=timestamp,
                sol_spent=sol_spent,
                sol_received=sol_received,
                net_delta=sol_received - sol_spent,
                fee=extracted.fee,
                is_valid=not corrupted and (sol_spent > 0 or sol_received > 0),
                is_corrupted=corrupted,
                corruption_reason=reason,
                wallet_balance_before=extracted.wallet_balance_before,
                wallet_balance_after=extracted.wallet_balance_after,
                deviation_pct=deviation,
                integrity_flags=flags,
                breakdown=extracted.breakdown,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            return self._corrupted(signature, timestamp, str(error) or "Failed to parse transaction")

        log_event(
            self._logger,
            level="error" if result.is_corrupted else "info",
            event="sol_delta_corrupted" if result.is_corrupted else "sol_delta_parsed",
            message="Transaction delta is corrupted" if result.is_corrupted else "Transaction delta parsed",
            signature=short_address(signature, keep=12),
            trade_type=side.value,
            sol_spent=round(result.sol_spent, 9),
            sol_received=round(result.sol_received, 9),
            fee=round(result.fee, 9),
            reason=result.corruption_reason,
            warnings=integrity_summary(result),
        )
        return result

    def _corrupted(self, signature: str, timestamp: datetime, reason: str) -> SolDeltaResult:
        log_event(
            self._logger,
            level="error",
            event="sol_delta_corrupted",
            message="Transaction delta could not be trusted",
            signature=short_address(signature, keep=12),
            reason=reason,
        )
        return SolDeltaResult.corrupted(signature, timestamp, reason)
