from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from admission.common import guarded_call, log_event, retry_call
from admission.common.values import utc_now

from .types import (
    AdminAuthorizationError,
    AdminDirectory,
    CircuitBreakerCheck,
    CircuitBreakerSettings,
    CircuitBreakerState,
    CircuitBreakerStore,
    ClosedPosition,
    CounterKind,
    TriggerEvaluation,
    TriggerType,
)

RUG_EXIT_MARKERS = ("rug", "honeypot", "lp_removed", "liquidity_removed", "scam", "unsellable")
TRADES_WINDOW_FOR_RUG_CHECK = 10


def is_rug_exit(exit_reason: str | None) -> bool:
    normalized = (exit_reason or "").lower()
    return any(marker in normalized for marker in RUG_EXIT_MARKERS)


def drawdown_pct(positions: list[ClosedPosition]) -> tuple[float, float, float]:
    """Return ``(drawdown_pct, total_entry_value, total_realized_loss)``."""
    total_entry = sum(position.entry_value for position in positions)
    total_loss = sum(abs(position.pnl) for position in positions if position.pnl < 0)
    if total_entry <= 0:
        return 0.0, total_entry, total_loss
    return total_loss / total_entry * 100, total_entry, total_loss


class CircuitBreaker:
    """Per-user trading halt controller.

    The store's ``list_closed_positions`` must return newest positions first.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: CircuitBreakerStore,
        admin_directory: AdminDirectory,
        clock: Callable[[], datetime] = utc_now,
        audit_attempts: int = 3,
        audit_backoff_seconds: float = 0.25,
    ) -> None:
        self._logger = logger
        self._store = store
        self._admin_directory = admin_directory
        self._clock = clock
        self._audit_attempts = max(1, audit_attempts)
        self._audit_backoff_seconds = max(0.0, audit_backoff_seconds)

    async def get_state(self, user_id: str) -> tuple[CircuitBreakerSettings, CircuitBreakerState]:
        return await self._store.load_circuit_breaker(user_id)

    async def _closed_positions(
        self,
        user_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ClosedPosition]:
        positions = await guarded_call(
            lambda: self._store.list_closed_positions(user_id, since=since, limit=limit),
            logger=self._logger,
            event="circuit_breaker_positions_unavailable",
            message="Closed positions could not be loaded; skipping position-based checks",
            default=[],
            user_id=user_id,
        )
        return positions or []

    async def should_trigger(
        self,
        user_id: str,
        *,
        settings: CircuitBreakerSettings | None = None,
        state: CircuitBreakerState | None = None,
    ) -> TriggerEvaluation:
        if settings is None or state is None:
            settings, state = await self._store.load_circuit_breaker(user_id)

        now = self._clock()
        window_start = now - timedelta(minutes=settings.drawdown_window_minutes)
        window_positions = await self._closed_positions(user_id, since=window_start)
        percent, total_entry, total_loss = drawdown_pct(window_positions)
        if total_entry > 0 and percent >= settings.drawdown_threshold:
            return TriggerEvaluation(
                should_trigger=True,
                trigger_type=TriggerType.DRAWDOWN,
                reason=(
                    f"Drawdown {percent:.1f}% in last {settings.drawdown_window_minutes} minutes "
                    f"(threshold {settings.drawdown_threshold:g}%)"
                ),
                details={
                    "drawdown_pct": round(percent, 4),
                    "total_entry_value": total_entry,
                    "total_loss": total_loss,
                    "positions": len(window_positions),
                },
            )

        recent = await self._closed_positions(user_id, limit=TRADES_WINDOW_FOR_RUG_CHECK)
        recent = recent[:TRADES_WINDOW_FOR_RUG_CHECK]
        rug_exits = sum(1 for position in recent if is_rug_exit(position.exit_reason))
        if rug_exits >= settings.rug_threshold:
            return TriggerEvaluation(
                should_trigger=True,
                trigger_type=TriggerType.RUG_STREAK,
                reason=(
                    f"{rug_exits} rug exits in last {len(recent)} trades "
                    f"(threshold {settings.rug_threshold})"
                ),
                details={"rug_exits": rug_exits, "trades_checked": len(recent)},
            )

        if state.tax_counter >= settings.hidden_tax_threshold:
            return TriggerEvaluation(
                should_trigger=True,
                trigger_type=TriggerType.HIDDEN_TAX,
                reason=(
                    f"{state.tax_counter} hidden-tax tokens detected "
                    f"(threshold {settings.hidden_tax_threshold})"
                ),
                details={"tax_counter": state.tax_counter},
            )

        if state.freeze_counter >= settings.frozen_token_threshold:
            return TriggerEvaluation(
                should_trigger=True,
                trigger_type=TriggerType.FROZEN_TOKEN,
                reason=(
                    f"{state.freeze_counter} frozen tokens detected "
                    f"(threshold {settings.frozen_token_threshold})"
                ),
                details={"freeze_counter": state.freeze_counter},
            )

        return TriggerEvaluation(should_trigger=False)

    async def run_checks(self, user_id: str) -> CircuitBreakerCheck:
        try:
            settings, state = await self._store.load_circuit_breaker(user_id)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="circuit_breaker_state_unavailable",
                message="Circuit breaker state could not be loaded; blocking trade",
                user_id=user_id,
                error=str(error),
            )
            return CircuitBreakerCheck(
                blocked=True,
                reason=f"Circuit breaker state unavailable: {error}",
            )

        if not settings.enabled:
            return CircuitBreakerCheck(blocked=False)

        now = self._clock()
        if state.triggered:
            expires_at = state.cooldown_expires_at
            if expires_at is not None and now < expires_at:
                return CircuitBreakerCheck(
                    blocked=True,
                    reason=f"Circuit breaker active: {state.trigger_reason or 'triggered'}",
                    trigger_type=state.trigger_type,
                    cooldown_expires_at=expires_at,
                )
            if state.requires_admin_override:
                return CircuitBreakerCheck(
                    blocked=True,
                    reason=(
                        "Circuit breaker cooldown elapsed but admin reset is required: "
                        f"{state.trigger_reason or 'triggered'}"
                    ),
                    trigger_type=state.trigger_type,
                    cooldown_expires_at=expires_at,
                )
            state = await self._rearm(user_id, state)

        evaluation = await self.should_trigger(user_id, settings=settings, state=state)
        if not evaluation.should_trigger or evaluation.trigger_type is None:
            return CircuitBreakerCheck(blocked=False)

        triggered = await self.trigger(
            user_id,
            evaluation.trigger_type,
            evaluation.reason,
            details=evaluation.details,
            settings=settings,
            state=state,
        )
        return CircuitBreakerCheck(
            blocked=True,
            reason=evaluation.reason,
            trigger_type=evaluation.trigger_type,
            cooldown_expires_at=triggered.cooldown_expires_at,
        )

    async def is_trading_allowed(self, user_id: str) -> bool:
        return not (await self.run_checks(user_id)).blocked

    async def trigger(
        self,
        user_id: str,
        trigger_type: TriggerType,
        reason: str,
        *,
        details: dict[str, Any] | None = None,
        settings: CircuitBreakerSettings | None = None,
        state: CircuitBreakerState | None = None,
    ) -> CircuitBreakerState:
        if settings is None or state is None:
            settings, state = await self._store.load_circuit_breaker(user_id)

        triggered_at = self._clock()
        cooldown_expires_at = triggered_at + timedelta(minutes=settings.cooldown_minutes)
        event_id = f"{user_id}-{trigger_type.value}-{triggered_at.strftime('%Y%m%dT%H%M%S%f')}"
        triggered_state = replace(
            state,
            triggered_at=triggered_at,
            trigger_type=trigger_type,
            trigger_reason=reason,
            cooldown_expires_at=cooldown_expires_at,
            requires_admin_override=settings.requires_admin_override,
            last_event_id=event_id,
        )

        await guarded_call(
            lambda: self._store.save_circuit_breaker_state(user_id, triggered_state),
            logger=self._logger,
            event="circuit_breaker_state_save_failed",
            message="Failed to persist circuit breaker trigger state",
            level="error",
            user_id=user_id,
            trigger_type=trigger_type.value,
        )

        payload = {
            "user_id": user_id,
            "trigger_type": trigger_type.value,
            "trigger_reason": reason,
            "trigger_details": details or {},
            "triggered_at": triggered_at,
            "cooldown_expires_at": cooldown_expires_at,
            "requires_admin_override": settings.requires_admin_override,
        }
        await self._record_event(event_id, payload)

        log_event(
            self._logger,
            level="warning",
            event="circuit_breaker_triggered",
            message="Circuit breaker triggered; trading halted",
            user_id=user_id,
            trigger_type=trigger_type.value,
            reason=reason,
            cooldown_expires_at=cooldown_expires_at.isoformat(),
        )
        return triggered_state

    async def _record_event(self, event_id: str, payload: dict[str, Any]) -> None:
        try:
            await retry_call(
                lambda: self._store.append_circuit_breaker_event(event_id, payload),
                logger=self._logger,
                event="circuit_breaker_event_retry",
                message="Retrying circuit breaker audit event write",
                attempts=self._audit_attempts,
                backoff_seconds=self._audit_backoff_seconds,
                event_id=event_id,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="critical",
                event="circuit_breaker_event_unpersisted",
                message="Circuit breaker audit event could not be persisted",
                event_id=event_id,
                audit_event=payload,
                error=str(error),
            )

    async def _rearm(self, user_id: str, state: CircuitBreakerState) -> CircuitBreakerState:
        armed = CircuitBreakerState()
        await guarded_call(
            lambda: self._store.save_circuit_breaker_state(user_id, armed),
            logger=self._logger,
            event="circuit_breaker_rearm_failed",
            message="Failed to persist circuit breaker re-arm",
            level="error",
            user_id=user_id,
        )
        await self.reset_counters(user_id)
        log_event(
            self._logger,
            level="info",
            event="circuit_breaker_rearmed",
            message="Circuit breaker cooldown elapsed; trading re-armed",
            user_id=user_id,
            previous_trigger=state.trigger_type.value if state.trigger_type else None,
        )
        return armed

    async def increment_counter(self, user_id: str, kind: CounterKind) -> int | None:
        return await guarded_call(
            lambda: self._store.increment_circuit_breaker_counter(user_id, kind),
            logger=self._logger,
            event="circuit_breaker_counter_failed",
            message="Failed to increment circuit breaker counter",
            user_id=user_id,
            counter=kind.value,
        )

    async def reset_counters(self, user_id: str) -> None:
        await guarded_call(
            lambda: self._store.reset_circuit_breaker_counters(user_id),
            logger=self._logger,
            event="circuit_breaker_counter_reset_failed",
            message="Failed to reset circuit breaker counters",
            user_id=user_id,
        )

    async def admin_reset(
        self,
        user_id: str,
        *,
        admin_user_id: str,
        reason: str = "Admin reset",
    ) -> None:
        if not await self._admin_directory.is_admin(admin_user_id):
            log_event(
                self._logger,
                level="warning",
                event="circuit_breaker_reset_denied",
                message="Circuit breaker reset attempted without admin role",
                user_id=user_id,
                admin_user_id=admin_user_id,
            )
            raise AdminAuthorizationError(f"User {admin_user_id} is not authorized to reset the circuit breaker.")

        _, state = await self._store.load_circuit_breaker(user_id)
        await self._store.save_circuit_breaker_state(user_id, CircuitBreakerState())
        await self._store.reset_circuit_breaker_counters(user_id)

        if state.last_event_id:
            await guarded_call(
                lambda: self._store.mark_circuit_breaker_event_reset(
                    state.last_event_id or "",
                    reset_by=admin_user_id,
                    reset_reason=reason,
                ),
                logger=self._logger,
                event="circuit_breaker_event_reset_mark_failed",
                message="Failed to mark circuit breaker audit event as reset",
                event_id=state.last_event_id,
            )

        log_event(
            self._logger,
            level="info",
            event="circuit_breaker_admin_reset",
            message="Circuit breaker reset by admin",
            user_id=user_id,
            admin_user_id=admin_user_id,
            reason=reason,
        )
