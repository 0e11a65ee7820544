from __future__ import annotations

import logging
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

from admission.safety import (
    AdminAuthorizationError,
    CircuitBreaker,
    CircuitBreakerSettings,
    CircuitBreakerState,
    ClosedPosition,
    CounterKind,
    TriggerType,
)

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
USER = "user-1"


class FakeClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class InMemoryBreakerStore:
    def __init__(self, settings: CircuitBreakerSettings | None = None) -> None:
        self.settings = settings or CircuitBreakerSettings()
        self.state = CircuitBreakerState()
        self.positions: list[ClosedPosition] = []
        self.events: dict[str, dict[str, Any]] = {}
        self.reset_marks: list[tuple[str, str, str]] = []
        self.admins: set[str] = set()
        self.fail_load = False
        self.fail_events = False

    async def load_circuit_breaker(self, user_id: str) -> tuple[CircuitBreakerSettings, CircuitBreakerState]:
        if self.fail_load:
            raise ConnectionError("redis down")
        return self.settings, self.state

    async def save_circuit_breaker_state(self, user_id: str, state: CircuitBreakerState) -> None:
        self.state = CircuitBreakerState(
            triggered_at=state.triggered_at,
            trigger_type=state.trigger_type,
            trigger_reason=state.trigger_reason,
            cooldown_expires_at=state.cooldown_expires_at,
            requires_admin_override=state.requires_admin_override,
            last_event_id=state.last_event_id,
            rug_counter=self.state.rug_counter,
            tax_counter=self.state.tax_counter,
            freeze_counter=self.state.freeze_counter,
        )

    async def increment_circuit_breaker_counter(self, user_id: str, kind: CounterKind) -> int:
        field_name = f"{kind.value}_counter"
        value = getattr(self.state, field_name) + 1
        self.state = replace(self.state, **{field_name: value})
        return value

    async def reset_circuit_breaker_counters(self, user_id: str) -> None:
        self.state = replace(self.state, rug_counter=0, tax_counter=0, freeze_counter=0)

    async def append_circuit_breaker_event(self, event_id: str, payload: dict[str, Any]) -> None:
        if self.fail_events:
            raise ConnectionError("firestore unavailable")
        self.events[event_id] = payload

    async def mark_circuit_breaker_event_reset(self, event_id: str, *, reset_by: str, reset_reason: str) -> None:
        self.reset_marks.append((event_id, reset_by, reset_reason))

    async def list_closed_positions(
        self,
        user_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ClosedPosition]:
        positions = sorted(self.positions, key=lambda position: position.closed_at, reverse=True)
        if since is not None:
            positions = [position for position in positions if position.closed_at >= since]
        if limit is not None:
            positions = positions[:limit]
        return positions

    async def is_admin(self, user_id: str) -> bool:
        return user_id in self.admins


def _position(minutes_ago: int, *, pnl: float = 0.01, entry: float = 1.0, exit_reason: str = "take_profit") -> ClosedPosition:
    return ClosedPosition(
        closed_at=NOW - timedelta(minutes=minutes_ago),
        entry_value=entry,
        pnl=pnl,
        exit_reason=exit_reason,
    )


class CircuitBreakerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = InMemoryBreakerStore()
        self.logger = logging.getLogger("test.circuit_breaker")
        self.breaker = CircuitBreaker(
            logger=self.logger,
            store=self.store,
            admin_directory=self.store,
            clock=self.clock,
            audit_attempts=2,
            audit_backoff_seconds=0.0,
        )

    async def test_three_rug_exits_in_last_ten_trades_trigger(self) -> None:
        self.store.positions = [_position(index + 1) for index in range(7)]
        self.store.positions += [_position(100 + index, exit_reason="rug_detected") for index in range(3)]

        evaluation = await self.breaker.should_trigger(USER)

        self.assertTrue(evaluation.should_trigger)
        self.assertIs(evaluation.trigger_type, TriggerType.RUG_STREAK)
        self.assertEqual(evaluation.details["rug_exits"], 3)

    async def test_rug_exits_outside_last_ten_are_ignored(self) -> None:
        self.store.positions = [_position(index + 1) for index in range(10)]
        self.store.positions += [_position(200 + index, exit_reason="honeypot") for index in range(3)]

        evaluation = await self.breaker.should_trigger(USER)

        self.assertFalse(evaluation.should_trigger)

    async def test_drawdown_in_window_triggers(self) -> None:
        self.store.positions = [
            _position(5, pnl=-0.5, entry=1.0, exit_reason="stop_loss"),
            _position(10, pnl=0.05, entry=1.0),
        ]

        evaluation = await self.breaker.should_trigger(USER)

        self.assertTrue(evaluation.should_trigger)
        self.assertIs(evaluation.trigger_type, TriggerType.DRAWDOWN)
        self.assertAlmostEqual(evaluation.details["drawdown_pct"], 25.0)
        self.assertAlmostEqual(evaluation.details["total_loss"], 0.5)

    async def test_losses_outside_window_do_not_trigger_drawdown(self) -> None:
        self.store.positions = [_position(45, pnl=-0.9, entry=1.0, exit_reason="stop_loss")]

        evaluation = await self.breaker.should_trigger(USER)

        self.assertFalse(evaluation.should_trigger)

    async def test_hidden_tax_and_frozen_counters_trigger(self) -> None:
        await self.breaker.increment_counter(USER, CounterKind.TAX)
        await self.breaker.increment_counter(USER, CounterKind.TAX)

        evaluation = await self.breaker.should_trigger(USER)
        self.assertIs(evaluation.trigger_type, TriggerType.HIDDEN_TAX)

        await self.breaker.reset_counters(USER)
        await self.breaker.increment_counter(USER, CounterKind.FREEZE)
        await self.breaker.increment_counter(USER, CounterKind.FREEZE)

        evaluation = await self.breaker.should_trigger(USER)
        self.assertIs(evaluation.trigger_type, TriggerType.FROZEN_TOKEN)

    async def test_run_checks_triggers_and_records_event(self) -> None:
        self.store.positions = [_position(index + 1, exit_reason="lp_removed") for index in range(3)]

        check = await self.breaker.run_checks(USER)

        self.assertTrue(check.blocked)
        self.assertIs(check.trigger_type, TriggerType.RUG_STREAK)
        self.assertEqual(check.cooldown_expires_at, NOW + timedelta(minutes=60))
        self.assertTrue(self.store.state.triggered)
        self.assertEqual(len(self.store.events), 1)
        payload = next(iter(self.store.events.values()))
        self.assertEqual(payload["trigger_type"], "rug_streak")

    async def test_get_state_reflects_trigger(self) -> None:
        await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")

        settings, state = await self.breaker.get_state(USER)

        self.assertTrue(settings.enabled)
        self.assertTrue(state.triggered)
        self.assertIs(state.trigger_type, TriggerType.MANUAL)

    async def test_blocked_during_cooldown(self) -> None:
        await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")
        self.clock.now = NOW + timedelta(minutes=30)

        check = await self.breaker.run_checks(USER)

        self.assertTrue(check.blocked)
        self.assertIn("manual halt", check.reason or "")
        self.assertFalse(await self.breaker.is_trading_allowed(USER))

    async def test_admin_override_keeps_breaker_blocked_after_cooldown(self) -> None:
        await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")
        self.clock.now = NOW + timedelta(minutes=61)

        check = await self.breaker.run_checks(USER)

        self.assertTrue(check.blocked)
        self.assertIn("admin reset is required", check.reason or "")

    async def test_breaker_rearms_after_cooldown_without_admin_override(self) -> None:
        self.store.settings = CircuitBreakerSettings(requires_admin_override=False)
        await self.breaker.increment_counter(USER, CounterKind.RUG)
        await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")
        self.clock.now = NOW + timedelta(minutes=61)

        check = await self.breaker.run_checks(USER)

        self.assertFalse(check.blocked)
        self.assertFalse(self.store.state.triggered)
        self.assertEqual(self.store.state.rug_counter, 0)

    async def test_state_load_failure_blocks_trading(self) -> None:
        self.store.fail_load = True

        check = await self.breaker.run_checks(USER)

        self.assertTrue(check.blocked)
        self.assertIn("unavailable", check.reason or "")

    async def test_disabled_breaker_never_blocks(self) -> None:
        self.store.settings = CircuitBreakerSettings(enabled=False)
        self.store.positions = [_position(index + 1, exit_reason="rug") for index in range(5)]

        check = await self.breaker.run_checks(USER)

        self.assertFalse(check.blocked)

    async def test_admin_reset_requires_admin_role(self) -> None:
        await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")

        with self.assertRaises(AdminAuthorizationError):
            await self.breaker.admin_reset(USER, admin_user_id="intruder")

        self.assertTrue(self.store.state.triggered)

    async def test_admin_reset_clears_state_and_marks_event(self) -> None:
        self.store.admins.add("ops")
        await self.breaker.increment_counter(USER, CounterKind.TAX)
        triggered = await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")

        await self.breaker.admin_reset(USER, admin_user_id="ops", reason="investigated")

        self.assertFalse(self.store.state.triggered)
        self.assertEqual(self.store.state.tax_counter, 0)
        self.assertEqual(self.store.reset_marks, [(triggered.last_event_id, "ops", "investigated")])
        self.assertTrue(await self.breaker.is_trading_allowed(USER))

    async def test_unpersisted_audit_event_is_logged_critical(self) -> None:
        self.store.fail_events = True

        with self.assertLogs(self.logger, level="CRITICAL") as captured:
            state = await self.breaker.trigger(USER, TriggerType.MANUAL, "manual halt")

        self.assertTrue(state.triggered)
        self.assertTrue(any("could not be persisted" in line for line in captured.output))


if __name__ == "__main__":
    unittest.main()
