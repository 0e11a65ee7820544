from __future__ import annotations

import logging
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from admission.gate import GateDecision, GateInput
from admission.gate.rules import failed
from admission.safety import CircuitBreakerSettings, CircuitBreakerState, CounterKind, TriggerType
from admission.storage import StorageGateway, StorageSettings
from admission.storage.helpers import doc_id_from_text, serialize_for_redis, split_redis_mapping

TRIGGERED_AT = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)


def _settings() -> StorageSettings:
    return StorageSettings(
        redis_url="redis://localhost:6379/0",
        firestore_project_id="test-project",
        circuit_breaker_prefix="circuit_breaker",
        deployer_reputation_collection="deployer_reputation",
        circuit_breaker_events_collection="circuit_breaker_events",
        user_roles_collection="user_roles",
        positions_collection="positions",
        risk_check_logs_collection="risk_check_logs",
        admin_role="admin",
    )


class RedisStorageOpsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.gateway = StorageGateway(_settings(), logging.getLogger("test.storage"))
        self.redis = MagicMock()
        self.redis.hgetall = AsyncMock(return_value={})
        self.redis.hincrby = AsyncMock(return_value=2)
        self.redis.hset = AsyncMock()
        self.pipeline = MagicMock()
        self.pipeline.execute = AsyncMock(return_value=[])
        self.redis.pipeline.return_value = self.pipeline
        self.gateway._redis = self.redis

    async def test_load_reads_settings_state_and_counters_from_one_hash(self) -> None:
        self.redis.hgetall.return_value = {
            "cooldown_minutes": "15",
            "requires_admin_override": "0",
            "triggered_at": TRIGGERED_AT.isoformat(),
            "trigger_type": "hidden_tax",
            "counter_tax": "2",
        }

        settings, state = await self.gateway.load_circuit_breaker("user-1")

        self.redis.hgetall.assert_awaited_once_with("circuit_breaker:user-1")
        self.assertEqual(settings.cooldown_minutes, 15)
        self.assertFalse(settings.requires_admin_override)
        self.assertEqual(settings.rug_threshold, 3)
        self.assertEqual(state.triggered_at, TRIGGERED_AT)
        self.assertIs(state.trigger_type, TriggerType.HIDDEN_TAX)
        self.assertEqual(state.tax_counter, 2)

    async def test_empty_hash_uses_defaults(self) -> None:
        settings, state = await self.gateway.load_circuit_breaker("user-2")

        self.assertEqual(settings, CircuitBreakerSettings())
        self.assertFalse(state.triggered)

    async def test_save_state_writes_present_fields_and_deletes_cleared_ones(self) -> None:
        state = CircuitBreakerState(
            triggered_at=TRIGGERED_AT,
            trigger_type=TriggerType.DRAWDOWN,
            trigger_reason="Drawdown 25.0%",
            cooldown_expires_at=TRIGGERED_AT,
            requires_admin_override=True,
        )

        await self.gateway.save_circuit_breaker_state("user-1", state)

        mapping = self.pipeline.hset.call_args.kwargs["mapping"]
        self.assertEqual(mapping["trigger_type"], "drawdown")
        self.assertEqual(mapping["state_requires_admin_override"], "1")
        self.pipeline.hdel.assert_called_once_with("circuit_breaker:user-1", "last_event_id")
        self.pipeline.execute.assert_awaited_once()

    async def test_counter_increment_uses_hincrby(self) -> None:
        value = await self.gateway.increment_circuit_breaker_counter("user-1", CounterKind.FREEZE)

        self.assertEqual(value, 2)
        self.redis.hincrby.assert_awaited_once_with("circuit_breaker:user-1", "counter_freeze", 1)

    async def test_reset_counters_zeroes_every_counter(self) -> None:
        await self.gateway.reset_circuit_breaker_counters("user-1")

        mapping = self.redis.hset.await_args.kwargs["mapping"]
        self.assertEqual(mapping, {"counter_rug": "0", "counter_tax": "0", "counter_freeze": "0"})

    async def test_seed_only_reports_new_fields(self) -> None:
        self.pipeline.execute.return_value = [True, False, False, False, False, False, False, True]

        result = await self.gateway.seed_circuit_breaker_settings("user-1", CircuitBreakerSettings())

        self.assertEqual(result["key"], "circuit_breaker:user-1")
        self.assertEqual(result["written"], ["enabled", "requires_admin_override"])
        self.assertEqual(self.pipeline.hsetnx.call_count, 8)

    async def test_operations_require_connection(self) -> None:
        self.gateway._redis = None

        with self.assertRaises(RuntimeError):
            await self.gateway.load_circuit_breaker("user-1")


class FirestoreStorageOpsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.gateway = StorageGateway(_settings(), logging.getLogger("test.storage"))
        self.firestore = MagicMock()
        self.gateway._firestore = self.firestore

    async def test_missing_reputation_document_is_none(self) -> None:
        snapshot = MagicMock(exists=False)
        self.firestore.collection.return_value.document.return_value.get.return_value = snapshot

        self.assertIsNone(await self.gateway.get_deployer_reputation("Wallet111"))
        self.firestore.collection.assert_called_with("deployer_reputation")

    async def test_reputation_document_is_parsed(self) -> None:
        snapshot = MagicMock(exists=True)
        snapshot.to_dict.return_value = {"total_rugs": 2, "rug_ratio": 0.4, "reputation_score": 55}
        self.firestore.collection.return_value.document.return_value.get.return_value = snapshot

        record = await self.gateway.get_deployer_reputation("Wallet111")

        self.assertEqual(record.wallet_address, "Wallet111")
        self.assertEqual(record.total_rugs, 2)
        self.assertEqual(record.reputation_score, 55)

    async def test_admin_lookup_checks_role(self) -> None:
        query = self.firestore.collection.return_value.where.return_value.where.return_value.limit.return_value
        query.stream.return_value = iter([MagicMock()])

        self.assertTrue(await self.gateway.is_admin("ops"))

    async def test_risk_check_is_logged(self) -> None:
        gate_input = GateInput(token_address="Token111", liquidity=12_000.0)
        decision = GateDecision(
            token_address="Token111",
            passed=False,
            results=(failed("EXECUTABLE_SELL", "No route", 60),),
            total_penalty=60,
        )

        await self.gateway.record_risk_check(user_id="user-1", gate_input=gate_input, decision=decision)

        payload = self.firestore.collection.return_value.add.call_args.args[0]
        self.assertFalse(payload["passed_checks"])
        self.assertEqual(payload["risk_score"], 60)
        self.assertEqual(payload["rejection_reasons"], ["[EXECUTABLE_SELL] No route"])

    async def test_risk_check_skipped_without_firestore(self) -> None:
        self.gateway._firestore = None
        gate_input = GateInput(token_address="Token111")
        decision = GateDecision(token_address="Token111", passed=True, results=(), total_penalty=0)

        await self.gateway.record_risk_check(user_id=None, gate_input=gate_input, decision=decision)

        self.firestore.collection.assert_not_called()


class StorageHelperTests(unittest.TestCase):
    def test_serialize_for_redis(self) -> None:
        self.assertEqual(serialize_for_redis(None), "")
        self.assertEqual(serialize_for_redis(False), "0")
        self.assertEqual(serialize_for_redis(TRIGGERED_AT), "2026-05-01T08:00:00+00:00")
        self.assertEqual(serialize_for_redis({"a": 1}), '{"a":1}')

    def test_split_redis_mapping(self) -> None:
        present, missing = split_redis_mapping({"a": 1, "b": None})
        self.assertEqual(present, {"a": "1"})
        self.assertEqual(missing, ["b"])

    def test_doc_id_is_path_safe_and_bounded(self) -> None:
        self.assertEqual(doc_id_from_text("a/b"), "a_b")
        self.assertLessEqual(len(doc_id_from_text("x" * 300)), 128)
        with self.assertRaises(ValueError):
            doc_id_from_text("  ")


if __name__ == "__main__":
    unittest.main()
