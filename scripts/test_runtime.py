from __future__ import annotations

import json
import logging
import os
import unittest
from unittest.mock import AsyncMock, patch

from admission.gate import LiquidityThresholds
from admission.runtime import EngineSettings, JsonFormatter, bootstrap_engine
from admission.runtime.settings import parse_endpoints
from admission.storage import StorageSettings

TOKEN = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"


class EngineSettingsTests(unittest.TestCase):
    def test_defaults_from_empty_environment(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = EngineSettings.from_env()

        self.assertEqual(len(settings.quote_endpoints), 2)
        self.assertEqual(settings.quote_cache_ttl_seconds, 60.0)
        self.assertEqual(settings.liquidity_thresholds, LiquidityThresholds())
        self.assertEqual(settings.batch_size, 5)
        self.assertTrue(settings.storage_enabled)

    def test_environment_overrides_and_clamps(self) -> None:
        env = {
            "AUTO_MIN_LIQUIDITY_USD": "25000",
            "GATE_BATCH_SIZE": "0",
            "QUOTE_MAX_RETRIES": "bogus",
            "STORAGE_ENABLED": "false",
            "SOLANA_RPC_URL": "https://rpc.example",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = EngineSettings.from_env()

        self.assertEqual(settings.liquidity_thresholds.auto_min_usd, 25_000.0)
        self.assertEqual(settings.batch_size, 1)
        self.assertEqual(settings.quote_max_retries, 2)
        self.assertFalse(settings.storage_enabled)
        self.assertEqual(settings.primary_rpc_url, "https://rpc.example")

    def test_endpoint_list_parsing(self) -> None:
        self.assertEqual(parse_endpoints("https://a, ,https://b"), ("https://a", "https://b"))
        self.assertEqual(parse_endpoints(" , "), parse_endpoints(None))

    def test_storage_settings_key_prefix(self) -> None:
        with patch.dict(os.environ, {"REDIS_CIRCUIT_BREAKER_PREFIX": "cb:"}, clear=True):
            storage = StorageSettings.from_env()

        self.assertEqual(storage.circuit_breaker_key("user-1"), "cb:user-1")


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        with patch.dict(os.environ, {"STORAGE_ENABLED": "false", "AUTO_MIN_LIQUIDITY_USD": "30000"}, clear=True):
            self.settings = EngineSettings.from_env()
        self.runtime = bootstrap_engine(self.settings, logging.getLogger("test.runtime"))

    def test_storage_disabled_leaves_persisted_collaborators_out(self) -> None:
        self.assertIsNone(self.runtime.storage)
        self.assertIsNone(self.runtime.circuit_breaker)
        self.assertIsNone(self.runtime.reputation)

    def test_storage_enabled_wires_breaker_and_reputation(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = EngineSettings.from_env()
            storage_settings = StorageSettings.from_env()

        runtime = bootstrap_engine(settings, logging.getLogger("test.runtime"), storage_settings)

        self.assertIsNotNone(runtime.storage)
        self.assertIsNotNone(runtime.circuit_breaker)
        self.assertIsNotNone(runtime.reputation)

    def test_build_input_applies_configured_thresholds(self) -> None:
        gate_input = self.runtime.build_input({"tokenAddress": TOKEN, "liquidity": 12_000})

        self.assertEqual(gate_input.liquidity_thresholds.auto_min_usd, 30_000.0)

    def test_build_input_keeps_payload_thresholds(self) -> None:
        gate_input = self.runtime.build_input(
            {"tokenAddress": TOKEN, "liquidityThresholds": {"autoMinUsd": 1_000}},
        )

        self.assertEqual(gate_input.liquidity_thresholds.auto_min_usd, 1_000.0)

    async def test_evaluate_many_uses_configured_batch_size(self) -> None:
        self.runtime.engine.evaluate_batch = AsyncMock(return_value=[])  # type: ignore[method-assign]

        await self.runtime.evaluate_many([{"tokenAddress": TOKEN}], user_id="user-1")

        kwargs = self.runtime.engine.evaluate_batch.await_args.kwargs
        self.assertEqual(kwargs["batch_size"], 5)
        self.assertEqual(kwargs["user_id"], "user-1")

    async def test_close_is_safe_before_connect(self) -> None:
        await self.runtime.close()


class JsonFormatterTests(unittest.TestCase):
    def test_extra_fields_are_sanitized(self) -> None:
        record = logging.LogRecord("admission_engine", logging.WARNING, __file__, 1, "quote failed", None, None)
        record.event = "quote_rate_limited"
        record.endpoint = "https://lite-api.jup.ag/swap/v1/quote?api-key=secret123"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["event"], "quote_rate_limited")
        self.assertEqual(payload["endpoint"], "https://lite-api.jup.ag/swap/v1/quote")


if __name__ == "__main__":
    unittest.main()
