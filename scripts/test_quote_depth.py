from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from admission.quotes import (
    DepthValidationInput,
    QuoteDepthValidator,
    QuoteErrorKind,
    QuoteResult,
    quote_deviation_pct,
)

TOKEN = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _quote(out_amount: int, impact: float = 1.0) -> QuoteResult:
    return QuoteResult.success({"outAmount": str(out_amount), "priceImpactPct": impact}, "test")


class QuoteDepthTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.quote_client = MagicMock()
        self.quote_client.fetch_quote = AsyncMock()
        self.sleep = AsyncMock()
        self.validator = QuoteDepthValidator(
            logger=logging.getLogger("test.depth"),
            quote_client=self.quote_client,
            sleep=self.sleep,
        )

    def _input(self, **overrides: object) -> DepthValidationInput:
        values: dict[str, object] = {
            "token_address": TOKEN,
            "buy_amount_sol": 0.1,
            "max_slippage": 0.15,
            "pool_liquidity_usd": 20_000.0,
            "sol_price_usd": 150.0,
        }
        values.update(overrides)
        return DepthValidationInput(**values)  # type: ignore[arg-type]

    async def test_low_pool_liquidity_fails_without_quoting(self) -> None:
        result = await self.validator.validate_quote_depth(self._input(pool_liquidity_usd=50.0))

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 25)
        self.quote_client.fetch_quote.assert_not_awaited()

    async def test_bonding_curve_skips_depth(self) -> None:
        result = await self.validator.validate_quote_depth(self._input(source="Pump.fun"))

        self.assertTrue(result.passed)
        self.quote_client.fetch_quote.assert_not_awaited()

    async def test_healthy_depth_passes(self) -> None:
        self.quote_client.fetch_quote.side_effect = [_quote(95_000), _quote(1_000)]

        result = await self.validator.validate_quote_depth(self._input())

        self.assertTrue(result.passed)
        self.assertAlmostEqual(result.details["output_ratio"], 0.95)
        first_call = self.quote_client.fetch_quote.await_args_list[0]
        self.assertEqual(first_call.args[2], 100_000_000)
        self.assertEqual(first_call.args[3], 1500)
        self.assertTrue(first_call.kwargs["skip_cache"])

    async def test_thin_output_ratio_fails(self) -> None:
        self.quote_client.fetch_quote.side_effect = [_quote(80_000), _quote(1_000)]

        result = await self.validator.validate_quote_depth(self._input())

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 20)

    async def test_price_impact_over_slippage_fails(self) -> None:
        self.quote_client.fetch_quote.side_effect = [_quote(95_000, impact=20.0)]

        result = await self.validator.validate_quote_depth(self._input())

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 20)

    async def test_negative_price_impact_is_checked_by_magnitude(self) -> None:
        self.quote_client.fetch_quote.side_effect = [
            QuoteResult.success({"outAmount": "95000", "priceImpactPct": "-20"}, "test"),
        ]

        result = await self.validator.validate_quote_depth(self._input())

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 20)
        self.assertIn("Price impact 20.00%", result.reason)

    async def test_rate_limited_quote_is_degraded_pass(self) -> None:
        self.quote_client.fetch_quote.return_value = QuoteResult.failure(QuoteErrorKind.RATE_LIMITED, "429")

        result = await self.validator.validate_quote_depth(self._input())

        self.assertTrue(result.passed)
        self.assertTrue(result.degraded)
        self.assertEqual(result.penalty, 5)

    async def test_failed_quote_fails(self) -> None:
        self.quote_client.fetch_quote.return_value = QuoteResult.failure(QuoteErrorKind.NO_ROUTE, "no route")

        result = await self.validator.validate_quote_depth(self._input())

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 30)


class DoubleQuoteTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.quote_client = MagicMock()
        self.quote_client.fetch_quote = AsyncMock()
        self.sleep = AsyncMock()
        self.validator = QuoteDepthValidator(
            logger=logging.getLogger("test.double_quote"),
            quote_client=self.quote_client,
            sleep=self.sleep,
        )

    async def test_large_deviation_fails(self) -> None:
        self.quote_client.fetch_quote.side_effect = [_quote(1_000_000), _quote(1_200_000)]

        result = await self.validator.double_quote_verification(TOKEN, 0.1)

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 20)
        self.assertGreater(result.details["deviation_pct"], 5.0)
        self.sleep.assert_awaited_once_with(2.5)

    async def test_small_deviation_passes(self) -> None:
        self.quote_client.fetch_quote.side_effect = [_quote(1_000_000), _quote(1_019_000)]

        result = await self.validator.double_quote_verification(TOKEN, 0.1)

        self.assertTrue(result.passed)
        self.assertEqual(result.details["quote2_output"], 1_019_000)

    async def test_second_quote_failure_fails(self) -> None:
        self.quote_client.fetch_quote.side_effect = [
            _quote(1_000_000),
            QuoteResult.failure(QuoteErrorKind.NO_ROUTE, "gone"),
        ]

        result = await self.validator.double_quote_verification(TOKEN, 0.1)

        self.assertFalse(result.passed)
        self.assertEqual(result.penalty, 25)

    async def test_rate_limited_first_quote_is_degraded(self) -> None:
        self.quote_client.fetch_quote.return_value = QuoteResult.failure(QuoteErrorKind.RATE_LIMITED, "429")

        result = await self.validator.double_quote_verification(TOKEN, 0.1)

        self.assertTrue(result.passed)
        self.assertTrue(result.degraded)
        self.sleep.assert_not_awaited()

    def test_deviation_is_relative_to_average(self) -> None:
        self.assertAlmostEqual(quote_deviation_pct(1_000_000, 1_200_000), 200_000 / 1_100_000 * 100)
        self.assertEqual(quote_deviation_pct(0, 0), 0.0)


if __name__ == "__main__":
    unittest.main()
