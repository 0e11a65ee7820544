from __future__ import annotations

import logging
import unittest
from datetime import datetime, timezone

from admission.safety import DeployerReputation, DeployerReputationService, calculate_reputation_score, is_rug_indicator

NOW = datetime(2026, 2, 14, 18, 0, tzinfo=timezone.utc)
DEPLOYER = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


class InMemoryReputationStore:
    def __init__(self) -> None:
        self.records: dict[str, DeployerReputation] = {}
        self.low_score_clusters: list[str] = []
        self.fail_reads = False
        self.fail_writes = False
        self.saves = 0

    async def get_deployer_reputation(self, wallet_address: str) -> DeployerReputation | None:
        if self.fail_reads:
            raise TimeoutError("firestore timeout")
        return self.records.get(wallet_address)

    async def save_deployer_reputation(self, record: DeployerReputation) -> None:
        if self.fail_writes:
            raise TimeoutError("firestore timeout")
        self.saves += 1
        self.records[record.wallet_address] = record

    async def list_low_score_clusters(self, max_score: int) -> list[str]:
        return list(self.low_score_clusters)


class ReputationScoreTests(unittest.TestCase):
    def test_high_rug_ratio_drops_score_to_fifty(self) -> None:
        record = DeployerReputation(wallet_address=DEPLOYER, total_tokens_created=5, total_rugs=2, rug_ratio=0.6)
        self.assertEqual(calculate_reputation_score(record), 50)

    def test_penalties_stack_and_clamp_at_zero(self) -> None:
        record = DeployerReputation(
            wallet_address=DEPLOYER,
            total_rugs=4,
            rug_ratio=0.9,
            avg_liquidity_survival_seconds=60,
            cluster_id="cluster-a",
            rapid_deploy_flag=True,
        )
        self.assertEqual(calculate_reputation_score(record, {"cluster-a"}), 0)

    def test_clean_history_scores_full(self) -> None:
        record = DeployerReputation(wallet_address=DEPLOYER, total_tokens_created=3, rug_ratio=0.0)
        self.assertEqual(calculate_reputation_score(record), 100)

    def test_rug_indicator_matching(self) -> None:
        self.assertTrue(is_rug_indicator("LP_REMOVED"))
        self.assertTrue(is_rug_indicator("sell failed: honeypot"))
        self.assertFalse(is_rug_indicator("take_profit"))
        self.assertFalse(is_rug_indicator(None))


class DeployerReputationServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = InMemoryReputationStore()
        self.service = DeployerReputationService(
            logger=logging.getLogger("test.reputation"),
            store=self.store,
            clock=lambda: NOW,
        )

    async def test_high_rug_ratio_deployer_is_blocked(self) -> None:
        self.store.records[DEPLOYER] = DeployerReputation(
            wallet_address=DEPLOYER,
            total_tokens_created=5,
            total_rugs=2,
            rug_ratio=0.6,
        )

        result = await self.service.check(DEPLOYER)

        self.assertFalse(result.passed)
        self.assertEqual(result.reputation_score, 50)
        self.assertEqual(result.penalty, 50)
        self.assertIn("60% rug rate", result.reason)

    async def test_unknown_deployer_is_new(self) -> None:
        result = await self.service.check(DEPLOYER)

        self.assertTrue(result.passed)
        self.assertTrue(result.is_new_deployer)
        self.assertEqual(result.penalty, 0)

    async def test_missing_wallet_is_data_missing(self) -> None:
        result = await self.service.check(None)

        self.assertTrue(result.passed)
        self.assertTrue(result.data_missing)

    async def test_lookup_failure_passes_with_penalty(self) -> None:
        self.store.fail_reads = True

        result = await self.service.check(DEPLOYER)

        self.assertTrue(result.passed)
        self.assertTrue(result.data_missing)
        self.assertEqual(result.penalty, 10)

    async def test_stored_score_caps_calculated_score(self) -> None:
        self.store.records[DEPLOYER] = DeployerReputation(
            wallet_address=DEPLOYER,
            total_tokens_created=2,
            rug_ratio=0.0,
            reputation_score=80,
        )

        result = await self.service.check(DEPLOYER)

        self.assertTrue(result.passed)
        self.assertEqual(result.reputation_score, 80)
        self.assertEqual(result.penalty, 20)

    async def test_known_cluster_membership_blocks(self) -> None:
        self.store.low_score_clusters = ["cluster-a"]
        self.store.records[DEPLOYER] = DeployerReputation(wallet_address=DEPLOYER, cluster_id="cluster-a")

        self.assertEqual(await self.service.load_known_clusters(), 1)
        result = await self.service.check(DEPLOYER)

        self.assertFalse(result.passed)
        self.assertIn("in rug cluster", result.reason)

    async def test_first_rug_creates_low_score_record(self) -> None:
        record = await self.service.record_rug_pull(DEPLOYER, "token-a", 120)

        self.assertEqual(record.total_rugs, 1)
        self.assertEqual(record.rug_ratio, 1.0)
        self.assertEqual(record.reputation_score, 10)
        self.assertIs(self.store.records[DEPLOYER], record)

    async def test_rug_updates_rolling_survival_average(self) -> None:
        self.store.records[DEPLOYER] = DeployerReputation(
            wallet_address=DEPLOYER,
            total_tokens_created=4,
            total_rugs=1,
            rug_ratio=0.25,
            avg_liquidity_survival_seconds=100,
        )

        record = await self.service.record_rug_pull(DEPLOYER, "token-b", 200)

        self.assertEqual(record.total_rugs, 2)
        self.assertEqual(record.rug_ratio, 0.5)
        self.assertEqual(record.avg_liquidity_survival_seconds, 150)
        self.assertEqual(record.reputation_score, 70)
        self.assertEqual(record.last_updated, NOW)

    async def test_token_deployment_increments_count(self) -> None:
        first = await self.service.record_token_deployment(DEPLOYER, "token-a")
        second = await self.service.record_token_deployment(DEPLOYER, "token-b")

        self.assertEqual(first.total_tokens_created, 1)
        self.assertEqual(second.total_tokens_created, 2)

    async def test_position_close_with_rug_exit_records_rug(self) -> None:
        self.assertTrue(await self.service.update_on_position_close(DEPLOYER, "token-a", "liquidity_removed"))
        self.assertEqual(self.store.records[DEPLOYER].total_rugs, 1)

    async def test_position_close_with_clean_exit_only_touches_timestamp(self) -> None:
        self.store.records[DEPLOYER] = DeployerReputation(wallet_address=DEPLOYER, total_tokens_created=1)

        self.assertFalse(await self.service.update_on_position_close(DEPLOYER, "token-a", "take_profit"))
        self.assertEqual(self.store.records[DEPLOYER].total_rugs, 0)
        self.assertEqual(self.store.records[DEPLOYER].last_updated, NOW)

    async def test_position_close_without_wallet_is_ignored(self) -> None:
        self.assertFalse(await self.service.update_on_position_close(None, "token-a", "rug"))
        self.assertEqual(self.store.records, {})

    async def test_add_wallet_to_cluster_caps_score(self) -> None:
        self.store.records[DEPLOYER] = DeployerReputation(wallet_address=DEPLOYER, reputation_score=95)

        record = await self.service.add_wallet_to_cluster(DEPLOYER, "cluster-z")

        self.assertEqual(record.cluster_id, "cluster-z")
        self.assertEqual(record.reputation_score, 10)
        self.assertIn("cluster-z", self.service.known_bad_clusters)

    async def test_read_failure_leaves_stored_history_untouched(self) -> None:
        rugger = DeployerReputation(
            wallet_address=DEPLOYER,
            total_tokens_created=4,
            total_rugs=4,
            rug_ratio=1.0,
            reputation_score=0,
        )
        self.store.records[DEPLOYER] = rugger
        self.store.fail_reads = True

        with self.assertLogs("test.reputation", level="WARNING"):
            self.assertIsNone(await self.service.record_token_deployment(DEPLOYER, "token-c"))
            self.assertIsNone(await self.service.record_rug_pull(DEPLOYER, "token-c", 30))
            self.assertIsNone(await self.service.add_wallet_to_cluster(DEPLOYER, "cluster-z"))
            await self.service.record_successful_token(DEPLOYER)

        self.assertEqual(self.store.saves, 0)
        self.assertIs(self.store.records[DEPLOYER], rugger)

    async def test_write_failure_is_logged_and_never_raises(self) -> None:
        self.store.fail_writes = True

        with self.assertLogs("test.reputation", level="ERROR") as captured:
            record = await self.service.record_token_deployment(DEPLOYER, "token-a")

        self.assertEqual(record.total_tokens_created, 1)
        self.assertNotIn(DEPLOYER, self.store.records)
        self.assertTrue(any("token_deployment" in str(getattr(r, "operation", "")) for r in captured.records))


if __name__ == "__main__":
    unittest.main()
