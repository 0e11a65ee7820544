from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol

from .rules import cautioned, failed, passed
from .types import BuyerInfo, GateInput, GateRuleResult

RULE = "BUYER_CLUSTER"
RAPID_BUY_THRESHOLD_MS = 1000.0
MIN_EXTERNAL_BUYERS = 2


@dataclass(slots=True, frozen=True)
class ClusterDetection:
    result: GateRuleResult
    cluster_detected: bool = False
    wash_trading_detected: bool = False
    external_buyer_count: int = 0
    rapid_buy_count: int = 0
    funding_cluster_size: int = 0


class BuyerClusterDetector(Protocol):
    async def detect(self, gate_input: GateInput) -> ClusterDetection:
        ...


def largest_funding_cluster(buyers: tuple[BuyerInfo, ...]) -> tuple[int, str | None]:
    groups: dict[str, set[str]] = defaultdict(set)
    for buyer in buyers:
        if buyer.funding_wallet:
            groups[buyer.funding_wallet.lower()].add(buyer.address.lower())

    size, funder = 0, None
    for candidate, members in sorted(groups.items()):
        if len(members) > size:
            size, funder = len(members), candidate
    return size, funder


def rapid_buy_count(buyers: tuple[BuyerInfo, ...]) -> int:
    ordered = sorted(buyers, key=lambda buyer: buyer.timestamp_ms)
    count = 0
    for index in range(1, min(len(ordered), 4)):
        if ordered[index].timestamp_ms - ordered[index - 1].timestamp_ms < RAPID_BUY_THRESHOLD_MS:
            count += 1
    return count


def count_external_buyers(wallets: tuple[str, ...], deployer_wallet: str | None) -> int:
    deployer = deployer_wallet.lower() if deployer_wallet else None
    return len({wallet.lower() for wallet in wallets if wallet.lower() != deployer})


class FundingClusterDetector:
    """Wash-buyer heuristics over first buyers and their funding wallets."""

    async def detect(self, gate_input: GateInput) -> ClusterDetection:
        return self.detect_sync(gate_input)

    def detect_sync(self, gate_input: GateInput) -> ClusterDetection:
        if gate_input.is_bonding_curve:
            return ClusterDetection(
                passed(RULE, "Bonding curve fair launch - cluster check exempt"),
                external_buyer_count=gate_input.unique_buyer_count or 0,
            )

        deployer = gate_input.deployer_wallet
        first_buyer = gate_input.first_buyer_wallet
        if deployer and first_buyer and deployer.lower() == first_buyer.lower():
            return ClusterDetection(failed(RULE, "Buyer #1 is the deployer (self-buying) - high rug risk", 30))

        recent = gate_input.recent_buyers or ()
        if len(recent) >= 2:
            cluster_size, funder = largest_funding_cluster(recent)
            if cluster_size >= 2:
                return ClusterDetection(
                    failed(
                        RULE,
                        f"{cluster_size} buyers funded by same wallet - wash trading detected",
                        25,
                        funding_wallet=funder,
                    ),
                    cluster_detected=True,
                    funding_cluster_size=cluster_size,
                )

            rapid = rapid_buy_count(recent)
            if rapid >= 2:
                return ClusterDetection(
                    failed(RULE, f"First {rapid + 1} buys within <1 second - bot wash trading", 20),
                    wash_trading_detected=True,
                    rapid_buy_count=rapid,
                )

        if gate_input.buyer_wallets is not None:
            external = count_external_buyers(gate_input.buyer_wallets, deployer)
        else:
            external = gate_input.unique_buyer_count or 0

        has_buyer_data = bool(gate_input.buyer_wallets) or bool(gate_input.unique_buyer_count)
        if external < MIN_EXTERNAL_BUYERS and has_buyer_data:
            return ClusterDetection(
                failed(RULE, f"Only {external} external buyer(s) - need >= {MIN_EXTERNAL_BUYERS}", 15),
                external_buyer_count=external,
            )
        if external < MIN_EXTERNAL_BUYERS:
            return ClusterDetection(cautioned(RULE, "Buyer data unavailable - cluster check unverified", 10))

        return ClusterDetection(
            passed(RULE, f"{external} external buyers verified, no clusters detected"),
            external_buyer_count=external,
        )
