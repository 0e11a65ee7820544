from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable

from admission.common import guarded_call, log_event, short_address
from admission.common.values import utc_now

from .types import DeployerCheckResult, DeployerReputation, ReputationStore

PENALTY_HIGH_RUG_RATIO = 50
PENALTY_FAST_LIQUIDITY_PULL = 30
PENALTY_MULTIPLE_RUGS = 40
PENALTY_BAD_CLUSTER = 60
PENALTY_RAPID_DEPLOYER = 25
PENALTY_HIGH_CLUSTER_SCORE = 20
PENALTY_FAST_LP_LIFESPAN = 15

MIN_REPUTATION_SCORE = 70
HIGH_RUG_RATIO = 0.5
MIN_LIQUIDITY_SURVIVAL_SECONDS = 300
MULTIPLE_RUGS_COUNT = 3
CLUSTER_SCORE_BLOCK = 60
KNOWN_CLUSTER_MAX_SCORE = 30
CLUSTER_MEMBER_SCORE = 10
NEW_RUGGER_SCORE = 10

RUG_INDICATORS = (
    "rug",
    "honeypot",
    "liquidity_removed",
    "lp_removed",
    "lp_pulled",
    "scam",
    "freeze",
    "frozen",
    "blacklisted",
    "no_route",
    "unsellable",
)


def is_rug_indicator(exit_reason: str | None) -> bool:
    normalized = (exit_reason or "").lower()
    return any(indicator in normalized for indicator in RUG_INDICATORS)


def calculate_reputation_score(
    record: DeployerReputation,
    known_bad_clusters: Iterable[str] = (),
) -> int:
    score = 100

    if record.rug_ratio is not None and record.rug_ratio > HIGH_RUG_RATIO:
        score -= PENALTY_HIGH_RUG_RATIO
    if (
        record.avg_liquidity_survival_seconds is not None
        and record.avg_liquidity_survival_seconds < MIN_LIQUIDITY_SURVIVAL_SECONDS
    ):
        score -= PENALTY_FAST_LIQUIDITY_PULL
    if record.total_rugs >= MULTIPLE_RUGS_COUNT:
        score -= PENALTY_MULTIPLE_RUGS
    if record.cluster_id and record.cluster_id in set(known_bad_clusters):
        score -= PENALTY_BAD_CLUSTER
    if record.rapid_deploy_flag:
        score -= PENALTY_RAPID_DEPLOYER
    if record.cluster_association_score is not None and record.cluster_association_score > CLUSTER_SCORE_BLOCK:
        score -= PENALTY_HIGH_CLUSTER_SCORE
    if record.avg_lp_lifespan_seconds is not None and record.avg_lp_lifespan_seconds < MIN_LIQUIDITY_SURVIVAL_SECONDS:
        score -= PENALTY_FAST_LP_LIFESPAN

    return max(0, min(100, score))


class DeployerReputationService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: ReputationStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._logger = logger
        self._store = store
        self._clock = clock
        self._known_bad_clusters: set[str] = set()

    @property
    def known_bad_clusters(self) -> frozenset[str]:
        return frozenset(self._known_bad_clusters)

    def calculate_reputation_score(self, record: DeployerReputation) -> int:
        return calculate_reputation_score(record, self._known_bad_clusters)

    async def load_known_clusters(self) -> int:
        clusters = await guarded_call(
            lambda: self._store.list_low_score_clusters(KNOWN_CLUSTER_MAX_SCORE),
            logger=self._logger,
            event="known_clusters_load_failed",
            message="Failed to load known rug clusters",
            default=[],
        )
        self._known_bad_clusters.update(cluster for cluster in clusters or [] if cluster)
        log_event(
            self._logger,
            level="info",
            event="known_clusters_loaded",
            message="Known rug clusters loaded",
            clusters=len(self._known_bad_clusters),
        )
        return len(self._known_bad_clusters)

    async def check(self, deployer_wallet: str | None) -> DeployerCheckResult:
        if not deployer_wallet:
            return DeployerCheckResult(
                passed=True,
                reason="Deployer wallet unknown - reputation unverified",
                is_new_deployer=True,
                data_missing=True,
            )

        try:
            record = await self._store.get_deployer_reputation(deployer_wallet)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="deployer_reputation_lookup_failed",
                message="Deployer reputation lookup failed",
                deployer=short_address(deployer_wallet),
                error=str(error),
            )
            return DeployerCheckResult(
                passed=True,
                reason="Deployer reputation unavailable - lookup failed",
                penalty=10,
                data_missing=True,
            )

        if record is None:
            return DeployerCheckResult(
                passed=True,
                reason=f"New deployer (no history) - {short_address(deployer_wallet)}",
                is_new_deployer=True,
            )

        calculated = self.calculate_reputation_score(record)
        final_score = min(record.reputation_score, calculated)

        if final_score < MIN_REPUTATION_SCORE:
            reasons: list[str] = []
            if record.rug_ratio and record.rug_ratio > HIGH_RUG_RATIO:
                reasons.append(f"{record.rug_ratio * 100:.0f}% rug rate")
            if record.total_rugs >= MULTIPLE_RUGS_COUNT:
                reasons.append(f"{record.total_rugs} rugs")
            if (
                record.avg_liquidity_survival_seconds is not None
                and record.avg_liquidity_survival_seconds < MIN_LIQUIDITY_SURVIVAL_SECONDS
            ):
                reasons.append(f"LP pulled in {record.avg_liquidity_survival_seconds:.0f}s avg")
            if record.rapid_deploy_flag:
                reasons.append("rapid deployer")
            if record.cluster_association_score and record.cluster_association_score > CLUSTER_SCORE_BLOCK:
                reasons.append(f"cluster score {record.cluster_association_score:g}")
            if record.cluster_id and record.cluster_id in self._known_bad_clusters:
                reasons.append("in rug cluster")

            detail = f" ({', '.join(reasons)})" if reasons else ""
            return DeployerCheckResult(
                passed=False,
                reason=f"BLOCKED: Deployer score {final_score}/100{detail}",
                penalty=100 - final_score,
                reputation_score=final_score,
                record=record,
            )

        warnings: list[str] = []
        if 0 < record.total_rugs < MULTIPLE_RUGS_COUNT:
            warnings.append(f"{record.total_rugs} prior rug(s)")
        if record.total_tokens_created > 10:
            warnings.append(f"{record.total_tokens_created} tokens created")
        if record.tokens_last_7d and record.tokens_last_7d > 5:
            warnings.append(f"{record.tokens_last_7d} tokens in 7d")
        if record.rapid_deploy_flag:
            warnings.append("rapid deploy pattern")

        if final_score < 85:
            penalty = 20
        elif final_score < 90:
            penalty = 10
        else:
            penalty = 0

        warning_text = f" - {', '.join(warnings)}" if warnings else ""
        return DeployerCheckResult(
            passed=True,
            reason=f"Deployer score {final_score}/100{warning_text}",
            penalty=penalty,
            reputation_score=final_score,
            record=record,
        )

    async def _load(self, wallet: str) -> tuple[bool, DeployerReputation | None]:
        """Return ``(ok, record)``; ``ok`` is False when the store could not be read."""
        try:
            return True, await self._store.get_deployer_reputation(wallet)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="deployer_reputation_read_failed",
                message="Failed to read deployer reputation; skipping update",
                deployer=short_address(wallet),
                error=str(error),
            )
            return False, None

    async def _save(self, record: DeployerReputation, *, action: str) -> None:
        await guarded_call(
            lambda: self._store.save_deployer_reputation(record),
            logger=self._logger,
            event="deployer_reputation_write_failed",
            message="Failed to persist deployer reputation",
            level="error",
            deployer=short_address(record.wallet_address),
            operation=action,
        )

    async def record_token_deployment(self, wallet: str, token_address: str) -> DeployerReputation | None:
        loaded, existing = await self._load(wallet)
        if not loaded:
            return None
        now = self._clock()
        if existing is None:
            record = DeployerReputation(
                wallet_address=wallet,
                total_tokens_created=1,
                total_rugs=0,
                rug_ratio=0.0,
                reputation_score=100,
                last_updated=now,
            )
        else:
            updated = replace(existing, total_tokens_created=existing.total_tokens_created + 1, last_updated=now)
            record = replace(updated, reputation_score=self.calculate_reputation_score(updated))

        await self._save(record, action="token_deployment")
        log_event(
            self._logger,
            level="info",
            event="deployer_token_recorded",
            message="Recorded token deployment",
            deployer=short_address(wallet),
            token=short_address(token_address),
            total_tokens=record.total_tokens_created,
        )
        return record

    async def record_rug_pull(
        self,
        wallet: str,
        token_address: str,
        liquidity_survival_seconds: float | None = None,
    ) -> DeployerReputation | None:
        loaded, existing = await self._load(wallet)
        if not loaded:
            return None
        now = self._clock()
        if existing is None:
            record = DeployerReputation(
                wallet_address=wallet,
                total_tokens_created=1,
                total_rugs=1,
                rug_ratio=1.0,
                avg_liquidity_survival_seconds=liquidity_survival_seconds,
                reputation_score=NEW_RUGGER_SCORE,
                last_updated=now,
            )
        else:
            old_rugs = existing.total_rugs
            new_rugs = old_rugs + 1
            tokens = existing.total_tokens_created
            rug_ratio = new_rugs / tokens if tokens > 0 else 1.0

            average = existing.avg_liquidity_survival_seconds
            if liquidity_survival_seconds is not None:
                if average is None or old_rugs == 0:
                    average = liquidity_survival_seconds
                else:
                    average = round((average * old_rugs + liquidity_survival_seconds) / (old_rugs + 1))

            updated = replace(
                existing,
                total_rugs=new_rugs,
                rug_ratio=rug_ratio,
                avg_liquidity_survival_seconds=average,
                last_updated=now,
            )
            record = replace(updated, reputation_score=self.calculate_reputation_score(updated))

        await self._save(record, action="rug_pull")
        log_event(
            self._logger,
            level="warning",
            event="deployer_rug_recorded",
            message="Recorded rug pull for deployer",
            deployer=short_address(wallet),
            token=short_address(token_address),
            total_rugs=record.total_rugs,
            reputation_score=record.reputation_score,
        )
        return record

    async def record_successful_token(self, wallet: str) -> None:
        loaded, existing = await self._load(wallet)
        if not loaded or existing is None:
            return
        await self._save(replace(existing, last_updated=self._clock()), action="successful_token")

    async def update_on_position_close(
        self,
        wallet: str | None,
        token_address: str,
        exit_reason: str | None,
        liquidity_survival_seconds: float | None = None,
    ) -> bool:
        if not wallet:
            return False
        if is_rug_indicator(exit_reason):
            await self.record_rug_pull(wallet, token_address, liquidity_survival_seconds)
            return True
        await self.record_successful_token(wallet)
        return False

    async def add_wallet_to_cluster(self, wallet: str, cluster_id: str) -> DeployerReputation | None:
        self._known_bad_clusters.add(cluster_id)
        loaded, existing = await self._load(wallet)
        if not loaded:
            return None
        now = self._clock()
        if existing is None:
            record = DeployerReputation(
                wallet_address=wallet,
                cluster_id=cluster_id,
                reputation_score=CLUSTER_MEMBER_SCORE,
                last_updated=now,
            )
        else:
            record = replace(
                existing,
                cluster_id=cluster_id,
                reputation_score=min(existing.reputation_score, CLUSTER_MEMBER_SCORE),
                last_updated=now,
            )
        await self._save(record, action="add_to_cluster")
        log_event(
            self._logger,
            level="info",
            event="deployer_cluster_assigned",
            message="Wallet added to known rug cluster",
            deployer=short_address(wallet),
            cluster_id=cluster_id,
        )
        return record
