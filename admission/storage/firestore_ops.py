from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from admission.common import guarded_call, log_event, short_address
from admission.gate import GateDecision, GateInput
from admission.safety import ClosedPosition, DeployerReputation

from .helpers import doc_id_from_text


class FirestoreStorageOps:
    async def get_deployer_reputation(self, wallet_address: str) -> DeployerReputation | None:
        ref = self._collection(self.settings.deployer_reputation_collection).document(
            doc_id_from_text(wallet_address)
        )
        snapshot = await asyncio.to_thread(ref.get)
        if not snapshot.exists:
            return None
        record = snapshot.to_dict() or {}
        record.setdefault("wallet_address", wallet_address)
        return DeployerReputation.from_record(record)

    async def save_deployer_reputation(self, record: DeployerReputation) -> None:
        ref = self._collection(self.settings.deployer_reputation_collection).document(
            doc_id_from_text(record.wallet_address)
        )
        payload = record.to_record()
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        await asyncio.to_thread(ref.set, payload, merge=True)

    async def list_low_score_clusters(self, max_score: int) -> list[str]:
        query = self._collection(self.settings.deployer_reputation_collection).where(
            filter=FieldFilter("reputation_score", "<", max_score)
        )
        snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        clusters: set[str] = set()
        for snapshot in snapshots:
            cluster_id = (snapshot.to_dict() or {}).get("cluster_id")
            if cluster_id:
                clusters.add(str(cluster_id))
        return sorted(clusters)

    async def append_circuit_breaker_event(self, event_id: str, payload: dict[str, Any]) -> None:
        ref = self._collection(self.settings.circuit_breaker_events_collection).document(doc_id_from_text(event_id))
        document = dict(payload)
        document["event_id"] = event_id
        document["server_timestamp"] = firestore.SERVER_TIMESTAMP
        await asyncio.to_thread(ref.set, document, merge=True)

    async def mark_circuit_breaker_event_reset(
        self,
        event_id: str,
        *,
        reset_by: str,
        reset_reason: str,
    ) -> None:
        ref = self._collection(self.settings.circuit_breaker_events_collection).document(doc_id_from_text(event_id))
        payload = {
            "reset_at": firestore.SERVER_TIMESTAMP,
            "reset_by": reset_by,
            "reset_reason": reset_reason,
        }
        await asyncio.to_thread(ref.set, payload, merge=True)

    async def is_admin(self, user_id: str) -> bool:
        query = (
            self._collection(self.settings.user_roles_collection)
            .where(filter=FieldFilter("user_id", "==", user_id))
            .where(filter=FieldFilter("role", "==", self.settings.admin_role))
            .limit(1)
        )
        snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        return bool(snapshots)

    async def list_closed_positions(
        self,
        user_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ClosedPosition]:
        query = (
            self._collection(self.settings.positions_collection)
            .where(filter=FieldFilter("user_id", "==", user_id))
            .where(filter=FieldFilter("status", "==", "closed"))
        )
        if since is not None:
            query = query.where(filter=FieldFilter("closed_at", ">=", since))
        query = query.order_by("closed_at", direction=firestore.Query.DESCENDING)
        if limit is not None:
            query = query.limit(max(1, limit))

        snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        positions: list[ClosedPosition] = []
        for snapshot in snapshots:
            position = ClosedPosition.from_record(snapshot.to_dict() or {})
            if position is not None:
                positions.append(position)
        return positions

    async def record_risk_check(
        self,
        *,
        user_id: str | None,
        gate_input: GateInput,
        decision: GateDecision,
    ) -> None:
        if self._firestore is None:
            log_event(
                self._logger,
                level="warning",
                event="risk_check_log_skipped",
                message="Skipping risk check log because Firestore is not ready",
                token=short_address(gate_input.token_address),
            )
            return

        payload: dict[str, Any] = {
            "user_id": user_id,
            "token_address": gate_input.token_address,
            "token_symbol": gate_input.token_symbol,
            "chain": "solana",
            "passed_checks": decision.passed,
            "risk_score": decision.total_penalty,
            "enhanced_penalty": decision.enhanced_penalty,
            "rejection_reasons": list(decision.block_reasons),
            "metadata": {
                "source": gate_input.source,
                "execution_mode": gate_input.execution_mode.value,
                "liquidity": gate_input.liquidity,
                "results": [result.to_dict() for result in decision.results],
            },
            "checked_at": firestore.SERVER_TIMESTAMP,
        }
        collection = self._collection(self.settings.risk_check_logs_collection)
        await guarded_call(
            lambda: asyncio.to_thread(collection.add, payload),
            logger=self._logger,
            event="risk_check_log_failed",
            message="Failed to write risk check log",
            level="error",
            token=short_address(gate_input.token_address),
        )

    def _collection(self, name: str) -> Any:
        return self._require_firestore().collection(name)

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
