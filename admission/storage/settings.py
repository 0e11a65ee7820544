from __future__ import annotations

import os
from dataclasses import dataclass, field

from admission.safety import CircuitBreakerSettings


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    firestore_project_id: str | None
    circuit_breaker_prefix: str
    deployer_reputation_collection: str
    circuit_breaker_events_collection: str
    user_roles_collection: str
    positions_collection: str
    risk_check_logs_collection: str
    admin_role: str
    circuit_breaker_defaults: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)

    @classmethod
    def from_env(cls) -> "StorageSettings":
        prefix = (os.getenv("REDIS_CIRCUIT_BREAKER_PREFIX", "circuit_breaker").strip(":") or "circuit_breaker")
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            circuit_breaker_prefix=prefix,
            deployer_reputation_collection=os.getenv("DEPLOYER_REPUTATION_COLLECTION", "deployer_reputation"),
            circuit_breaker_events_collection=os.getenv(
                "CIRCUIT_BREAKER_EVENTS_COLLECTION",
                "circuit_breaker_events",
            ),
            user_roles_collection=os.getenv("USER_ROLES_COLLECTION", "user_roles"),
            positions_collection=os.getenv("POSITIONS_COLLECTION", "positions"),
            risk_check_logs_collection=os.getenv("RISK_CHECK_LOGS_COLLECTION", "risk_check_logs"),
            admin_role=os.getenv("ADMIN_ROLE", "admin"),
            circuit_breaker_defaults=CircuitBreakerSettings.from_env(),
        )

    def circuit_breaker_key(self, user_id: str) -> str:
        return f"{self.circuit_breaker_prefix}:{user_id}"
