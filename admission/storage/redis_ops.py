from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from admission.common import log_event
from admission.safety import CircuitBreakerSettings, CircuitBreakerState, CounterKind

from .helpers import serialize_for_redis, split_redis_mapping

COUNTER_FIELDS = tuple(f"counter_{kind.value}" for kind in CounterKind)


class RedisStorageOps:
    """Per-user circuit breaker hash: settings, trigger state and counters in one key."""

    async def load_circuit_breaker(
        self,
        user_id: str,
    ) -> tuple[CircuitBreakerSettings, CircuitBreakerState]:
        redis_client = self._require_redis()
        raw = await redis_client.hgetall(self.settings.circuit_breaker_key(user_id))
        settings = CircuitBreakerSettings.from_mapping(raw or {}, self.settings.circuit_breaker_defaults)
        return settings, CircuitBreakerState.from_mapping(raw or {})

    async def save_circuit_breaker_state(self, user_id: str, state: CircuitBreakerState) -> None:
        redis_client = self._require_redis()
        key = self.settings.circuit_breaker_key(user_id)
        present, missing = split_redis_mapping(state.trigger_fields())

        pipeline = redis_client.pipeline(transaction=True)
        if present:
            pipeline.hset(key, mapping=present)
        if missing:
            pipeline.hdel(key, *missing)
        await pipeline.execute()

    async def increment_circuit_breaker_counter(self, user_id: str, kind: CounterKind) -> int:
        redis_client = self._require_redis()
        value = await redis_client.hincrby(self.settings.circuit_breaker_key(user_id), f"counter_{kind.value}", 1)
        return int(value)

    async def reset_circuit_breaker_counters(self, user_id: str) -> None:
        redis_client = self._require_redis()
        await redis_client.hset(
            self.settings.circuit_breaker_key(user_id),
            mapping={name: "0" for name in COUNTER_FIELDS},
        )

    async def seed_circuit_breaker_settings(
        self,
        user_id: str,
        settings: CircuitBreakerSettings,
        *,
        overwrite: bool = False,
    ) -> dict[str, Any]:
        redis_client = self._require_redis()
        key = self.settings.circuit_breaker_key(user_id)
        mapping = {name: serialize_for_redis(value) for name, value in settings.to_mapping().items()}

        if overwrite:
            await redis_client.hset(key, mapping=mapping)
            written = list(mapping)
        else:
            pipeline = redis_client.pipeline(transaction=True)
            for name, value in mapping.items():
                pipeline.hsetnx(key, name, value)
            results = await pipeline.execute()
            written = [name for name, created in zip(mapping, results) if created]

        log_event(
            self._logger,
            level="info",
            event="circuit_breaker_settings_seeded",
            message="Circuit breaker settings written to Redis",
            user_id=user_id,
            fields=written,
            overwrite=overwrite,
        )
        return {"key": key, "written": written}

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
