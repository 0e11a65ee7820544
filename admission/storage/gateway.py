from __future__ import annotations

import logging
import os

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from admission.common import log_event

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Backs the breaker, reputation, admin and decision-log collaborators."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None

    async def connect(self) -> None:
        await self.connect_redis()

        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            project=self.settings.firestore_project_id,
        )

    async def connect_redis(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

    async def healthcheck(self) -> None:
        redis_client = self._require_redis()
        await redis_client.ping()
        self._require_firestore()

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

        if self._firestore is not None:
            self._firestore.close()
            self._firestore = None
