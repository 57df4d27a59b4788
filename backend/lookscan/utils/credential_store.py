"""Key/value credential store with per-key TTL.

Two backends share one interface:
    RedisCredentialStore     production; shared between API instances
    InMemoryCredentialStore  development and tests; expiry from an injectable clock

Expired keys read exactly like absent keys. ``put_many`` writes several keys
with one absolute expiry so related records cannot outlive each other.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog
from redis.exceptions import RedisError

from lookscan.config import Settings
from lookscan.errors import StoreUnavailable

logger = structlog.get_logger()


class CredentialStore(ABC):
    backend: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the live value for key, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value under key, expiring ttl_seconds from now."""

    @abstractmethod
    async def put_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        """Store every item with the same absolute expiry."""

    @abstractmethod
    async def replace(self, key: str, value: str) -> bool:
        """Overwrite a live key, keeping its expiry. False if the key is gone."""

    @abstractmethod
    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """Create key only if it is absent. True when this caller created it."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key if present."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:  # noqa: B027
        pass


class InMemoryCredentialStore(CredentialStore):
    """Process-local store. Not shared between workers; never use in production."""

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry else None

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._purge_expired()
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def put_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        self._purge_expired()
        expires_at = self._clock() + ttl_seconds
        for key, value in items.items():
            self._data[key] = (value, expires_at)

    async def replace(self, key: str, value: str) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (value, entry[1])
        return True

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        await self.put(key, "1", ttl_seconds)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def expires_at(self, key: str) -> float | None:
        entry = self._live(key)
        return entry[1] if entry else None


class RedisCredentialStore(CredentialStore):
    """Redis-backed store. Redis errors surface as StoreUnavailable (fail closed)."""

    backend = "redis"

    def __init__(self, client: Any, clock: Callable[[], float] = time.time) -> None:
        self._redis = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> RedisCredentialStore:
        import redis.asyncio as redis

        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(key)
        except RedisError as exc:
            logger.error("redis_get_error", key=key[:8], error=str(exc))
            raise StoreUnavailable("Credential store unavailable") from exc
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            logger.error("redis_set_error", key=key[:8], error=str(exc))
            raise StoreUnavailable("Credential store unavailable") from exc

    async def put_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        # EXAT pins every key to the same instant; MULTI/EXEC makes the batch atomic.
        expires_at = int(self._clock()) + ttl_seconds
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for key, value in items.items():
                    pipe.set(key, value, exat=expires_at)
                await pipe.execute()
        except RedisError as exc:
            logger.error("redis_put_many_error", keys=len(items), error=str(exc))
            raise StoreUnavailable("Credential store unavailable") from exc

    async def replace(self, key: str, value: str) -> bool:
        try:
            result = await self._redis.set(key, value, xx=True, keepttl=True)
        except RedisError as exc:
            logger.error("redis_replace_error", key=key[:8], error=str(exc))
            raise StoreUnavailable("Credential store unavailable") from exc
        return bool(result)

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        try:
            result = await self._redis.set(key, "1", nx=True, ex=ttl_seconds)
        except RedisError as exc:
            logger.error("redis_claim_error", key=key[:14], error=str(exc))
            raise StoreUnavailable("Credential store unavailable") from exc
        return bool(result)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            logger.error("redis_delete_error", key=key[:14], error=str(exc))
            raise StoreUnavailable("Credential store unavailable") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.debug("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def build_credential_store(settings: Settings) -> CredentialStore | None:
    """Create the configured backend, or None when the store is disabled."""
    if settings.credential_store == "none":
        logger.warning("credential_store_not_configured")
        return None
    if settings.credential_store == "redis":
        logger.info("credential_store_redis", url=settings.redis_url[:20] + "...")
        return RedisCredentialStore.from_url(settings.redis_url)
    logger.info("credential_store_memory")
    return InMemoryCredentialStore()
