"""
Expiring key/value mailbox backends.

One record per active pairing; every record carries its own time-to-live.
Values are JSON-serializable dicts. Backend faults surface as
StorageUnavailable, never as a missing key.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from config import MAX_UPDATE_RETRIES
from exceptions import StorageUnavailable

logger = logging.getLogger(__name__)

Mutator = Callable[[dict[str, Any] | None], dict[str, Any]]


def _decode(key: str, raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageUnavailable(f"Corrupt mailbox value at {key}: {e}") from e


class MailboxStore(ABC):
    """Generic get/set store with per-key expiry."""

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the value, or None if absent or expired."""

    @abstractmethod
    async def set(
        self,
        key: str,
        value: dict[str, Any],
        ttl: int,
        only_if_absent: bool = False,
    ) -> bool:
        """Store a value for ttl seconds. Returns False if only_if_absent
        was requested and the key is already live."""

    async def update(self, key: str, mutate: Mutator, ttl: int) -> dict[str, Any]:
        """Read-modify-write one key and reset its ttl.

        This default is a plain read followed by a write: two concurrent
        writers can lose an update. Backends override it with an atomic
        version where they can.
        """
        value = mutate(await self.get(key))
        await self.set(key, value, ttl)
        return value

    async def close(self) -> None:
        pass


class MemoryMailboxStore(MailboxStore):
    """In-process store, used for single-server deployments and tests."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return json.loads(raw)

    def _write(self, key: str, value: dict[str, Any], ttl: int) -> None:
        self._purge_expired()
        self._data[key] = (json.dumps(value), self._clock() + ttl)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if now >= expires_at]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rooms")

    async def get(self, key: str) -> dict[str, Any] | None:
        return self._read(key)

    async def set(self, key, value, ttl, only_if_absent=False) -> bool:
        async with self._lock:
            if only_if_absent and self._read(key) is not None:
                return False
            self._write(key, value, ttl)
            return True

    async def update(self, key: str, mutate: Mutator, ttl: int) -> dict[str, Any]:
        async with self._lock:
            value = mutate(self._read(key))
            self._write(key, value, ttl)
            return value


class RedisMailboxStore(MailboxStore):
    """Redis-backed store; updates use WATCH/MULTI/EXEC compare-and-swap."""

    name = "redis"

    def __init__(self, client: redis.Redis, max_retries: int = MAX_UPDATE_RETRIES) -> None:
        self._client = client
        self._max_retries = max_retries

    @classmethod
    def from_url(cls, url: str) -> "RedisMailboxStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._client.get(key)
        except RedisError as e:
            raise StorageUnavailable(f"Mailbox read failed: {e}") from e
        return _decode(key, raw)

    async def set(self, key, value, ttl, only_if_absent=False) -> bool:
        try:
            result = await self._client.set(
                key, json.dumps(value), ex=ttl, nx=only_if_absent
            )
        except RedisError as e:
            raise StorageUnavailable(f"Mailbox write failed: {e}") from e
        return bool(result)

    async def update(self, key: str, mutate: Mutator, ttl: int) -> dict[str, Any]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for attempt in range(self._max_retries):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        value = mutate(_decode(key, raw))
                        pipe.multi()
                        pipe.set(key, json.dumps(value), ex=ttl)
                        await pipe.execute()
                        return value
                    except WatchError:
                        logger.debug(f"Concurrent write on {key}, retry {attempt + 1}")
                        continue
        except RedisError as e:
            raise StorageUnavailable(f"Mailbox update failed: {e}") from e

        raise StorageUnavailable(
            f"Mailbox update on {key} lost {self._max_retries} races in a row"
        )

    async def close(self) -> None:
        await self._client.aclose()
