"""Durable key-value store contract and its implementations.

The rotation core depends only on the five operations of ``DurableStore``.
``RedisStore`` is used in production; ``MemoryStore`` implements the same
contract in-process for tests and for running without Redis.

Every write bumps an integer version kept next to the value, which is what
``atomic_check_and_set`` compares against.
"""
import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from keyrelay.core.errors import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeySpace:
    """Key layout shared by every component that persists state."""

    prefix: str = "keyrelay"

    @property
    def config(self) -> str:
        return f"{self.prefix}:meta:config"

    @property
    def model_catalog(self) -> str:
        return f"{self.prefix}:meta:model_catalog"

    @property
    def credentials(self) -> str:
        return f"{self.prefix}:keys:api:"

    @property
    def proxy_keys(self) -> str:
        return f"{self.prefix}:keys:proxy:"

    def credential(self, credential_id: str) -> str:
        return f"{self.credentials}{credential_id}"

    def proxy_key(self, key_id: str) -> str:
        return f"{self.proxy_keys}{key_id}"


@dataclass
class Entry:
    """A stored value together with the version it was read at."""

    key: str
    value: Dict[str, Any]
    version: int


class DurableStore(ABC):
    """Ordered key-value store with a compare-and-swap primitive."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Entry]:
        """Return the entry for ``key`` or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        """Unconditionally write ``value`` under ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

    @abstractmethod
    async def list(self, prefix: str) -> List[Entry]:
        """Return all entries whose key starts with ``prefix``, ordered by key."""

    @abstractmethod
    async def atomic_check_and_set(
        self,
        expected_version: Optional[int],
        key: str,
        value: Dict[str, Any],
    ) -> bool:
        """Write ``value`` only if ``key`` is still at ``expected_version``.

        Args:
            expected_version: Version observed by the caller, or None to
                require that the key does not exist yet
            key: Key to write
            value: New value

        Returns:
            True if the write was applied, False on a version conflict
        """

    async def close(self) -> None:
        """Release connections held by the store."""


class MemoryStore(DurableStore):
    """In-process store implementing the ``DurableStore`` contract.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the "persisted" copy.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[Dict[str, Any], int]] = {}
        self._lock = asyncio.Lock()
        self.write_count = 0

    async def get(self, key: str) -> Optional[Entry]:
        async with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, version = item
            return Entry(key=key, value=copy.deepcopy(value), version=version)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            self._write(key, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self._data.pop(key, None) is not None:
                self.write_count += 1

    async def list(self, prefix: str) -> List[Entry]:
        async with self._lock:
            return [
                Entry(key=key, value=copy.deepcopy(value), version=version)
                for key, (value, version) in sorted(self._data.items())
                if key.startswith(prefix)
            ]

    async def atomic_check_and_set(
        self,
        expected_version: Optional[int],
        key: str,
        value: Dict[str, Any],
    ) -> bool:
        async with self._lock:
            item = self._data.get(key)
            current_version = item[1] if item is not None else None
            if current_version != expected_version:
                return False
            self._write(key, value)
            return True

    def _write(self, key: str, value: Dict[str, Any]) -> None:
        item = self._data.get(key)
        version = item[1] + 1 if item is not None else 1
        self._data[key] = (copy.deepcopy(value), version)
        self.write_count += 1


class RedisStore(DurableStore):
    """Redis-backed store.

    Each key is a hash with two fields: ``value`` (JSON) and ``version``.
    Compare-and-swap uses WATCH/MULTI/EXEC so a concurrent writer between the
    version check and the write aborts the transaction.
    """

    def __init__(self, redis_url: str):
        """
        Args:
            redis_url: Redis connection URL
        """
        self.redis_url = redis_url
        self.client = redis.from_url(redis_url, decode_responses=True)

    async def ping(self) -> None:
        """Check connectivity; raises StoreError when Redis is unreachable."""
        try:
            await self.client.ping()
        except RedisError as e:
            raise StoreError(f"Redis unreachable at {self.redis_url}: {e}") from e

    async def get(self, key: str) -> Optional[Entry]:
        try:
            raw = await self.client.hgetall(key)
        except RedisError as e:
            raise StoreError(f"get {key} failed: {e}") from e
        return self._decode(key, raw)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, "value", json.dumps(value))
                pipe.hincrby(key, "version", 1)
                await pipe.execute()
        except RedisError as e:
            raise StoreError(f"set {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise StoreError(f"delete {key} failed: {e}") from e

    async def list(self, prefix: str) -> List[Entry]:
        try:
            keys = [key async for key in self.client.scan_iter(match=f"{prefix}*")]
            entries = []
            for key in sorted(keys):
                entry = self._decode(key, await self.client.hgetall(key))
                if entry is not None:
                    entries.append(entry)
            return entries
        except RedisError as e:
            raise StoreError(f"list {prefix} failed: {e}") from e

    async def atomic_check_and_set(
        self,
        expected_version: Optional[int],
        key: str,
        value: Dict[str, Any],
    ) -> bool:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw_version = await pipe.hget(key, "version")
                current_version = int(raw_version) if raw_version is not None else None
                if current_version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(key, mapping={
                    "value": json.dumps(value),
                    "version": (current_version or 0) + 1,
                })
                await pipe.execute()
                return True
        except WatchError:
            # Another writer touched the key between WATCH and EXEC
            return False
        except RedisError as e:
            raise StoreError(f"check-and-set {key} failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _decode(key: str, raw: Dict[str, str]) -> Optional[Entry]:
        if not raw or "value" not in raw:
            return None
        try:
            value = json.loads(raw["value"])
        except json.JSONDecodeError as e:
            logger.warning(f"Store get: corrupted value for key {key}: {e}")
            return None
        return Entry(key=key, value=value, version=int(raw.get("version", 0)))
