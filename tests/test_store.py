"""Tests for the durable store implementations."""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from keyrelay.core.errors import StoreError
from keyrelay.core.store import KeySpace, MemoryStore, RedisStore


def test_key_space_layout():
    keys = KeySpace("kr")

    assert keys.config == "kr:meta:config"
    assert keys.model_catalog == "kr:meta:model_catalog"
    assert keys.credential("abc") == "kr:keys:api:abc"
    assert keys.proxy_key("p1") == "kr:keys:proxy:p1"
    assert keys.credential("abc").startswith(keys.credentials)
    assert keys.proxy_key("p1").startswith(keys.proxy_keys)


@pytest.mark.asyncio
async def test_memory_store_versions_bump_on_write():
    store = MemoryStore()

    await store.set("a", {"x": 1})
    await store.set("a", {"x": 2})

    entry = await store.get("a")
    assert entry.value == {"x": 2}
    assert entry.version == 2


@pytest.mark.asyncio
async def test_memory_store_check_and_set():
    store = MemoryStore()

    assert await store.atomic_check_and_set(None, "a", {"x": 1}) is True
    assert await store.atomic_check_and_set(None, "a", {"x": 2}) is False
    assert await store.atomic_check_and_set(5, "a", {"x": 2}) is False
    assert await store.atomic_check_and_set(1, "a", {"x": 2}) is True
    assert (await store.get("a")).value == {"x": 2}


@pytest.mark.asyncio
async def test_memory_store_copies_values():
    store = MemoryStore()
    value = {"items": [1]}
    await store.set("a", value)

    value["items"].append(2)
    entry = await store.get("a")
    entry.value["items"].append(3)

    assert (await store.get("a")).value == {"items": [1]}


@pytest.mark.asyncio
async def test_memory_store_list_and_delete():
    store = MemoryStore()
    await store.set("p:keys:api:2", {"id": "2"})
    await store.set("p:keys:api:1", {"id": "1"})
    await store.set("p:meta:config", {})

    entries = await store.list("p:keys:api:")
    assert [e.key for e in entries] == ["p:keys:api:1", "p:keys:api:2"]

    await store.delete("p:keys:api:1")
    await store.delete("missing")
    assert [e.key for e in await store.list("p:keys:api:")] == ["p:keys:api:2"]
    assert await store.get("p:keys:api:1") is None


@pytest.fixture
def mock_redis_client():
    client = MagicMock()
    client.hgetall = AsyncMock(return_value={})
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.fixture
def redis_store(mock_redis_client):
    with patch("keyrelay.core.store.redis.from_url", return_value=mock_redis_client):
        yield RedisStore("redis://localhost:6379/0")


@pytest.mark.asyncio
async def test_redis_store_decodes_hash(redis_store, mock_redis_client):
    mock_redis_client.hgetall.return_value = {"value": json.dumps({"id": "k1"}), "version": "3"}

    entry = await redis_store.get("kr:keys:api:k1")

    assert entry.value == {"id": "k1"}
    assert entry.version == 3


@pytest.mark.asyncio
async def test_redis_store_missing_and_corrupted(redis_store, mock_redis_client):
    assert await redis_store.get("absent") is None

    mock_redis_client.hgetall.return_value = {"value": "{not json", "version": "1"}
    assert await redis_store.get("broken") is None


@pytest.mark.asyncio
async def test_redis_store_wraps_errors(redis_store, mock_redis_client):
    mock_redis_client.hgetall.side_effect = RedisConnectionError("refused")
    mock_redis_client.ping.side_effect = RedisConnectionError("refused")

    with pytest.raises(StoreError):
        await redis_store.get("kr:meta:config")
    with pytest.raises(StoreError):
        await redis_store.ping()
