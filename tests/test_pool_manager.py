"""Tests for PoolManager admin operations and probes."""
from unittest.mock import AsyncMock

import httpx
import pytest

from keyrelay.core.credential_pool import CredentialStatus
from keyrelay.core.errors import (
    DuplicateKeyError,
    LimitReachedError,
    NoActiveCredentialError,
    NotFoundError,
    StoreError,
)


@pytest.mark.asyncio
async def test_remove_model_is_idempotent_and_resets_rotation(make_pools, store):
    pools = await make_pools()
    pools.select_model()
    pools.select_model()

    assert await pools.remove_model("model-b", "model_not_found") is True
    writes = store.write_count
    assert await pools.remove_model("model-b", "model_not_found") is False

    assert store.write_count == writes
    assert pools.model_pool.models == ("model-a", "model-c")
    assert pools.model_pool.cursor == 0
    assert pools.select_model() == "model-a"


@pytest.mark.asyncio
async def test_replace_model_pool(make_pools, store):
    pools = await make_pools()
    pools.select_model()

    models = await pools.replace_model_pool([" x ", "y", "x", "", 7])

    assert models == ["x", "y"]
    assert pools.model_pool.models == ("x", "y")
    assert pools.select_model() == "x"
    stored = (await store.get(pools.keys.config)).value
    assert stored["model_pool"] == ["x", "y"]
    assert stored["current_model_index"] == 0


@pytest.mark.asyncio
async def test_replace_model_pool_rejects_empty(make_pools):
    pools = await make_pools()

    with pytest.raises(ValueError):
        await pools.replace_model_pool(["", "  "])


@pytest.mark.asyncio
async def test_add_credential_validation_and_duplicates(make_pools, store):
    pools = await make_pools()

    credential = await pools.add_credential("  sk-alpha-0001  ")
    assert credential.key == "sk-alpha-0001"
    assert (await store.get(pools.keys.credential(credential.id))).value["key"] == "sk-alpha-0001"

    with pytest.raises(DuplicateKeyError):
        await pools.add_credential("sk-alpha-0001")
    with pytest.raises(ValueError):
        await pools.add_credential("   ")


@pytest.mark.asyncio
async def test_batch_add_reports_failures(make_pools):
    pools = await make_pools(["sk-alpha-0001"])

    result = await pools.add_credentials(["sk-bravo-0002", "sk-alpha-0001", "sk-charlie-03"])

    assert result.total == 3
    assert result.added == ["sk-b*****0002", "sk-c*****e-03"]
    assert result.failed[0]["key"] == "sk-a*****0001"
    assert len(pools.credentials) == 3


@pytest.mark.asyncio
async def test_delete_credential(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]

    await pools.delete_credential(credential.id)

    assert await store.get(pools.keys.credential(credential.id)) is None
    assert pools.select_credential() is None
    with pytest.raises(NotFoundError):
        await pools.delete_credential(credential.id)


@pytest.mark.asyncio
async def test_probe_success_reactivates_invalid_credential(make_pools, store, fake_upstream):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]
    pools.invalidate_credential(credential.id)
    assert pools.select_credential() is None

    result = await pools.probe_credential(credential.id)

    assert result.success is True
    assert result.status == "active"
    assert pools.select_credential().id == credential.id
    assert (await store.get(pools.keys.credential(credential.id))).value["status"] == "active"
    assert fake_upstream.chat_models() == ["model-a"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply,status",
    [
        (httpx.Response(401, json={"error": "bad key"}), "invalid"),
        (httpx.Response(403, json={"error": "forbidden"}), "invalid"),
        (httpx.Response(500, json={"error": "boom"}), "inactive"),
        (httpx.ConnectError("refused"), "inactive"),
    ],
)
async def test_probe_failures(make_pools, fake_upstream, reply, status):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]
    fake_upstream.queue(reply)

    result = await pools.probe_credential(credential.id)

    assert result.success is False
    assert result.status == status
    assert pools.get_credential(credential.id).status == status
    assert not pools.credentials.has_usable()


@pytest.mark.asyncio
async def test_probe_model_not_found_removes_probe_model(make_pools, fake_upstream):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]
    fake_upstream.queue(fake_upstream.model_not_found())

    result = await pools.probe_credential(credential.id)

    assert result.success is True
    assert "model-a" not in pools.model_pool
    assert pools.get_credential(credential.id).status == CredentialStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_probe_uses_fallback_model_when_pool_empty(make_pools, fake_upstream):
    pools = await make_pools(["sk-alpha-0001"], models=())
    credential = pools.list_credentials()[0]

    await pools.probe_credential(credential.id)

    assert fake_upstream.chat_models() == ["model-a"]


@pytest.mark.asyncio
async def test_probe_model(make_pools, fake_upstream):
    pools = await make_pools(["sk-alpha-0001"])

    ok = await pools.probe_model("model-b")
    assert ok.success is True
    assert ok.status == "available"

    fake_upstream.queue(fake_upstream.model_not_found())
    gone = await pools.probe_model("model-b")
    assert gone.status == "model_not_found"
    assert "model-b" not in pools.model_pool


@pytest.mark.asyncio
async def test_probe_model_requires_active_credential(make_pools):
    pools = await make_pools()

    with pytest.raises(NoActiveCredentialError):
        await pools.probe_model("model-a")


@pytest.mark.asyncio
async def test_proxy_key_lifecycle(make_pools, store):
    pools = await make_pools()
    assert pools.authorize_proxy(None) == (True, None)

    proxy_key = await pools.create_proxy_key()
    assert proxy_key.key.startswith("rk_")
    assert proxy_key.name == "Key 1"

    assert pools.authorize_proxy(None) == (False, None)
    assert pools.authorize_proxy("rk_wrong") == (False, None)
    assert pools.authorize_proxy(proxy_key.key) == (True, proxy_key.id)
    assert pools.get_proxy_key(proxy_key.id).use_count == 1

    await pools.delete_proxy_key(proxy_key.id)
    assert await store.get(pools.keys.proxy_key(proxy_key.id)) is None
    assert pools.authorize_proxy(None) == (True, None)


@pytest.mark.asyncio
async def test_proxy_key_cap(make_pools):
    pools = await make_pools()
    for _ in range(5):
        await pools.create_proxy_key()

    with pytest.raises(LimitReachedError):
        await pools.create_proxy_key("sixth")
    assert len(pools.list_proxy_keys()) == 5


@pytest.mark.asyncio
async def test_set_flush_interval(make_pools, store):
    pools = await make_pools()

    assert await pools.set_flush_interval(200) == 1000
    assert pools.write_back.running
    assert (await store.get(pools.keys.config)).value["flush_interval_ms"] == 1000
    await pools.stop()


@pytest.mark.asyncio
async def test_stats(make_pools):
    pools = await make_pools(["sk-alpha-0001", "sk-bravo-0002"])
    pools.select_credential()
    pools.invalidate_credential(pools.list_credentials()[1].id)

    stats = pools.stats()

    assert stats["total_keys"] == 2
    assert stats["active_keys"] == 1
    assert stats["total_requests"] == 1
    assert stats["key_usage"][0]["masked_key"] == "sk-a*****0001"
    assert stats["key_usage"][0]["use_count"] == 1


@pytest.mark.asyncio
async def test_failed_status_write_is_retried_by_flush(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]
    store.set = AsyncMock(side_effect=StoreError("redis down"))

    with pytest.raises(StoreError):
        await pools.set_credential_status(credential.id, CredentialStatus.INACTIVE)

    assert pools.credentials.dirty_ids == {credential.id}

    del store.set  # back to the real implementation
    assert await pools.flush() is True
    record = (await store.get(pools.keys.credential(credential.id))).value
    assert record["status"] == "inactive"
    assert pools.credentials.dirty_ids == set()


@pytest.mark.asyncio
async def test_failed_delete_keeps_credential_in_rotation(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]
    store.delete = AsyncMock(side_effect=StoreError("redis down"))

    with pytest.raises(StoreError):
        await pools.delete_credential(credential.id)

    assert pools.get_credential(credential.id) is credential
    assert pools.credentials.usable_ids == [credential.id]


@pytest.mark.asyncio
async def test_failed_delete_keeps_proxy_key(make_pools, store):
    pools = await make_pools()
    proxy_key = await pools.create_proxy_key("ci")
    store.delete = AsyncMock(side_effect=StoreError("redis down"))

    with pytest.raises(StoreError):
        await pools.delete_proxy_key(proxy_key.id)

    assert pools.authorize_proxy(proxy_key.key) == (True, proxy_key.id)
