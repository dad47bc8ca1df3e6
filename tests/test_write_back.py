"""Tests for the write-back cache flush and timer lifecycle."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from keyrelay.core.errors import StoreError
from keyrelay.core.pool_manager import PoolManager


@pytest.mark.asyncio
async def test_flush_persists_usage_counter_and_cursor(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    selection = pools.select_credential(now=100.0)
    pools.select_model()
    pools.select_model()

    assert await pools.flush() is True

    record = (await store.get(pools.keys.credential(selection.id))).value
    assert record["use_count"] == 1
    assert record["last_used"] == 100.0
    config = (await store.get(pools.keys.config)).value
    assert config["total_requests"] == 1
    assert config["current_model_index"] == 2


@pytest.mark.asyncio
async def test_flush_without_changes_writes_nothing(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    writes = store.write_count

    assert await pools.flush() is False
    assert store.write_count == writes


@pytest.mark.asyncio
async def test_failed_flush_remarks_snapshot(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    selection = pools.select_credential(now=1.0)
    store.set = AsyncMock(side_effect=StoreError("redis down"))

    assert await pools.flush() is False

    assert pools.credentials.dirty_ids == {selection.id}
    assert pools.config_store.dirty
    assert pools.config_store.total_requests == 1

    del store.set  # back to the real implementation
    assert await pools.flush() is True
    assert (await store.get(pools.keys.config)).value["total_requests"] == 1
    assert pools.credentials.dirty_ids == set()


@pytest.mark.asyncio
async def test_flush_is_single_flight(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    pools.select_credential(now=1.0)

    gate = asyncio.Event()
    real_set = store.set

    async def slow_set(key, value):
        await gate.wait()
        await real_set(key, value)

    store.set = slow_set
    first = asyncio.create_task(pools.flush())
    await asyncio.sleep(0)

    assert pools.write_back.flush_in_progress
    assert await pools.flush() is False

    gate.set()
    assert await first is True
    assert not pools.write_back.flush_in_progress


@pytest.mark.asyncio
async def test_flush_sweeps_expired_cooldowns(make_pools):
    pools = await make_pools(["sk-alpha-0001"])
    credential = pools.list_credentials()[0]
    pools.credentials.apply_cooldown(credential.id, "1", now=0.0)

    await pools.flush()

    assert pools.credentials.cooldown_until(credential.id) is None


@pytest.mark.asyncio
async def test_reschedule_and_stop(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    write_back = pools.write_back

    await write_back.start()
    assert write_back.running
    assert write_back.interval_ms == 15000

    assert await write_back.reschedule(10) == 1000
    assert write_back.running

    pools.select_credential(now=1.0)
    await pools.stop()

    assert not write_back.running
    assert (await store.get(pools.keys.config)).value["total_requests"] == 1


@pytest.mark.asyncio
async def test_flush_loop_ticks(make_pools, store):
    pools = await make_pools(["sk-alpha-0001"])
    pools.select_credential(now=1.0)

    task = asyncio.create_task(pools.write_back._flush_loop(0.01))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await store.get(pools.keys.config)).value["total_requests"] == 1


@pytest.mark.asyncio
async def test_bootstrap_restores_flushed_state(make_pools, store, upstream):
    pools = await make_pools(["sk-alpha-0001", "sk-bravo-0002"])
    pools.select_credential(now=1.0)
    pools.select_model()
    await pools.create_proxy_key("ci")
    await pools.flush()

    restarted = PoolManager(store, upstream, default_models=("ignored",))
    await restarted.write_back.bootstrap()

    assert len(restarted.credentials) == 2
    assert sum(c.use_count for c in restarted.list_credentials()) == 1
    assert restarted.model_pool.models == ("model-a", "model-b", "model-c")
    assert restarted.select_model() == "model-b"
    assert [k.name for k in restarted.list_proxy_keys()] == ["ci"]
    assert restarted.config_store.total_requests == 1


@pytest.mark.asyncio
async def test_delete_during_flush_stays_deleted(make_pools, store, upstream):
    pools = await make_pools(["sk-alpha-0001"])
    proxy_key = await pools.create_proxy_key("ci")
    selection = pools.select_credential(now=1.0)
    pools.authorize_proxy(proxy_key.key)

    gate = asyncio.Event()
    real_set = store.set

    async def slow_set(key, value):
        await gate.wait()
        await real_set(key, value)

    store.set = slow_set
    flush = asyncio.create_task(pools.flush())
    await asyncio.sleep(0)
    assert pools.write_back.flush_in_progress

    await pools.delete_proxy_key(proxy_key.id)
    await pools.delete_credential(selection.id)
    gate.set()
    assert await flush is True
    del store.set

    assert await store.get(pools.keys.credential(selection.id)) is None
    assert await store.get(pools.keys.proxy_key(proxy_key.id)) is None

    restarted = PoolManager(store, upstream, default_models=("ignored",))
    await restarted.write_back.bootstrap()
    assert restarted.list_credentials() == []
    assert restarted.list_proxy_keys() == []
    assert restarted.proxy_keys.authenticate(proxy_key.key) is None


@pytest.mark.asyncio
async def test_failed_flush_keeps_concurrent_changes(make_pools, store):
    pools = await make_pools(["sk-alpha-0001", "sk-bravo-0002"])
    first = pools.select_credential(now=1.0)

    gate = asyncio.Event()

    async def failing_set(key, value):
        await gate.wait()
        raise StoreError("redis down")

    store.set = failing_set
    flush = asyncio.create_task(pools.flush())
    await asyncio.sleep(0)

    # Selected while the failing flush is still writing
    second = pools.select_credential(now=2.0)
    assert second.id != first.id
    assert pools.credentials.dirty_ids == {second.id}

    gate.set()
    assert await flush is False
    assert pools.credentials.dirty_ids == {first.id, second.id}
    assert pools.config_store.total_requests == 2

    del store.set  # back to the real implementation
    writes = store.write_count
    assert await pools.flush() is True
    assert await pools.flush() is False

    # Two credential records plus one configuration row
    assert store.write_count == writes + 3
    assert (await store.get(pools.keys.config)).value["total_requests"] == 2
    assert pools.config_store.total_requests == 2
    for credential_id in (first.id, second.id):
        record = (await store.get(pools.keys.credential(credential_id))).value
        assert record["use_count"] == 1
