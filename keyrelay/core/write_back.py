"""Write-back cache: dirty tracking and periodic flush to the durable store."""
import asyncio
import logging
import time
from typing import Optional

from keyrelay.core.credential_pool import Credential, CredentialPool
from keyrelay.core.model_pool import ModelPool
from keyrelay.core.proxy_keys import ProxyKey, ProxyKeyRegistry
from keyrelay.core.shared_config import (
    DEFAULT_FLUSH_INTERVAL_MS,
    SharedConfig,
    SharedConfigStore,
    normalize_flush_interval_ms,
)
from keyrelay.core.store import DurableStore, KeySpace
from keyrelay.metrics.prometheus import flushes_total, flushed_entities_total

logger = logging.getLogger(__name__)


class WriteBackCache:
    """Keeps the in-memory pools durable.

    Request handling only touches memory and marks entities dirty. A
    background task flushes dirty entities on a fixed interval; a flush
    that fails re-marks exactly what it tried to write and the next tick
    retries. The task is armed by ``start()``, replaced by ``reschedule()``
    and drained by ``stop()``.
    """

    def __init__(
        self,
        store: DurableStore,
        keys: KeySpace,
        credentials: CredentialPool,
        proxy_keys: ProxyKeyRegistry,
        config_store: SharedConfigStore,
        model_pool: ModelPool,
    ):
        self.store = store
        self.keys = keys
        self.credentials = credentials
        self.proxy_keys = proxy_keys
        self.config_store = config_store
        self.model_pool = model_pool

        self._interval_ms = DEFAULT_FLUSH_INTERVAL_MS
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_in_progress = False

    @property
    def interval_ms(self) -> int:
        """Effective flush interval."""
        return self._interval_ms

    @property
    def running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    @property
    def flush_in_progress(self) -> bool:
        return self._flush_in_progress

    async def bootstrap(self) -> SharedConfig:
        """Load all persisted state into memory."""
        config = await self.config_store.get()

        credentials = []
        for entry in await self.store.list(self.keys.credentials):
            try:
                credentials.append(Credential.from_dict(entry.value))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable credential record {entry.key}: {e}")
        self.credentials.load(credentials)

        proxy_keys = []
        for entry in await self.store.list(self.keys.proxy_keys):
            try:
                proxy_keys.append(ProxyKey.from_dict(entry.value))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable proxy key record {entry.key}: {e}")
        self.proxy_keys.load(proxy_keys)

        self.model_pool.rebuild(config.model_pool, config.current_model_index)
        self._interval_ms = normalize_flush_interval_ms(config.flush_interval_ms)

        logger.info(
            f"Loaded {len(credentials)} credentials, {len(proxy_keys)} proxy keys, "
            f"{len(config.model_pool)} models"
        )
        return config

    async def flush(self) -> bool:
        """Write dirty entities to the store.

        Re-entrant calls while a flush is running return immediately.

        Returns:
            True if something was written, False otherwise
        """
        self.credentials.sweep_cooldowns(time.time())

        if self._flush_in_progress:
            return False

        credential_records = self.credentials.take_dirty()
        proxy_key_records = self.proxy_keys.take_dirty()
        requests = self.config_store.take_dirty()
        if not credential_records and not proxy_key_records and requests is None:
            return False

        self._flush_in_progress = True
        model_pool, cursor = self.model_pool.snapshot()
        try:
            writes = [
                self.store.set(self.keys.credential(cid), record)
                for cid, record in credential_records.items()
            ]
            writes.extend(
                self.store.set(self.keys.proxy_key(kid), record)
                for kid, record in proxy_key_records.items()
            )
            if writes:
                await asyncio.gather(*writes)
            await self._drop_deleted(credential_records, proxy_key_records)
            if requests is not None:
                await self.config_store.commit(requests, model_pool, cursor)
        except asyncio.CancelledError:
            self._restore(credential_records, proxy_key_records, requests)
            raise
        except Exception as e:
            self._restore(credential_records, proxy_key_records, requests)
            flushes_total.labels(result="error").inc()
            logger.error(f"Flush failed, will retry on next tick: {type(e).__name__}: {e}", exc_info=True)
            try:
                await self._drop_deleted(credential_records, proxy_key_records)
            except Exception as cleanup_error:
                logger.error(f"Cleanup of deleted records failed: {cleanup_error}")
            return False
        finally:
            self._flush_in_progress = False

        flushes_total.labels(result="ok").inc()
        flushed_entities_total.labels(kind="credential").inc(len(credential_records))
        flushed_entities_total.labels(kind="proxy_key").inc(len(proxy_key_records))
        if requests is not None:
            flushed_entities_total.labels(kind="config").inc()
        return True

    async def _drop_deleted(self, credential_records, proxy_key_records) -> None:
        """Delete records whose entity was removed while its write was in flight."""
        stale = [self.keys.credential(cid) for cid in credential_records if cid not in self.credentials]
        stale.extend(self.keys.proxy_key(kid) for kid in proxy_key_records if kid not in self.proxy_keys)
        if stale:
            await asyncio.gather(*(self.store.delete(key) for key in stale))
            logger.info(f"Removed {len(stale)} records deleted during flush")

    def _restore(self, credential_records, proxy_key_records, requests) -> None:
        self.credentials.mark_dirty(credential_records.keys())
        self.proxy_keys.mark_dirty(proxy_key_records.keys())
        if requests is not None:
            self.config_store.restore_dirty(requests)

    async def start(self, interval_ms: Optional[int] = None) -> None:
        """Arm the periodic flush task."""
        if interval_ms is not None:
            self._interval_ms = normalize_flush_interval_ms(interval_ms)
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop(self._interval_ms / 1000.0))
            logger.info(f"Write-back flush task started (every {self._interval_ms} ms)")

    async def reschedule(self, interval_ms: int) -> int:
        """Replace the running timer with one using ``interval_ms``.

        Returns:
            The effective interval after clamping
        """
        await self._cancel_task()
        self._interval_ms = normalize_flush_interval_ms(interval_ms)
        self._flush_task = asyncio.create_task(self._flush_loop(self._interval_ms / 1000.0))
        logger.info(f"Write-back flush interval set to {self._interval_ms} ms")
        return self._interval_ms

    async def stop(self) -> None:
        """Disarm the timer and write out anything still dirty."""
        await self._cancel_task()
        await self.flush()
        logger.info("Write-back flush task stopped")

    async def _cancel_task(self) -> None:
        task, self._flush_task = self._flush_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _flush_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            await self.flush()
