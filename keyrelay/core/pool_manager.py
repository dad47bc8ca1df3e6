"""Owning service for all rotation state.

``PoolManager`` is the only mutation surface for credentials, the model
pool, shared configuration and proxy keys. The dispatch loop and the admin
routes both go through it, so admin edits take the same rebuild and
compare-and-swap paths as dispatch-driven transitions.
"""
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from keyrelay.core.credential_pool import (
    DEFAULT_COOLDOWN_S,
    Credential,
    CredentialPool,
    CredentialStatus,
    Selection,
)
from keyrelay.core.errors import (
    DuplicateKeyError,
    KeyRelayError,
    NoActiveCredentialError,
    NotFoundError,
    StoreError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from keyrelay.core.model_catalog import DEFAULT_CATALOG_TTL_S, ModelCatalogService
from keyrelay.core.model_pool import ModelPool, is_model_not_found, normalize_model_pool
from keyrelay.core.proxy_keys import MAX_PROXY_KEYS, ProxyKey, ProxyKeyRegistry
from keyrelay.core.security import SecurityManager
from keyrelay.core.shared_config import (
    DEFAULT_FLUSH_INTERVAL_MS,
    SharedConfig,
    SharedConfigStore,
    normalize_flush_interval_ms,
)
from keyrelay.core.store import DurableStore, KeySpace
from keyrelay.core.upstream import UpstreamClient
from keyrelay.core.write_back import WriteBackCache
from keyrelay.metrics.prometheus import (
    credential_transitions_total,
    model_evictions_total,
    model_pool_size,
    usable_credentials,
)

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of an admin-triggered credential or model probe."""

    success: bool
    status: str
    error: Optional[str] = None


@dataclass
class BatchAddResult:
    added: List[str] = field(default_factory=list)  # masked secrets
    failed: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.failed)


class PoolManager:
    """Credential and model rotation plus their persistence."""

    def __init__(
        self,
        store: DurableStore,
        upstream: UpstreamClient,
        keys: Optional[KeySpace] = None,
        default_models: Sequence[str] = (),
        fallback_model: Optional[str] = None,
        default_cooldown_s: float = DEFAULT_COOLDOWN_S,
        max_proxy_keys: int = MAX_PROXY_KEYS,
        catalog_ttl_s: float = DEFAULT_CATALOG_TTL_S,
        flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
    ):
        """
        Args:
            store: Durable store
            upstream: Upstream HTTP client
            keys: Key layout in the store
            default_models: Model pool used when no configuration row exists
            fallback_model: Model used for credential probes when the pool is empty
            default_cooldown_s: Cooldown after a 429 without a usable Retry-After
            max_proxy_keys: Cap on proxy access keys
            catalog_ttl_s: Model catalog freshness window
            flush_interval_ms: Flush interval used when no configuration row exists
        """
        self.store = store
        self.upstream = upstream
        self.keys = keys or KeySpace()
        self.fallback_model = fallback_model

        self.config_store = SharedConfigStore(
            store,
            self.keys.config,
            default_models,
            default_flush_interval_ms=flush_interval_ms,
        )
        self.credentials = CredentialPool(
            on_select=self.config_store.record_request,
            default_cooldown_s=default_cooldown_s,
        )
        self.model_pool = ModelPool(on_advance=self.config_store.mark_dirty)
        self.proxy_keys = ProxyKeyRegistry(max_keys=max_proxy_keys)
        self.write_back = WriteBackCache(
            store,
            self.keys,
            self.credentials,
            self.proxy_keys,
            self.config_store,
            self.model_pool,
        )
        self.catalog = ModelCatalogService(store, self.keys.model_catalog, upstream, catalog_ttl_s)

    # Lifecycle

    async def start(self) -> None:
        """Load persisted state and arm the flush timer."""
        await self.write_back.bootstrap()
        await self.write_back.start()
        self._refresh_gauges()

    async def stop(self) -> None:
        await self.write_back.stop()

    def _refresh_gauges(self) -> None:
        usable_credentials.set(len(self.credentials.usable_ids))
        model_pool_size.set(len(self.model_pool))

    # Dispatch surface

    def select_credential(self, now: Optional[float] = None) -> Optional[Selection]:
        """Next usable credential; also counts the request."""
        return self.credentials.select_next(now)

    def select_model(self) -> Optional[str]:
        return self.model_pool.select_next()

    def apply_cooldown(self, credential_id: str, headers: Mapping[str, str], now: Optional[float] = None) -> None:
        """Cool a credential down using the 429 response's Retry-After header."""
        if self.credentials.apply_cooldown(credential_id, headers.get("retry-after"), now) is not None:
            credential_transitions_total.labels(transition="cooldown").inc()

    def invalidate_credential(self, credential_id: str) -> bool:
        changed = self.credentials.invalidate(credential_id)
        if changed:
            credential_transitions_total.labels(transition="invalid").inc()
            self._refresh_gauges()
        return changed

    async def remove_model(self, name: str, reason: str) -> bool:
        """Drop a model from the pool through the configuration update path.

        Rotation restarts at the head afterwards, even if the model was
        already gone. Calling this twice has the same effect as once.

        Returns:
            True if the model was in the in-memory pool
        """
        name = name.strip()
        if not name:
            return False
        existed = name in self.model_pool

        def drop(config: SharedConfig) -> SharedConfig:
            if name not in config.model_pool:
                return config
            return replace(
                config,
                model_pool=tuple(m for m in config.model_pool if m != name),
                current_model_index=0,
            )

        config = await self.config_store.update(drop)
        self.model_pool.rebuild(config.model_pool, reset_cursor=True)
        self.config_store.mark_dirty()
        self._refresh_gauges()

        if existed:
            model_evictions_total.labels(reason=reason).inc()
            logger.warning(f"Model removed from pool ({reason}): {name}")
        return existed

    def exhaustion(self, now: Optional[float] = None) -> Tuple[bool, Optional[int]]:
        """Explain why no credential could be selected.

        Returns:
            ``(has_usable, retry_after_s)``: whether any active credential
            exists (temporarily exhausted) and, if some are cooling down, the
            whole seconds until the first one is usable again
        """
        remaining = self.credentials.min_cooldown_remaining(now)
        retry_after = math.ceil(remaining) if remaining and remaining > 0 else None
        return self.credentials.has_usable(), retry_after

    # Proxy access keys

    def authorize_proxy(self, token: Optional[str]) -> Tuple[bool, Optional[str]]:
        """Check a caller's proxy key.

        Returns:
            ``(authorized, proxy_key_id)``; the id is None while no proxy keys exist
        """
        if not self.proxy_keys.auth_enabled:
            return True, None
        if not token:
            return False, None
        proxy_key = self.proxy_keys.authenticate(token)
        if proxy_key is None:
            return False, None
        self.proxy_keys.record_usage(proxy_key.id)
        return True, proxy_key.id

    def list_proxy_keys(self) -> List[ProxyKey]:
        return self.proxy_keys.all()

    def get_proxy_key(self, key_id: str) -> ProxyKey:
        proxy_key = self.proxy_keys.get(key_id)
        if proxy_key is None:
            raise NotFoundError("Proxy key not found")
        return proxy_key

    async def create_proxy_key(self, name: Optional[str] = None) -> ProxyKey:
        proxy_key = self.proxy_keys.create(name)
        try:
            await self.store.set(self.keys.proxy_key(proxy_key.id), proxy_key.to_dict())
        except StoreError:
            self.proxy_keys.remove(proxy_key.id)
            raise
        logger.info(f"Proxy key created: {proxy_key.id} ({proxy_key.name})")
        return proxy_key

    async def delete_proxy_key(self, key_id: str) -> None:
        proxy_key = self.get_proxy_key(key_id)
        # Leave memory first so a flush already in flight cannot rewrite the record
        self.proxy_keys.remove(key_id)
        try:
            await self.store.delete(self.keys.proxy_key(key_id))
        except StoreError:
            self.proxy_keys.restore(proxy_key)
            raise
        logger.info(f"Proxy key deleted: {key_id}")

    # Credentials

    def list_credentials(self) -> List[Credential]:
        return self.credentials.all()

    def get_credential(self, credential_id: str) -> Credential:
        credential = self.credentials.get(credential_id)
        if credential is None:
            raise NotFoundError("Credential not found")
        return credential

    async def add_credential(self, secret: str) -> Credential:
        """Add and persist a credential.

        Raises:
            ValueError: If the secret is malformed
            DuplicateKeyError: If the secret is already in the pool
        """
        secret = secret.strip()
        problem = SecurityManager.validate_secret(secret)
        if problem:
            raise ValueError(problem)

        credential = Credential.new(secret)
        self.credentials.add(credential)
        try:
            await self.store.set(self.keys.credential(credential.id), credential.to_dict())
        except StoreError:
            self.credentials.remove(credential.id)
            raise
        self._refresh_gauges()
        logger.info(f"Credential added: {credential.id}")
        return credential

    async def add_credentials(self, secrets: Iterable[str]) -> BatchAddResult:
        result = BatchAddResult()
        for secret in secrets:
            masked = SecurityManager.mask_secret(secret)
            try:
                await self.add_credential(secret)
            except (ValueError, DuplicateKeyError) as e:
                result.failed.append({"key": masked, "error": str(e)})
                continue
            result.added.append(masked)
        return result

    async def delete_credential(self, credential_id: str) -> None:
        credential = self.get_credential(credential_id)
        # Leave memory first so a flush already in flight cannot rewrite the record
        self.credentials.remove(credential_id)
        try:
            await self.store.delete(self.keys.credential(credential_id))
        except StoreError:
            self.credentials.add(credential)
            self.credentials.mark_dirty([credential_id])
            raise
        finally:
            self._refresh_gauges()
        logger.info(f"Credential deleted: {credential_id}")

    async def set_credential_status(self, credential_id: str, status: CredentialStatus) -> Credential:
        """Admin status change, persisted immediately.

        The credential stays dirty until the write succeeds, so a failed
        write is retried by the next flush.
        """
        credential = self.credentials.set_status(credential_id, status)
        if credential is None:
            raise NotFoundError("Credential not found")
        record = credential.to_dict()
        self.credentials.mark_dirty([credential_id])
        await self.store.set(self.keys.credential(credential_id), record)
        if credential.to_dict() == record:
            self.credentials.discard_dirty(credential_id)
        credential_transitions_total.labels(transition=status.value).inc()
        self._refresh_gauges()
        return credential

    async def probe_credential(self, credential_id: str) -> ProbeResult:
        """Health-check a credential with a one-token completion.

        This is the only way an inactive or invalid credential returns to
        rotation.
        """
        credential = self.get_credential(credential_id)
        models = self.model_pool.models
        model = models[0] if models else self.fallback_model
        if not model:
            raise KeyRelayError("No model available to probe with")

        try:
            response = await self.upstream.probe(credential.key, model)
        except (UpstreamTimeoutError, UpstreamUnavailableError) as e:
            await self.set_credential_status(credential_id, CredentialStatus.INACTIVE)
            return ProbeResult(success=False, status=CredentialStatus.INACTIVE.value, error=str(e))

        if response.is_success:
            await self.set_credential_status(credential_id, CredentialStatus.ACTIVE)
            return ProbeResult(success=True, status=CredentialStatus.ACTIVE.value)

        if response.status_code in (401, 403):
            await self.set_credential_status(credential_id, CredentialStatus.INVALID)
            return ProbeResult(
                success=False,
                status=CredentialStatus.INVALID.value,
                error=f"HTTP {response.status_code}",
            )

        if response.status_code == 404 and is_model_not_found(response.content):
            # The credential authenticated fine; the probe model is what's gone
            await self.remove_model(model, "model_not_found")
            await self.set_credential_status(credential_id, CredentialStatus.ACTIVE)
            return ProbeResult(success=True, status=CredentialStatus.ACTIVE.value)

        await self.set_credential_status(credential_id, CredentialStatus.INACTIVE)
        return ProbeResult(
            success=False,
            status=CredentialStatus.INACTIVE.value,
            error=f"HTTP {response.status_code}",
        )

    # Model pool

    async def get_model_pool(self) -> List[str]:
        config = await self.config_store.get()
        return list(config.model_pool)

    async def replace_model_pool(self, models: Iterable[Any]) -> List[str]:
        """Replace the model pool and restart rotation at the head.

        Raises:
            ValueError: If no valid model name remains after normalization
        """
        pool = normalize_model_pool(models)
        if not pool:
            raise ValueError("Model pool must not be empty")

        config = await self.config_store.update(
            lambda c: replace(c, model_pool=pool, current_model_index=0)
        )
        self.model_pool.rebuild(config.model_pool, reset_cursor=True)
        self._refresh_gauges()
        logger.info(f"Model pool replaced: {', '.join(pool)}")
        return list(config.model_pool)

    async def probe_model(self, name: str) -> ProbeResult:
        """Check whether the upstream still serves ``name``."""
        credential = self.credentials.first_active()
        if credential is None:
            raise NoActiveCredentialError("No active credential available")

        try:
            response = await self.upstream.probe(credential.key, name)
        except (UpstreamTimeoutError, UpstreamUnavailableError) as e:
            return ProbeResult(success=False, status="error", error=str(e))

        if response.is_success:
            return ProbeResult(success=True, status="available")

        if response.status_code == 404 and is_model_not_found(response.content):
            await self.remove_model(name, "model_not_found")
            return ProbeResult(success=False, status="model_not_found", error="model_not_found")

        if response.status_code in (401, 403):
            await self.set_credential_status(credential.id, CredentialStatus.INVALID)

        return ProbeResult(success=False, status="unavailable", error=f"HTTP {response.status_code}")

    # Settings and stats

    async def get_config(self) -> SharedConfig:
        return await self.config_store.get()

    async def set_flush_interval(self, interval_ms: float) -> int:
        """Persist a new flush interval and restart the timer with it."""
        normalized = normalize_flush_interval_ms(interval_ms)
        config = await self.config_store.update(
            lambda c: c if c.flush_interval_ms == normalized else replace(c, flush_interval_ms=normalized)
        )
        return await self.write_back.reschedule(config.flush_interval_ms)

    def stats(self) -> Dict[str, Any]:
        credentials = self.credentials.all()
        return {
            "total_keys": len(credentials),
            "active_keys": sum(1 for c in credentials if c.status == CredentialStatus.ACTIVE.value),
            "total_requests": self.config_store.total_requests,
            "key_usage": [
                {
                    "id": c.id,
                    "masked_key": SecurityManager.mask_secret(c.key),
                    "use_count": c.use_count,
                    "last_used": c.last_used,
                    "status": c.status,
                    "cooldown_until": self.credentials.cooldown_until(c.id),
                }
                for c in credentials
            ],
        }

    async def flush(self) -> bool:
        return await self.write_back.flush()
