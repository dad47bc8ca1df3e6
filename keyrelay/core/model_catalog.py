"""Snapshot of the models the upstream advertises, for the admin model picker.

The dispatch loop never consults the catalog.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from keyrelay.core.errors import StoreError, UpstreamTimeoutError, UpstreamUnavailableError
from keyrelay.core.store import DurableStore
from keyrelay.core.upstream import UpstreamClient

logger = logging.getLogger(__name__)

CATALOG_SOURCE = "upstream-public"
DEFAULT_CATALOG_TTL_S = 6 * 60 * 60


@dataclass
class ModelCatalog:
    source: str
    fetched_at: float
    models: List[str] = field(default_factory=list)

    def is_fresh(self, now: float, ttl_s: float) -> bool:
        return now >= self.fetched_at and now - self.fetched_at < ttl_s

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "fetched_at": self.fetched_at, "models": list(self.models)}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ModelCatalog":
        return cls(
            source=str(raw.get("source", CATALOG_SOURCE)),
            fetched_at=float(raw.get("fetched_at", 0.0)),
            models=[m for m in raw.get("models", []) if isinstance(m, str)],
        )


@dataclass
class CatalogView:
    """Catalog as returned to the admin surface."""

    catalog: ModelCatalog
    stale: bool
    last_error: Optional[str] = None


class ModelCatalogService:
    """TTL-bounded catalog with deduplicated refresh.

    Concurrent refresh calls share a single in-flight fetch task.
    """

    def __init__(
        self,
        store: DurableStore,
        key: str,
        upstream: UpstreamClient,
        ttl_s: float = DEFAULT_CATALOG_TTL_S,
    ):
        self.store = store
        self.key = key
        self.upstream = upstream
        self.ttl_s = ttl_s
        self._cached: Optional[ModelCatalog] = None
        self._in_flight: Optional[asyncio.Task] = None

    @property
    def cached(self) -> Optional[ModelCatalog]:
        return self._cached

    async def load_persisted(self) -> Optional[ModelCatalog]:
        try:
            entry = await self.store.get(self.key)
        except StoreError as e:
            logger.warning(f"Model catalog read failed: {e}")
            return None
        if entry is None:
            return None
        try:
            return ModelCatalog.from_dict(entry.value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable model catalog: {e}")
            return None

    async def get(self, now: Optional[float] = None) -> CatalogView:
        """Return a fresh catalog, refreshing if needed.

        Falls back to a stale copy when the refresh fails.

        Raises:
            UpstreamUnavailableError, UpstreamTimeoutError: If the refresh
                failed and no catalog has ever been stored
        """
        now = time.time() if now is None else now
        catalog = self._cached
        if catalog is None or not catalog.is_fresh(now, self.ttl_s):
            persisted = await self.load_persisted()
            if persisted is not None:
                catalog = persisted
                self._cached = persisted

        if catalog is not None and catalog.is_fresh(now, self.ttl_s):
            return CatalogView(catalog=catalog, stale=False)

        return await self.force_refresh(fallback=catalog)

    async def force_refresh(self, fallback: Optional[ModelCatalog] = None) -> CatalogView:
        """Refresh now; on failure serve ``fallback`` (or the cached copy) as stale."""
        fallback = fallback or self._cached
        try:
            catalog = await self.refresh()
        except (UpstreamTimeoutError, UpstreamUnavailableError) as e:
            if fallback is None:
                fallback = await self.load_persisted()
            if fallback is None:
                raise
            logger.warning(f"Model catalog refresh failed, serving stale copy: {e}")
            return CatalogView(catalog=fallback, stale=True, last_error=str(e))
        return CatalogView(catalog=catalog, stale=False)

    async def refresh(self) -> ModelCatalog:
        """Fetch the catalog from upstream, joining any fetch already running."""
        if self._in_flight is None:
            task = asyncio.create_task(self._fetch())
            task.add_done_callback(self._clear_in_flight)
            self._in_flight = task
        return await asyncio.shield(self._in_flight)

    def _clear_in_flight(self, task: asyncio.Task) -> None:
        if self._in_flight is task:
            self._in_flight = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away
            task.exception()

    async def _fetch(self) -> ModelCatalog:
        models = await self.upstream.fetch_models()
        catalog = ModelCatalog(source=CATALOG_SOURCE, fetched_at=time.time(), models=models)
        self._cached = catalog
        try:
            await self.store.set(self.key, catalog.to_dict())
        except StoreError as e:
            logger.error(f"Model catalog save failed: {e}")
        logger.info(f"Model catalog refreshed: {len(models)} models")
        return catalog
