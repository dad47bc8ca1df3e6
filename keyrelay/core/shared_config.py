"""Shared configuration row and its single compare-and-swap update path."""
import logging
import math
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Sequence, Tuple

from keyrelay.core.atomic import MAX_UPDATE_ATTEMPTS, Updater, optimistic_update
from keyrelay.core.errors import UpdateExhaustedError
from keyrelay.core.model_pool import normalize_model_pool
from keyrelay.core.store import DurableStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "2"

# Fields of older row shapes; their presence forces a rewrite
LEGACY_FIELDS = ("disabled_models",)

DEFAULT_FLUSH_INTERVAL_MS = 15000
MIN_FLUSH_INTERVAL_MS = 1000


def normalize_flush_interval_ms(value: Any) -> int:
    """Clamp a flush interval to the supported minimum; invalid input gives the default."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return DEFAULT_FLUSH_INTERVAL_MS
    return max(MIN_FLUSH_INTERVAL_MS, int(value))


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


@dataclass(frozen=True)
class SharedConfig:
    """Process-wide configuration persisted as one row."""

    model_pool: Tuple[str, ...] = field(default_factory=tuple)
    current_model_index: int = 0
    total_requests: int = 0
    flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_pool": list(self.model_pool),
            "current_model_index": self.current_model_index,
            "total_requests": self.total_requests,
            "flush_interval_ms": self.flush_interval_ms,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], default_models: Sequence[str]) -> "SharedConfig":
        """Parse a stored row, replacing missing or invalid fields with defaults.

        Always yields the current schema tag; known valid values are kept.
        """
        pool_raw = raw.get("model_pool")
        if isinstance(pool_raw, list):
            model_pool = normalize_model_pool(pool_raw)
        else:
            model_pool = normalize_model_pool(default_models)
        return cls(
            model_pool=model_pool,
            current_model_index=_non_negative_int(raw.get("current_model_index")),
            total_requests=_non_negative_int(raw.get("total_requests")),
            flush_interval_ms=normalize_flush_interval_ms(
                raw.get("flush_interval_ms", DEFAULT_FLUSH_INTERVAL_MS)
            ),
            schema_version=SCHEMA_VERSION,
        )


def needs_migration(raw: Dict[str, Any]) -> bool:
    return raw.get("schema_version") != SCHEMA_VERSION or any(f in raw for f in LEGACY_FIELDS)


class SharedConfigStore:
    """Owns the shared configuration row.

    ``update()`` is the only way the row is written after initialization.
    The store also keeps the request counter and dirty flag that the
    write-back cache drains on each flush.
    """

    def __init__(
        self,
        store: DurableStore,
        key: str,
        default_models: Sequence[str],
        max_attempts: int = MAX_UPDATE_ATTEMPTS,
        default_flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS,
    ):
        """
        Args:
            store: Durable store
            key: Key of the configuration row
            default_models: Model pool used when the row is created or unreadable
            max_attempts: Compare-and-swap attempts per update
            default_flush_interval_ms: Flush interval written when the row is created
        """
        self.store = store
        self.key = key
        self.default_models = normalize_model_pool(default_models)
        self.default_flush_interval_ms = normalize_flush_interval_ms(default_flush_interval_ms)
        self.max_attempts = max_attempts
        self._cached: Optional[SharedConfig] = None
        self._pending_requests = 0
        self._flushing_requests = 0
        self._dirty = False
        self._lock = threading.Lock()

    @property
    def cached(self) -> Optional[SharedConfig]:
        """Last row read from or written to the store."""
        return self._cached

    @property
    def total_requests(self) -> int:
        """Persisted counter plus requests not yet flushed."""
        base = self._cached.total_requests if self._cached else 0
        return base + self._pending_requests + self._flushing_requests

    @property
    def dirty(self) -> bool:
        return self._dirty

    def defaults(self) -> SharedConfig:
        return SharedConfig(
            model_pool=self.default_models,
            flush_interval_ms=self.default_flush_interval_ms,
        )

    async def ensure(self) -> Tuple[SharedConfig, int]:
        """Read the row, creating or migrating it first when needed.

        Returns:
            ``(config, version)`` for the row as currently stored

        Raises:
            UpdateExhaustedError: If creation/migration kept conflicting
        """
        for _ in range(self.max_attempts):
            entry = await self.store.get(self.key)
            if entry is None:
                if await self.store.atomic_check_and_set(None, self.key, self.defaults().to_dict()):
                    logger.info(f"Initialized shared configuration at {self.key}")
                continue

            raw = entry.value if isinstance(entry.value, dict) else {}
            config = SharedConfig.from_dict(raw, self.default_models)
            if needs_migration(raw):
                if await self.store.atomic_check_and_set(entry.version, self.key, config.to_dict()):
                    logger.info(
                        f"Migrated shared configuration from schema "
                        f"{raw.get('schema_version')!r} to {SCHEMA_VERSION!r}"
                    )
                continue

            return config, entry.version

        raise UpdateExhaustedError(self.key, self.max_attempts)

    async def get(self) -> SharedConfig:
        config, _ = await self.ensure()
        self._cached = config
        return config

    async def update(self, updater: Updater) -> SharedConfig:
        """Read-modify-write the row with a version check.

        Returning the given config unchanged from ``updater`` skips the write.

        Raises:
            UpdateExhaustedError: After ``max_attempts`` conflicting writes
        """
        config, _ = await optimistic_update(
            self.store,
            self.key,
            self.ensure,
            updater,
            lambda c: c.to_dict(),
            self.max_attempts,
        )
        self._cached = config
        return config

    def record_request(self) -> None:
        with self._lock:
            self._pending_requests += 1
            self._dirty = True

    def mark_dirty(self) -> None:
        self._dirty = True

    def take_dirty(self) -> Optional[int]:
        """Snapshot and clear the dirty state.

        Returns:
            Number of requests to add to the persisted counter, or None if
            nothing is pending
        """
        with self._lock:
            if not self._dirty:
                return None
            requests = self._pending_requests
            self._flushing_requests += requests
            self._pending_requests = 0
            self._dirty = False
            return requests

    def restore_dirty(self, requests: int) -> None:
        """Put back a snapshot whose flush failed."""
        with self._lock:
            self._flushing_requests -= requests
            self._pending_requests += requests
            self._dirty = True

    async def commit(self, requests: int, model_pool: Tuple[str, ...], cursor: int) -> SharedConfig:
        """Merge flushed in-memory state into the persisted row.

        The request delta is added to the stored counter. The rotation cursor
        is written only while the stored pool still matches the mirrored one,
        so a concurrent pool edit is never overwritten.
        """
        def merge(config: SharedConfig) -> SharedConfig:
            nxt = config
            if requests:
                nxt = replace(nxt, total_requests=nxt.total_requests + requests)
            if nxt.model_pool == model_pool and nxt.current_model_index != cursor:
                nxt = replace(nxt, current_model_index=cursor)
            return nxt

        config = await self.update(merge)
        with self._lock:
            self._flushing_requests -= requests
        return config
