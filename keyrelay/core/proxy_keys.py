"""Proxy access keys that gate who may use the forwarding endpoint."""
import hmac
import logging
import secrets
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from keyrelay.core.errors import LimitReachedError

logger = logging.getLogger(__name__)

MAX_PROXY_KEYS = 5
PROXY_KEY_PREFIX = "rk_"


def generate_proxy_key() -> str:
    return PROXY_KEY_PREFIX + secrets.token_urlsafe(24)


@dataclass
class ProxyKey:
    """Distribution key handed to callers of the forwarding endpoint."""

    id: str
    key: str
    name: str
    use_count: int = 0
    last_used: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ProxyKey":
        return cls(
            id=str(raw["id"]),
            key=str(raw["key"]),
            name=str(raw.get("name", "")),
            use_count=int(raw.get("use_count", 0)),
            last_used=raw.get("last_used"),
            created_at=float(raw.get("created_at", 0.0)),
        )


class ProxyKeyRegistry:
    """In-memory set of proxy keys with dirty tracking for usage counters."""

    def __init__(self, max_keys: int = MAX_PROXY_KEYS):
        self.max_keys = max_keys
        self._by_id: Dict[str, ProxyKey] = {}
        self._dirty: Set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._by_id)

    @property
    def auth_enabled(self) -> bool:
        """Forwarding is open to everyone until the first proxy key is created."""
        return bool(self._by_id)

    def get(self, key_id: str) -> Optional[ProxyKey]:
        return self._by_id.get(key_id)

    def all(self) -> List[ProxyKey]:
        return sorted(self._by_id.values(), key=lambda k: (k.created_at, k.id))

    def load(self, keys: Iterable[ProxyKey]) -> None:
        with self._lock:
            self._by_id = {k.id: k for k in keys}
            self._dirty.clear()

    def create(self, name: Optional[str] = None) -> ProxyKey:
        """Create a new proxy key.

        Raises:
            LimitReachedError: If ``max_keys`` keys already exist
        """
        with self._lock:
            if len(self._by_id) >= self.max_keys:
                raise LimitReachedError(f"At most {self.max_keys} proxy keys can be created")
            proxy_key = ProxyKey(
                id=uuid.uuid4().hex,
                key=generate_proxy_key(),
                name=(name or "").strip() or f"Key {len(self._by_id) + 1}",
            )
            self._by_id[proxy_key.id] = proxy_key
            return proxy_key

    def remove(self, key_id: str) -> Optional[ProxyKey]:
        with self._lock:
            self._dirty.discard(key_id)
            return self._by_id.pop(key_id, None)

    def restore(self, proxy_key: ProxyKey) -> None:
        """Put back a key whose deletion could not be persisted."""
        with self._lock:
            self._by_id[proxy_key.id] = proxy_key
            self._dirty.add(proxy_key.id)

    def __contains__(self, key_id: str) -> bool:
        return key_id in self._by_id

    def authenticate(self, token: str) -> Optional[ProxyKey]:
        """Return the proxy key matching ``token``, or None."""
        for proxy_key in list(self._by_id.values()):
            if hmac.compare_digest(proxy_key.key.encode(), token.encode()):
                return proxy_key
        return None

    def record_usage(self, key_id: str, now: Optional[float] = None) -> None:
        with self._lock:
            proxy_key = self._by_id.get(key_id)
            if proxy_key is None:
                return
            proxy_key.use_count += 1
            proxy_key.last_used = time.time() if now is None else now
            self._dirty.add(key_id)

    def take_dirty(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            ids = list(self._dirty)
            self._dirty.clear()
            return {kid: self._by_id[kid].to_dict() for kid in ids if kid in self._by_id}

    def mark_dirty(self, key_ids: Iterable[str]) -> None:
        with self._lock:
            self._dirty.update(kid for kid in key_ids if kid in self._by_id)
