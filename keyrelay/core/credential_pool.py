"""Upstream credential pool with round-robin selection and cooldown tracking."""
import logging
import re
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from keyrelay.core.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

# Cooldown applied on 429 when Retry-After is missing or unparseable
DEFAULT_COOLDOWN_S = 2.0

_RETRY_AFTER_RE = re.compile(r"^\d+$")


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"  # failed a health probe for a non-auth reason
    INVALID = "invalid"  # rejected by upstream with 401/403


@dataclass
class Credential:
    """Upstream API credential with usage tracking."""

    id: str
    key: str  # actual upstream secret
    status: str = CredentialStatus.ACTIVE.value
    use_count: int = 0
    last_used: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def new(cls, key: str) -> "Credential":
        return cls(id=uuid.uuid4().hex, key=key)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Credential":
        return cls(
            id=str(raw["id"]),
            key=str(raw["key"]),
            status=raw.get("status", CredentialStatus.ACTIVE.value),
            use_count=int(raw.get("use_count", 0)),
            last_used=raw.get("last_used"),
            created_at=float(raw.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class Selection:
    """Credential handed out for one request."""

    key: str
    id: str


def parse_retry_after(value: Optional[str], default_s: float = DEFAULT_COOLDOWN_S) -> float:
    """Parse a Retry-After header given in whole seconds.

    HTTP-date values and anything else that is not a non-negative integer
    fall back to ``default_s``.
    """
    if value is None:
        return default_s
    value = value.strip()
    if not _RETRY_AFTER_RE.match(value):
        return default_s
    return float(int(value))


class CredentialPool:
    """Holds every known credential and rotates over the active ones.

    Usable ids are kept in creation order and scanned from a shared cursor.
    Credentials in cooldown are skipped during the scan rather than removed,
    so a 429 never forces a rebuild. Selection, cooldown and invalidation
    never await, so interleaved requests cannot pick the same cursor slot.
    """

    def __init__(
        self,
        on_select: Optional[Callable[[], None]] = None,
        default_cooldown_s: float = DEFAULT_COOLDOWN_S,
    ):
        """
        Args:
            on_select: Called after every successful selection (request accounting)
            default_cooldown_s: Cooldown used when a 429 carries no usable Retry-After
        """
        self._by_id: Dict[str, Credential] = {}
        self._usable: List[str] = []
        self._cursor = 0
        self._cooldown_until: Dict[str, float] = {}
        self._dirty: Set[str] = set()
        self._on_select = on_select
        self.default_cooldown_s = default_cooldown_s
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, credential_id: str) -> bool:
        return credential_id in self._by_id

    @property
    def usable_ids(self) -> List[str]:
        return list(self._usable)

    def has_usable(self) -> bool:
        return bool(self._usable)

    def get(self, credential_id: str) -> Optional[Credential]:
        return self._by_id.get(credential_id)

    def all(self) -> List[Credential]:
        """All credentials in creation order."""
        return sorted(self._by_id.values(), key=lambda c: (c.created_at, c.id))

    def first_active(self) -> Optional[Credential]:
        for credential in self.all():
            if credential.status == CredentialStatus.ACTIVE.value:
                return credential
        return None

    def load(self, credentials: Iterable[Credential]) -> None:
        """Replace the pool contents, e.g. when bootstrapping from the store."""
        with self._lock:
            self._by_id = {c.id: c for c in credentials}
            self._cooldown_until.clear()
            self._dirty.clear()
            self._rebuild_locked()

    def add(self, credential: Credential) -> None:
        """Add a credential.

        Raises:
            DuplicateKeyError: If the secret is already in the pool
        """
        with self._lock:
            if any(c.key == credential.key for c in self._by_id.values()):
                raise DuplicateKeyError("Credential already exists")
            self._by_id[credential.id] = credential
            self._rebuild_locked()

    def remove(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            credential = self._by_id.pop(credential_id, None)
            self._cooldown_until.pop(credential_id, None)
            self._dirty.discard(credential_id)
            self._rebuild_locked()
            return credential

    def set_status(self, credential_id: str, status: CredentialStatus) -> Optional[Credential]:
        """Set a credential's status (admin path) and rebuild the usable list."""
        with self._lock:
            credential = self._by_id.get(credential_id)
            if credential is None:
                return None
            credential.status = status.value
            if status != CredentialStatus.ACTIVE:
                self._cooldown_until.pop(credential_id, None)
            self._rebuild_locked()
            return credential

    def rebuild_usable(self) -> None:
        with self._lock:
            self._rebuild_locked()

    def _rebuild_locked(self) -> None:
        ordered = sorted(self._by_id.values(), key=lambda c: (c.created_at, c.id))
        self._usable = [c.id for c in ordered if c.status == CredentialStatus.ACTIVE.value]
        if not self._usable:
            self._cursor = 0
        else:
            self._cursor %= len(self._usable)

    def select_next(self, now: Optional[float] = None) -> Optional[Selection]:
        """Pick the next active credential that is not cooling down.

        Scans at most one full cycle from the cursor. The chosen credential's
        counters are updated and it is marked dirty.

        Returns:
            Selection, or None if no credential is currently eligible
        """
        now = time.time() if now is None else now
        with self._lock:
            count = len(self._usable)
            selected = None
            for offset in range(count):
                idx = (self._cursor + offset) % count
                credential_id = self._usable[idx]
                if self._cooldown_until.get(credential_id, 0.0) > now:
                    continue
                credential = self._by_id.get(credential_id)
                if credential is None or credential.status != CredentialStatus.ACTIVE.value:
                    continue

                self._cursor = (idx + 1) % count
                credential.use_count += 1
                credential.last_used = now
                self._dirty.add(credential_id)
                selected = Selection(key=credential.key, id=credential_id)
                break

        if selected is not None and self._on_select:
            self._on_select()
        return selected

    def apply_cooldown(
        self,
        credential_id: str,
        retry_after: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Optional[float]:
        """Keep a credential out of rotation after a 429.

        Args:
            credential_id: Credential that was rate limited
            retry_after: Raw Retry-After header value, if any
            now: Current time (epoch seconds)

        Returns:
            Cooldown deadline, or None if the credential is unknown
        """
        now = time.time() if now is None else now
        duration = parse_retry_after(retry_after, self.default_cooldown_s)
        with self._lock:
            if credential_id not in self._by_id:
                return None
            until = now + max(0.0, duration)
            self._cooldown_until[credential_id] = until
        logger.warning(f"Credential {credential_id} rate limited, cooling down for {duration:.1f}s")
        return until

    def invalidate(self, credential_id: str) -> bool:
        """Mark a credential invalid after an auth failure.

        Returns:
            True if the status changed, False if unknown or already invalid
        """
        with self._lock:
            credential = self._by_id.get(credential_id)
            if credential is None or credential.status == CredentialStatus.INVALID.value:
                return False
            credential.status = CredentialStatus.INVALID.value
            self._dirty.add(credential_id)
            self._cooldown_until.pop(credential_id, None)
            self._rebuild_locked()
        logger.error(f"Credential {credential_id} invalidated by upstream auth failure")
        return True

    def cooldown_until(self, credential_id: str) -> Optional[float]:
        return self._cooldown_until.get(credential_id)

    def min_cooldown_remaining(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds until the first usable credential leaves cooldown, if any is cooling down."""
        now = time.time() if now is None else now
        with self._lock:
            pending = [
                self._cooldown_until[cid] - now
                for cid in self._usable
                if self._cooldown_until.get(cid, 0.0) > now
            ]
        return min(pending) if pending else None

    def sweep_cooldowns(self, now: Optional[float] = None) -> int:
        """Drop expired cooldown entries; returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [cid for cid, until in self._cooldown_until.items() if until < now]
            for cid in expired:
                del self._cooldown_until[cid]
        return len(expired)

    def take_dirty(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot and clear the dirty set.

        Returns:
            Mapping of credential id to its serialized record
        """
        with self._lock:
            ids = list(self._dirty)
            self._dirty.clear()
            return {cid: self._by_id[cid].to_dict() for cid in ids if cid in self._by_id}

    def mark_dirty(self, credential_ids: Iterable[str]) -> None:
        with self._lock:
            self._dirty.update(cid for cid in credential_ids if cid in self._by_id)

    def discard_dirty(self, credential_id: str) -> None:
        with self._lock:
            self._dirty.discard(credential_id)

    @property
    def dirty_ids(self) -> Set[str]:
        return set(self._dirty)
