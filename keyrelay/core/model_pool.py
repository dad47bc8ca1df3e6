"""Model pool rotation and model-not-found detection."""
import json
import logging
import threading
from typing import Any, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

MODEL_NOT_FOUND = "model_not_found"

# Phrasings used by upstreams that do not return a structured error code
MODEL_NOT_FOUND_PHRASES = ("model_not_found", "model not found", "no such model")


def normalize_model_pool(raw_pool: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    """Strip names, drop empties and non-strings, and de-duplicate keeping order."""
    if raw_pool is None or isinstance(raw_pool, (str, bytes, dict)):
        return ()
    seen = set()
    out: List[str] = []
    for item in raw_pool:
        name = item.strip() if isinstance(item, str) else ""
        if not name or name in seen:
            continue
        seen.add(name)
        out.append(name)
    return tuple(out)


def is_model_not_found_text(text: str) -> bool:
    lower = text.lower()
    return any(phrase in lower for phrase in MODEL_NOT_FOUND_PHRASES)


def is_model_not_found_payload(payload: Any) -> bool:
    """Check an OpenAI-style error payload for a model-not-found error."""
    if not isinstance(payload, dict) or "error" not in payload:
        return False

    error = payload["error"]
    if isinstance(error, str):
        return is_model_not_found_text(error)
    if not isinstance(error, dict):
        return False

    if error.get("code") == MODEL_NOT_FOUND or error.get("type") == MODEL_NOT_FOUND:
        return True

    message = error.get("message")
    if isinstance(message, str):
        return is_model_not_found_text(message)
    return False


def is_model_not_found(body: bytes) -> bool:
    """Classify a 404 response body.

    Structured error fields are checked first; a substring match over the
    raw text covers less structured bodies.
    """
    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text) if text else None
    except json.JSONDecodeError:
        payload = None
    return is_model_not_found_payload(payload) or is_model_not_found_text(text)


class ModelPool:
    """In-memory mirror of the persisted model pool with a round-robin cursor.

    The mirror is rebuilt from the shared configuration row after every pool
    edit. Advancing the cursor marks the shared configuration dirty through
    ``on_advance`` so the position reaches the store on the next flush.
    """

    def __init__(self, on_advance=None):
        self._pool: Tuple[str, ...] = ()
        self._cursor = 0
        self._on_advance = on_advance
        self._lock = threading.Lock()

    @property
    def models(self) -> Tuple[str, ...]:
        return self._pool

    @property
    def cursor(self) -> int:
        return self._cursor

    def __len__(self) -> int:
        return len(self._pool)

    def __contains__(self, name: str) -> bool:
        return name in self._pool

    def select_next(self) -> Optional[str]:
        """Return the model at the cursor and advance; None when the pool is empty."""
        with self._lock:
            if not self._pool:
                return None
            idx = self._cursor % len(self._pool)
            model = self._pool[idx]
            self._cursor = (idx + 1) % len(self._pool)

        if self._on_advance:
            self._on_advance()
        return model

    def rebuild(self, model_pool: Iterable[str], current_index: int = 0, reset_cursor: bool = False) -> None:
        """Replace the mirror with ``model_pool``.

        Args:
            model_pool: Persisted pool
            current_index: Persisted rotation cursor
            reset_cursor: Restart rotation at the head regardless of ``current_index``
        """
        pool = normalize_model_pool(model_pool)
        with self._lock:
            self._pool = pool
            if not pool or reset_cursor:
                self._cursor = 0
            else:
                self._cursor = max(0, int(current_index)) % len(pool)

    def snapshot(self) -> Tuple[Tuple[str, ...], int]:
        """Return ``(pool, cursor)`` as one consistent pair."""
        with self._lock:
            return self._pool, self._cursor
