"""Optimistic read-modify-write against the durable store."""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from keyrelay.core.errors import UpdateExhaustedError
from keyrelay.core.store import DurableStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Maximum compare-and-swap attempts before giving up
MAX_UPDATE_ATTEMPTS = 10

Updater = Callable[[T], Union[T, Awaitable[T]]]


async def optimistic_update(
    store: DurableStore,
    key: str,
    load: Callable[[], Awaitable[Tuple[T, Optional[int]]]],
    updater: Updater,
    encode: Callable[[T], Dict[str, Any]],
    max_attempts: int = MAX_UPDATE_ATTEMPTS,
) -> Tuple[T, bool]:
    """Apply ``updater`` to the entity stored at ``key`` with a version check.

    ``load`` returns the current entity and the version it was read at.
    If ``updater`` returns the very object it was given, nothing is written.
    Otherwise the candidate is written with ``atomic_check_and_set``; a
    version conflict reloads and retries.

    Args:
        store: Durable store
        key: Key holding the entity
        load: Coroutine returning ``(entity, version)``
        updater: Function (sync or async) producing the next entity
        encode: Converts an entity to its stored dict form
        max_attempts: Attempts before raising UpdateExhaustedError

    Returns:
        ``(entity, written)``: the resulting entity and whether a write happened

    Raises:
        UpdateExhaustedError: If every attempt lost to a concurrent writer
    """
    for attempt in range(1, max_attempts + 1):
        current, version = await load()
        candidate = updater(current)
        if inspect.isawaitable(candidate):
            candidate = await candidate

        if candidate is current:
            return current, False

        if await store.atomic_check_and_set(version, key, encode(candidate)):
            return candidate, True

        logger.debug(f"Version conflict on {key} (attempt {attempt}/{max_attempts}), retrying")

    logger.error(f"Giving up on {key} after {max_attempts} conflicting attempts")
    raise UpdateExhaustedError(key, max_attempts)
