"""Dispatch loop: one inbound chat-completion request to the upstream.

Per request: select a credential, then up to ``max_model_attempts`` times
select a model and forward. A 404 "model not found" evicts the model and
tries the next one; every other upstream answer ends the loop.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional

from keyrelay.core.errors import (
    ErrorCode,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    error_body,
)
from keyrelay.core.model_pool import is_model_not_found
from keyrelay.core.pool_manager import PoolManager
from keyrelay.core.upstream import UpstreamClient
from keyrelay.metrics.prometheus import (
    errors_total,
    selection_exhausted_total,
    upstream_responses_total,
)

logger = logging.getLogger(__name__)

# Maximum model switches per request on "model not found"
MAX_MODEL_ATTEMPTS = 3

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Framing headers that no longer describe a body we re-emit from memory
REEMIT_STRIPPED_HEADERS = frozenset({"content-length", "content-encoding", "transfer-encoding"})


def passthrough_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Upstream headers safe to relay with a raw streamed body."""
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


def reemit_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Upstream headers safe to send with a body that was already read and decoded."""
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in REEMIT_STRIPPED_HEADERS
    }


@dataclass
class DispatchResult:
    """Framework-neutral response produced by the dispatch loop.

    Exactly one of ``body`` and ``stream`` is set. ``close`` must be awaited
    once a stream has been consumed or abandoned.
    """

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    close: Optional[Callable[[], Awaitable[None]]] = None
    error_code: Optional[ErrorCode] = None
    model: Optional[str] = None
    credential_id: Optional[str] = None
    attempts: int = 0

    @property
    def outcome(self) -> str:
        return "success" if 200 <= self.status_code < 400 else "error"

    @classmethod
    def error(
        cls,
        status_code: int,
        code: ErrorCode,
        message: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> "DispatchResult":
        errors_total.labels(error_code=code.value).inc()
        return cls(
            status_code=status_code,
            headers={"Content-Type": "application/json", **(headers or {})},
            body=json.dumps(error_body(code, message)).encode(),
            error_code=code,
            **kwargs,
        )


class Dispatcher:
    """Runs the credential/model rotation for each forwarded request."""

    def __init__(
        self,
        pools: PoolManager,
        upstream: UpstreamClient,
        max_model_attempts: int = MAX_MODEL_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            pools: Owning service for rotation state
            upstream: Upstream HTTP client
            max_model_attempts: Model switches allowed per request
            clock: Time source (epoch seconds)
        """
        self.pools = pools
        self.upstream = upstream
        self.max_model_attempts = max(1, max_model_attempts)
        self.clock = clock

    async def dispatch(self, payload: Dict[str, Any]) -> DispatchResult:
        """Forward ``payload`` using the next credential and model.

        The caller-supplied ``model`` field is always replaced.

        Args:
            payload: Parsed chat-completion request body

        Returns:
            DispatchResult to relay to the caller
        """
        now = self.clock()
        selection = self.pools.select_credential(now)
        if selection is None:
            return self._no_credential(now)

        body = dict(payload)
        last_model_miss: Optional[DispatchResult] = None

        for attempt in range(1, self.max_model_attempts + 1):
            model = self.pools.select_model()
            if model is None:
                selection_exhausted_total.labels(reason="no_model").inc()
                return DispatchResult.error(
                    503,
                    ErrorCode.NO_MODEL_AVAILABLE,
                    "No model available",
                    credential_id=selection.id,
                    attempts=attempt,
                )
            body["model"] = model

            try:
                response = await self.upstream.send_chat(selection.key, body)
                status = response.status_code
                upstream_responses_total.labels(status=str(status)).inc()

                if status == 404:
                    content = await self.upstream.read_body(response)
                    if is_model_not_found(content):
                        last_model_miss = DispatchResult(
                            status_code=status,
                            headers=reemit_headers(response.headers),
                            body=content,
                            model=model,
                            credential_id=selection.id,
                            attempts=attempt,
                        )
                        await self.pools.remove_model(model, "model_not_found")
                        continue
                    return DispatchResult(
                        status_code=status,
                        headers=reemit_headers(response.headers),
                        body=content,
                        model=model,
                        credential_id=selection.id,
                        attempts=attempt,
                    )
            except UpstreamTimeoutError as e:
                return DispatchResult.error(
                    504, ErrorCode.UPSTREAM_TIMEOUT, str(e),
                    model=model, credential_id=selection.id, attempts=attempt,
                )
            except UpstreamUnavailableError as e:
                return DispatchResult.error(
                    502, ErrorCode.UPSTREAM_UNREACHABLE, str(e),
                    model=model, credential_id=selection.id, attempts=attempt,
                )

            # Cooldown and invalidation only affect later selections;
            # this response still goes back to the caller.
            if status == 429:
                self.pools.apply_cooldown(selection.id, response.headers, now=self.clock())
            elif status in (401, 403):
                self.pools.invalidate_credential(selection.id)

            return DispatchResult(
                status_code=status,
                headers=passthrough_headers(response.headers),
                stream=response.aiter_raw(),
                close=response.aclose,
                model=model,
                credential_id=selection.id,
                attempts=attempt,
            )

        if last_model_miss is not None:
            return last_model_miss
        return DispatchResult.error(503, ErrorCode.NO_MODEL_AVAILABLE, "No model available")

    def _no_credential(self, now: float) -> DispatchResult:
        has_usable, retry_after = self.pools.exhaustion(now)
        if has_usable:
            selection_exhausted_total.labels(reason="cooldown").inc()
            headers = {"Retry-After": str(retry_after)} if retry_after else None
            return DispatchResult.error(
                429,
                ErrorCode.NO_CREDENTIAL_AVAILABLE,
                "All API keys are cooling down",
                headers=headers,
            )
        selection_exhausted_total.labels(reason="no_credentials").inc()
        return DispatchResult.error(500, ErrorCode.NO_CREDENTIALS_CONFIGURED, "No API key available")
