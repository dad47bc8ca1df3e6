"""HTTP client for the upstream inference provider."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from keyrelay.core.errors import UpstreamTimeoutError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class UpstreamClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the single upstream.

    Transport failures are translated into ``UpstreamTimeoutError`` and
    ``UpstreamUnavailableError``; HTTP error statuses are returned as-is
    because the dispatch loop decides what they mean.
    """

    def __init__(
        self,
        chat_completions_url: str,
        models_url: str,
        timeout_s: float = 60.0,
        probe_timeout_s: float = 12.0,
        catalog_timeout_s: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            chat_completions_url: Upstream chat-completions endpoint
            models_url: Upstream public model listing
            timeout_s: Timeout for forwarded requests
            probe_timeout_s: Timeout for admin health probes
            catalog_timeout_s: Timeout for model catalog fetches
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.chat_completions_url = chat_completions_url
        self.models_url = models_url
        self.timeout_s = timeout_s
        self.probe_timeout_s = probe_timeout_s
        self.catalog_timeout_s = catalog_timeout_s

        # Create HTTP client with connection pooling
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=min(10.0, timeout_s)),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            transport=transport,
        )

    @staticmethod
    def _headers(secret: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {secret}",
        }

    async def send_chat(self, secret: str, payload: Dict[str, Any]) -> httpx.Response:
        """Forward a chat-completion request and return the streaming response.

        The caller owns the response and must close it.

        Raises:
            UpstreamTimeoutError: On connect/read timeout
            UpstreamUnavailableError: On any other transport error
        """
        request = self.client.build_request(
            "POST",
            self.chat_completions_url,
            json=payload,
            headers=self._headers(secret),
            timeout=httpx.Timeout(self.timeout_s),
        )
        return await self._send(request, stream=True)

    async def probe(self, secret: str, model: str) -> httpx.Response:
        """Send a one-token completion to check a credential or a model.

        The response body is fully read before returning.
        """
        request = self.client.build_request(
            "POST",
            self.chat_completions_url,
            json={
                "model": model,
                "messages": [{"role": "user", "content": "test"}],
                "max_tokens": 1,
            },
            headers=self._headers(secret),
            timeout=httpx.Timeout(self.probe_timeout_s),
        )
        return await self._send(request, stream=False)

    async def fetch_models(self) -> List[str]:
        """Fetch the model ids the upstream advertises.

        Returns:
            De-duplicated model ids in upstream order

        Raises:
            UpstreamUnavailableError: On transport failure or non-2xx status
            UpstreamTimeoutError: On timeout
        """
        request = self.client.build_request(
            "GET",
            self.models_url,
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(self.catalog_timeout_s),
        )
        response = await self._send(request, stream=False)
        if not response.is_success:
            text = response.text
            suffix = f": {text}" if text and len(text) <= 200 else ""
            raise UpstreamUnavailableError(f"Model catalog fetch failed: HTTP {response.status_code}{suffix}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        raw_models = data.get("data") if isinstance(data, dict) else None

        models: List[str] = []
        seen = set()
        for item in raw_models if isinstance(raw_models, list) else []:
            model_id = item.get("id") if isinstance(item, dict) else None
            if not isinstance(model_id, str) or not model_id.strip():
                continue
            model_id = model_id.strip()
            if model_id in seen:
                continue
            seen.add(model_id)
            models.append(model_id)
        return models

    async def read_body(self, response: httpx.Response) -> bytes:
        """Read a streamed response to the end and close it."""
        try:
            return await response.aread()
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Upstream response timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(str(e) or type(e).__name__) from e
        finally:
            await response.aclose()

    async def _send(self, request: httpx.Request, stream: bool) -> httpx.Response:
        try:
            return await self.client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream timeout: {request.method} {request.url}")
            raise UpstreamTimeoutError("Upstream request timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"Upstream transport error: {type(e).__name__}: {e}")
            raise UpstreamUnavailableError(str(e) or type(e).__name__) from e

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
