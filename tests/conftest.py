"""Pytest configuration and fixtures."""
import json
from typing import Any, Callable, List, Union

import httpx
import pytest

from keyrelay.core.pool_manager import PoolManager
from keyrelay.core.store import MemoryStore
from keyrelay.core.upstream import UpstreamClient

CHAT_URL = "https://upstream.test/v1/chat/completions"
MODELS_URL = "https://upstream.test/public/v1/models"
DEFAULT_MODELS = ("model-a", "model-b", "model-c")

Reply = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class UnreadBody(httpx.AsyncByteStream):
    """Response body that is only read when consumed, like a network stream."""

    def __init__(self, content: bytes):
        self.content = content

    async def __aiter__(self):
        yield self.content

    async def aclose(self) -> None:
        pass


def unread(response: httpx.Response) -> httpx.Response:
    """Rebuild an in-memory response around an unread body stream."""
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        stream=UnreadBody(response.content),
    )


class FakeUpstream:
    """Scripted upstream behind ``httpx.MockTransport``.

    Queued replies are consumed in order; once the queue is empty every
    request gets a 200 chat completion.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.replies: List[Reply] = []

    def queue(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    @staticmethod
    def model_not_found() -> httpx.Response:
        return httpx.Response(
            404,
            json={"error": {"message": "Model does not exist", "type": "invalid_request_error", "code": "model_not_found"}},
        )

    def chat_models(self) -> List[str]:
        """Model field of every chat-completion request seen so far."""
        return [
            json.loads(r.content)["model"]
            for r in self.requests
            if r.url.path.endswith("/chat/completions")
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            return unread(httpx.Response(200, json={"id": "chatcmpl-1", "choices": []}))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(request)
        return unread(reply)


@pytest.fixture
def store():
    """In-memory durable store."""
    return MemoryStore()


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def upstream(fake_upstream):
    """Upstream client wired to the scripted transport."""
    return UpstreamClient(
        chat_completions_url=CHAT_URL,
        models_url=MODELS_URL,
        transport=httpx.MockTransport(fake_upstream),
    )


@pytest.fixture
def make_pools(store, upstream):
    """Build a bootstrapped PoolManager (flush timer not started)."""

    async def _make(secrets=(), models: Any = DEFAULT_MODELS) -> PoolManager:
        pools = PoolManager(
            store,
            upstream,
            default_models=models,
            fallback_model="model-a",
        )
        await pools.write_back.bootstrap()
        for secret in secrets:
            await pools.add_credential(secret)
        return pools

    return _make
