"""Shared dependencies and utilities for the KeyRelay FastAPI application.

This module contains:
- Global state management (config, store, pools, dispatcher)
- Admin and proxy authentication helpers
- Startup wiring of the core components
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import HTTPException, Request

from keyrelay.config.schema import KeyRelayConfig
from keyrelay.core.dispatcher import Dispatcher
from keyrelay.core.errors import ErrorCode
from keyrelay.core.pool_manager import PoolManager
from keyrelay.core.security import SecurityManager
from keyrelay.core.store import DurableStore, KeySpace, MemoryStore, RedisStore
from keyrelay.core.upstream import UpstreamClient

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Application state container for all shared components.

    ``store`` and ``upstream_transport`` may be set before startup to
    replace the environment-selected store and the network transport.
    """
    config: Optional[KeyRelayConfig] = None
    store: Optional[DurableStore] = None
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None
    upstream: Optional[UpstreamClient] = None
    pools: Optional[PoolManager] = None
    dispatcher: Optional[Dispatcher] = None
    admin_token: Optional[str] = None


# Global application state instance
app_state = AppState()


def get_app_state() -> AppState:
    """Get the global application state.

    Returns:
        AppState: The global application state instance.
    """
    return app_state


def create_store(redis_url: Optional[str]) -> DurableStore:
    """Pick the durable store from the environment.

    Without a Redis URL state lives in process memory only.
    """
    if not redis_url:
        logger.warning("REDIS_URL not set, using in-memory store (state is lost on restart)")
        return MemoryStore()
    logger.info(f"Initializing Redis connection: {redis_url}")
    return RedisStore(redis_url)


async def init_components(state: AppState, config: KeyRelayConfig) -> None:
    """Build and start the upstream client, pools and dispatcher.

    Args:
        state: Application state; ``state.store`` must already be set
        config: Validated configuration
    """
    state.config = config
    state.upstream = UpstreamClient(
        chat_completions_url=config.upstream.chat_completions_url,
        models_url=config.upstream.models_url,
        timeout_s=config.upstream.timeout_ms / 1000.0,
        probe_timeout_s=config.upstream.probe_timeout_ms / 1000.0,
        catalog_timeout_s=config.upstream.catalog_timeout_ms / 1000.0,
        transport=state.upstream_transport,
    )
    state.pools = PoolManager(
        state.store,
        state.upstream,
        keys=KeySpace(config.storage.key_prefix),
        default_models=config.pool.default_models,
        fallback_model=config.pool.fallback_model,
        default_cooldown_s=config.pool.default_cooldown_s,
        max_proxy_keys=config.max_proxy_keys,
        catalog_ttl_s=config.storage.catalog_ttl_s,
        flush_interval_ms=config.storage.flush_interval_ms,
    )
    await state.pools.start()
    state.dispatcher = Dispatcher(
        state.pools,
        state.upstream,
        max_model_attempts=config.pool.max_model_attempts,
    )


async def shutdown_components(state: AppState) -> None:
    """Final flush, then release connections."""
    if state.pools:
        await state.pools.stop()
    if state.upstream:
        await state.upstream.close()
    if state.store:
        await state.store.close()


def require_pools() -> PoolManager:
    """FastAPI dependency returning the pool manager.

    Raises:
        HTTPException: 503 while the application is not started.
    """
    state = get_app_state()
    if state.pools is None:
        raise HTTPException(
            status_code=503,
            detail={
                "type": "internal_error",
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "Service is starting",
            },
        )
    return state.pools


def verify_admin(request: Request) -> None:
    """Check the X-Admin-Token header on admin routes.

    Admin routes are open when no admin token is configured.

    Raises:
        HTTPException: If the token is missing or wrong.
    """
    expected = get_app_state().admin_token
    if not expected:
        return
    if not SecurityManager.verify_token(request.headers.get("X-Admin-Token"), expected):
        raise HTTPException(
            status_code=401,
            detail={
                "type": "auth_error",
                "code": ErrorCode.UNAUTHORIZED.value,
                "message": "Invalid or missing admin token",
            },
        )


def verify_proxy_key(request: Request) -> Optional[str]:
    """Authenticate a proxy caller by its bearer token.

    Callers are accepted without a token while no proxy keys exist.

    Returns:
        Id of the proxy key used, or None when proxy auth is disabled.

    Raises:
        HTTPException: If proxy keys exist and the token matches none of them.
    """
    pools = require_pools()
    token = SecurityManager.extract_bearer(request.headers.get("Authorization"))
    authorized, proxy_key_id = pools.authorize_proxy(token)
    if not authorized:
        raise HTTPException(
            status_code=401,
            detail={
                "type": "auth_error",
                "code": ErrorCode.UNAUTHORIZED.value,
                "message": "Invalid or missing proxy key",
            },
        )
    return proxy_key_id


def admin_token_from_env() -> Optional[str]:
    token = os.getenv("KEYRELAY_ADMIN_TOKEN")
    return token or None
