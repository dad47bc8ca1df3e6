"""Proxy access key administration.

Once at least one proxy key exists, callers of /v1/chat/completions must
present one as a bearer token.
"""
import logging

from fastapi import APIRouter, Depends, Request

from keyrelay.app.dependencies import require_pools, verify_admin
from keyrelay.app.schemas import (
    CreateProxyKeyRequest,
    ExportKeyResponse,
    ProxyKeyListResponse,
    ProxyKeyView,
    SuccessResponse,
)
from keyrelay.core.pool_manager import PoolManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proxy-keys", tags=["Proxy Keys"], dependencies=[Depends(verify_admin)])


@router.get("", response_model=ProxyKeyListResponse)
async def list_proxy_keys(pools: PoolManager = Depends(require_pools)) -> ProxyKeyListResponse:
    return ProxyKeyListResponse(
        keys=[ProxyKeyView.from_proxy_key(k) for k in pools.list_proxy_keys()],
        max_keys=pools.proxy_keys.max_keys,
        auth_enabled=pools.proxy_keys.auth_enabled,
    )


@router.post("", response_model=ProxyKeyView, status_code=201)
async def create_proxy_key(http_request: Request, pools: PoolManager = Depends(require_pools)) -> ProxyKeyView:
    """Create a proxy key. The full key is returned only here and on export."""
    name = None
    if await http_request.body():
        try:
            name = CreateProxyKeyRequest(**(await http_request.json())).name
        except (ValueError, TypeError):
            name = None
    proxy_key = await pools.create_proxy_key(name)
    return ProxyKeyView.from_proxy_key(proxy_key, reveal=True)


@router.delete("/{key_id}", response_model=SuccessResponse)
async def delete_proxy_key(key_id: str, pools: PoolManager = Depends(require_pools)) -> SuccessResponse:
    await pools.delete_proxy_key(key_id)
    return SuccessResponse()


@router.get("/{key_id}/export", response_model=ExportKeyResponse)
async def export_proxy_key(key_id: str, pools: PoolManager = Depends(require_pools)) -> ExportKeyResponse:
    return ExportKeyResponse(key=pools.get_proxy_key(key_id).key)
