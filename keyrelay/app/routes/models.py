"""Model pool and upstream catalog endpoints.

This module provides:
- GET/PUT /api/models - Read / replace the rotation pool
- POST /api/models/{name}/test - Probe one model
- GET /api/models/catalog - Cached upstream catalog (refreshed when expired)
- POST /api/models/catalog/refresh - Forced catalog refresh
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from keyrelay.app.dependencies import require_pools, verify_admin
from keyrelay.app.schemas import CatalogResponse, ModelPoolRequest, ModelPoolResponse, ProbeResponse
from keyrelay.core.errors import ErrorCode, UpstreamTimeoutError, UpstreamUnavailableError
from keyrelay.core.model_catalog import CatalogView
from keyrelay.core.pool_manager import PoolManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/models", tags=["Models"], dependencies=[Depends(verify_admin)])


def _catalog_response(view: CatalogView, ttl_s: float) -> CatalogResponse:
    return CatalogResponse(
        source=view.catalog.source,
        fetched_at=view.catalog.fetched_at,
        ttl_s=ttl_s,
        stale=view.stale,
        last_error=view.last_error,
        models=list(view.catalog.models),
    )


def _catalog_unavailable(exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={
            "type": "upstream_error",
            "code": ErrorCode.UPSTREAM_UNREACHABLE.value,
            "message": f"Model catalog unavailable: {exc}",
        },
    )


@router.get("", response_model=ModelPoolResponse)
async def get_models(pools: PoolManager = Depends(require_pools)) -> ModelPoolResponse:
    return ModelPoolResponse(models=await pools.get_model_pool())


@router.put("", response_model=ModelPoolResponse)
async def replace_models(request: ModelPoolRequest, pools: PoolManager = Depends(require_pools)) -> ModelPoolResponse:
    """Replace the pool. Names are trimmed and de-duplicated; rotation restarts at the head."""
    try:
        models = await pools.replace_model_pool(request.models)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "type": "client_error",
                "code": ErrorCode.BAD_REQUEST.value,
                "message": str(e),
            },
        )
    return ModelPoolResponse(models=models)


# Registered before /{name}/test so "catalog" is never taken for a model name
@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(pools: PoolManager = Depends(require_pools)) -> CatalogResponse:
    try:
        view = await pools.catalog.get()
    except (UpstreamTimeoutError, UpstreamUnavailableError) as e:
        raise _catalog_unavailable(e)
    return _catalog_response(view, pools.catalog.ttl_s)


@router.post("/catalog/refresh", response_model=CatalogResponse)
async def refresh_catalog(pools: PoolManager = Depends(require_pools)) -> CatalogResponse:
    try:
        view = await pools.catalog.force_refresh()
    except (UpstreamTimeoutError, UpstreamUnavailableError) as e:
        raise _catalog_unavailable(e)
    return _catalog_response(view, pools.catalog.ttl_s)


@router.post("/{name}/test", response_model=ProbeResponse)
async def test_model(name: str, pools: PoolManager = Depends(require_pools)) -> ProbeResponse:
    """Probe a model with the first active credential; a missing model leaves the pool."""
    result = await pools.probe_model(name)
    return ProbeResponse(success=result.success, status=result.status, error=result.error)
