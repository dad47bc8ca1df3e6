"""Runtime configuration and usage statistics.

This module provides:
- GET/PATCH /api/config - Shared configuration and flush interval
- GET /api/stats - Credential counts and usage
"""
import logging

from fastapi import APIRouter, Depends

from keyrelay.app.dependencies import require_pools, verify_admin
from keyrelay.app.schemas import ConfigPatchRequest, ConfigResponse, StatsResponse
from keyrelay.core.pool_manager import PoolManager
from keyrelay.core.shared_config import MIN_FLUSH_INTERVAL_MS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Settings"], dependencies=[Depends(verify_admin)])


async def _config_response(pools: PoolManager) -> ConfigResponse:
    config = await pools.get_config()
    return ConfigResponse(
        model_pool=list(config.model_pool),
        current_model_index=config.current_model_index,
        total_requests=pools.config_store.total_requests,
        flush_interval_ms=config.flush_interval_ms,
        effective_flush_interval_ms=pools.write_back.interval_ms,
        min_flush_interval_ms=MIN_FLUSH_INTERVAL_MS,
        schema_version=config.schema_version,
    )


@router.get("/config", response_model=ConfigResponse)
async def get_config(pools: PoolManager = Depends(require_pools)) -> ConfigResponse:
    return await _config_response(pools)


@router.patch("/config", response_model=ConfigResponse)
async def patch_config(request: ConfigPatchRequest, pools: PoolManager = Depends(require_pools)) -> ConfigResponse:
    """Update the flush interval (clamped to the minimum) and restart the flush timer."""
    effective = await pools.set_flush_interval(request.flush_interval_ms)
    logger.info(f"Flush interval updated to {effective} ms")
    return await _config_response(pools)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(pools: PoolManager = Depends(require_pools)) -> StatsResponse:
    return StatsResponse(**pools.stats())
