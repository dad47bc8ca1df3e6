"""Upstream credential administration.

This module provides:
- GET/POST /api/keys - List (masked) / add one credential
- POST /api/keys/batch - Add many credentials at once
- GET /api/keys/export, GET /api/keys/{id}/export - Raw secrets
- DELETE /api/keys/{id} - Delete a credential
- POST /api/keys/{id}/test - Health probe (the only way back to active)
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from keyrelay.app.dependencies import require_pools, verify_admin
from keyrelay.app.schemas import (
    AddKeyRequest,
    BatchAddRequest,
    BatchAddResponse,
    BatchAddSummary,
    CredentialListResponse,
    CredentialView,
    ExportKeyResponse,
    ExportKeysResponse,
    ProbeResponse,
    SuccessResponse,
)
from keyrelay.core.errors import ErrorCode
from keyrelay.core.pool_manager import PoolManager
from keyrelay.core.security import SecurityManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/keys", tags=["Keys"], dependencies=[Depends(verify_admin)])


def _bad_request(message: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "type": "client_error",
            "code": ErrorCode.BAD_REQUEST.value,
            "message": message,
        },
    )


@router.get("", response_model=CredentialListResponse)
async def list_keys(pools: PoolManager = Depends(require_pools)) -> CredentialListResponse:
    return CredentialListResponse(
        keys=[
            CredentialView.from_credential(c, pools.credentials.cooldown_until(c.id))
            for c in pools.list_credentials()
        ]
    )


@router.post("", response_model=CredentialView, status_code=201)
async def add_key(request: AddKeyRequest, pools: PoolManager = Depends(require_pools)) -> CredentialView:
    """Add one credential. Duplicates are rejected with 409."""
    try:
        credential = await pools.add_credential(request.key)
    except ValueError as e:
        raise _bad_request(str(e))
    return CredentialView.from_credential(credential)


@router.post("/batch", response_model=BatchAddResponse)
async def add_keys_batch(http_request: Request, pools: PoolManager = Depends(require_pools)) -> BatchAddResponse:
    """Add credentials pasted as one blob.

    Accepts a JSON body ``{"input": ...}`` or plain text. Keys may be
    separated by newlines, commas or whitespace.
    """
    raw = await http_request.body()
    content_type = http_request.headers.get("Content-Type", "")

    if "application/json" in content_type:
        try:
            secrets = BatchAddRequest(**json.loads(raw)).secrets()
        except (ValueError, TypeError):
            raise _bad_request("Body must be a JSON object with an 'input' field")
    else:
        secrets = SecurityManager.parse_batch_input(raw.decode("utf-8", errors="replace"))

    if not secrets:
        raise _bad_request("Input must not be empty")

    result = await pools.add_credentials(secrets)
    logger.info(f"Batch add: {len(result.added)} added, {len(result.failed)} failed")
    return BatchAddResponse(
        summary=BatchAddSummary(total=result.total, success=len(result.added), failed=len(result.failed)),
        added=result.added,
        failed=result.failed,
    )


@router.get("/export", response_model=ExportKeysResponse)
async def export_keys(pools: PoolManager = Depends(require_pools)) -> ExportKeysResponse:
    return ExportKeysResponse(keys=[c.key for c in pools.list_credentials()])


@router.get("/{credential_id}/export", response_model=ExportKeyResponse)
async def export_key(credential_id: str, pools: PoolManager = Depends(require_pools)) -> ExportKeyResponse:
    return ExportKeyResponse(key=pools.get_credential(credential_id).key)


@router.delete("/{credential_id}", response_model=SuccessResponse)
async def delete_key(credential_id: str, pools: PoolManager = Depends(require_pools)) -> SuccessResponse:
    await pools.delete_credential(credential_id)
    return SuccessResponse()


@router.post("/{credential_id}/test", response_model=ProbeResponse)
async def test_key(credential_id: str, pools: PoolManager = Depends(require_pools)) -> ProbeResponse:
    """Probe the upstream with this credential and update its status."""
    result = await pools.probe_credential(credential_id)
    return ProbeResponse(success=result.success, status=result.status, error=result.error)
