"""OpenAI-compatible proxy endpoints.

This module provides:
- POST /v1/chat/completions - Forward a chat completion through the pools
- GET /v1/models - Advertise the single external model id
"""
import json
import logging
import time
import uuid
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from keyrelay.app.dependencies import get_app_state, verify_proxy_key
from keyrelay.core.dispatcher import DispatchResult
from keyrelay.core.errors import ErrorCode
from keyrelay.core.logging import structured_logger
from keyrelay.metrics.prometheus import request_latency_ms, requests_total

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Proxy"])


async def _relay(result: DispatchResult) -> AsyncIterator[bytes]:
    """Yield the upstream body and release the connection however the stream ends."""
    try:
        async for chunk in result.stream:
            yield chunk
    finally:
        if result.close is not None:
            await result.close()


@router.post(
    "/v1/chat/completions",
    summary="Chat completions",
    description=(
        "Forwards an OpenAI-style chat completion to the upstream using the "
        "next credential and model in rotation. The request's model field is "
        "ignored. Streaming responses are relayed as they arrive."
    ),
)
async def chat_completions(
    http_request: Request,
    proxy_key_id=Depends(verify_proxy_key),
):
    state = get_app_state()
    request_id = f"req_{uuid.uuid4().hex[:16]}"

    try:
        payload = json.loads(await http_request.body())
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400,
            detail={
                "type": "client_error",
                "code": ErrorCode.BAD_REQUEST.value,
                "message": "Request body must be a JSON object",
            },
        )

    start = time.time()
    result = await state.dispatcher.dispatch(payload)
    latency_ms = int((time.time() - start) * 1000)

    status = str(result.status_code)
    requests_total.labels(outcome=result.outcome, status=status).inc()
    request_latency_ms.labels(outcome=result.outcome).observe(latency_ms)
    structured_logger.log_dispatch(
        request_id=request_id,
        model=result.model,
        credential_id=result.credential_id,
        attempts=result.attempts,
        upstream_status=result.status_code,
        outcome=result.outcome,
        error_code=result.error_code.value if result.error_code else None,
        latency_ms=latency_ms,
        proxy_key_id=proxy_key_id,
    )

    headers = dict(result.headers)
    headers["X-Request-ID"] = request_id
    if not any(k.lower() == "cache-control" for k in headers):
        headers["Cache-Control"] = "no-cache"

    if result.stream is not None:
        return StreamingResponse(
            _relay(result),
            status_code=result.status_code,
            headers=headers,
        )

    return Response(content=result.body or b"", status_code=result.status_code, headers=headers)


@router.get("/v1/models", summary="List models")
async def list_models() -> JSONResponse:
    """Callers always see one model id; the real model is chosen per request."""
    state = get_app_state()
    model_id = state.config.pool.external_model_id if state.config else "keyrelay"
    return JSONResponse(
        content={
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": int(time.time()),
                    "owned_by": "keyrelay",
                }
            ],
        }
    )
