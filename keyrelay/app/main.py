"""KeyRelay FastAPI application - chat-completion forwarding proxy.

This is the main application module that:
- Initializes the FastAPI application
- Configures middleware (CORS, exception handling)
- Registers all route handlers
- Manages application lifespan (startup/shutdown)
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keyrelay.app.dependencies import (
    admin_token_from_env,
    create_store,
    get_app_state,
    init_components,
    shutdown_components,
)
from keyrelay.config.loader import ConfigLoader
from keyrelay.core.errors import ErrorCode, KeyRelayError, UpdateExhaustedError, error_body

# Configure structured JSON logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup initialization and shutdown cleanup for:
    - Configuration loading and validation
    - Durable store (Redis or in-memory)
    - Upstream client, pools and the write-back flush timer
    """
    state = get_app_state()

    # Startup
    config_path = os.getenv("KEYRELAY_CONFIG")
    if config_path:
        logger.info(f"Loading configuration from {config_path}")
    config = ConfigLoader(config_path).load()

    state.admin_token = admin_token_from_env()
    if not state.admin_token:
        logger.warning("KEYRELAY_ADMIN_TOKEN not set, admin routes are unauthenticated")

    if state.store is None:
        state.store = create_store(os.getenv("REDIS_URL"))
    await init_components(state, config)

    logger.info(
        f"KeyRelay started with {len(state.pools.credentials.all())} credentials "
        f"and {len(state.pools.model_pool)} models"
    )

    yield

    # Shutdown
    logger.info("Shutting down KeyRelay...")
    await shutdown_components(state)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="KeyRelay",
        version="0.1.0",
        description=(
            "OpenAI-compatible chat-completion proxy that rotates a pool of "
            "upstream API keys and models."
        ),
        lifespan=lifespan,
    )

    # Configure CORS middleware
    _configure_cors(app)

    # Register exception handlers
    _register_exception_handlers(app)

    # Register routes
    _register_routes(app)

    return app


def _configure_cors(app: FastAPI) -> None:
    """Configure CORS middleware."""
    cors_origins_env = os.getenv("CORS_ORIGINS", "*")
    if cors_origins_env == "*":
        cors_origins = ["*"]
    else:
        cors_origins = _validate_cors_origins(cors_origins_env)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )


def _validate_cors_origins(cors_origins_env: str) -> List[str]:
    """Validate and filter CORS origins.

    Args:
        cors_origins_env: Comma-separated CORS origins string

    Returns:
        List of validated CORS origins
    """
    validated_origins = []
    for origin in (o.strip() for o in cors_origins_env.split(",")):
        if not origin:
            continue
        if origin != "*" and not (origin.startswith("http://") or origin.startswith("https://")):
            logger.warning(f"Invalid CORS origin format (skipping): {origin}")
            continue
        validated_origins.append(origin)
    return validated_origins


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Render HTTPException details in the shared error body."""
        if isinstance(exc.detail, dict):
            content = {"error": exc.detail}
        else:
            code = ErrorCode.from_http_status(exc.status_code)
            content = error_body(code, str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(ErrorCode.BAD_REQUEST, message),
        )

    @app.exception_handler(UpdateExhaustedError)
    async def update_exhausted_handler(request: Request, exc: UpdateExhaustedError):
        logger.error(f"Configuration update gave up: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body(ErrorCode.INTERNAL_ERROR, "Concurrent update conflict, try again"),
        )

    @app.exception_handler(KeyRelayError)
    async def keyrelay_exception_handler(request: Request, exc: KeyRelayError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, str(exc) or exc.code.value),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {type(exc).__name__}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body(ErrorCode.INTERNAL_ERROR, "Internal server error"),
        )


def _register_routes(app: FastAPI) -> None:
    """Register all route handlers."""
    from keyrelay.app.routes import health, keys, models, proxy, proxy_keys, settings

    app.include_router(health.router)
    app.include_router(proxy.router)
    app.include_router(keys.router)
    app.include_router(proxy_keys.router)
    app.include_router(models.router)
    app.include_router(settings.router)


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
