"""
Application factory

Builds the FastAPI application around a single RelayEngine.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from capture_relay.api.admin_routes import router as admin_router
from capture_relay.api.capture_routes import router as capture_router
from capture_relay.api.middleware import RequestLoggingMiddleware
from capture_relay.core.config import ApplicationConfig
from capture_relay.core.errors import (
    RecordNotFoundError,
    RelayError,
    RuleNotFoundError,
    RuleValidationError,
    StoreError,
)
from capture_relay.core.store import CAPTURE_RULES
from capture_relay.engine.relay import RelayEngine

logger = structlog.get_logger()

VERSION = "1.0.0"

ERROR_STATUS = {
    RuleValidationError: 400,
    RuleNotFoundError: 404,
    RecordNotFoundError: 404,
    StoreError: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""

    # Startup
    logger.info("Starting capture relay", version=VERSION)
    if app.state.relay is None:
        app.state.relay = RelayEngine.from_config(app.state.config)
    await app.state.relay.start()
    logger.info("Capture relay initialized successfully")

    yield

    # Shutdown
    logger.info("Shutting down capture relay")
    await app.state.relay.close()
    logger.info("Capture relay shutdown complete")


def _error_body(request: Request, error: str, message: str) -> dict:
    return {
        "error": error,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }


async def relay_error_handler(request: Request, exc: RelayError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500
    )
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, type(exc).__name__, str(exc))
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, "HTTPException", str(exc.detail)),
        headers=getattr(exc, "headers", None)
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = _error_body(request, "ValidationError", "Request validation failed")
    body["details"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=body)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "InternalServerError", str(exc))
    )


def create_app(config: Optional[ApplicationConfig] = None, relay: Optional[RelayEngine] = None) -> FastAPI:
    """
    Build the relay application

    Args:
        config: Loaded configuration, read from the environment when omitted
        relay: Pre-built engine, built from config at start-up when omitted

    Returns:
        FastAPI application
    """
    config = config or ApplicationConfig()

    app = FastAPI(
        title="Capture Relay",
        description="Rule-based capture, rewriting and interception of relayed HTTP traffic",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(RequestLoggingMiddleware(
        max_body_bytes=config.server.request_body_limit_mb * 1024 * 1024
    ))

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(capture_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root(request: Request):
        """Service banner"""
        relay = request.app.state.relay
        return {
            "service": "Capture Relay",
            "status": "operational",
            "version": VERSION,
            "capture": relay.capture_status()["status"] if relay else "unknown",
            "intercept": relay.intercept_status()["status"] if relay else "unknown",
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint for monitoring"""
        relay = request.app.state.relay
        try:
            await relay.store.read_all(CAPTURE_RULES)
        except StoreError as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "error": str(e)}
            )
        return {
            "status": "healthy",
            "store": "reachable",
            "capture_enabled": relay.flags.capture_enabled,
            "intercept_enabled": relay.flags.intercept_enabled,
        }

    return app
