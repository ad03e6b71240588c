"""
FastAPI Proxy Application Factory
=================================

This is the main entry point for the proxy service that sits between browser
or SDK clients and attested inference enclaves.

Architecture:
    Client (EHBP-encrypting SDK) → Enclave Proxy (this service) → Enclave

Routes:
    - /v1/chat/completions : Proxied to the enclave named by X-Tinfoil-Enclave-Url
    - /health              : Health check endpoint

Environment Variables:
    - TINFOIL_API_KEY: API key injected into every upstream request
    - PROXY_HOST / PROXY_PORT: Listen address (default: 0.0.0.0:8080)
    - UPSTREAM_ALLOWED_HOSTS: Comma-separated enclave hosts clients may target
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn enclave_proxy.main:app --reload --host 0.0.0.0 --port 8080

    Production:
        enclave-proxy

    With custom log level:
        LOG_LEVEL=DEBUG enclave-proxy
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from enclave_proxy import __version__
from enclave_proxy.config import Settings, get_settings, validate_configuration
from enclave_proxy.errors import ProxyError
from enclave_proxy.models import ErrorResponse, HealthResponse
from enclave_proxy.proxy import proxy_router
from enclave_proxy.proxy.cors import cors_headers


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class AppState:
    """
    Per-application state container.

    Holds the immutable settings and the shared upstream HTTP client.
    """
    def __init__(self, settings: Settings):
        self.settings: Settings = settings
        self.upstream_client: Optional[httpx.AsyncClient] = None


def create_upstream_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the connection-pooled client used for every upstream call.

    Redirects are not followed: a redirect is the upstream's answer and is
    relayed to the client as-is.
    """
    timeout = httpx.Timeout(
        settings.UPSTREAM_READ_TIMEOUT,
        connect=settings.UPSTREAM_CONNECT_TIMEOUT,
    )
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Log the configuration report
        - Create the shared upstream HTTP client

    Shutdown tasks:
        - Close the upstream HTTP client
    """
    app_state: AppState = app.state.app_state
    settings = app_state.settings

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("enclave_proxy.main")

    report = validate_configuration(settings)
    for error in report["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    owns_client = app_state.upstream_client is None
    if owns_client:
        app_state.upstream_client = create_upstream_client(settings)

    logger.info(
        "Enclave proxy started",
        extra={
            "service": "enclave-proxy",
            "version": __version__,
            "host": settings.PROXY_HOST,
            "port": settings.PROXY_PORT,
        }
    )

    yield

    logger.info("Shutting down enclave proxy")
    if owns_client and app_state.upstream_client is not None:
        await app_state.upstream_client.aclose()
        app_state.upstream_client = None
    logger.info("Enclave proxy shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use; loaded from the environment when omitted

    Returns:
        FastAPI: Configured application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Enclave Proxy",
        description="Credential-injecting streaming proxy for attested inference enclaves",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.app_state = AppState(settings)

    app.include_router(proxy_router, tags=["Enclave Proxy"])

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(service="enclave-proxy", version=__version__)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        """Render proxy errors as JSON with the CORS headers attached."""
        logger = logging.getLogger("enclave_proxy.main")
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Request failed: {exc.detail}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": exc.status_code,
                "error": exc.error,
            }
        )

        body = ErrorResponse(error=exc.error, detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(),
            headers=cors_headers(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled errors and return a standardized error response."""
        logger = logging.getLogger("enclave_proxy.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        body = ErrorResponse(
            error="internal_server_error",
            detail=str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
        )
        return JSONResponse(status_code=500, content=body.model_dump(), headers=cors_headers())

    return app


# Create app instance for uvicorn
app = create_app()


def run() -> None:
    """Console entry point: serve the app on PROXY_HOST:PROXY_PORT."""
    settings = get_settings()
    uvicorn.run(
        "enclave_proxy.main:app",
        host=settings.PROXY_HOST,
        port=settings.PROXY_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
