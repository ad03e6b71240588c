"""
Proxy Routes - Enclave Request Forwarding
=========================================

This module implements the single proxied endpoint. Requests from browser or
SDK clients are forwarded to the enclave the client names, with the proxy's
API key attached and the EHBP encryption headers passed through untouched.

Request Flow:
-------------
1. OPTIONS: answer the CORS preflight and stop
2. Resolve the upstream from X-Tinfoil-Enclave-Url (400 if missing)
3. Look up the API key (500 if not configured)
4. Curate request headers and inject the credential
5. POST upstream with the body streamed through (502 if unreachable)
6. Curate response headers and stream the body back

Endpoints:
----------
- POST /v1/chat/completions: Forward a chat completion to the enclave
"""

import logging

import httpx
from fastapi import APIRouter, Depends, Request
from starlette.datastructures import MutableHeaders

from ..config import Settings
from ..errors import MethodNotForwarded, UpstreamClientUnavailable
from .cancellation import CancellationToken
from .cors import cors_headers, preflight_response
from .headers import curate_request_headers, curate_response_headers, read_side_channel
from .streaming import UpstreamStreamingResponse
from .upstream import (
    forward,
    inject_credential,
    resolve_credential,
    resolve_upstream_url,
    stream_request_body,
)

logger = logging.getLogger(__name__)

proxy_router = APIRouter()

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

# Anything but OPTIONS is re-issued upstream as POST
ACCEPTED_METHODS = ["POST", "OPTIONS", "GET", "PUT", "PATCH", "DELETE"]


# ============================================================================
# Dependencies
# ============================================================================

def get_proxy_settings(request: Request) -> Settings:
    """Settings captured when the application was created."""
    return request.app.state.app_state.settings


def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Get the shared upstream HTTP client from app state.

    Raises:
        UpstreamClientUnavailable: If the client has not been created yet
    """
    app_state = getattr(request.app.state, "app_state", None)
    client = getattr(app_state, "upstream_client", None)
    if client is None:
        raise UpstreamClientUnavailable("Upstream client not initialized")
    return client


# ============================================================================
# Proxy Endpoint
# ============================================================================

@proxy_router.api_route(CHAT_COMPLETIONS_PATH, methods=ACCEPTED_METHODS)
async def proxy_chat_completions(
    request: Request,
    settings: Settings = Depends(get_proxy_settings),
):
    """
    Forward a chat completion request to the enclave named by the client.

    Returns:
        204 preflight response, or the upstream response streamed back

    Raises:
        ProxyError: Any failure before the upstream response starts
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Received {request.method} request from {client_host}")

    if request.method == "OPTIONS":
        return preflight_response()

    if request.method != "POST" and not settings.FORWARD_ANY_METHOD:
        raise MethodNotForwarded(f"Method {request.method} is not forwarded; use POST")

    upstream_url = resolve_upstream_url(
        request.headers,
        request.url.path,
        settings.upstream_allowed_hosts_list,
    )
    credential = resolve_credential(settings)

    upstream_headers = curate_request_headers(request.headers)
    inject_credential(upstream_headers, credential)

    # Side-channel headers stay on this side of the proxy
    for name, value in read_side_channel(request.headers).items():
        logger.info(f"Side-channel header {name} received: {value}")

    client = get_upstream_client(request)
    token = CancellationToken()
    try:
        upstream = await forward(
            client,
            upstream_url,
            upstream_headers,
            stream_request_body(request, token),
            token,
        )
    except Exception:
        token.close()
        raise

    logger.info(
        "Upstream responded",
        extra={"status_code": upstream.status_code, "upstream_host": upstream.request.url.host},
    )

    # The streaming response owns the upstream response and token once built
    try:
        response_headers = curate_response_headers(
            upstream.headers,
            settings.PROXY_NAME,
            headers=MutableHeaders(headers=cors_headers()),
        )
        return UpstreamStreamingResponse(
            upstream,
            response_headers,
            token,
            flush=settings.STREAM_FLUSH,
        )
    except Exception:
        await upstream.aclose()
        token.close()
        raise
