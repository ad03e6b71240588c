"""
Upstream Resolution and Forwarding
==================================

Resolves the per-request upstream target, injects the server credential and
issues the single upstream call.

Security Model:
---------------
1. The client names the upstream (an attested enclave) in a header
2. The proxy attaches its own API key; any client Authorization is replaced
3. When an upstream host allowlist is configured, only listed hosts are
   contacted. Without one, any client that can reach the proxy can send the
   credential to any host; this is logged as a warning at startup.
"""

import logging
from typing import AsyncIterator, List, Mapping

import httpx
from fastapi import Request
from starlette.requests import ClientDisconnect

from ..config import Settings
from ..errors import (
    InvalidUpstreamRequest,
    MissingCredential,
    MissingUpstreamTarget,
    UpstreamNotAllowed,
    UpstreamUnreachable,
)
from .cancellation import CancellationToken
from .headers import UPSTREAM_URL_HEADER

logger = logging.getLogger(__name__)


# ============================================================================
# Upstream Resolver
# ============================================================================

def resolve_upstream_url(
    inbound: Mapping[str, str],
    path: str,
    allowed_hosts: List[str],
) -> str:
    """
    Build the upstream target from the client's header and request path.

    The target is the literal concatenation of the header value and the path;
    neither is normalized.

    Args:
        inbound: Client request headers
        path: Request path, e.g. "/v1/chat/completions"
        allowed_hosts: Lowercase host allowlist; empty trusts any host

    Returns:
        The upstream URL

    Raises:
        MissingUpstreamTarget: If the header is absent or empty
        UpstreamNotAllowed: If the allowlist is set and the host is not in it
    """
    upstream_base = inbound.get(UPSTREAM_URL_HEADER)
    if not upstream_base:
        raise MissingUpstreamTarget(f"{UPSTREAM_URL_HEADER} header required")

    if allowed_hosts:
        try:
            host = httpx.URL(upstream_base).host.lower()
        except httpx.InvalidURL:
            host = ""
        if host not in allowed_hosts:
            raise UpstreamNotAllowed(f"Upstream host '{host}' is not allowed")

    return upstream_base + path


# ============================================================================
# Credential Injector
# ============================================================================

def resolve_credential(settings: Settings) -> str:
    """
    Return the API key to send upstream.

    Raises:
        MissingCredential: If TINFOIL_API_KEY is not configured
    """
    if not settings.TINFOIL_API_KEY:
        raise MissingCredential("TINFOIL_API_KEY not set")
    return settings.TINFOIL_API_KEY


def inject_credential(headers: httpx.Headers, credential: str) -> None:
    """Set the upstream Authorization header, replacing any existing value."""
    headers["Authorization"] = f"Bearer {credential}"


# ============================================================================
# Forwarder
# ============================================================================

async def stream_request_body(
    request: Request,
    token: CancellationToken,
) -> AsyncIterator[bytes]:
    """
    Pump the client body upstream chunk by chunk without buffering it.

    Once the body is exhausted the token starts listening for a disconnect
    on the (now idle) receive channel.
    """
    try:
        async for chunk in request.stream():
            if chunk:
                yield chunk
    except ClientDisconnect:
        token.cancel()
        raise
    token.watch(request.receive)


async def forward(
    client: httpx.AsyncClient,
    url: str,
    headers: httpx.Headers,
    body: AsyncIterator[bytes],
    token: CancellationToken,
) -> httpx.Response:
    """
    POST the request upstream and return the response with its body unread.

    The caller owns the returned response and must close it.

    Raises:
        InvalidUpstreamRequest: If httpx cannot build a request for the URL
        UpstreamUnreachable: On any network-level failure
        ClientDisconnected: If the client disconnects before the upstream answers
    """
    try:
        upstream_request = client.build_request("POST", url, headers=headers, content=body)
    except httpx.InvalidURL as e:
        raise InvalidUpstreamRequest(f"Invalid upstream URL: {e}") from e

    # Accept is only sent when the client sent one
    if "accept" not in headers:
        upstream_request.headers.pop("accept", None)

    try:
        return await token.run(client.send(upstream_request, stream=True))
    except httpx.RequestError as e:
        logger.error(
            f"Upstream request failed: {e}",
            extra={"upstream_host": upstream_request.url.host, "exception_type": type(e).__name__},
        )
        raise UpstreamUnreachable(str(e) or type(e).__name__) from e
