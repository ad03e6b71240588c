"""CORS headers and the preflight response for the proxied endpoint."""

from typing import Dict

from fastapi import Response, status

from .headers import (
    CUSTOM_RESPONSE_HEADER,
    EHBP_REQUEST_HEADERS,
    EHBP_RESPONSE_HEADERS,
    SIDE_CHANNEL_REQUEST_HEADERS,
    UPSTREAM_URL_HEADER,
)

ALLOW_METHODS = "POST, OPTIONS"

# Headers browsers may send: protocol allowlist plus the ones the proxy reads
ALLOW_HEADERS = ", ".join(
    [
        "Accept",
        "Authorization",
        "Content-Type",
        *EHBP_REQUEST_HEADERS,
        UPSTREAM_URL_HEADER,
        *SIDE_CHANNEL_REQUEST_HEADERS,
    ]
)

# Headers browser scripts may read: protocol allowlist plus the proxy's own
EXPOSE_HEADERS = ", ".join([*EHBP_RESPONSE_HEADERS, CUSTOM_RESPONSE_HEADER])


def cors_headers() -> Dict[str, str]:
    """The four CORS headers set on every response from the endpoint."""
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": ALLOW_METHODS,
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
        "Access-Control-Expose-Headers": EXPOSE_HEADERS,
    }


def preflight_response() -> Response:
    """Answer a CORS preflight: 204, CORS headers, empty body."""
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=cors_headers())
