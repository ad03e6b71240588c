"""
Header Curation
===============

Decides which headers cross the proxy boundary in each direction.

Only headers named in an allowlist pass through unconditionally. Everything
else the client or upstream sends is dropped, except for the few headers the
proxy synthesizes itself (content type, accept, authorization, the proxy
tag and chunked transfer encoding).

The EHBP headers carry the end-to-end encryption handshake between the
client and the enclave. The proxy must move them verbatim and never look
inside them.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, MutableMapping, Optional, Tuple

import httpx
from starlette.datastructures import MutableHeaders


# ============================================================================
# Header Names
# ============================================================================

# Carries the enclave base URL the client verified via attestation
UPSTREAM_URL_HEADER = "X-Tinfoil-Enclave-Url"

# Read for logging only, never forwarded upstream
SIDE_CHANNEL_REQUEST_HEADERS: Tuple[str, ...] = ("X-Proxy-Client-Tag",)

CUSTOM_RESPONSE_HEADER = "X-Proxy-Served-By"

UPSTREAM_CONTENT_TYPE = "application/json"

# ASGI header values are latin-1 decoded; httpx must use the same codec so
# every byte crosses the proxy unchanged
HEADER_ENCODING = "latin-1"


# ============================================================================
# Allowlists
# ============================================================================

@dataclass(frozen=True)
class HeaderAllowlist:
    """
    A named, versioned set of header names that cross the proxy unchanged.

    Membership is case-insensitive; iteration yields the canonical spelling
    used when the header is written out.
    """

    name: str
    version: int
    headers: Tuple[str, ...]

    def __contains__(self, header: object) -> bool:
        if not isinstance(header, str):
            return False
        return header.lower() in {h.lower() for h in self.headers}

    def __iter__(self) -> Iterator[str]:
        return iter(self.headers)

    def __len__(self) -> int:
        return len(self.headers)


EHBP_REQUEST_HEADERS = HeaderAllowlist(
    name="ehbp-request",
    version=1,
    headers=("Ehbp-Encapsulated-Key",),
)

EHBP_RESPONSE_HEADERS = HeaderAllowlist(
    name="ehbp-response",
    version=1,
    headers=("Ehbp-Response-Nonce", "Ehbp-Fallback"),
)


# ============================================================================
# Copy Operations
# ============================================================================

def copy_headers(
    dst: MutableMapping[str, str],
    src: Mapping[str, str],
    allowlist: HeaderAllowlist,
) -> None:
    """
    Copy every allowlisted header from src to dst if present and non-empty.

    Both mappings must look headers up case-insensitively (Starlette and
    httpx header containers both do).

    Args:
        dst: Destination headers (modified in place)
        src: Source headers
        allowlist: Headers to copy
    """
    for key in allowlist:
        value = src.get(key)
        if value:
            dst[key] = value


def curate_request_headers(inbound: Mapping[str, str]) -> httpx.Headers:
    """
    Build the headers sent upstream from the client's headers.

    Authorization is not set here; the credential injector owns it.
    """
    headers = httpx.Headers(encoding=HEADER_ENCODING)

    copy_headers(headers, inbound, EHBP_REQUEST_HEADERS)

    headers["Content-Type"] = UPSTREAM_CONTENT_TYPE
    accept = inbound.get("accept")
    if accept:
        headers["Accept"] = accept

    return headers


def read_side_channel(inbound: Mapping[str, str]) -> Dict[str, str]:
    """Return the side-channel headers the client sent, keyed by header name."""
    values = {}
    for name in SIDE_CHANNEL_REQUEST_HEADERS:
        value = inbound.get(name)
        if value:
            values[name] = value
    return values


def is_chunked(headers: Mapping[str, str]) -> bool:
    transfer_encoding = headers.get("transfer-encoding") or ""
    return "chunked" in transfer_encoding.lower()


def curate_response_headers(
    upstream: Mapping[str, str],
    proxy_name: str,
    headers: Optional[MutableHeaders] = None,
) -> MutableHeaders:
    """
    Build the headers returned to the client from the upstream's headers.

    Args:
        upstream: Headers of the upstream response
        proxy_name: Value for the X-Proxy-Served-By header
        headers: Headers already prepared for the client (e.g. CORS);
            a new container is created when omitted

    Returns:
        The client response headers
    """
    if headers is None:
        headers = MutableHeaders()

    if isinstance(upstream, httpx.Headers):
        upstream = httpx.Headers(upstream.raw, encoding=HEADER_ENCODING)

    copy_headers(headers, upstream, EHBP_RESPONSE_HEADERS)

    content_type = upstream.get("content-type")
    if content_type:
        headers["Content-Type"] = content_type

    headers[CUSTOM_RESPONSE_HEADER] = proxy_name

    # Transfer-Encoding and Content-Length are mutually exclusive
    if is_chunked(upstream):
        headers["Transfer-Encoding"] = upstream["transfer-encoding"]
        if "content-length" in headers:
            del headers["content-length"]

    return headers
