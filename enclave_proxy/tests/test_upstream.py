"""
Unit Tests for Upstream Resolution and Forwarding
=================================================

Tests for enclave_proxy/proxy/upstream.py

Test Coverage:
--------------
1. Upstream URL resolution and host allowlisting
2. Credential lookup and injection
3. Forwarding errors and cancellation
"""

import asyncio

import httpx
import pytest
from starlette.requests import ClientDisconnect, Request

from enclave_proxy.config import Settings
from enclave_proxy.errors import (
    ClientDisconnected,
    MissingCredential,
    MissingUpstreamTarget,
    UpstreamNotAllowed,
    UpstreamUnreachable,
)
from enclave_proxy.proxy.cancellation import CancellationToken
from enclave_proxy.proxy.upstream import (
    forward,
    inject_credential,
    resolve_credential,
    resolve_upstream_url,
    stream_request_body,
)


async def body(*chunks):
    for chunk in chunks:
        yield chunk


# ============================================================================
# Upstream Resolver Tests
# ============================================================================

def test_resolve_concatenates_without_normalization():
    headers = {"X-Tinfoil-Enclave-Url": "https://h/"}

    assert resolve_upstream_url(headers, "/v1/chat/completions", []) == "https://h//v1/chat/completions"


def test_resolve_header_lookup_is_case_insensitive():
    headers = httpx.Headers({"x-tinfoil-enclave-url": "https://node.test"})

    assert resolve_upstream_url(headers, "/v1/chat/completions", []) == "https://node.test/v1/chat/completions"


@pytest.mark.parametrize("headers", [{}, {"X-Tinfoil-Enclave-Url": ""}])
def test_resolve_requires_header(headers):
    with pytest.raises(MissingUpstreamTarget) as exc_info:
        resolve_upstream_url(headers, "/v1/chat/completions", [])

    assert exc_info.value.status_code == 400


def test_resolve_rejects_host_outside_allowlist():
    headers = {"X-Tinfoil-Enclave-Url": "https://attacker.test"}

    with pytest.raises(UpstreamNotAllowed) as exc_info:
        resolve_upstream_url(headers, "/v1/chat/completions", ["node.test"])

    assert exc_info.value.status_code == 403


def test_resolve_rejects_schemeless_target_when_allowlisted():
    headers = {"X-Tinfoil-Enclave-Url": "node.test"}

    with pytest.raises(UpstreamNotAllowed):
        resolve_upstream_url(headers, "/v1/chat/completions", ["node.test"])


def test_resolve_allowlist_ignores_host_case():
    headers = {"X-Tinfoil-Enclave-Url": "https://Node.Test"}

    assert resolve_upstream_url(headers, "/p", ["node.test"]) == "https://Node.Test/p"


# ============================================================================
# Credential Injector Tests
# ============================================================================

def test_resolve_credential_missing():
    with pytest.raises(MissingCredential) as exc_info:
        resolve_credential(Settings(_env_file=None, TINFOIL_API_KEY=None))

    assert exc_info.value.status_code == 500


def test_resolve_credential_empty():
    with pytest.raises(MissingCredential):
        resolve_credential(Settings(_env_file=None, TINFOIL_API_KEY=""))


def test_inject_credential_overwrites_authorization():
    headers = httpx.Headers({"authorization": "Bearer from-client"})

    inject_credential(headers, "server-key")

    assert headers.get_list("authorization") == ["Bearer server-key"]


# ============================================================================
# Forwarder Tests
# ============================================================================

@pytest.mark.asyncio
async def test_forward_posts_streamed_body():
    received = []

    def handler(request):
        received.append(request)
        return httpx.Response(200, content=b"ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await forward(
            client,
            "https://node.test/v1/chat/completions",
            httpx.Headers({"Content-Type": "application/json"}),
            body(b'{"mo', b'del":"x"}'),
            CancellationToken(),
        )
        await response.aread()
        await response.aclose()

    assert received[0].method == "POST"
    assert received[0].content == b'{"model":"x"}'
    assert "accept" not in received[0].headers
    assert response.content == b"ok"


@pytest.mark.asyncio
async def test_forward_connection_error_is_unreachable():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("Connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamUnreachable) as exc_info:
            await forward(client, "https://node.test/x", httpx.Headers(), body(b"{}"), CancellationToken())

    assert exc_info.value.status_code == 502
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_forward_timeout_is_unreachable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamUnreachable):
            await forward(client, "https://node.test/x", httpx.Headers(), body(b"{}"), CancellationToken())


@pytest.mark.asyncio
async def test_forward_unsupported_scheme_is_unreachable():
    async with httpx.AsyncClient() as client:
        with pytest.raises(UpstreamUnreachable):
            await forward(client, "node.test/x", httpx.Headers(), body(b"{}"), CancellationToken())


@pytest.mark.asyncio
async def test_forward_aborted_when_client_disconnects():
    """Test that cancelling the token aborts an upstream call still waiting for headers"""
    async def handler(request):
        await asyncio.sleep(30)
        return httpx.Response(200)

    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ClientDisconnected):
            await asyncio.wait_for(
                forward(client, "https://node.test/x", httpx.Headers(), body(b"{}"), token),
                timeout=5,
            )


def make_request(messages):
    async def receive():
        if messages:
            return messages.pop(0)
        await asyncio.Event().wait()

    return Request({"type": "http", "method": "POST", "headers": []}, receive)


@pytest.mark.asyncio
async def test_stream_request_body_cancels_token_on_disconnect():
    """Test that a client dropping mid-upload fires the token"""
    request = make_request([
        {"type": "http.request", "body": b"part", "more_body": True},
        {"type": "http.disconnect"},
    ])
    token = CancellationToken()
    chunks = []

    with pytest.raises(ClientDisconnect):
        async for chunk in stream_request_body(request, token):
            chunks.append(chunk)

    assert chunks == [b"part"]
    assert token.cancelled


@pytest.mark.asyncio
async def test_stream_request_body_watches_for_disconnect_after_body():
    """Test that a disconnect after the full body still reaches the token"""
    request = make_request([
        {"type": "http.request", "body": b"{}", "more_body": False},
        {"type": "http.disconnect"},
    ])
    token = CancellationToken()

    chunks = [chunk async for chunk in stream_request_body(request, token)]
    await asyncio.wait_for(token.wait(), timeout=5)

    assert chunks == [b"{}"]
    assert token.cancelled
    token.close()
