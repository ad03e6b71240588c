"""
Shared fixtures for the proxy tests.

The upstream enclave is replaced by ``MockUpstream``, an in-process handler
behind ``httpx.MockTransport`` that records every request it receives and
answers with a configurable response.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from enclave_proxy.config import Settings
from enclave_proxy.main import create_app

TEST_API_KEY = "test-api-key-1234567890"
ENCLAVE_URL = "https://node.test"


class MockUpstream:
    """In-process mock enclave."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.headers: Dict[str, str] = {"content-type": "application/json"}
        self.body = b'{"choice":"y"}'
        self.chunks: Optional[List[bytes]] = None
        self.error: Optional[Exception] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error

        if self.chunks is not None:
            chunks = list(self.chunks)

            async def stream():
                for chunk in chunks:
                    yield chunk

            return httpx.Response(self.status_code, headers=self.headers, content=stream())

        return httpx.Response(self.status_code, headers=self.headers, content=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def last_request(self) -> httpx.Request:
        assert self.requests, "upstream was never contacted"
        return self.requests[-1]


@pytest.fixture
def settings():
    """Settings with a credential and defaults for everything else"""
    return Settings(_env_file=None, TINFOIL_API_KEY=TEST_API_KEY)


@pytest.fixture
def mock_upstream():
    return MockUpstream()


def build_app(settings: Settings, mock_upstream: MockUpstream):
    app = create_app(settings=settings)
    app.state.app_state.upstream_client = httpx.AsyncClient(transport=mock_upstream.transport)
    return app


@pytest.fixture
def app(settings, mock_upstream):
    """Proxy app wired to the mock upstream"""
    return build_app(settings, mock_upstream)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def enclave_headers():
    """Headers a well-behaved EHBP client sends"""
    return {
        "X-Tinfoil-Enclave-Url": ENCLAVE_URL,
        "Ehbp-Encapsulated-Key": "abc",
    }


@pytest.fixture
def make_client(mock_upstream):
    """Build a test client with settings overrides, e.g. make_client(FORWARD_ANY_METHOD=False)"""
    def _make(**overrides):
        values = {"TINFOIL_API_KEY": TEST_API_KEY, **overrides}
        return TestClient(build_app(Settings(_env_file=None, **values), mock_upstream))
    return _make


async def call_app(
    app,
    headers: List[Tuple[bytes, bytes]],
    messages: List[dict],
    method: str = "POST",
) -> List[dict]:
    """
    Drive the ASGI app directly with raw header bytes and scripted receive messages.

    Once the scripted messages run out, receive blocks like an idle connection.
    Returns every message the app sent.
    """
    pending = list(messages)
    idle = asyncio.Event()
    sent: List[dict] = []

    async def receive():
        if pending:
            return pending.pop(0)
        await idle.wait()

    async def send(message):
        sent.append(message)

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": "/v1/chat/completions",
        "raw_path": b"/v1/chat/completions",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"testserver"), *headers],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    await app(scope, receive, send)
    return sent


@pytest.fixture
def asgi_call():
    """``call_app`` for tests that need exact header bytes or a scripted disconnect"""
    return call_app
