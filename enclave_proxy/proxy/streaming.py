"""
Response Streaming
==================

Delivers the upstream response to the client without materializing it.

Two writer strategies share one interface:

- ``FlushingWriter`` hands every upstream chunk to the server as its own body
  frame, so token-by-token completions reach the client as they are produced.
- ``BulkWriter`` coalesces chunks into fixed-size frames. It is used when the
  client connection cannot take incremental frames (HTTP/1.0) or when flushing
  is disabled.

Once the status line is sent it cannot change. Failures during the copy are
logged and the client sees a truncated body.
"""

import logging
from typing import List, Mapping, Protocol

import httpx
from fastapi import Response
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from ..errors import ClientDisconnected
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

BULK_FRAME_SIZE = 32 * 1024


class ResponseWriter(Protocol):
    """Destination for the upstream body."""

    async def write(self, chunk: bytes) -> None:
        ...

    async def close(self) -> None:
        """Send anything still buffered and end the response body."""
        ...


class FlushingWriter:
    """Sends each chunk immediately as a separate body frame."""

    def __init__(self, send: Send) -> None:
        self._send = send

    async def write(self, chunk: bytes) -> None:
        if not chunk:
            return
        await self._send({"type": "http.response.body", "body": chunk, "more_body": True})

    async def close(self) -> None:
        await self._send({"type": "http.response.body", "body": b"", "more_body": False})


class BulkWriter:
    """Coalesces chunks and sends them in frames of ``frame_size`` bytes."""

    def __init__(self, send: Send, frame_size: int = BULK_FRAME_SIZE) -> None:
        self._send = send
        self._frame_size = frame_size
        self._buffer: List[bytes] = []
        self._buffered = 0

    async def write(self, chunk: bytes) -> None:
        self._buffer.append(chunk)
        self._buffered += len(chunk)
        if self._buffered >= self._frame_size:
            await self._send({"type": "http.response.body", "body": self._drain(), "more_body": True})

    async def close(self) -> None:
        await self._send({"type": "http.response.body", "body": self._drain(), "more_body": False})

    def _drain(self) -> bytes:
        data = b"".join(self._buffer)
        self._buffer = []
        self._buffered = 0
        return data


def supports_flush(scope: Scope) -> bool:
    """Whether the client connection can receive incremental body frames."""
    return scope.get("http_version", "1.1") != "1.0"


def select_writer(scope: Scope, send: Send, flush: bool = True) -> ResponseWriter:
    if flush and supports_flush(scope):
        return FlushingWriter(send)
    return BulkWriter(send)


class UpstreamStreamingResponse(Response):
    """
    Response that relays an open upstream response to the client.

    Owns the upstream response and the request's cancellation token: both
    are closed when the relay ends, however it ends.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        headers: Mapping[str, str],
        token: CancellationToken,
        flush: bool = True,
    ) -> None:
        self.upstream = upstream
        self.status_code = upstream.status_code
        self.token = token
        self.flush = flush
        self.background = None
        self.init_headers(headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.token.watch(receive)
        writer = select_writer(scope, send, self.flush)
        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": self.status_code,
                    "headers": self.raw_headers,
                }
            )
            try:
                await self.token.run(self._copy(writer))
            except ClientDisconnected:
                logger.info("Client disconnected during stream, upstream response closed")
                return
            except (httpx.HTTPError, OSError, ClientDisconnect) as e:
                logger.warning(
                    f"Stream copy failed: {e}",
                    extra={"exception_type": type(e).__name__},
                )

            try:
                await writer.close()
            except (OSError, ClientDisconnect) as e:
                logger.debug(f"Could not end response body: {e}")
        finally:
            await self.upstream.aclose()
            self.token.close()

    async def _copy(self, writer: ResponseWriter) -> None:
        async for chunk in self.upstream.aiter_bytes():
            await writer.write(chunk)
