"""
Request Cancellation
====================

A per-request cancellation token tied to the client's connection.

The ASGI server reports a dropped client as an ``http.disconnect`` message on
the request's receive channel. The token listens for that message and, once
it arrives, aborts whatever work is bound to it: the pending upstream call
or the body copy back to the client.

The receive channel also carries the request body, so listening only starts
once the body has been fully read.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from starlette.types import Receive

from ..errors import ClientDisconnected

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cancellation scope for one inbound request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._watcher: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Client disconnected, cancelling request")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def watch(self, receive: Receive) -> None:
        """Start listening for the client disconnect. Safe to call twice."""
        if self._watcher is None:
            self._watcher = asyncio.ensure_future(self._listen(receive))

    async def _listen(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.cancel()
                return

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the request is cancelled first.

        Raises:
            ClientDisconnected: If the token fired before the awaitable
                finished; the awaitable is cancelled.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            exc = task.exception()
            if exc is not None and self.cancelled:
                raise ClientDisconnected("Client disconnected") from exc
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ClientDisconnected("Client disconnected")

    def close(self) -> None:
        """Stop listening. Called once the request is finished."""
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
