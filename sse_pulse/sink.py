import logging
from typing import List, Optional

import anyio
import anyio.lowlevel
from starlette.types import Send

logger = logging.getLogger(__name__)


class WriteError(Exception):
    """The sink rejected a write because of a transport fault."""


class ClientDisconnected(WriteError):
    """The sink rejected a write because the client went away."""


class SendTimeoutError(WriteError, TimeoutError):
    pass


class OutputSink:
    """
    Outbound byte stream to one connected client.

    ``write`` returns normally once the chunk is accepted and raises
    ``WriteError`` (or ``ClientDisconnected``) when it is rejected.
    ``close`` must be safe to call more than once.
    """

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class MemorySink(OutputSink):
    """Collects written chunks in memory."""

    def __init__(self) -> None:
        self.chunks: List[bytes] = []
        self.closed = False

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise ClientDisconnected("sink is closed")
        self.chunks.append(data)
        await anyio.lowlevel.checkpoint()

    async def close(self) -> None:
        self.closed = True


class ASGISink(OutputSink):
    """
    Writes chunks as ASGI ``http.response.body`` messages.

    The response start message is expected to be sent by the caller. Writes
    are serialised with a lock so that keep-alive pings never interleave with
    events (https://github.com/sysid/sse-starlette/pull/55).
    """

    def __init__(self, send: Send, send_timeout: Optional[float] = None) -> None:
        self._send = send
        self.send_timeout = send_timeout
        self._send_lock = anyio.Lock()
        self.closed = False

    async def write(self, data: bytes) -> None:
        async with self._send_lock:
            if self.closed:
                raise ClientDisconnected("sink is closed")
            await self._send_body(data, more_body=True)

    async def _send_body(self, data: bytes, more_body: bool) -> None:
        with anyio.move_on_after(self.send_timeout) as cancel_scope:
            try:
                await self._send(
                    {"type": "http.response.body", "body": data, "more_body": more_body}
                )
            except (
                anyio.BrokenResourceError,
                anyio.ClosedResourceError,
                ConnectionError,
            ) as e:
                self.closed = True
                raise ClientDisconnected(str(e) or type(e).__name__) from e
            except OSError as e:
                self.closed = True
                raise WriteError(str(e)) from e

        if cancel_scope.cancel_called:
            self.closed = True
            raise SendTimeoutError(f"send did not complete within {self.send_timeout}s")

    def mark_disconnected(self) -> None:
        """The client is gone: reject further writes and skip the final body."""
        self.closed = True

    async def close(self) -> None:
        async with self._send_lock:
            if self.closed:
                return
            self.closed = True
            logger.debug("closing response body")
            await self._send({"type": "http.response.body", "body": b"", "more_body": False})


def create_sink(send: Send, send_timeout: Optional[float] = None) -> ASGISink:
    return ASGISink(send, send_timeout=send_timeout)
