import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping, Optional, Union

import anyio
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from sse_pulse.appstatus import AppStatus
from sse_pulse.event import ServerSentEvent
from sse_pulse.registry import SessionRegistry
from sse_pulse.session import Producer, StreamConfig, StreamEngine, StreamSession
from sse_pulse.sink import ASGISink, ClientDisconnected, WriteError, create_sink

logger = logging.getLogger(__name__)


class EventStreamResponse(Response):
    """
    Streaming response that pushes one produced event per interval, encoded
    per the SSE (Server-Sent Events) specification.

    Alongside the stream session it runs a keep-alive ping, a client
    disconnect listener and a server shutdown listener; whichever finishes
    first ends the response. A failed session re-raises its error once the
    sink has been closed.
    """

    DEFAULT_PING_INTERVAL = 15

    def __init__(
        self,
        produce: Producer,
        config: Optional[StreamConfig] = None,
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        media_type: str = "text/event-stream",
        background: Optional[BackgroundTask] = None,
        registry: Optional[SessionRegistry] = None,
        ping: Optional[Union[int, float]] = None,
        ping_message_factory: Optional[Callable[[], ServerSentEvent]] = None,
        send_timeout: Optional[float] = None,
        client_close_handler_callable: Optional[
            Callable[[Message], Awaitable[None]]
        ] = None,
    ) -> None:
        self.produce = produce
        self.config = config if config is not None else StreamConfig()
        self.registry = registry
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.send_timeout = send_timeout

        _headers = MutableHeaders()
        if headers is not None:
            _headers.update(headers)

        # "The no-store response directive indicates that any caches of any kind (private or shared)
        # should not store this response."
        # -- https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/Cache-Control
        # allow cache control header to be set by user to support fan out proxies
        _headers.setdefault("Cache-Control", "no-store")
        _headers["Connection"] = "keep-alive"
        _headers["X-Accel-Buffering"] = "no"
        self.init_headers(_headers)

        self.ping_interval = self.DEFAULT_PING_INTERVAL if ping is None else ping
        self.ping_message_factory = ping_message_factory
        self.client_close_handler_callable = client_close_handler_callable

        self.session: Optional[StreamSession] = None

    @property
    def ping_interval(self) -> Union[int, float]:
        return self._ping_interval

    @ping_interval.setter
    def ping_interval(self, value: Union[int, float]) -> None:
        if not isinstance(value, (int, float)):
            raise TypeError("ping interval must be int")
        if value < 0:
            raise ValueError("ping interval must be greater than 0")
        self._ping_interval = value

    def enable_compression(self, force: bool = False) -> None:
        raise NotImplementedError("Compression is not supported for SSE streams.")

    async def _listen_for_disconnect(self, receive: Receive, sink: ASGISink) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                sink.mark_disconnected()
                logger.debug("Got event: http.disconnect. Stop streaming.")
                if self.client_close_handler_callable:
                    await self.client_close_handler_callable(message)
                break

    async def _ping(self, sink: ASGISink, session: StreamSession) -> None:
        """Send a comment frame every ``ping_interval`` seconds so proxies keep the connection open."""
        while True:
            await anyio.sleep(self._ping_interval)
            sse_ping = (
                self.ping_message_factory()
                if self.ping_message_factory
                else ServerSentEvent(comment=f"ping - {datetime.now(timezone.utc)}")
            )
            ping_bytes = sse_ping.encode(self.config.sep)
            logger.debug("ping: %s", ping_bytes)
            try:
                await sink.write(ping_bytes)
            except ClientDisconnected:
                return
            except WriteError as e:
                session.fail(e)
                return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        AppStatus.initialize()

        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        sink = create_sink(send, send_timeout=self.send_timeout)

        async with StreamEngine(registry=self.registry) as engine:
            session = self.session = engine.start_stream(self.config, self.produce, sink)

            async with anyio.create_task_group() as task_group:
                # https://trio.readthedocs.io/en/latest/reference-core.html#custom-supervisors
                async def cancel_on_finish(coro: Callable[[], Awaitable[object]]):
                    await coro()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(cancel_on_finish, session.wait)
                if self._ping_interval:
                    task_group.start_soon(cancel_on_finish, lambda: self._ping(sink, session))
                task_group.start_soon(cancel_on_finish, AppStatus.listen_for_exit_signal)
                task_group.start_soon(
                    cancel_on_finish, lambda: self._listen_for_disconnect(receive, sink)
                )

            # disconnect, shutdown or a dead ping ended the race
            session.cancel()
            await session.wait()

        session.raise_for_state()

        if self.background is not None:
            await self.background()
