import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Union
from uuid import uuid4

import anyio
import anyio.to_thread
from anyio.abc import TaskGroup

from sse_pulse.event import InvalidEventError, ServerSentEvent, ensure_event
from sse_pulse.sink import ClientDisconnected, OutputSink, WriteError
from sse_pulse.ticker import Subscription, Tick, Ticker, validate_interval

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3.0

# produce(tick) may be sync or async and may return a ServerSentEvent,
# a dict of event fields, or any value that becomes the event data
Producer = Callable[[Tick], Any]
TerminalCallback = Callable[["StreamSession"], None]


class ProducerError(Exception):
    """The domain callback raised while producing an event."""


class SessionState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not SessionState.ACTIVE


@dataclass(frozen=True)
class StreamConfig:
    """
    Per-stream settings.

    :param interval: seconds between two events, no event at t=0.
    :param max_events: complete the stream after this many events.
    :param auto_id: give events without an id the tick sequence as id.
    :param offload_sync_producer: run a synchronous producer in anyio's worker
        thread pool instead of on the event loop.
    :param sep: line separator used by the encoder.
    """

    interval: Union[int, float] = DEFAULT_INTERVAL
    max_events: Optional[int] = None
    auto_id: bool = True
    offload_sync_producer: bool = False
    sep: str = ServerSentEvent.DEFAULT_SEPARATOR

    def __post_init__(self) -> None:
        validate_interval(self.interval)
        if self.max_events is not None and self.max_events < 1:
            raise ValueError("max_events must be at least 1")
        if self.sep not in ServerSentEvent.VALID_SEPARATORS:
            raise ValueError(f"sep must be one of: \\r\\n, \\r, \\n, got: {self.sep!r}")


class StreamSession:
    """
    One client connection consuming a periodic event stream.

    The session owns one ticker subscription and one output sink. It leaves
    ``ACTIVE`` exactly once, for ``COMPLETED``, ``FAILED`` or ``CANCELLED``;
    on that transition the subscription is cancelled, the sink is closed and
    every ``on_terminal`` callback is invoked once.
    """

    def __init__(
        self,
        config: StreamConfig,
        produce: Producer,
        sink: OutputSink,
        registry: Optional[Any] = None,
    ) -> None:
        self.id = uuid4().hex
        self.config = config
        self.state = SessionState.ACTIVE
        self.sequence: Optional[int] = None
        self.events_sent = 0
        self.started_at = datetime.now(timezone.utc)
        self.error: Optional[BaseException] = None

        self._produce = produce
        self._sink = sink
        self._registry = registry
        self._subscription: Optional[Subscription] = None
        self._callbacks: List[TerminalCallback] = []
        self._terminated = anyio.Event()
        self._done = anyio.Event()

    def __repr__(self) -> str:
        return f"<StreamSession {self.id} {self.state.value} sent={self.events_sent}>"

    @property
    def sink(self) -> OutputSink:
        return self._sink

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _start(self, ticker: Ticker, task_group: TaskGroup) -> None:
        if self._registry is not None:
            self._registry.register(self)
        self._subscription = ticker.subscribe(
            self.config.interval, self._on_tick, self._fail
        )
        task_group.start_soon(self._run)
        logger.info(
            "session %s started, interval=%ss", self.id, self.config.interval
        )

    async def _run(self) -> None:
        try:
            await self._terminated.wait()
        finally:
            if self.state is SessionState.ACTIVE:
                # the surrounding task group was torn down
                self._terminate(SessionState.CANCELLED)
            with anyio.CancelScope(shield=True):
                await self._release()

    async def _on_tick(self, tick: Tick) -> None:
        if self.state.terminal:
            return

        try:
            result = await self._call_producer(tick)
        except Exception as e:
            error = ProducerError(f"producer failed on tick {tick.sequence}: {e!r}")
            error.__cause__ = e
            self._fail(error)
            return

        try:
            event = ensure_event(result)
            # the default id must not make an empty result look valid
            event.validate()
            if self.config.auto_id and event.id is None:
                event = event.replace(id=str(tick.sequence))
            chunk = event.encode(self.config.sep)
        except InvalidEventError as e:
            self._fail(e)
            return

        # cancelled while the producer was running
        if self.state.terminal:
            return

        try:
            await self._sink.write(chunk)
        except ClientDisconnected as e:
            logger.debug("session %s: client disconnected: %s", self.id, e)
            self._terminate(SessionState.CANCELLED)
            return
        except WriteError as e:
            self._fail(e)
            return

        logger.debug("chunk: %s", chunk)
        self.sequence = tick.sequence
        self.events_sent += 1
        if self.config.max_events is not None and self.events_sent >= self.config.max_events:
            self.complete()

    async def _call_producer(self, tick: Tick) -> Any:
        if self.config.offload_sync_producer and not inspect.iscoroutinefunction(
            self._produce
        ):
            result = await anyio.to_thread.run_sync(self._produce, tick)
        else:
            result = self._produce(tick)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _terminate(self, state: SessionState, error: Optional[BaseException] = None) -> bool:
        if self.state.terminal:
            return False
        self.state = state
        self.error = error
        if self._subscription is not None:
            self._subscription.cancel()
        self._terminated.set()
        return True

    def _fail(self, error: BaseException) -> None:
        if self._terminate(SessionState.FAILED, error):
            logger.error(
                "session %s failed after %d event(s): %s",
                self.id,
                self.events_sent,
                error,
                exc_info=error,
            )

    async def _release(self) -> None:
        try:
            await self._sink.close()
        except Exception as e:
            logger.warning("session %s: error closing sink: %s", self.id, e)

        if self._registry is not None:
            self._registry.unregister(self)

        logger.info(
            "session %s %s after %d event(s)", self.id, self.state.value, self.events_sent
        )
        self._done.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)

    def _invoke(self, callback: TerminalCallback) -> None:
        try:
            callback(self)
        except Exception as e:
            logger.error("Error in terminal callback: %s", e)

    def cancel(self) -> None:
        """Stop the stream as a normal termination. No-op once terminal."""
        self._terminate(SessionState.CANCELLED)

    def fail(self, error: BaseException) -> None:
        """End the stream as FAILED with an error raised outside the tick loop, e.g. a ping write."""
        self._fail(error)

    def complete(self) -> None:
        """Stop the stream intentionally, closing the sink cleanly."""
        self._terminate(SessionState.COMPLETED)

    def on_terminal(self, callback: TerminalCallback) -> None:
        """Call ``callback(session)`` once the session has released its resources.

        Callbacks registered after that point are called immediately.
        """
        if self._done.is_set():
            self._invoke(callback)
        else:
            self._callbacks.append(callback)

    async def wait(self) -> SessionState:
        await self._done.wait()
        return self.state

    def raise_for_state(self) -> None:
        if self.state is SessionState.FAILED and self.error is not None:
            raise self.error


class StreamEngine:
    """
    Runs stream sessions on a shared ticker inside one anyio task group.

    Usage::

        async with StreamEngine() as engine:
            session = engine.start_stream(StreamConfig(interval=1), produce, sink)
            await session.wait()

    Leaving the block cancels every session that is still active.
    """

    def __init__(self, registry: Optional[Any] = None) -> None:
        self.registry = registry
        self._task_group: Optional[TaskGroup] = None
        self._ticker: Optional[Ticker] = None
        self._sessions: List[StreamSession] = []

    @property
    def ticker(self) -> Ticker:
        if self._ticker is None:
            raise RuntimeError("StreamEngine is not running")
        return self._ticker

    async def __aenter__(self) -> "StreamEngine":
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._ticker = Ticker(self._task_group)
        return self

    async def __aexit__(self, *exc_info: Any) -> Optional[bool]:
        self.cancel_all()
        task_group, self._task_group, self._ticker = self._task_group, None, None
        return await task_group.__aexit__(*exc_info)

    def start_stream(
        self, config: StreamConfig, produce: Producer, sink: OutputSink
    ) -> StreamSession:
        if self._task_group is None:
            raise RuntimeError("StreamEngine is not running")
        session = StreamSession(config, produce, sink, registry=self.registry)
        self._sessions = [s for s in self._sessions if not s.state.terminal]
        self._sessions.append(session)
        session._start(self.ticker, self._task_group)
        return session

    def cancel_all(self) -> None:
        for session in self._sessions:
            session.cancel()
        self._sessions = []


def cancel(session: StreamSession) -> None:
    session.cancel()


def on_terminal(session: StreamSession, callback: TerminalCallback) -> None:
    session.on_terminal(callback)
