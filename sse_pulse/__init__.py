from sse_pulse.event import InvalidEventError, ServerSentEvent, encode, ensure_event
from sse_pulse.registry import SessionRegistry, SessionSummary
from sse_pulse.session import (
    ProducerError,
    SessionState,
    StreamConfig,
    StreamEngine,
    StreamSession,
    cancel,
    on_terminal,
)
from sse_pulse.sink import (
    ASGISink,
    ClientDisconnected,
    MemorySink,
    OutputSink,
    SendTimeoutError,
    WriteError,
    create_sink,
)
from sse_pulse.sse import EventStreamResponse
from sse_pulse.ticker import Subscription, Tick, Ticker

__all__ = [
    "ASGISink",
    "ClientDisconnected",
    "EventStreamResponse",
    "InvalidEventError",
    "MemorySink",
    "OutputSink",
    "ProducerError",
    "SendTimeoutError",
    "ServerSentEvent",
    "SessionRegistry",
    "SessionState",
    "SessionSummary",
    "StreamConfig",
    "StreamEngine",
    "StreamSession",
    "Subscription",
    "Tick",
    "Ticker",
    "WriteError",
    "cancel",
    "create_sink",
    "encode",
    "ensure_event",
    "on_terminal",
]
__version__ = "0.1.0"
