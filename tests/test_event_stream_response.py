import logging

import anyio
import anyio.lowlevel
import pytest
from starlette.testclient import TestClient

from sse_pulse import EventStreamResponse, ServerSentEvent
from sse_pulse.appstatus import AppStatus
from sse_pulse.registry import SessionRegistry
from sse_pulse.session import ProducerError, SessionState, StreamConfig
from sse_pulse.sink import SendTimeoutError

_log = logging.getLogger(__name__)

INTERVAL = 0.05


def asgi_app(response_factory):
    async def app(scope, receive, send):
        response = response_factory()
        await response(scope, receive, send)

    return app


def make_response(produce, config, **kwargs):
    return EventStreamResponse(produce, config, ping=0, **kwargs)


@pytest.mark.parametrize(
    "produce,expected",
    [
        (lambda tick: tick.sequence + 1, b"id: 0\ndata: 1\n\n"),
        (lambda tick: dict(data=1), b"id: 0\ndata: 1\n\n"),
        (lambda tick: dict(data=1, event="message"), b"id: 0\nevent: message\ndata: 1\n\n"),
    ],
)
def test_bounded_stream(produce, expected):
    app = asgi_app(
        lambda: make_response(produce, StreamConfig(interval=INTERVAL, max_events=3))
    )
    response = TestClient(app).get("/")

    assert response.status_code == 200
    assert expected in response.content
    assert response.content.count(b"\n\n") == 3


def test_pings_between_events():
    app = asgi_app(
        lambda: EventStreamResponse(
            lambda tick: "x", StreamConfig(interval=0.2, max_events=2), ping=0.05
        )
    )
    response = TestClient(app).get("/")
    assert response.content.decode().count(": ping - ") >= 2
    assert response.content.count(b"data: x\n\n") == 2


def test_custom_ping_message():
    app = asgi_app(
        lambda: EventStreamResponse(
            lambda tick: "x",
            StreamConfig(interval=0.2, max_events=1),
            ping=0.05,
            ping_message_factory=lambda: ServerSentEvent(comment="keep-alive"),
        )
    )
    response = TestClient(app).get("/")
    assert b": keep-alive\n\n" in response.content


def test_headers():
    response = EventStreamResponse(lambda tick: "x")
    headers = dict((k.decode(), v.decode()) for k, v in response.raw_headers)
    assert headers["content-type"] == "text/event-stream; charset=utf-8"
    assert headers["cache-control"] == "no-store"
    assert headers["connection"] == "keep-alive"
    assert headers["x-accel-buffering"] == "no"


def test_cache_control_can_be_overridden():
    response = EventStreamResponse(lambda tick: "x", headers={"Cache-Control": "no-cache"})
    assert response.headers["cache-control"] == "no-cache"


@pytest.mark.parametrize("ping,error", [("15", TypeError), (-1, ValueError)])
def test_ping_interval_validation(ping, error):
    with pytest.raises(error):
        EventStreamResponse(lambda tick: "x", ping=ping)


def test_compression_is_refused():
    with pytest.raises(NotImplementedError):
        EventStreamResponse(lambda tick: "x").enable_compression()


@pytest.mark.anyio
async def test_producer_error_is_raised_after_stream_closes():
    messages = []

    def produce(tick):
        if tick.sequence == 2:
            raise RuntimeError("producer bug")
        return "ok"

    async def send(message):
        messages.append(message)

    async def receive():
        await anyio.sleep_forever()

    response = make_response(produce, StreamConfig(interval=INTERVAL))
    with pytest.raises(ProducerError):
        with anyio.fail_after(2):
            await response({}, receive, send)

    bodies = [m["body"] for m in messages if m["type"] == "http.response.body"]
    assert bodies == [b"id: 0\ndata: ok\n\n", b"id: 1\ndata: ok\n\n", b""]
    assert messages[-1]["more_body"] is False
    assert response.session.state is SessionState.FAILED


@pytest.mark.anyio
async def test_ping_send_timeout_fails_session():
    # events are far apart, so only a ping ever reaches the hanging send
    async def send(message):
        if message.get("body", b"").startswith(b":"):
            await anyio.sleep_forever()

    async def receive():
        await anyio.sleep_forever()

    response = EventStreamResponse(
        lambda tick: "x",
        StreamConfig(interval=5),
        ping=0.05,
        send_timeout=0.1,
    )
    with pytest.raises(SendTimeoutError):
        with anyio.fail_after(2):
            await response({}, receive, send)

    assert response.session.state is SessionState.FAILED
    assert isinstance(response.session.error, SendTimeoutError)
    assert response.session.events_sent == 0


@pytest.mark.anyio
async def test_client_disconnect_cancels_session():
    registry = SessionRegistry()
    messages = []
    closed = []
    requests = []

    async def receive():
        if not requests:
            requests.append(True)
            return {"type": "http.request", "body": b"", "more_body": False}
        await anyio.sleep(INTERVAL * 3.5)
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    async def on_close(message):
        closed.append(message["type"])

    response = EventStreamResponse(
        lambda tick: "x",
        StreamConfig(interval=INTERVAL),
        registry=registry,
        ping=0,
        client_close_handler_callable=on_close,
    )
    with anyio.fail_after(2):
        await response({}, receive, send)

    assert response.session.state is SessionState.CANCELLED
    assert response.session.events_sent >= 2
    assert closed == ["http.disconnect"]
    assert len(registry) == 0
    # no final body is sent to a client that is gone
    assert all(m.get("more_body", True) for m in messages)


@pytest.mark.anyio
async def test_server_shutdown_cancels_session():
    messages = []

    async def receive():
        await anyio.sleep_forever()

    async def send(message):
        messages.append(message)

    AppStatus.should_exit = True
    response = EventStreamResponse(lambda tick: "x", StreamConfig(interval=INTERVAL), ping=0)
    with anyio.fail_after(1):
        await response({}, receive, send)

    assert response.session.state is SessionState.CANCELLED
    assert messages[0]["type"] == "http.response.start"
    assert messages[-1] == {"type": "http.response.body", "body": b"", "more_body": False}


@pytest.mark.anyio
async def test_send_timeout():
    # Timeout is 0.2s, but sending a body takes 1s. Expect SendTimeoutError.
    async def send(message):
        if message["type"] == "http.response.body":
            await anyio.sleep(1.0)

    async def receive():
        await anyio.lowlevel.checkpoint()
        await anyio.sleep(0.01)
        return {"type": "something"}

    response = EventStreamResponse(
        lambda tick: "x", StreamConfig(interval=INTERVAL), ping=0, send_timeout=0.2
    )
    with pytest.raises(SendTimeoutError):
        await response({}, receive, send)

    assert response.session.state is SessionState.FAILED
