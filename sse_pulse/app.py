"""
Demo application with three periodic SSE endpoints.

Usage:
    python -m sse_pulse.app

Test with curl:
    curl -N http://localhost:8000/sse/stream-flux
    curl -N http://localhost:8000/sse/stream-sse
    curl -N http://localhost:8000/sse/stream-sse-mvc?limit=5
    curl http://localhost:8000/sse/sessions
"""
import contextlib
import logging
from datetime import datetime
from typing import Optional, Union

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from sse_pulse.appstatus import AppStatus
from sse_pulse.event import ServerSentEvent
from sse_pulse.registry import SessionRegistry
from sse_pulse.session import DEFAULT_INTERVAL, StreamConfig
from sse_pulse.sse import EventStreamResponse
from sse_pulse.ticker import Tick

logger = logging.getLogger(__name__)

MEDIA_TYPE_TEXT_EVENT_STREAM = "text/event-stream"
MEDIA_TYPE_APPLICATION_STREAM_JSON = "application/stream+json"


def flux_message(tick: Tick) -> str:
    return f"Flux_Example - {MEDIA_TYPE_TEXT_EVENT_STREAM}"


def periodic_event(tick: Tick) -> ServerSentEvent:
    return ServerSentEvent(
        f"SSE - {MEDIA_TYPE_APPLICATION_STREAM_JSON}{datetime.now().time().isoformat()}",
        id=str(tick.sequence),
        event="periodic-event",
    )


def mvc_event(tick: Tick) -> ServerSentEvent:
    return ServerSentEvent(
        f"SSE MVC - {datetime.now().time().isoformat()}",
        id=str(tick.sequence),
        event="sse event - mvc",
    )


def _limit(request: Request) -> Optional[int]:
    raw = request.query_params.get("limit")
    if raw is None:
        return None
    try:
        limit = int(raw)
    except ValueError:
        raise HTTPException(400, detail="limit must be an integer") from None
    if limit < 1:
        raise HTTPException(400, detail="limit must be at least 1")
    return limit


def create_app(
    interval: Union[int, float] = DEFAULT_INTERVAL,
    registry: Optional[SessionRegistry] = None,
    ping: Optional[Union[int, float]] = None,
) -> Starlette:
    registry = registry if registry is not None else SessionRegistry()

    def config(request: Request, **kwargs) -> StreamConfig:
        return StreamConfig(interval=interval, max_events=_limit(request), **kwargs)

    async def stream_flux(request: Request) -> EventStreamResponse:
        # plain data frames, no id
        return EventStreamResponse(
            flux_message, config(request, auto_id=False), registry=registry, ping=ping
        )

    async def stream_sse(request: Request) -> EventStreamResponse:
        return EventStreamResponse(
            periodic_event, config(request), registry=registry, ping=ping
        )

    async def stream_sse_mvc(request: Request) -> EventStreamResponse:
        # blocking producers share anyio's worker pool instead of a thread per request
        return EventStreamResponse(
            mvc_event,
            config(request, offload_sync_producer=True),
            registry=registry,
            ping=ping,
        )

    async def sessions(request: Request) -> JSONResponse:
        summaries = sorted(registry.list_active(), key=lambda s: s.started_at)
        return JSONResponse([s.as_dict() for s in summaries])

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        # SIGINT/SIGTERM cancel open streams before the server stops waiting on them
        AppStatus.add_shutdown_callback(registry.cancel_all)
        try:
            yield
        finally:
            AppStatus.remove_shutdown_callback(registry.cancel_all)
            cancelled = registry.cancel_all()
            logger.debug("Shutting down, cancelled %d stream(s)", cancelled)

    app = Starlette(
        routes=[
            Mount(
                "/sse",
                routes=[
                    Route("/stream-flux", stream_flux),
                    Route("/stream-sse", stream_sse),
                    Route("/stream-sse-mvc", stream_sse_mvc),
                    Route("/sessions", sessions),
                ],
            )
        ],
        lifespan=lifespan,
    )
    app.state.registry = registry
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="info")
