import logging

import pytest
from starlette.testclient import TestClient

from sse_pulse.app import create_app
from sse_pulse.appstatus import AppStatus
from sse_pulse.registry import SessionRegistry

_log = logging.getLogger(__name__)
log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"
logging.basicConfig(format=log_fmt, level=logging.DEBUG, datefmt=datefmt)

logging.getLogger("httpx").setLevel(logging.INFO)
logging.getLogger("httpcore").setLevel(logging.INFO)


@pytest.fixture
def anyio_backend():
    """Exclude trio from tests"""
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_appstatus():
    # avoid: RuntimeError: <asyncio.locks.Event object at 0x1046a0a30 [unset]> is bound to a different event loop
    AppStatus.should_exit = False
    AppStatus.should_exit_event = None
    yield
    AppStatus.cleanup()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def app(registry):
    return create_app(interval=0.02, registry=registry, ping=0)


@pytest.fixture
def client(app):
    with TestClient(app=app, base_url="http://localhost:8000") as client:
        _log.info("Yielding Client")
        yield client
