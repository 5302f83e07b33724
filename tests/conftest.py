import logging

import httpx
import pytest
from asgi_lifespan import LifespanManager
from starlette.testclient import TestClient

from push_starlette import PushService, PushSettings, create_app
from push_starlette.appstatus import AppStatus

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
def reset_appstatus(monkeypatch):
    # handle_exit must not reach uvicorn's real handler during tests
    monkeypatch.setattr(AppStatus, "original_handler", None)
    AppStatus.reset()
    yield
    AppStatus.reset()


@pytest.fixture
def settings():
    return PushSettings(
        heartbeat_interval=60.0,
        change_generator=False,
        poll_default_timeout=2000,
        webhook_base_delay=0.0,
    )


@pytest.fixture
def webhook_requests():
    """Requests seen by the mocked webhook receiver."""
    return []


@pytest.fixture
def webhook_status():
    """Status codes the mocked receiver answers with, in order; last one repeats."""
    return [200]


@pytest.fixture
def webhook_client(webhook_requests, webhook_status):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        index = min(len(webhook_requests), len(webhook_status)) - 1
        return httpx.Response(webhook_status[index], json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def service(settings, webhook_client):
    return PushService(settings, webhook_client=webhook_client)


@pytest.fixture
def app(service):
    return create_app(service=service)


@pytest.fixture
def client(app):
    with TestClient(app=app, base_url="http://localhost:8000") as client:
        _log.debug("Yielding Client")
        yield client


@pytest.fixture
async def httpx_client(anyio_backend, app):
    async with LifespanManager(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://localhost:8000") as client:
            yield client
