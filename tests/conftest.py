"""
Pytest configuration and shared fixtures for testing.
Provides stores, change feeds, a fake agent webhook and an API client.
"""
import pytest
import os
import asyncio
import json
from typing import Any, Dict, List, Optional, Union

import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestServer

# Set testing environment before importing the application
os.environ["ENVIRONMENT"] = "testing"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STORE_BACKEND"] = "in_memory"
os.environ["CHANGE_FEED_BACKEND"] = "in_memory"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ALLOW_ANONYMOUS_USER_ID"] = "true"
os.environ["STRICT_BOT_ACCESS"] = "true"
os.environ["ENABLE_TELEMETRY"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENABLE_MOCK_AGENT"] = "true"
os.environ["AGENT_CALLBACK_SECRET"] = ""

from botportal.config import Settings
from botportal.database import build_async_engine, build_session_factory, create_tables
from botportal.realtime import InMemoryChangeFeed
from botportal.services.auth_service import auth_service
from botportal.services.container import build_services
from botportal.store import InMemoryChatStore, SqlChatStore
from botportal.store.records import BotRecord

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
USER = "user-1"
OTHER_USER = "user-2"
BOT = "bot-1"
RESTRICTED_BOT = "bot-restricted"


# ===========================
# Settings Fixtures
# ===========================

def make_settings(**overrides: Any) -> Settings:
    """Settings for tests; keyword arguments override single fields."""
    values = dict(
        environment="testing",
        debug=False,
        store_backend="in_memory",
        change_feed_backend="in_memory",
        secret_key="test-secret-key",
        allow_anonymous_user_id=True,
        strict_bot_access=True,
        agent_webhook_url=None,
        agent_timeout_seconds=2.0,
        agent_history_limit=10,
        agent_writes_directly=False,
        agent_callback_secret=None,
        agent_circuit_failure_threshold=5,
        agent_circuit_recovery_seconds=30.0,
        status_cache_size=128,
        status_cache_ttl_seconds=60,
        background_drain_timeout_seconds=1.0,
        enable_telemetry=False,
        rate_limit_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


# ===========================
# Store Fixtures
# ===========================

async def seed_catalogue(store) -> None:
    """Two bots; tenant-a may use only bot-1."""
    await store.add_bot(BotRecord(id=BOT, name="Support Bot"))
    await store.add_bot(BotRecord(id=RESTRICTED_BOT, name="Restricted Bot"))
    await store.grant_bot_access(TENANT, BOT)


@pytest.fixture
def change_feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed(max_queue_size=32)


@pytest.fixture
async def memory_store(change_feed) -> InMemoryChatStore:
    store = InMemoryChatStore(change_feed=change_feed)
    await seed_catalogue(store)
    return store


@pytest.fixture
async def sql_store(change_feed):
    """SQL store on an in-memory aiosqlite database."""
    engine = build_async_engine("sqlite:///:memory:")
    await create_tables(engine)
    store = SqlChatStore(build_session_factory(engine), change_feed=change_feed)
    await seed_catalogue(store)

    yield store

    await store.close()
    await engine.dispose()


@pytest.fixture(params=["in_memory", "sql"])
async def chat_store(request, change_feed):
    """Parametrized fixture to run a test against both store implementations."""
    if request.param == "in_memory":
        store = InMemoryChatStore(change_feed=change_feed)
        await seed_catalogue(store)
        yield store
        return

    engine = build_async_engine("sqlite:///:memory:")
    await create_tables(engine)
    store = SqlChatStore(build_session_factory(engine), change_feed=change_feed)
    await seed_catalogue(store)
    yield store
    await engine.dispose()


# ===========================
# Fake Agent Fixtures
# ===========================

class FakeAgent:
    """
    Agent webhook served by a real aiohttp server.

    ``delay``, ``status`` and ``body`` control the next responses; every
    received payload is kept in ``requests``.
    """

    def __init__(self):
        self.delay: float = 0.0
        self.status: int = 200
        self.body: Union[str, Dict[str, Any], None] = {"response": "hi"}
        self.requests: List[Dict[str, Any]] = []
        self.headers: List[Dict[str, str]] = []
        self.url: Optional[str] = None
        self.received = asyncio.Event()

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/webhook", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(await request.json())
        self.headers.append(dict(request.headers))
        self.received.set()

        if self.delay:
            await asyncio.sleep(self.delay)

        if isinstance(self.body, dict):
            text = json.dumps(self.body)
        else:
            text = self.body or ""
        return web.Response(status=self.status, text=text, content_type="application/json")


@pytest.fixture
async def fake_agent():
    agent = FakeAgent()
    server = TestServer(agent.app())
    await server.start_server()
    agent.url = str(server.make_url("/webhook"))

    yield agent

    await server.close()


@pytest.fixture
async def http_session():
    session = aiohttp.ClientSession()
    yield session
    await session.close()


# ===========================
# Service Fixtures
# ===========================

@pytest.fixture
async def services(memory_store, change_feed, fake_agent, http_session):
    """Wired services using the in-memory store and the fake agent."""
    config = make_settings(agent_webhook_url=fake_agent.url)
    portal = build_services(config, store=memory_store, change_feed=change_feed, http_session=http_session)
    await portal.start()

    yield portal

    await portal.shutdown(drain_timeout=1.0)


@pytest.fixture
async def app(services):
    from botportal.main import create_app
    return create_app(services)


@pytest.fixture
async def client(app):
    """HTTP client calling the ASGI app in-process."""
    import httpx

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


def bearer(user_id: str = USER, tenants: Optional[List[str]] = None) -> Dict[str, str]:
    token = auth_service.create_token(user_id, tenants=[TENANT] if tenants is None else tenants)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return bearer()


@pytest.fixture
def other_user_headers() -> Dict[str, str]:
    return bearer(OTHER_USER)


async def wait_terminal(store, message_id: str, timeout: float = 5.0):
    """Poll the store until the message leaves the queued state."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        message = await store.get_message(message_id)
        if message is not None and message.is_terminal:
            return message
        await asyncio.sleep(0.02)
    raise AssertionError(f"Message {message_id} did not reach a terminal state")
