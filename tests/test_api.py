"""
HTTP API tests through the ASGI app: sessions, submit/ACK, status polling,
agent callback and health endpoints.
"""
import pytest
import time

from botportal.exceptions import StoreError
from botportal.services import messages
from botportal.services.status_query import NOT_FOUND_MESSAGE

from conftest import BOT, RESTRICTED_BOT, TENANT, wait_terminal


async def create_session(client, headers, **body) -> str:
    body.setdefault("botId", BOT)
    response = await client.post("/api/v1/sessions", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["sessionId"]


async def submit(client, headers, session_id, text="hello", **extra):
    body = {"sessionId": session_id, "text": text, **extra}
    return await client.post("/api/v1/chat/submit", json=body, headers=headers)


# ===========================
# Sessions
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_session_policies(client, auth_headers):
    first = await create_session(client, auth_headers)
    second = await create_session(client, auth_headers)
    assert first != second

    external = await create_session(client, auth_headers, externalId="tab-1")
    again = await create_session(client, auth_headers, externalId="tab-1", policy="external")
    assert external == again

    continued = await create_session(client, auth_headers, policy="continue", sessionId=external)
    assert continued == external


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_session_errors(client, auth_headers):
    no_auth = await client.post("/api/v1/sessions", json={"botId": BOT})
    assert no_auth.status_code == 401

    missing_bot = await client.post("/api/v1/sessions", json={}, headers=auth_headers)
    assert missing_bot.status_code == 400

    unknown = await client.post("/api/v1/sessions", json={"botId": "bot-nope"}, headers=auth_headers)
    assert unknown.status_code == 404

    restricted = await client.post("/api/v1/sessions", json={"botId": RESTRICTED_BOT}, headers=auth_headers)
    assert restricted.status_code == 403

    other_tenant = await client.post(
        "/api/v1/sessions", json={"botId": BOT, "tenantId": "tenant-b"}, headers=auth_headers
    )
    assert other_tenant.status_code == 403

    bad_token = await client.post(
        "/api/v1/sessions", json={"botId": BOT}, headers={"Authorization": "Bearer not-a-token"}
    )
    assert bad_token.status_code == 401
    assert bad_token.json()["error"] == "User must be authenticated"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_session_crud(client, auth_headers, other_user_headers):
    session_id = await create_session(client, auth_headers)

    response = await client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["sessionId"] == session_id
    assert data["tenantId"] == TENANT
    assert data["botId"] == BOT

    forbidden = await client.get(f"/api/v1/sessions/{session_id}", headers=other_user_headers)
    assert forbidden.status_code == 403

    renamed = await client.put(
        f"/api/v1/sessions/{session_id}", json={"title": "  Billing question  "}, headers=auth_headers
    )
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Billing question"

    too_long = await client.put(f"/api/v1/sessions/{session_id}", json={"title": "x" * 101}, headers=auth_headers)
    assert too_long.status_code == 400

    deleted = await client.delete(f"/api/v1/sessions/{session_id}", headers=auth_headers)
    assert deleted.json() == {"success": True, "sessionId": session_id}

    gone = await client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)
    assert gone.status_code == 404


@pytest.mark.integration
@pytest.mark.asyncio
async def test_anonymous_user_id_mode(client, memory_store):
    created = await client.post(
        "/api/v1/sessions", json={"botId": BOT, "tenantId": TENANT, "userId": "anon-1"}
    )
    assert created.status_code == 200
    session_id = created.json()["sessionId"]

    ack = await submit(client, {}, session_id, userId="anon-1")
    assert ack.status_code == 202

    no_identity = await submit(client, {}, session_id)
    assert no_identity.status_code == 401

    history = await client.get(f"/api/v1/sessions/{session_id}/messages", params={"userId": "anon-1"})
    assert history.status_code == 200

    await wait_terminal(memory_store, ack.json()["assistantMessageId"])


# ===========================
# Submit and status
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_submit_acknowledges_before_agent_replies(client, auth_headers, fake_agent, memory_store):
    fake_agent.delay = 2.0
    session_id = await create_session(client, auth_headers)

    started = time.monotonic()
    response = await submit(client, auth_headers, session_id, messageId="temp-1")
    elapsed = time.monotonic() - started

    assert response.status_code == 202
    assert elapsed < 0.5
    ack = response.json()
    assert ack["status"] == "queued"
    assert ack["requestId"].endswith("-temp-1")
    assert ack["requestId"].split("-", 1)[0].isdigit()

    placeholder = await memory_store.get_message(ack["assistantMessageId"])
    assert placeholder.status == "queued"
    assert placeholder.content == messages.text("processing")

    status = await client.get("/api/v1/chat/status", params={"requestId": ack["requestId"]})
    assert status.json()["status"] == "queued"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_end_to_end_completion(client, auth_headers, fake_agent, memory_store):
    fake_agent.body = {"response": "We open at 9."}
    session_id = await create_session(client, auth_headers)

    ack = (await submit(client, auth_headers, session_id, "When do you open?")).json()
    record = await wait_terminal(memory_store, ack["assistantMessageId"])
    assert record.status == "completed"

    status = await client.get("/api/v1/chat/status", params={"requestId": ack["requestId"]})
    payload = status.json()
    assert payload["status"] == "completed"
    assert payload["content"] == "We open at 9."
    assert payload["output_text"] == "We open at 9."
    assert payload["latency_ms"] >= 0

    history = await client.get(f"/api/v1/sessions/{session_id}/messages", headers=auth_headers)
    data = history.json()
    assert data["total"] == 2
    assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
    assert data["messages"][1]["content"] == "We open at 9."

    session = await client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)
    assert session.json()["title"] == "When do you open?"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_agent_failure_is_recorded(client, auth_headers, fake_agent, memory_store):
    fake_agent.status = 500
    session_id = await create_session(client, auth_headers)

    ack = (await submit(client, auth_headers, session_id)).json()
    await wait_terminal(memory_store, ack["assistantMessageId"])

    payload = (await client.get("/api/v1/chat/status", params={"requestId": ack["requestId"]})).json()
    assert payload["status"] == "failed"
    assert "500" in payload["error_text"]
    assert payload["content"] == "Error processing the query: 500"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_submit_validation(client, auth_headers, other_user_headers):
    session_id = await create_session(client, auth_headers)

    missing_text = await submit(client, auth_headers, session_id, text="   ")
    assert missing_text.status_code == 400

    missing_session = await client.post("/api/v1/chat/submit", json={"text": "hi"}, headers=auth_headers)
    assert missing_session.status_code == 400

    no_user = await submit(client, {}, session_id)
    assert no_user.status_code == 401

    unknown = await submit(client, auth_headers, "no-such-session")
    assert unknown.status_code == 404

    foreign = await submit(client, other_user_headers, session_id)
    assert foreign.status_code == 403
    assert foreign.json()["error"] == "Access denied"

    other_bot = await submit(client, auth_headers, session_id, botId=RESTRICTED_BOT)
    assert other_bot.status_code == 403

    long_id = await submit(client, auth_headers, session_id, messageId="m" * 65)
    assert long_id.status_code == 400


@pytest.mark.integration
@pytest.mark.asyncio
async def test_placeholder_failure_returns_503(client, auth_headers, memory_store, services, monkeypatch):
    session_id = await create_session(client, auth_headers)
    original = memory_store.insert_message

    async def failing_insert(session_id, role, *args, **kwargs):
        if role == "assistant":
            raise StoreError("disk full")
        return await original(session_id, role, *args, **kwargs)

    monkeypatch.setattr(memory_store, "insert_message", failing_insert)

    response = await submit(client, auth_headers, session_id)

    assert response.status_code == 503
    body = response.json()
    assert body["error"] == "Failed to queue message for processing"
    assert body["request_id"]
    assert services.runner.active == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_status_of_unknown_request(client):
    response = await client.get("/api/v1/chat/status", params={"requestId": "1700000000000-unknown"})

    assert response.status_code == 200
    assert response.json() == {"status": "queued", "message": NOT_FOUND_MESSAGE}

    missing = await client.get("/api/v1/chat/status")
    assert missing.status_code == 400


# ===========================
# Agent callback
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_callback_settles_once(client, auth_headers, fake_agent, memory_store):
    fake_agent.delay = 1.5
    session_id = await create_session(client, auth_headers)
    ack = (await submit(client, auth_headers, session_id)).json()

    first = await client.post("/api/v1/agent/callback", json={
        "requestId": ack["requestId"], "status": "completed", "content": "from callback"
    })
    assert first.status_code == 200
    assert first.json()["message"]["content"] == "from callback"

    second = await client.post("/api/v1/agent/callback", json={
        "assistantMessageId": ack["assistantMessageId"], "status": "failed"
    })
    assert second.status_code == 409

    record = await memory_store.get_message(ack["assistantMessageId"])
    assert record.content == "from callback"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_callback_validation(client):
    bad_status = await client.post("/api/v1/agent/callback", json={"requestId": "x", "status": "queued"})
    assert bad_status.status_code == 400

    unknown = await client.post("/api/v1/agent/callback", json={"requestId": "1-none", "status": "completed"})
    assert unknown.status_code == 404


# ===========================
# Health, root and mock agent
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_health_endpoints(client):
    health = await client.get("/health")
    assert health.json()["status"] == "healthy"

    ready = await client.get("/health/ready")
    data = ready.json()
    assert data["status"] == "healthy"
    assert data["services"]["store"] == "healthy"
    assert data["services"]["agent_circuit"] == "closed"
    assert data["services"]["background"] == "accepting"

    live = await client.get("/health/live")
    assert live.json()["status"] == "alive"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_root_reports_delivery(client):
    response = await client.get("/")

    data = response.json()
    assert data["status"] == "operational"
    assert data["delivery"]["background_tasks"] == 0
    assert data["delivery"]["agent_circuit"]["state"] == "closed"
    assert response.headers["X-Request-ID"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_mock_agent_echoes(client):
    response = await client.post("/api/v1/mock-agent", params={"delay": 0}, json={"message": "ping"})
    assert response.status_code == 200
    assert '"ping"' in response.json()["response"]

    failing = await client.post("/api/v1/mock-agent", params={"delay": 0, "fail_status": 502}, json={})
    assert failing.status_code == 502




@pytest.mark.integration
@pytest.mark.asyncio
async def test_metrics_endpoint(services):
    import httpx
    from botportal.main import create_app
    from botportal.utils.telemetry import setup_telemetry

    app = create_app(services)
    setup_telemetry(app)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/health")
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert "chat_submissions_total" in response.text
