"""
Tests for AgentBridge against a real aiohttp fake agent.
Covers reply parsing, terminal transitions for success, timeout, HTTP errors
and degraded bodies, idempotence, agent-written replies and the circuit breaker.
"""
import pytest
import asyncio
from datetime import timedelta

from aiobreaker import CircuitBreaker

from botportal.exceptions import Conflict, NotFound, ValidationError
from botportal.services import messages
from botportal.services.agent_bridge import AgentBridge, parse_agent_reply
from botportal.services.background import BackgroundRunner
from botportal.services.dispatcher import AgentJob, generate_request_id
from botportal.store.records import BotRecord
from botportal.utils.clock import epoch_ms

from conftest import BOT, TENANT, USER


async def make_job(store, text="hello", bot_id=BOT) -> AgentJob:
    """Session, user message and queued placeholder, as the dispatcher leaves them."""
    session = await store.create_session(tenant_id=TENANT, user_id=USER, bot_id=bot_id)
    submitted = epoch_ms()
    request_id = generate_request_id(now_ms=submitted)
    user_message = await store.insert_message(session.id, "user", text, "delivered", request_id=request_id)
    placeholder = await store.insert_message(
        session.id, "assistant", messages.text("processing"), "queued",
        request_id=request_id, metadata={"processing": True}
    )
    return AgentJob(
        request_id=request_id,
        session_id=session.id,
        assistant_message_id=placeholder.id,
        text=text,
        user_id=USER,
        bot_id=bot_id,
        bot_name="Support Bot",
        user_message_id=user_message.id,
        submitted_at_ms=submitted
    )


@pytest.fixture
def make_bridge(memory_store, fake_agent, http_session):
    def _make(**kwargs) -> AgentBridge:
        kwargs.setdefault("webhook_url", fake_agent.url)
        kwargs.setdefault("timeout_seconds", 2.0)
        kwargs.setdefault("http_session", http_session)
        return AgentBridge(memory_store, **kwargs)
    return _make


# ===========================
# Reply parsing
# ===========================

@pytest.mark.unit
@pytest.mark.parametrize("body,expected", [
    ('{"response": "hi"}', "hi"),
    ('{"message": "from message"}', "from message"),
    ('{"text": "from text"}', "from text"),
    ('{"output": "from output"}', "from output"),
    ('{"response": "", "output": "fallback"}', "fallback"),
    ('[{"output": "first item"}, {"output": "second"}]', "first item"),
    ('"plain string"', "plain string"),
])
def test_parse_agent_reply_reads_fields(body, expected):
    reply = parse_agent_reply(body)
    assert reply.has_reply
    assert reply.content == expected
    assert reply.degraded_reason is None


@pytest.mark.unit
@pytest.mark.parametrize("body,reason,key", [
    ("", "empty_body", "empty_reply"),
    ("   ", "empty_body", "empty_reply"),
    ("[]", "empty_list", "empty_reply"),
    ('{"status": "ok"}', "missing_reply_field", "empty_reply"),
    ("<html>oops</html>", "invalid_json", "unparseable_reply"),
    ("42", "unsupported_type", "empty_reply"),
])
def test_parse_agent_reply_degrades(body, reason, key):
    reply = parse_agent_reply(body)
    assert not reply.has_reply
    assert reply.degraded_reason == reason
    assert reply.content == messages.text(key)


@pytest.mark.unit
def test_parse_agent_reply_localized():
    reply = parse_agent_reply("", locale="es")
    assert reply.content == messages.text("empty_reply", "es")
    assert reply.content.startswith("Recibí tu mensaje")


# ===========================
# Terminal transitions
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_success_completes_placeholder(make_bridge, memory_store, fake_agent):
    fake_agent.body = {"response": "hi"}
    job = await make_job(memory_store)

    record = await make_bridge().invoke(job)

    assert record.status == "completed"
    assert record.content == "hi"
    assert record.latency_ms is not None and record.latency_ms >= 0
    assert record.metadata["processing"] is False

    payload = fake_agent.requests[0]
    assert payload["message"] == "hello"
    assert payload["conversation_id"] == job.session_id
    assert payload["request_id"] == job.request_id
    assert payload["assistant_message_id"] == job.assistant_message_id
    assert payload["bot_name"] == "Support Bot"
    assert payload["conversation_history"] == [{"role": "user", "content": "hello"}]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_timeout_fails_placeholder(make_bridge, memory_store, fake_agent):
    fake_agent.delay = 2.0
    job = await make_job(memory_store)

    loop = asyncio.get_running_loop()
    started = loop.time()
    record = await make_bridge(timeout_seconds=0.3).invoke(job)

    assert loop.time() - started < 1.5
    assert record.status == "failed"
    assert "timeout" in record.error_text.lower()
    assert record.content.startswith("⏱️")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_http_error_fails_placeholder(make_bridge, memory_store, fake_agent):
    fake_agent.status = 500
    fake_agent.body = {"error": "boom"}
    job = await make_job(memory_store)

    record = await make_bridge().invoke(job)

    assert record.status == "failed"
    assert "500" in record.error_text
    assert record.content == "Error processing the query: 500"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_gateway_timeout_status_is_too_complex(make_bridge, memory_store, fake_agent):
    fake_agent.status = 524
    fake_agent.body = ""
    job = await make_job(memory_store)

    record = await make_bridge().invoke(job)

    assert record.status == "failed"
    assert "524" in record.error_text
    assert record.content == messages.text("too_complex")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_empty_body_completes_with_degraded_text(make_bridge, memory_store, fake_agent):
    fake_agent.body = ""
    job = await make_job(memory_store)

    record = await make_bridge().invoke(job)

    assert record.status == "completed"
    assert record.content == messages.text("empty_reply")
    assert record.metadata["degraded"] == "empty_body"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_spanish_error_text(make_bridge, memory_store, fake_agent):
    fake_agent.status = 502
    job = await make_job(memory_store)

    record = await make_bridge(locale="es").invoke(job)

    assert record.content == "Error procesando la consulta: 502"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unreachable_agent_fails_placeholder(make_bridge, memory_store):
    job = await make_job(memory_store)

    record = await make_bridge(webhook_url="http://127.0.0.1:1/webhook").invoke(job)

    assert record.status == "failed"
    assert record.content == messages.text("network_error")
    assert record.error_text


@pytest.mark.integration
@pytest.mark.asyncio
async def test_missing_webhook_fails_placeholder(make_bridge, memory_store, fake_agent):
    job = await make_job(memory_store)

    record = await make_bridge(webhook_url=None).invoke(job)

    assert record.status == "failed"
    assert record.error_text == "No agent webhook configured"
    assert fake_agent.requests == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_bot_overrides_webhook_and_headers(make_bridge, memory_store, fake_agent):
    await memory_store.add_bot(BotRecord(
        id="bot-custom",
        name="Custom Bot",
        webhook_url=fake_agent.url,
        webhook_headers={"X-Bot-Key": "secret-key"},
        timeout_seconds=1.0
    ))
    job = await make_job(memory_store, bot_id="bot-custom")

    record = await make_bridge(webhook_url=None).invoke(job)

    assert record.status == "completed"
    assert fake_agent.headers[0]["X-Bot-Key"] == "secret-key"


# ===========================
# Idempotence and ownership of the terminal write
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_invoking_twice_calls_agent_once(make_bridge, memory_store, fake_agent):
    job = await make_job(memory_store)
    bridge = make_bridge()

    first = await bridge.invoke(job)
    second = await bridge.invoke(job)

    assert first.status == "completed"
    assert second is None
    assert len(fake_agent.requests) == 1

    rows = [m for m in await memory_store.list_messages(job.session_id) if m.request_id == job.request_id]
    assert len([m for m in rows if m.role == "assistant"]) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_invocations_settle_once(make_bridge, memory_store, fake_agent):
    fake_agent.delay = 0.2
    job = await make_job(memory_store)
    bridge = make_bridge()

    results = await asyncio.gather(bridge.invoke(job), bridge.invoke(job))

    assert len([r for r in results if r is not None]) == 1
    assert (await memory_store.get_message(job.assistant_message_id)).status == "completed"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_cancelled_job_marks_placeholder_failed(make_bridge, memory_store, fake_agent):
    fake_agent.delay = 5.0
    job = await make_job(memory_store)
    runner = BackgroundRunner(name="test")

    runner.spawn(make_bridge(timeout_seconds=10).invoke(job))
    await asyncio.wait_for(fake_agent.received.wait(), timeout=2)

    finished, cancelled = await runner.drain(timeout=0.1)

    assert cancelled == 1
    record = await memory_store.get_message(job.assistant_message_id)
    assert record.status == "failed"
    assert record.content == messages.text("shutdown")


# ===========================
# Agent-written replies
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_writes_directly_defers_to_callback(make_bridge, memory_store, fake_agent):
    fake_agent.body = {"success": True}
    job = await make_job(memory_store)
    bridge = make_bridge(writes_directly=True)

    assert await bridge.invoke(job) is None
    assert (await memory_store.get_message(job.assistant_message_id)).status == "queued"

    record = await bridge.apply_callback("completed", "written by agent", request_id=job.request_id)
    assert record.status == "completed"
    assert record.content == "written by agent"
    assert record.metadata["source"] == "callback"

    with pytest.raises(Conflict):
        await bridge.apply_callback("failed", None, assistant_message_id=job.assistant_message_id)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_writes_directly_still_accepts_inline_reply(make_bridge, memory_store, fake_agent):
    fake_agent.body = {"response": "inline"}
    job = await make_job(memory_store)

    record = await make_bridge(writes_directly=True).invoke(job)

    assert record.status == "completed"
    assert record.content == "inline"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_callback_errors(make_bridge, memory_store):
    bridge = make_bridge()

    with pytest.raises(ValidationError):
        await bridge.apply_callback("completed", "x")

    with pytest.raises(NotFound):
        await bridge.apply_callback("completed", "x", assistant_message_id="missing")

    job = await make_job(memory_store)
    record = await bridge.apply_callback("failed", None, assistant_message_id=job.assistant_message_id)
    assert record.status == "failed"
    assert record.error_text == "Agent reported failure"


# ===========================
# Circuit breaker
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_open_circuit_fails_fast(make_bridge, memory_store, fake_agent):
    fake_agent.status = 500
    breaker = CircuitBreaker(fail_max=1, timeout_duration=timedelta(seconds=60))
    bridge = make_bridge(circuit_breaker=breaker)
    assert bridge.circuit_state == "closed"

    first = await bridge.invoke(await make_job(memory_store))
    assert first.status == "failed"
    assert first.error_text == "Webhook failed: 500"
    assert bridge.circuit_state == "open"
    assert bridge.circuit_snapshot()["failure_count"] == 1

    second = await bridge.invoke(await make_job(memory_store))
    assert second.status == "failed"
    assert second.content == messages.text("unavailable")
    assert "OPEN" in second.error_text
    assert len(fake_agent.requests) == 1
