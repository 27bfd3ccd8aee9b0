"""
Tests for StatusQuery: unknown ids, terminal caching and idempotent reads.
"""
import pytest
from unittest.mock import AsyncMock

from botportal.exceptions import ValidationError
from botportal.services.status_query import NOT_FOUND_MESSAGE, StatusQuery

from conftest import BOT, TENANT, USER


@pytest.fixture
async def placeholder(memory_store):
    session = await memory_store.create_session(tenant_id=TENANT, user_id=USER, bot_id=BOT)
    return await memory_store.insert_message(
        session.id, "assistant", "🤖 Processing your question...", "queued",
        request_id="1700000000000-req"
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_request_reports_queued(memory_store):
    status = StatusQuery(memory_store)

    result = await status.get_status("1700000000000-nobody")

    assert result == {"status": "queued", "message": NOT_FOUND_MESSAGE}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_request_id(memory_store):
    status = StatusQuery(memory_store)

    with pytest.raises(ValidationError):
        await status.get_status(None)
    with pytest.raises(ValidationError):
        await status.get_status("   ")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_queued_is_never_cached(memory_store, placeholder):
    status = StatusQuery(memory_store)

    queued = await status.get_status(placeholder.request_id)
    assert queued["status"] == "queued"
    assert queued["output_text"] is None
    assert status.cache.get(placeholder.request_id) is None

    await memory_store.complete_message(placeholder.id, status="completed", content="hi", latency_ms=42.0)

    completed = await status.get_status(placeholder.request_id)
    assert completed == {
        "status": "completed",
        "content": "hi",
        "output_text": "hi",
        "error_text": None,
        "latency_ms": 42.0,
    }


@pytest.mark.unit
@pytest.mark.asyncio
async def test_terminal_reads_are_identical_and_cached(memory_store, placeholder):
    status = StatusQuery(memory_store)
    await memory_store.complete_message(
        placeholder.id, status="failed", content="Error processing the query: 524",
        error_text="Webhook failed: 524", latency_ms=1500.0
    )

    first = await status.get_status(placeholder.request_id)

    memory_store.get_message_by_request_id = AsyncMock(side_effect=AssertionError("store read"))
    second = await status.get_status(placeholder.request_id)
    third = await status.get_status(placeholder.request_id)

    assert first == second == third
    assert first["error_text"] == "Webhook failed: 524"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cache_disabled_reads_store(memory_store, placeholder):
    status = StatusQuery(memory_store, cache_size=0)
    await memory_store.complete_message(placeholder.id, status="completed", content="hi")

    assert status.cache is None
    assert (await status.get_status(placeholder.request_id))["status"] == "completed"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cached_payload_is_a_copy(memory_store, placeholder):
    status = StatusQuery(memory_store)
    await memory_store.complete_message(placeholder.id, status="completed", content="hi")

    result = await status.get_status(placeholder.request_id)
    result["content"] = "tampered"

    assert (await status.get_status(placeholder.request_id))["content"] == "hi"
