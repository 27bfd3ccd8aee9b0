"""
Tests for ChatStore implementations.
Each test runs against the in-memory store and the aiosqlite-backed SQL store.
"""
import pytest
import asyncio

from sqlalchemy.exc import IntegrityError

from botportal.database import build_async_engine, build_session_factory, create_tables
from botportal.exceptions import StoreError
from botportal.models import Message
from botportal.models.schemas import MessageRole, MessageStatus, SessionStatus
from botportal.realtime import ChangeType
from botportal.store import SqlChatStore
from botportal.store.base import title_from_text

from conftest import BOT, OTHER_TENANT, OTHER_USER, RESTRICTED_BOT, TENANT, USER, seed_catalogue


async def _session(store, user_id=USER):
    return await store.create_session(tenant_id=TENANT, user_id=user_id, bot_id=BOT)


async def _placeholder(store, session_id, request_id="1700000000000-abc"):
    return await store.insert_message(
        session_id=session_id,
        role=MessageRole.ASSISTANT.value,
        content="🤖 Processing your question...",
        status=MessageStatus.QUEUED.value,
        request_id=request_id,
        metadata={"processing": True}
    )


# ===========================
# Catalogue
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_bot_lookup_and_access(chat_store):
    bot = await chat_store.get_bot(BOT)
    assert bot is not None
    assert bot.name == "Support Bot"
    assert bot.is_active

    assert await chat_store.get_bot("missing") is None
    assert await chat_store.has_bot_access(TENANT, BOT) is True
    assert await chat_store.has_bot_access(TENANT, "bot-restricted") is False


# ===========================
# Sessions
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_session_always_inserts(chat_store):
    first = await _session(chat_store)
    second = await _session(chat_store)

    assert first.id != second.id
    assert first.title == "New Chat"
    assert first.status == SessionStatus.ACTIVE.value


@pytest.mark.integration
@pytest.mark.asyncio
async def test_upsert_by_external_id_is_idempotent(chat_store):
    first = await chat_store.upsert_session_by_external_id("ext-1", TENANT, USER, BOT)
    second = await chat_store.upsert_session_by_external_id("ext-1", TENANT, USER, BOT)
    other = await chat_store.upsert_session_by_external_id("ext-2", TENANT, USER, BOT)

    assert first.id == second.id
    assert other.id != first.id
    assert second.external_id == "ext-1"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_upserts_resolve_to_one_session(chat_store):
    results = await asyncio.gather(*[
        chat_store.upsert_session_by_external_id("ext-race", TENANT, USER, BOT)
        for _ in range(5)
    ])

    assert len({session.id for session in results}) == 1
    assert len({session.external_id for session in results}) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_external_id_is_touched_only_by_its_owner(chat_store):
    owned = await chat_store.upsert_session_by_external_id("ext-owned", TENANT, USER, BOT)
    await asyncio.sleep(0.01)

    attempts = [
        (TENANT, OTHER_USER, BOT),
        (TENANT, USER, RESTRICTED_BOT),
        (OTHER_TENANT, USER, BOT),
    ]
    for tenant_id, user_id, bot_id in attempts:
        returned = await chat_store.upsert_session_by_external_id("ext-owned", tenant_id, user_id, bot_id)
        assert returned.id == owned.id
        assert (returned.tenant_id, returned.user_id, returned.bot_id) == (TENANT, USER, BOT)

    stored = await chat_store.get_session(owned.id)
    assert stored.updated_at == owned.updated_at

    await asyncio.sleep(0.01)
    touched = await chat_store.upsert_session_by_external_id("ext-owned", TENANT, USER, BOT)
    assert touched.updated_at > owned.updated_at


@pytest.mark.integration
@pytest.mark.asyncio
async def test_touch_session_sets_title_once(chat_store):
    session = await _session(chat_store)

    touched = await chat_store.touch_session(session.id, title_hint="How do I reset my password?")
    assert touched.title == "How do I reset my password?"
    assert touched.last_message_at is not None

    touched = await chat_store.touch_session(session.id, title_hint="Another question")
    assert touched.title == "How do I reset my password?"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_update_session_soft_delete(chat_store):
    session = await _session(chat_store)

    updated = await chat_store.update_session(session.id, status=SessionStatus.DELETED.value)
    assert updated.status == "deleted"

    stored = await chat_store.get_session(session.id)
    assert stored is not None
    assert not stored.is_active

    assert await chat_store.update_session("missing", title="x") is None


# ===========================
# Messages
# ===========================

@pytest.mark.integration
@pytest.mark.asyncio
async def test_insert_and_lookup_by_request_id(chat_store):
    session = await _session(chat_store)
    await chat_store.insert_message(
        session.id, MessageRole.USER.value, "hello", MessageStatus.DELIVERED.value,
        request_id="1700000000000-abc"
    )
    placeholder = await _placeholder(chat_store, session.id)

    found = await chat_store.get_message_by_request_id("1700000000000-abc")
    assert found is not None
    assert found.id == placeholder.id
    assert found.role == "assistant"
    assert found.status == "queued"
    assert found.metadata["processing"] is True

    assert await chat_store.get_message_by_request_id("unknown") is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_second_placeholder_for_request_is_rejected(chat_store):
    session = await _session(chat_store)
    first = await _placeholder(chat_store, session.id, request_id="1700000000000-same")

    with pytest.raises(StoreError):
        await _placeholder(chat_store, session.id, request_id="1700000000000-same")

    messages = await chat_store.list_messages(session.id)
    assert [m.id for m in messages] == [first.id]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_database_allows_one_assistant_row_per_request(sql_store):
    session = await _session(sql_store)

    async with sql_store.session_factory() as db:
        db.add_all([
            Message(id="u-1", session_id=session.id, role="user", content="hi",
                    status="delivered", request_id="1700000000000-same"),
            Message(id="a-1", session_id=session.id, role="assistant", content="",
                    status="queued", request_id="1700000000000-same"),
        ])
        await db.commit()

        db.add(Message(id="a-2", session_id=session.id, role="assistant", content="",
                       status="queued", request_id="1700000000000-same"))
        with pytest.raises(IntegrityError):
            await db.commit()


@pytest.fixture
async def file_sql_store(tmp_path, change_feed):
    """SQL store on a file database, one connection per session."""
    engine = build_async_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    await create_tables(engine)
    store = SqlChatStore(build_session_factory(engine), change_feed=change_feed)
    await seed_catalogue(store)

    yield store

    await engine.dispose()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_placeholders_keep_one_row(file_sql_store):
    session = await _session(file_sql_store)

    results = await asyncio.gather(*[
        _placeholder(file_sql_store, session.id, request_id="1700000000000-same")
        for _ in range(3)
    ], return_exceptions=True)

    stored = [r for r in results if not isinstance(r, Exception)]
    assert len(stored) == 1
    assert all(isinstance(r, StoreError) for r in results if isinstance(r, Exception))

    messages = await file_sql_store.list_messages(session.id)
    assert [m.id for m in messages] == [stored[0].id]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_complete_message_is_at_most_once(chat_store):
    session = await _session(chat_store)
    placeholder = await _placeholder(chat_store, session.id)

    completed = await chat_store.complete_message(
        placeholder.id,
        status=MessageStatus.COMPLETED.value,
        content="hi",
        latency_ms=120.0,
        metadata_updates={"latency_ms": 120.0}
    )
    assert completed is not None
    assert completed.status == "completed"
    assert completed.content == "hi"
    assert completed.latency_ms == 120.0
    assert completed.metadata["processing"] is False

    again = await chat_store.complete_message(
        placeholder.id,
        status=MessageStatus.FAILED.value,
        content="late failure",
        error_text="Webhook failed: 500"
    )
    assert again is None

    stored = await chat_store.get_message(placeholder.id)
    assert stored.status == "completed"
    assert stored.content == "hi"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_list_and_recent_messages(chat_store):
    session = await _session(chat_store)
    for i in range(4):
        await chat_store.insert_message(session.id, MessageRole.USER.value, f"m{i}", MessageStatus.DELIVERED.value)
        await asyncio.sleep(0.001)
    placeholder = await _placeholder(chat_store, session.id)

    page = await chat_store.list_messages(session.id, limit=2, offset=1)
    assert [m.content for m in page] == ["m1", "m2"]
    assert await chat_store.count_messages(session.id) == 5

    recent = await chat_store.recent_messages(session.id, limit=2, exclude_ids=[placeholder.id])
    assert [m.content for m in recent] == ["m2", "m3"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_message_changes_are_published(chat_store, change_feed):
    session = await _session(chat_store)
    subscription = await change_feed.subscribe(session.id)

    placeholder = await _placeholder(chat_store, session.id)
    await chat_store.complete_message(placeholder.id, status="completed", content="hi")

    inserted = await subscription.get(timeout=1)
    updated = await subscription.get(timeout=1)

    assert inserted.event_type == ChangeType.INSERT
    assert inserted.new["id"] == placeholder.id
    assert inserted.new["status"] == "queued"
    assert updated.event_type == ChangeType.UPDATE
    assert updated.new["status"] == "completed"

    await subscription.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sessions_are_isolated_per_user(chat_store):
    mine = await _session(chat_store, USER)
    theirs = await _session(chat_store, OTHER_USER)

    assert (await chat_store.get_session(mine.id)).user_id == USER
    assert (await chat_store.get_session(theirs.id)).user_id == OTHER_USER


@pytest.mark.unit
def test_title_from_text():
    assert title_from_text("  hello   world ") == "hello world"
    assert title_from_text("") == "New Chat"

    long_title = title_from_text("x" * 80)
    assert len(long_title) == 50
    assert long_title.endswith("...")
