"""
SQLAlchemy-backed chat store.
Works with sqlite+aiosqlite in development and postgresql+asyncpg in production.

Version: 1.0.0
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .base import ChatStore, merge_completion_metadata
from .records import BotRecord, MessageRecord, SessionRecord, DEFAULT_SESSION_TITLE
from ..exceptions import StoreError
from ..models import Bot, BotAccess, ChatSession, Message
from ..models.schemas import MessageRole, MessageStatus
from ..realtime.change_feed import ChangeFeed, ChangeType
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


def _bot_record(row: Bot) -> BotRecord:
    return BotRecord(
        id=row.id,
        name=row.name,
        status=row.status or "active",
        webhook_url=row.webhook_url,
        webhook_headers=dict(row.webhook_headers or {}),
        timeout_seconds=row.timeout_seconds
    )


class SqlChatStore(ChatStore):
    """
    ChatStore on top of an async SQLAlchemy session factory.

    Database errors surface as StoreError. Change events are published only
    after the transaction commits.
    """

    def __init__(self, session_factory: async_sessionmaker, change_feed: Optional[ChangeFeed] = None):
        super().__init__(change_feed)
        self.session_factory = session_factory
        logger.info("SqlChatStore initialized")

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(f"Chat store constraint violated: {e.orig}")
                raise StoreError(f"Constraint violated: {e.orig}") from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Chat store database error: {e}")
                raise StoreError(str(e)) from e

    # ===========================
    # Bots
    # ===========================

    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        async with self._session() as session:
            row = await session.get(Bot, bot_id)
            return _bot_record(row) if row else None

    async def has_bot_access(self, tenant_id: str, bot_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(BotAccess).where(
                    BotAccess.tenant_id == tenant_id,
                    BotAccess.bot_id == bot_id
                )
            )
            return result.scalar_one() > 0

    async def add_bot(self, bot: BotRecord) -> BotRecord:
        async with self._session() as session:
            await session.merge(Bot(
                id=bot.id,
                name=bot.name,
                status=bot.status,
                webhook_url=bot.webhook_url,
                webhook_headers=dict(bot.webhook_headers),
                timeout_seconds=bot.timeout_seconds
            ))
        return bot

    async def grant_bot_access(self, tenant_id: str, bot_id: str) -> None:
        if await self.has_bot_access(tenant_id, bot_id):
            return
        async with self._session() as session:
            session.add(BotAccess(id=str(uuid.uuid4()), tenant_id=tenant_id, bot_id=bot_id))

    # ===========================
    # Sessions
    # ===========================

    async def create_session(
        self,
        tenant_id: str,
        user_id: str,
        bot_id: str,
        title: str = DEFAULT_SESSION_TITLE
    ) -> SessionRecord:
        now = utcnow()
        row = ChatSession(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            bot_id=bot_id,
            title=title,
            status="active",
            created_at=now,
            updated_at=now
        )
        async with self._session() as session:
            session.add(row)
        logger.debug(f"Created session {row.id}")
        return SessionRecord.model_validate(row)

    async def upsert_session_by_external_id(
        self,
        external_id: str,
        tenant_id: str,
        user_id: str,
        bot_id: str
    ) -> SessionRecord:
        now = utcnow()
        values = dict(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            bot_id=bot_id,
            external_id=external_id,
            title=DEFAULT_SESSION_TITLE,
            status="active",
            created_at=now,
            updated_at=now
        )
        # Only the owner of the same bot and tenant refreshes an existing row
        owned = and_(
            ChatSession.user_id == user_id,
            ChatSession.bot_id == bot_id,
            ChatSession.tenant_id == tenant_id
        )

        async with self._session() as session:
            dialect = session.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
                stmt = insert(ChatSession).values(**values).on_conflict_do_update(
                    index_elements=[ChatSession.external_id],
                    set_={"updated_at": now},
                    where=owned
                )
                await session.execute(stmt)
            else:
                touched = await session.execute(
                    update(ChatSession)
                    .where(ChatSession.external_id == external_id, owned)
                    .values(updated_at=now)
                )
                if touched.rowcount == 0:
                    existing = await session.execute(
                        select(ChatSession.id).where(ChatSession.external_id == external_id)
                    )
                    if existing.first() is None:
                        session.add(ChatSession(**values))

        return await self._session_by_external_id(external_id)

    async def _session_by_external_id(self, external_id: str) -> SessionRecord:
        async with self._session() as session:
            result = await session.execute(
                select(ChatSession).where(ChatSession.external_id == external_id)
            )
            return SessionRecord.model_validate(result.scalar_one())

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self._session() as session:
            row = await session.get(ChatSession, session_id)
            return SessionRecord.model_validate(row) if row else None

    async def update_session(self, session_id: str, **fields: Any) -> Optional[SessionRecord]:
        async with self._session() as session:
            row = await session.get(ChatSession, session_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            await session.flush()
            return SessionRecord.model_validate(row)

    async def touch_session(self, session_id: str, title_hint: Optional[str] = None) -> Optional[SessionRecord]:
        async with self._session() as session:
            row = await session.get(ChatSession, session_id)
            if row is None:
                return None
            now = utcnow()
            row.last_message_at = now
            row.updated_at = now
            if title_hint and row.title == DEFAULT_SESSION_TITLE:
                row.title = title_hint
            await session.flush()
            return SessionRecord.model_validate(row)

    # ===========================
    # Messages
    # ===========================

    async def insert_message(
        self,
        session_id: str,
        role: str,
        content: str,
        status: str,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        message_id: Optional[str] = None
    ) -> MessageRecord:
        row = Message(
            id=message_id or str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            status=status,
            request_id=request_id,
            message_metadata=dict(metadata or {}),
            created_at=utcnow()
        )

        async with self._session() as session:
            if role == MessageRole.ASSISTANT.value and request_id:
                existing = await session.execute(
                    select(Message.id).where(
                        Message.request_id == request_id,
                        Message.role == MessageRole.ASSISTANT.value
                    )
                )
                if existing.first() is not None:
                    raise StoreError(f"Request {request_id} already has an assistant message")
            session.add(row)

        record = MessageRecord.from_row(row)
        await self._publish(ChangeType.INSERT, record)
        return record

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        async with self._session() as session:
            row = await session.get(Message, message_id)
            return MessageRecord.from_row(row) if row else None

    async def get_message_by_request_id(self, request_id: str) -> Optional[MessageRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.request_id == request_id, Message.role == MessageRole.ASSISTANT.value)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return MessageRecord.from_row(row) if row else None

    async def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MessageRecord]:
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.created_at.asc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            result = await session.execute(stmt)
            return [MessageRecord.from_row(row) for row in result.scalars().all()]

    async def count_messages(self, session_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(Message).where(Message.session_id == session_id)
            )
            return result.scalar_one()

    async def recent_messages(
        self,
        session_id: str,
        limit: int,
        exclude_ids: Optional[List[str]] = None
    ) -> List[MessageRecord]:
        if limit <= 0:
            return []

        stmt = select(Message).where(Message.session_id == session_id)
        if exclude_ids:
            stmt = stmt.where(Message.id.not_in(exclude_ids))
        stmt = stmt.order_by(Message.created_at.desc()).limit(limit)

        async with self._session() as session:
            result = await session.execute(stmt)
            rows = [MessageRecord.from_row(row) for row in result.scalars().all()]

        rows.reverse()
        return rows

    async def complete_message(
        self,
        message_id: str,
        status: str,
        content: str,
        error_text: Optional[str] = None,
        latency_ms: Optional[float] = None,
        metadata_updates: Optional[Dict[str, Any]] = None
    ) -> Optional[MessageRecord]:
        async with self._session() as session:
            row = await session.get(Message, message_id)
            if row is None or row.status != MessageStatus.QUEUED.value:
                return None

            metadata = merge_completion_metadata(row.message_metadata, metadata_updates, utcnow())
            result = await session.execute(
                update(Message)
                .where(Message.id == message_id, Message.status == MessageStatus.QUEUED.value)
                .values(
                    status=status,
                    content=content,
                    error_text=error_text,
                    latency_ms=latency_ms,
                    message_metadata=metadata
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Another writer reached a terminal state first
                return None

            await session.refresh(row)
            record = MessageRecord.from_row(row)

        await self._publish(ChangeType.UPDATE, record)
        return record

    async def get_stats(self) -> Dict[str, Any]:
        async with self._session() as session:
            sessions = (await session.execute(select(func.count()).select_from(ChatSession))).scalar_one()
            messages = (await session.execute(select(func.count()).select_from(Message))).scalar_one()
            queued = (await session.execute(
                select(func.count()).select_from(Message).where(Message.status == MessageStatus.QUEUED.value)
            )).scalar_one()
        return {"backend": "sql", "sessions": sessions, "messages": messages, "queued": queued}
