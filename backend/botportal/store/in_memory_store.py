"""
In-memory chat store implementation.
Suitable for development, tests and single-instance deployments.

Version: 1.0.0
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set, Tuple

from .base import ChatStore, merge_completion_metadata
from .records import BotRecord, MessageRecord, SessionRecord, DEFAULT_SESSION_TITLE
from ..exceptions import StoreError
from ..models.schemas import MessageStatus, MessageRole
from ..realtime.change_feed import ChangeFeed, ChangeType
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class InMemoryChatStore(ChatStore):
    """
    In-memory implementation of ChatStore.

    Features:
    - Async-safe operations using one asyncio lock
    - Records returned as deep copies
    - Conditional terminal transition identical to the SQL store

    Limitations:
    - Data lost on restart
    - Not shared across multiple instances
    """

    def __init__(self, change_feed: Optional[ChangeFeed] = None):
        super().__init__(change_feed)
        self.sessions: Dict[str, SessionRecord] = {}
        self.external_ids: Dict[str, str] = {}
        self.messages: "OrderedDict[str, MessageRecord]" = OrderedDict()
        self.request_index: Dict[str, str] = {}
        self.bots: Dict[str, BotRecord] = {}
        self.bot_access: Set[Tuple[str, str]] = set()
        self.lock = asyncio.Lock()

        logger.info("InMemoryChatStore initialized")

    # ===========================
    # Bots
    # ===========================

    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        bot = self.bots.get(bot_id)
        return bot.model_copy(deep=True) if bot else None

    async def has_bot_access(self, tenant_id: str, bot_id: str) -> bool:
        return (tenant_id, bot_id) in self.bot_access

    async def add_bot(self, bot: BotRecord) -> BotRecord:
        async with self.lock:
            self.bots[bot.id] = bot.model_copy(deep=True)
        return bot

    async def grant_bot_access(self, tenant_id: str, bot_id: str) -> None:
        async with self.lock:
            self.bot_access.add((tenant_id, bot_id))

    # ===========================
    # Sessions
    # ===========================

    def _new_session(self, tenant_id, user_id, bot_id, title, external_id=None) -> SessionRecord:
        now = utcnow()
        record = SessionRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            bot_id=bot_id,
            external_id=external_id,
            title=title,
            status="active",
            created_at=now,
            updated_at=now
        )
        self.sessions[record.id] = record
        if external_id:
            self.external_ids[external_id] = record.id
        return record

    async def create_session(
        self,
        tenant_id: str,
        user_id: str,
        bot_id: str,
        title: str = DEFAULT_SESSION_TITLE
    ) -> SessionRecord:
        async with self.lock:
            record = self._new_session(tenant_id, user_id, bot_id, title)
            logger.debug(f"Created session {record.id}")
            return record.model_copy(deep=True)

    async def upsert_session_by_external_id(
        self,
        external_id: str,
        tenant_id: str,
        user_id: str,
        bot_id: str
    ) -> SessionRecord:
        async with self.lock:
            session_id = self.external_ids.get(external_id)
            if session_id is not None:
                record = self.sessions[session_id]
                if (record.user_id, record.bot_id, record.tenant_id) == (user_id, bot_id, tenant_id):
                    record.updated_at = utcnow()
                return record.model_copy(deep=True)

            record = self._new_session(
                tenant_id, user_id, bot_id, DEFAULT_SESSION_TITLE, external_id=external_id
            )
            logger.debug(f"Created session {record.id} for external id {external_id}")
            return record.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self.sessions.get(session_id)
        return record.model_copy(deep=True) if record else None

    async def update_session(self, session_id: str, **fields: Any) -> Optional[SessionRecord]:
        async with self.lock:
            record = self.sessions.get(session_id)
            if record is None:
                return None
            updated = record.model_copy(update={**fields, "updated_at": utcnow()})
            self.sessions[session_id] = updated
            return updated.model_copy(deep=True)

    async def touch_session(self, session_id: str, title_hint: Optional[str] = None) -> Optional[SessionRecord]:
        async with self.lock:
            record = self.sessions.get(session_id)
            if record is None:
                return None
            now = utcnow()
            record.last_message_at = now
            record.updated_at = now
            if title_hint and record.title == DEFAULT_SESSION_TITLE:
                record.title = title_hint
            return record.model_copy(deep=True)

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
        async with self.lock:
            if session_id not in self.sessions:
                raise StoreError(f"Session {session_id} does not exist")

            message_id = message_id or str(uuid.uuid4())
            if message_id in self.messages:
                raise StoreError(f"Message {message_id} already exists")

            if role == MessageRole.ASSISTANT.value and request_id and request_id in self.request_index:
                raise StoreError(f"Request {request_id} already has an assistant message")

            record = MessageRecord(
                id=message_id,
                session_id=session_id,
                role=role,
                content=content,
                status=status,
                request_id=request_id,
                metadata=dict(metadata or {}),
                created_at=utcnow()
            )
            self.messages[message_id] = record
            if role == MessageRole.ASSISTANT.value and request_id:
                self.request_index[request_id] = message_id
            snapshot = record.model_copy(deep=True)

        await self._publish(ChangeType.INSERT, snapshot)
        return snapshot

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        record = self.messages.get(message_id)
        return record.model_copy(deep=True) if record else None

    async def get_message_by_request_id(self, request_id: str) -> Optional[MessageRecord]:
        message_id = self.request_index.get(request_id)
        if message_id is None:
            return None
        return await self.get_message(message_id)

    def _session_messages(self, session_id: str) -> List[MessageRecord]:
        return [m for m in self.messages.values() if m.session_id == session_id]

    async def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MessageRecord]:
        rows = self._session_messages(session_id)[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [m.model_copy(deep=True) for m in rows]

    async def count_messages(self, session_id: str) -> int:
        return len(self._session_messages(session_id))

    async def recent_messages(
        self,
        session_id: str,
        limit: int,
        exclude_ids: Optional[List[str]] = None
    ) -> List[MessageRecord]:
        if limit <= 0:
            return []
        excluded = set(exclude_ids or ())
        rows = [m for m in self._session_messages(session_id) if m.id not in excluded]
        return [m.model_copy(deep=True) for m in rows[-limit:]]

    async def complete_message(
        self,
        message_id: str,
        status: str,
        content: str,
        error_text: Optional[str] = None,
        latency_ms: Optional[float] = None,
        metadata_updates: Optional[Dict[str, Any]] = None
    ) -> Optional[MessageRecord]:
        async with self.lock:
            record = self.messages.get(message_id)
            if record is None or record.status != MessageStatus.QUEUED.value:
                return None

            record.status = status
            record.content = content
            record.error_text = error_text
            record.latency_ms = latency_ms
            record.metadata = merge_completion_metadata(record.metadata, metadata_updates, utcnow())
            snapshot = record.model_copy(deep=True)

        await self._publish(ChangeType.UPDATE, snapshot)
        return snapshot

    async def get_stats(self) -> Dict[str, Any]:
        queued = sum(1 for m in self.messages.values() if m.status == MessageStatus.QUEUED.value)
        return {
            "backend": "in_memory",
            "sessions": len(self.sessions),
            "messages": len(self.messages),
            "queued": queued,
            "bots": len(self.bots)
        }
