"""
Abstract chat store interface.
Defines the contract for session and message persistence implementations.

Version: 1.0.0
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .records import BotRecord, MessageRecord, SessionRecord, DEFAULT_SESSION_TITLE
from ..realtime.change_feed import ChangeEvent, ChangeFeed, ChangeType

logger = logging.getLogger(__name__)


class ChatStore(ABC):
    """
    Abstract base class for chat persistence.

    Implementations must provide async-safe operations for:
    - Resolving and mutating chat sessions
    - Inserting messages and listing history
    - Transitioning an assistant placeholder out of ``queued`` at most once
    - Reading the bot catalogue and tenant access rows

    Every committed message insert or update is published to the attached
    change feed.
    """

    def __init__(self, change_feed: Optional[ChangeFeed] = None):
        self.change_feed = change_feed

    async def _publish(self, event_type: ChangeType, message: MessageRecord) -> None:
        if self.change_feed is None:
            return
        try:
            await self.change_feed.publish(
                ChangeEvent(event_type=event_type, session_id=message.session_id, new=message.to_dict())
            )
        except Exception as e:
            # The row is already committed; polling still observes it
            logger.error(f"Failed to publish {event_type.value} for message {message.id}: {e}")

    # ===========================
    # Bots
    # ===========================

    @abstractmethod
    async def get_bot(self, bot_id: str) -> Optional[BotRecord]:
        """
        Get a bot by ID.

        Args:
            bot_id: Bot identifier

        Returns:
            BotRecord or None if not found
        """
        pass

    @abstractmethod
    async def has_bot_access(self, tenant_id: str, bot_id: str) -> bool:
        """Whether a bot_access row links the tenant to the bot."""
        pass

    @abstractmethod
    async def add_bot(self, bot: BotRecord) -> BotRecord:
        """Insert or replace a bot. Used for seeding."""
        pass

    @abstractmethod
    async def grant_bot_access(self, tenant_id: str, bot_id: str) -> None:
        """Link a tenant to a bot. Used for seeding."""
        pass

    # ===========================
    # Sessions
    # ===========================

    @abstractmethod
    async def create_session(
        self,
        tenant_id: str,
        user_id: str,
        bot_id: str,
        title: str = DEFAULT_SESSION_TITLE
    ) -> SessionRecord:
        """
        Always insert a new session row.

        Returns:
            The created SessionRecord
        """
        pass

    @abstractmethod
    async def upsert_session_by_external_id(
        self,
        external_id: str,
        tenant_id: str,
        user_id: str,
        bot_id: str
    ) -> SessionRecord:
        """
        Create the session for external_id, or return the existing one.

        An existing session is touched only when tenant, user and bot all
        match; otherwise it is returned unchanged for the caller to reject.
        Concurrent calls for one external_id must return the same session.
        """
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        pass

    @abstractmethod
    async def update_session(self, session_id: str, **fields: Any) -> Optional[SessionRecord]:
        """
        Update session columns (title, status, last_message_at).

        Returns:
            Updated SessionRecord or None if not found
        """
        pass

    @abstractmethod
    async def touch_session(self, session_id: str, title_hint: Optional[str] = None) -> Optional[SessionRecord]:
        """
        Record message activity on a session.

        Sets last_message_at, and replaces the title with title_hint while the
        title is still the default.
        """
        pass

    # ===========================
    # Messages
    # ===========================

    @abstractmethod
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
        """
        Insert a message row and publish an INSERT event.

        Raises:
            StoreError: if the row could not be written
        """
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        pass

    @abstractmethod
    async def get_message_by_request_id(self, request_id: str) -> Optional[MessageRecord]:
        """The assistant row for a request id, if any."""
        pass

    @abstractmethod
    async def list_messages(
        self,
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MessageRecord]:
        """Messages of a session, oldest first."""
        pass

    @abstractmethod
    async def count_messages(self, session_id: str) -> int:
        pass

    @abstractmethod
    async def recent_messages(
        self,
        session_id: str,
        limit: int,
        exclude_ids: Optional[List[str]] = None
    ) -> List[MessageRecord]:
        """The last ``limit`` messages of a session, returned oldest first."""
        pass

    @abstractmethod
    async def complete_message(
        self,
        message_id: str,
        status: str,
        content: str,
        error_text: Optional[str] = None,
        latency_ms: Optional[float] = None,
        metadata_updates: Optional[Dict[str, Any]] = None
    ) -> Optional[MessageRecord]:
        """
        Move a queued message to a terminal status.

        Conditional on the row still being ``queued``; publishes an UPDATE
        event when the transition happens.

        Returns:
            The updated MessageRecord, or None if the row is missing or
            already terminal.
        """
        pass

    async def get_stats(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}

    async def close(self) -> None:
        pass


def title_from_text(text: str, max_length: int = 50) -> str:
    """Session title derived from the first user message."""
    title = " ".join(text.split())
    if len(title) > max_length:
        title = title[:max_length - 3].rstrip() + "..."
    return title or DEFAULT_SESSION_TITLE


def merge_completion_metadata(
    existing: Dict[str, Any],
    updates: Optional[Dict[str, Any]],
    completed_at: datetime
) -> Dict[str, Any]:
    merged = dict(existing or {})
    merged.update(updates or {})
    merged["processing"] = False
    merged["completed_at"] = completed_at.isoformat()
    return merged
