"""
Chat persistence package.
Provides the ChatStore abstraction with SQL and in-memory implementations.

Version: 1.0.0
"""
from typing import Optional

from .base import ChatStore, title_from_text
from .records import BotRecord, MessageRecord, SessionRecord, DEFAULT_SESSION_TITLE
from .in_memory_store import InMemoryChatStore
from .sql_store import SqlChatStore
from ..realtime.change_feed import ChangeFeed


def create_chat_store(
    store_type: str = "sql",
    change_feed: Optional[ChangeFeed] = None,
    **kwargs
) -> ChatStore:
    """
    Factory function to create a chat store.

    Args:
        store_type: Type of store ('sql' or 'in_memory')
        change_feed: Feed receiving message INSERT/UPDATE events
        **kwargs: Store-specific configuration

    Returns:
        ChatStore instance

    Examples:
        # In-memory store
        store = create_chat_store('in_memory', change_feed=feed)

        # SQL store
        store = create_chat_store('sql', change_feed=feed, session_factory=factory)
    """
    if store_type == "in_memory":
        return InMemoryChatStore(change_feed=change_feed)

    elif store_type == "sql":
        if "session_factory" not in kwargs:
            raise ValueError("session_factory is required for the sql store")
        return SqlChatStore(kwargs["session_factory"], change_feed=change_feed)

    else:
        raise ValueError(f"Unknown store type: {store_type}")


__all__ = [
    'ChatStore',
    'BotRecord',
    'MessageRecord',
    'SessionRecord',
    'DEFAULT_SESSION_TITLE',
    'InMemoryChatStore',
    'SqlChatStore',
    'create_chat_store',
    'title_from_text'
]
