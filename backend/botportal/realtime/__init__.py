"""
Realtime change notification package.

Version: 1.0.0
"""
from .change_feed import (
    ChangeType,
    ChangeEvent,
    Subscription,
    ChangeFeed,
    InMemoryChangeFeed
)
from .redis_change_feed import RedisChangeFeed


def create_change_feed(feed_type: str = "in_memory", **kwargs) -> ChangeFeed:
    """
    Factory function to create a change feed.

    Args:
        feed_type: 'in_memory' or 'redis'
        **kwargs: Backend-specific configuration

    Returns:
        ChangeFeed instance
    """
    if feed_type == "in_memory":
        return InMemoryChangeFeed(**kwargs)

    elif feed_type == "redis":
        return RedisChangeFeed(**kwargs)

    else:
        raise ValueError(f"Unknown change feed type: {feed_type}")


__all__ = [
    'ChangeType',
    'ChangeEvent',
    'Subscription',
    'ChangeFeed',
    'InMemoryChangeFeed',
    'RedisChangeFeed',
    'create_change_feed'
]
