"""
Database models package.
Exports all SQLAlchemy models for the application.

Version: 1.0.0
"""

from .session import ChatSession
from .message import Message
from .bot import Bot, BotAccess

__all__ = [
    'ChatSession',
    'Message',
    'Bot',
    'BotAccess'
]
