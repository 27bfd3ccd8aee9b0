"""
API module for the bot portal.
"""

from .websocket import websocket_endpoint, ConnectionManager, manager
from .routes import chat, sessions, health, agent_callback, mock_agent

__all__ = [
    "websocket_endpoint",
    "ConnectionManager",
    "manager",
    "chat",
    "sessions",
    "health",
    "agent_callback",
    "mock_agent",
]
