"""
API routes module initialization.
"""
from . import chat, sessions, health, agent_callback, mock_agent

__all__ = ["chat", "sessions", "health", "agent_callback", "mock_agent"]
