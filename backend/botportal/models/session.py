"""
Chat session model.
"""
from sqlalchemy import Column, String, DateTime
from ..utils.clock import utcnow

from ..database import Base


class ChatSession(Base):
    """
    Conversation between one user and one bot inside a tenant.
    """
    __tablename__ = "chat_sessions"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    bot_id = Column(String(36), nullable=False, index=True)

    # Client-supplied key for idempotent creation
    external_id = Column(String(255), nullable=True, unique=True)

    title = Column(String(100), nullable=False, default="New Chat")
    status = Column(String(20), nullable=False, default="active")  # active, deleted

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_message_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ChatSession(id={self.id}, user={self.user_id}, bot={self.bot_id}, status={self.status})>"
