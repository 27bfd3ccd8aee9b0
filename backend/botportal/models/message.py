"""
Message model for storing conversation messages.
"""
from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, JSON, String, Text, text
from ..utils.clock import utcnow

from ..database import Base


class Message(Base):
    """
    Chat message model.

    Assistant rows are created as placeholders with status ``queued`` and
    mutated in place to ``completed`` or ``failed`` exactly once. A request id
    has at most one assistant row.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index(
            "uq_messages_assistant_request_id",
            "request_id",
            unique=True,
            postgresql_where=text("role = 'assistant'"),
            sqlite_where=text("role = 'assistant'")
        ),
    )

    id = Column(String(36), primary_key=True)
    session_id = Column(String(36), ForeignKey("chat_sessions.id"), nullable=False, index=True)

    role = Column(String(20), nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False, default="")

    status = Column(String(20), nullable=False, default="delivered")  # delivered, queued, completed, failed
    request_id = Column(String(100), nullable=True, index=True)
    error_text = Column(Text, nullable=True)
    latency_ms = Column(Float, nullable=True)

    message_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<Message(id={self.id}, session={self.session_id}, role={self.role}, status={self.status})>"
