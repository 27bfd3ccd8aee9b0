"""
Store-neutral records returned by every ChatStore implementation.

Version: 1.0.0
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.schemas import MessageStatus
from ..utils.clock import isoformat

DEFAULT_SESSION_TITLE = "New Chat"


class BotRecord(BaseModel):
    """Bot as seen by the delivery subsystem."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    status: str = "active"
    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class SessionRecord(BaseModel):
    """Chat session row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    user_id: str
    bot_id: str
    external_id: Optional[str] = None
    title: str = DEFAULT_SESSION_TITLE
    status: str = "active"
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "external_id": self.external_id,
            "title": self.title,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "last_message_at": isoformat(self.last_message_at),
        }


class MessageRecord(BaseModel):
    """Message row, including assistant placeholders."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    role: str
    content: str = ""
    status: str = MessageStatus.DELIVERED.value
    request_id: Optional[str] = None
    error_text: Optional[str] = None
    latency_ms: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in (MessageStatus.COMPLETED.value, MessageStatus.FAILED.value)

    @classmethod
    def from_row(cls, row) -> "MessageRecord":
        return cls(
            id=row.id,
            session_id=row.session_id,
            role=row.role,
            content=row.content or "",
            status=row.status,
            request_id=row.request_id,
            error_text=row.error_text,
            latency_ms=row.latency_ms,
            metadata=dict(row.message_metadata or {}),
            created_at=row.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "status": self.status,
            "request_id": self.request_id,
            "error_text": self.error_text,
            "latency_ms": self.latency_ms,
            "metadata": dict(self.metadata),
            "created_at": isoformat(self.created_at),
        }
