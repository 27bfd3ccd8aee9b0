"""
Pydantic schemas for request/response validation.

Wire names are camelCase to match the web client; Python attributes stay
snake_case and both spellings are accepted on input.
"""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum


class MessageRole(str, Enum):
    """Message role enumeration."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Message lifecycle status."""
    DELIVERED = "delivered"
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETED, MessageStatus.FAILED)


class SessionStatus(str, Enum):
    """Session status enumeration."""
    ACTIVE = "active"
    DELETED = "deleted"


class SessionPolicy(str, Enum):
    """How a session id is obtained for a (tenant, user, bot)."""
    NEW = "new"
    EXTERNAL = "external"
    CONTINUE = "continue"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Request Schemas

class CreateSessionRequest(_CamelModel):
    """Request to create or resolve a session."""
    bot_id: Optional[str] = Field(default=None, alias="botId")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    external_id: Optional[str] = Field(default=None, alias="externalId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    policy: Optional[SessionPolicy] = None
    user_id: Optional[str] = Field(default=None, alias="userId")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "botId": "2f1c7d1e-4b9a-4f3e-9d53-0a8b1f2c3d4e",
                "externalId": "web-tab-42",
                "policy": "external"
            }
        }
    )


class RenameSessionRequest(_CamelModel):
    """Request to rename a session."""
    title: Optional[str] = None


class SubmitMessageRequest(_CamelModel):
    """Request to submit a chat message for asynchronous processing."""
    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sessionId", "conversationId", "session_id")
    )
    text: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("text", "message")
    )
    user_id: Optional[str] = Field(default=None, alias="userId")
    bot_id: Optional[str] = Field(default=None, alias="botId")
    bot_name: Optional[str] = Field(default=None, alias="botName")
    message_id: Optional[str] = Field(default=None, alias="messageId", max_length=64)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "sessionId": "8c0f6d5e-1f7a-4c3b-b1d2-9e8f7a6b5c4d",
                "text": "What are your opening hours?",
                "messageId": "temp-1700000000000"
            }
        }
    )


class AgentCallbackRequest(_CamelModel):
    """Terminal result pushed by the external agent."""
    assistant_message_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("assistantMessageId", "assistant_message_id")
    )
    request_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("requestId", "request_id")
    )
    status: str = "completed"
    content: Optional[str] = None
    error_text: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("errorText", "error_text")
    )

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in (MessageStatus.COMPLETED.value, MessageStatus.FAILED.value):
            raise ValueError("status must be 'completed' or 'failed'")
        return v


# Response Schemas

class AckResponse(_CamelModel):
    """Immediate acknowledgment for a submitted message."""
    request_id: str = Field(alias="requestId")
    status: str = MessageStatus.QUEUED.value
    assistant_message_id: str = Field(alias="assistantMessageId")
    message: str = "Message queued for processing"


class StatusResponse(BaseModel):
    """Current state of a request. Field names follow the polling client."""
    status: str
    content: Optional[str] = None
    output_text: Optional[str] = None
    error_text: Optional[str] = None
    latency_ms: Optional[float] = None
    message: Optional[str] = None


class SessionResponse(_CamelModel):
    """Session information response."""
    session_id: str = Field(alias="sessionId")
    tenant_id: str = Field(alias="tenantId")
    user_id: str = Field(alias="userId")
    bot_id: str = Field(alias="botId")
    external_id: Optional[str] = Field(default=None, alias="externalId")
    title: str
    status: SessionStatus
    created_at: datetime = Field(alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    last_message_at: Optional[datetime] = Field(default=None, alias="lastMessageAt")


class MessageHistory(_CamelModel):
    """Message history response."""
    messages: List[Dict[str, Any]]
    total: int
    session_id: str = Field(alias="sessionId")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    version: str
    services: Dict[str, str] = {}


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    details: Optional[Any] = None
    request_id: Optional[str] = None
