"""
Session API routes.
"""
from fastapi import APIRouter, Depends, Query
from typing import Any, Dict, Optional
import logging

from ..deps import get_optional_identity, get_services, resolve_caller
from ...models.schemas import (
    CreateSessionRequest,
    RenameSessionRequest,
    MessageHistory,
    SessionResponse
)
from ...services.auth_service import CallerIdentity
from ...services.container import PortalServices
from ...store.records import SessionRecord

logger = logging.getLogger(__name__)

router = APIRouter()


def _session_response(record: SessionRecord) -> SessionResponse:
    return SessionResponse(
        session_id=record.id,
        tenant_id=record.tenant_id,
        user_id=record.user_id,
        bot_id=record.bot_id,
        external_id=record.external_id,
        title=record.title,
        status=record.status,
        created_at=record.created_at,
        updated_at=record.updated_at,
        last_message_at=record.last_message_at
    )


@router.post("")
async def create_session(
    request: CreateSessionRequest,
    identity: Optional[CallerIdentity] = Depends(get_optional_identity),
    services: PortalServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Create or resolve a chat session.

    Args:
        request: botId, optional tenantId, externalId and policy

    Returns:
        The session id and session details
    """
    caller = resolve_caller(identity, request.user_id)

    session = await services.resolver.resolve_session(
        caller,
        bot_id=request.bot_id,
        tenant_id=request.tenant_id,
        external_id=request.external_id,
        policy=request.policy,
        session_id=request.session_id
    )

    return {
        "sessionId": session.id,
        "session": _session_response(session).model_dump(by_alias=True, mode="json")
    }


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    identity: Optional[CallerIdentity] = Depends(get_optional_identity),
    services: PortalServices = Depends(get_services)
):
    """Get session information."""
    caller = resolve_caller(identity, user_id)
    session = await services.resolver.get_owned_session(caller, session_id)
    return _session_response(session)


@router.put("/{session_id}", response_model=SessionResponse)
async def rename_session(
    session_id: str,
    request: RenameSessionRequest,
    user_id: Optional[str] = Query(None, alias="userId"),
    identity: Optional[CallerIdentity] = Depends(get_optional_identity),
    services: PortalServices = Depends(get_services)
):
    """Rename a session (1-100 characters, trimmed)."""
    caller = resolve_caller(identity, user_id)
    session = await services.resolver.rename_session(caller, session_id, request.title)
    return _session_response(session)


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    identity: Optional[CallerIdentity] = Depends(get_optional_identity),
    services: PortalServices = Depends(get_services)
) -> Dict[str, Any]:
    """Soft delete a session."""
    caller = resolve_caller(identity, user_id)
    await services.resolver.delete_session(caller, session_id)
    return {"success": True, "sessionId": session_id}


@router.get("/{session_id}/messages", response_model=MessageHistory)
async def get_session_messages(
    session_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: Optional[str] = Query(None, alias="userId"),
    identity: Optional[CallerIdentity] = Depends(get_optional_identity),
    services: PortalServices = Depends(get_services)
):
    """
    Get message history for a session, oldest first.

    Args:
        limit: Maximum number of messages
        offset: Offset for pagination
    """
    caller = resolve_caller(identity, user_id)
    messages, total = await services.resolver.list_messages(caller, session_id, limit=limit, offset=offset)

    return MessageHistory(
        messages=[message.to_dict() for message in messages],
        total=total,
        session_id=session_id
    )
