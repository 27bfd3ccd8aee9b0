"""
Chat API routes: asynchronous submit and status polling.
"""
from fastapi import APIRouter, Depends, Query
from typing import Any, Dict, Optional
import logging

from ..deps import get_optional_identity, get_services, resolve_caller
from ...models.schemas import AckResponse, SubmitMessageRequest
from ...services.auth_service import CallerIdentity
from ...services.container import PortalServices

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/submit", response_model=AckResponse, status_code=202)
async def submit_message(
    request: SubmitMessageRequest,
    identity: Optional[CallerIdentity] = Depends(get_optional_identity),
    services: PortalServices = Depends(get_services)
):
    """
    Queue a message for the bot and acknowledge immediately.

    The assistant reply arrives later through the websocket or the status
    endpoint.

    Returns:
        requestId and the id of the assistant placeholder
    """
    caller = resolve_caller(identity, request.user_id)

    ack = await services.dispatcher.submit(
        session_id=request.session_id,
        text=request.text,
        user_id=caller.user_id if caller else None,
        bot_id=request.bot_id,
        bot_name=request.bot_name,
        message_id=request.message_id
    )

    return AckResponse(
        request_id=ack.request_id,
        status=ack.status,
        assistant_message_id=ack.assistant_message_id
    )


@router.get("/status")
async def get_status(
    request_id: Optional[str] = Query(None, alias="requestId"),
    services: PortalServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Poll the state of a submitted request.

    Unknown request ids report ``queued``.
    """
    return await services.status.get_status(request_id)
