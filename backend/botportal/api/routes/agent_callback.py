"""
Callback through which the external agent settles a placeholder itself.
"""
from fastapi import APIRouter, Depends, Header
from typing import Any, Dict, Optional
import hmac
import logging

from ..deps import get_services
from ...exceptions import Unauthenticated
from ...models.schemas import AgentCallbackRequest
from ...services.container import PortalServices

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_agent_secret(
    services: PortalServices = Depends(get_services),
    x_agent_secret: Optional[str] = Header(None, alias="X-Agent-Secret")
) -> None:
    expected = services.config.get_callback_secret()
    if expected is None:
        return
    if not x_agent_secret or not hmac.compare_digest(x_agent_secret, expected):
        logger.warning("Rejected agent callback with missing or wrong secret")
        raise Unauthenticated("Invalid agent secret")


@router.post("/callback", dependencies=[Depends(verify_agent_secret)])
async def agent_callback(
    request: AgentCallbackRequest,
    services: PortalServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Complete or fail an assistant placeholder.

    A placeholder settles once; later callbacks get 409.
    """
    record = await services.bridge.apply_callback(
        status=request.status,
        content=request.content,
        assistant_message_id=request.assistant_message_id,
        request_id=request.request_id,
        error_text=request.error_text
    )
    return {"success": True, "message": record.to_dict()}
