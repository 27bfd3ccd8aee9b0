"""
Mock agent webhook for local development.
"""
from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import asyncio
import logging

from ...utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def _user_message(payload: Dict[str, Any]) -> str:
    if payload.get("message"):
        return str(payload["message"])
    history = payload.get("messages") or []
    if history and isinstance(history[-1], dict):
        return str(history[-1].get("content") or "No message")
    return "No message"


@router.post("")
async def mock_agent(
    payload: Dict[str, Any] = Body(default_factory=dict),
    delay: float = Query(1.0, ge=0, le=600),
    fail_status: Optional[int] = Query(None, ge=400, le=599)
):
    """
    Echo the user message back after ``delay`` seconds.

    ``fail_status`` answers with that HTTP status instead.
    """
    user_message = _user_message(payload)
    logger.info(f"Mock agent received request {payload.get('request_id')} (delay={delay}s)")

    await asyncio.sleep(delay)

    if fail_status:
        return JSONResponse(
            status_code=fail_status,
            content={"success": False, "error": f"Simulated failure {fail_status}", "mock": True}
        )

    reply = (
        f"I'm a mock assistant. I received your message: \"{user_message}\"\n\n"
        "*Note: This is a mock response. Configure AGENT_WEBHOOK_URL for a real agent.*"
    )

    return {
        "response": reply,
        "message": reply,
        "success": True,
        "timestamp": utcnow().isoformat(),
        "mock": True
    }
