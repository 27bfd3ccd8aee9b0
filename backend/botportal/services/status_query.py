"""
Pull-based request status lookup.

The message row is the record of truth. Terminal payloads are kept in a
short-lived TTL cache; queued results are always read from the store.
"""
import logging
from typing import Any, Dict, Optional

from cachetools import TTLCache

from ..exceptions import ValidationError
from ..models.schemas import MessageStatus
from ..store.base import ChatStore
from ..store.records import MessageRecord
from ..utils.telemetry import track_status_poll

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Request not found, might still be processing"


def status_payload(message: MessageRecord) -> Dict[str, Any]:
    payload = {
        "status": message.status,
        "content": message.content,
        "output_text": message.content,
        "error_text": message.error_text,
        "latency_ms": message.latency_ms,
    }
    if message.status == MessageStatus.QUEUED.value:
        payload["output_text"] = None
    return payload


class StatusQuery:
    """Side-effect free status reads by request id."""

    def __init__(self, store: ChatStore, cache_size: int = 1024, cache_ttl: int = 300):
        self.store = store
        self.cache: Optional[TTLCache] = TTLCache(maxsize=cache_size, ttl=cache_ttl) if cache_size > 0 else None

    async def get_status(self, request_id: Optional[str]) -> Dict[str, Any]:
        """
        Current status for a request.

        Unknown request ids report ``queued``; the row may not be visible yet.

        Raises:
            ValidationError: if request_id is missing
        """
        request_id = (request_id or "").strip()
        if not request_id:
            raise ValidationError("requestId is required")

        if self.cache is not None:
            cached = self.cache.get(request_id)
            if cached is not None:
                track_status_poll(cached["status"], cached=True)
                return dict(cached)

        message = await self.store.get_message_by_request_id(request_id)
        if message is None:
            logger.debug(f"Status lookup for unknown request {request_id}")
            track_status_poll("unknown")
            return {"status": MessageStatus.QUEUED.value, "message": NOT_FOUND_MESSAGE}

        payload = status_payload(message)
        if message.is_terminal and self.cache is not None:
            self.cache[request_id] = dict(payload)

        track_status_poll(message.status)
        return payload
