"""
Client-side view of one conversation.

Each local message is either an optimistic ``LOCAL_TEMP`` entry with a
synthesized id or a ``CONFIRMED`` entry carrying the server id. Push events
and polled status payloads are merged into the same list, so replays of the
same event leave the view unchanged.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..models.schemas import MessageRole, MessageStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (MessageStatus.COMPLETED.value, MessageStatus.FAILED.value)
TEMP_ID_PREFIX = "temp-"


class LocalState(str, Enum):
    """Where a local message's identity comes from."""
    LOCAL_TEMP = "local_temp"
    CONFIRMED = "confirmed"


@dataclass
class LocalMessage:
    id: str
    role: str
    content: str
    state: LocalState
    status: str = MessageStatus.DELIVERED.value
    request_id: Optional[str] = None
    error_text: Optional[str] = None
    latency_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    received_at: float = 0.0
    local_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def normalize_content(text: Optional[str]) -> str:
    """Collapse whitespace so echoes of the same text compare equal."""
    return " ".join((text or "").split())


class ConversationView:
    """
    Ordered, de-duplicated messages of a single session.

    Args:
        session_id: Session this view follows; events for other sessions are ignored
        recency_window_seconds: How long an optimistic message may be matched
            against an inserted user row
        clock: Monotonic time source
    """

    def __init__(
        self,
        session_id: str,
        recency_window_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.session_id = session_id
        self.recency_window_seconds = recency_window_seconds
        self._clock = clock
        self._messages: List[LocalMessage] = []
        self._awaiting_ack = 0
        self.processing = False

    @property
    def messages(self) -> List[LocalMessage]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[LocalMessage]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def find_by_request_id(self, request_id: str) -> Optional[LocalMessage]:
        for message in self._messages:
            if message.request_id == request_id and message.role == MessageRole.ASSISTANT.value:
                return message
        return None

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------

    def add_local_user_message(self, text: str) -> LocalMessage:
        """Optimistically show a message the user just sent."""
        message = LocalMessage(
            id=f"{TEMP_ID_PREFIX}{uuid.uuid4()}",
            role=MessageRole.USER.value,
            content=text,
            state=LocalState.LOCAL_TEMP,
            received_at=self._clock()
        )
        self._messages.append(message)
        self._awaiting_ack += 1
        self.processing = True
        return message

    def discard_local(self, temp_id: str) -> None:
        """Drop an optimistic message whose submission was rejected."""
        self._messages = [
            m for m in self._messages
            if not (m.id == temp_id and m.state == LocalState.LOCAL_TEMP)
        ]
        self._awaiting_ack = max(0, self._awaiting_ack - 1)
        self._refresh_processing()

    def track_request(self, assistant_message_id: str, request_id: str, content: str = "") -> LocalMessage:
        """
        Make sure the acknowledged placeholder is visible.

        The insert event may already have arrived; in that case only the
        request id is recorded.
        """
        message = self.get(assistant_message_id)
        if message is None:
            message = LocalMessage(
                id=assistant_message_id,
                role=MessageRole.ASSISTANT.value,
                content=content,
                state=LocalState.CONFIRMED,
                status=MessageStatus.QUEUED.value,
                request_id=request_id,
                received_at=self._clock()
            )
            self._messages.append(message)
        elif message.request_id is None:
            message.request_id = request_id

        self._awaiting_ack = max(0, self._awaiting_ack - 1)
        self._refresh_processing()
        return message

    def mark_local_timeout(self, assistant_message_id: str, reason: str = "timeout") -> None:
        """
        Record that the client stopped waiting.

        The server status is left untouched; a later update can still land.
        """
        message = self.get(assistant_message_id)
        if message is not None and not message.is_terminal:
            message.local_error = reason
        self.processing = False

    # ------------------------------------------------------------------
    # Authoritative state
    # ------------------------------------------------------------------

    def apply_event(self, event: Dict[str, Any]) -> bool:
        """
        Apply a change event as sent over the websocket.

        Returns:
            True if the view changed
        """
        if event.get("type", "change") != "change" or event.get("table", "messages") != "messages":
            return False

        row = event.get("new") or {}
        kind = str(event.get("event", "")).upper()
        if kind == "INSERT":
            return self.apply_insert(row)
        if kind == "UPDATE":
            return self.apply_update(row)

        logger.debug(f"Ignoring change event of type {kind!r}")
        return False

    def apply_insert(self, row: Dict[str, Any]) -> bool:
        if not self._belongs_here(row):
            return False

        if row.get("role") == MessageRole.USER.value:
            temp = self._match_local_temp(row.get("content"))
            if temp is not None:
                self._confirm(temp, row)
                return True

        if self.get(row["id"]) is not None:
            return False

        self._messages.append(self._from_row(row))
        self._refresh_processing()
        return True

    def apply_update(self, row: Dict[str, Any]) -> bool:
        if not self._belongs_here(row):
            return False

        message = self.get(row["id"])
        if message is None:
            self._messages.append(self._from_row(row))
            self._refresh_processing()
            return True

        return self._merge(message, row)

    def apply_status(self, assistant_message_id: str, request_id: str, payload: Dict[str, Any]) -> bool:
        """Merge a polled status payload into the placeholder it describes."""
        row = {
            "id": assistant_message_id,
            "session_id": self.session_id,
            "role": MessageRole.ASSISTANT.value,
            "status": payload.get("status"),
            "content": payload.get("content") or payload.get("output_text") or "",
            "error_text": payload.get("error_text"),
            "latency_ms": payload.get("latency_ms"),
            "request_id": request_id,
        }
        if row["status"] not in TERMINAL_STATUSES:
            return False
        return self.apply_update(row)

    # ------------------------------------------------------------------

    def _belongs_here(self, row: Dict[str, Any]) -> bool:
        if not row.get("id"):
            return False
        return row.get("session_id") == self.session_id

    def _match_local_temp(self, content: Optional[str]) -> Optional[LocalMessage]:
        wanted = normalize_content(content)
        now = self._clock()
        for message in self._messages:
            if (
                message.state == LocalState.LOCAL_TEMP
                and message.role == MessageRole.USER.value
                and normalize_content(message.content) == wanted
                and now - message.received_at <= self.recency_window_seconds
            ):
                return message
        return None

    def _confirm(self, temp: LocalMessage, row: Dict[str, Any]) -> None:
        existing = self.get(row["id"])
        if existing is not None:
            # Already confirmed through another path; the temp entry is a duplicate
            self._messages.remove(temp)
            return

        temp.id = row["id"]
        temp.state = LocalState.CONFIRMED
        temp.content = row.get("content", temp.content)
        temp.status = row.get("status", temp.status)
        temp.request_id = row.get("request_id")
        temp.metadata = dict(row.get("metadata") or {})
        temp.created_at = row.get("created_at")

    def _merge(self, message: LocalMessage, row: Dict[str, Any]) -> bool:
        status = row.get("status", message.status)
        if message.is_terminal and status not in TERMINAL_STATUSES:
            return False

        before = (message.content, message.status, message.error_text, message.latency_ms)
        message.content = row.get("content", message.content)
        message.status = status
        message.error_text = row.get("error_text", message.error_text)
        message.latency_ms = row.get("latency_ms", message.latency_ms)
        if row.get("request_id"):
            message.request_id = row["request_id"]
        if row.get("metadata"):
            message.metadata = dict(row["metadata"])
        message.state = LocalState.CONFIRMED
        if message.is_terminal:
            message.local_error = None

        self._refresh_processing()
        return before != (message.content, message.status, message.error_text, message.latency_ms)

    def _from_row(self, row: Dict[str, Any]) -> LocalMessage:
        return LocalMessage(
            id=row["id"],
            role=row.get("role", MessageRole.ASSISTANT.value),
            content=row.get("content", ""),
            state=LocalState.CONFIRMED,
            status=row.get("status", MessageStatus.DELIVERED.value),
            request_id=row.get("request_id"),
            error_text=row.get("error_text"),
            latency_ms=row.get("latency_ms"),
            metadata=dict(row.get("metadata") or {}),
            created_at=row.get("created_at"),
            received_at=self._clock()
        )

    def _refresh_processing(self) -> None:
        waiting_for_ack = self._awaiting_ack > 0
        queued = any(
            m.role == MessageRole.ASSISTANT.value
            and m.status == MessageStatus.QUEUED.value
            and m.local_error is None
            for m in self._messages
        )
        self.processing = waiting_for_ack or queued
