"""
Request dispatcher: acknowledge a chat message immediately and hand the agent
call to the background runner.
"""
import logging
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from . import messages
from .background import BackgroundRunner
from ..exceptions import (
    Forbidden,
    NotFound,
    PlaceholderCreationFailed,
    StoreError,
    Unauthenticated,
    ValidationError
)
from ..models.schemas import MessageRole, MessageStatus
from ..store.base import ChatStore, title_from_text
from ..utils.clock import epoch_ms
from ..utils.telemetry import track_submission

logger = logging.getLogger(__name__)

# request_id columns hold 100 characters: 13 digits, a dash and the suffix
MAX_MESSAGE_ID_LENGTH = 64


def generate_request_id(message_id: Optional[str] = None, now_ms: Optional[int] = None) -> str:
    """
    Build ``{epoch_ms}-{suffix}``.

    The suffix is the client's message id when given, otherwise a uuid4, so
    ids sort by submission time and stay unique.
    """
    submitted = epoch_ms() if now_ms is None else now_ms
    suffix = (message_id or "").strip() or str(uuid.uuid4())
    return f"{submitted}-{suffix}"


def parse_submitted_at(request_id: Optional[str]) -> Optional[int]:
    """Submission time in epoch ms encoded in a request id, or None."""
    if not request_id:
        return None
    prefix, _, _ = request_id.partition("-")
    if not prefix.isdigit():
        return None
    return int(prefix)


def latency_since(request_id: Optional[str]) -> Optional[float]:
    submitted = parse_submitted_at(request_id)
    if submitted is None:
        return None
    return float(max(epoch_ms() - submitted, 0))


@dataclass
class Ack:
    """What the client gets back from submit."""
    request_id: str
    assistant_message_id: str
    status: str = MessageStatus.QUEUED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AgentJob:
    """Everything the agent bridge needs to process one request."""
    request_id: str
    session_id: str
    assistant_message_id: str
    text: str
    user_id: str
    bot_id: str
    bot_name: Optional[str] = None
    user_message_id: Optional[str] = None
    submitted_at_ms: Optional[int] = None


class RequestDispatcher:
    """Accepts submissions and schedules agent work without blocking."""

    def __init__(
        self,
        store: ChatStore,
        runner: BackgroundRunner,
        bridge,
        locale: str = "en",
        max_message_length: int = 8000
    ):
        self.store = store
        self.runner = runner
        self.bridge = bridge
        self.locale = locale
        self.max_message_length = max_message_length

    async def submit(
        self,
        session_id: Optional[str],
        text: Optional[str],
        user_id: Optional[str],
        bot_id: Optional[str] = None,
        bot_name: Optional[str] = None,
        message_id: Optional[str] = None
    ) -> Ack:
        """
        Persist the user message and the assistant placeholder, schedule the
        agent call and return the ACK.

        Raises:
            ValidationError, Unauthenticated, NotFound, Forbidden,
            PlaceholderCreationFailed
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is required")
        if len(text) > self.max_message_length:
            raise ValidationError(f"Message exceeds {self.max_message_length} characters")
        if not session_id:
            raise ValidationError("sessionId is required")
        if not user_id:
            raise Unauthenticated()
        if message_id and len(message_id.strip()) > MAX_MESSAGE_ID_LENGTH:
            raise ValidationError(f"messageId exceeds {MAX_MESSAGE_ID_LENGTH} characters")

        session = await self.store.get_session(session_id)
        if session is None or not session.is_active:
            raise NotFound("Session not found")
        if session.user_id != user_id:
            raise Forbidden("Session belongs to another user")

        # Requests always go to the bot the session was opened for
        if bot_id and bot_id != session.bot_id:
            raise Forbidden("Session is bound to a different bot")
        bot_id = session.bot_id
        if not bot_name:
            bot = await self.store.get_bot(bot_id)
            bot_name = bot.name if bot else None

        submitted_at = epoch_ms()
        request_id = generate_request_id(message_id, now_ms=submitted_at)

        user_message_id = None
        try:
            user_message = await self.store.insert_message(
                session_id=session_id,
                role=MessageRole.USER.value,
                content=text,
                status=MessageStatus.DELIVERED.value,
                request_id=request_id,
                metadata={"client_message_id": message_id} if message_id else {}
            )
            user_message_id = user_message.id
        except StoreError as e:
            # The placeholder still carries the request; history just lacks the user row
            logger.error(f"Failed to store user message for request {request_id}: {e}")

        try:
            placeholder = await self.store.insert_message(
                session_id=session_id,
                role=MessageRole.ASSISTANT.value,
                content=messages.text("processing", self.locale),
                status=MessageStatus.QUEUED.value,
                request_id=request_id,
                metadata={
                    "bot_id": bot_id,
                    "bot_name": bot_name,
                    "processing": True,
                    "request_id": request_id,
                    "user_message_id": user_message_id
                }
            )
        except StoreError as e:
            logger.error(f"Failed to create placeholder for request {request_id}: {e}")
            track_submission(accepted=False)
            raise PlaceholderCreationFailed(str(e), extra={"request_id": request_id}) from e

        try:
            await self.store.touch_session(session_id, title_hint=title_from_text(text))
        except StoreError as e:
            logger.warning(f"Failed to touch session {session_id}: {e}")

        job = AgentJob(
            request_id=request_id,
            session_id=session_id,
            assistant_message_id=placeholder.id,
            text=text,
            user_id=user_id,
            bot_id=bot_id,
            bot_name=bot_name,
            user_message_id=user_message_id,
            submitted_at_ms=submitted_at
        )

        try:
            self.runner.spawn(self.bridge.invoke(job), name=f"agent-{request_id}")
        except RuntimeError as e:
            logger.error(f"Could not schedule request {request_id}: {e}")
            await self.store.complete_message(
                placeholder.id,
                status=MessageStatus.FAILED.value,
                content=messages.text("shutdown", self.locale),
                error_text=str(e)
            )
            track_submission(accepted=False)
            raise PlaceholderCreationFailed("Server is shutting down", extra={"request_id": request_id}) from e

        track_submission(accepted=True)
        logger.info(
            f"Queued request {request_id} (session={session_id}, "
            f"assistant_message={placeholder.id})"
        )
        return Ack(request_id=request_id, assistant_message_id=placeholder.id)
