"""
Agent bridge: calls the external agent webhook for one request and moves the
assistant placeholder to its terminal state.

Runs on the background runner. Nothing here raises to the caller; every
failure ends as a ``failed`` message row.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import aiohttp
from aiobreaker import CircuitBreaker, CircuitBreakerError
from aiohttp import ClientSession, ClientTimeout, ClientError

from . import messages
from .dispatcher import AgentJob, latency_since, parse_submitted_at
from ..exceptions import (
    AgentError,
    AgentTimeout,
    Conflict,
    NotFound,
    StoreError,
    ValidationError
)
from ..models.schemas import MessageStatus
from ..store.base import ChatStore
from ..store.records import BotRecord, MessageRecord
from ..utils.clock import epoch_ms
from ..utils.retry import RetryConfig, RetryStrategy, async_retry
from ..utils.telemetry import track_agent_outcome

logger = logging.getLogger(__name__)

REPLY_FIELDS = ("response", "message", "text", "output")
TOO_COMPLEX_STATUS = 524


@dataclass
class ParsedReply:
    """Outcome of reading an agent response body."""
    content: str
    has_reply: bool
    degraded_reason: Optional[str] = None


def _reply_from_value(value: Any, locale: str) -> ParsedReply:
    if isinstance(value, list):
        if not value:
            return ParsedReply(messages.text("empty_reply", locale), False, "empty_list")
        return _reply_from_value(value[0], locale)

    if isinstance(value, str):
        if value.strip():
            return ParsedReply(value, True)
        return ParsedReply(messages.text("empty_reply", locale), False, "empty_string")

    if isinstance(value, dict):
        for key in REPLY_FIELDS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return ParsedReply(candidate, True)
        return ParsedReply(messages.text("empty_reply", locale), False, "missing_reply_field")

    return ParsedReply(messages.text("empty_reply", locale), False, "unsupported_type")


def parse_agent_reply(body: Optional[str], locale: str = "en") -> ParsedReply:
    """
    Read the agent reply out of a 2xx response body.

    Empty bodies, non-JSON bodies and bodies without a usable reply field all
    degrade to a user-facing explanation rather than an error.
    """
    if body is None or not body.strip():
        return ParsedReply(messages.text("empty_reply", locale), False, "empty_body")

    try:
        value = json.loads(body)
    except ValueError:
        return ParsedReply(messages.text("unparseable_reply", locale), False, "invalid_json")

    return _reply_from_value(value, locale)


class AgentBridge:
    """
    Outbound call to the external agent plus placeholder reconciliation.

    Webhook URL, headers and timeout come from the bot when set, otherwise
    from the bridge defaults.
    """

    def __init__(
        self,
        store: ChatStore,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 300.0,
        history_limit: int = 10,
        writes_directly: bool = False,
        locale: str = "en",
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_session: Optional[ClientSession] = None,
        retry_config: Optional[RetryConfig] = None
    ):
        self.store = store
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.history_limit = history_limit
        self.writes_directly = writes_directly
        self.locale = locale
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            fail_max=5,
            timeout_duration=timedelta(seconds=60),
            name="agent_webhook"
        )
        self.http_session = http_session
        self._owns_session = http_session is None

        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            initial_delay=0.2,
            max_delay=2.0,
            strategy=RetryStrategy.EXPONENTIAL,
            retry_on_exceptions=(StoreError,)
        )
        self._complete = async_retry(self.retry_config)(self.store.complete_message)

    async def start(self) -> None:
        """Create the pooled HTTP session."""
        if self.http_session is not None:
            return

        connector = aiohttp.TCPConnector(
            limit=100,
            limit_per_host=20,
            ttl_dns_cache=300
        )
        self.http_session = ClientSession(
            connector=connector,
            headers={
                "User-Agent": "BotPortal/1.0",
                "Accept": "application/json"
            }
        )
        self._owns_session = True
        logger.info(f"Agent bridge started (default timeout {self.timeout_seconds:g}s)")

    async def close(self) -> None:
        if self.http_session is not None and self._owns_session:
            await self.http_session.close()
        self.http_session = None

    @property
    def circuit_state(self) -> str:
        return self.circuit_breaker.current_state.name.lower()

    def circuit_snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.circuit_state,
            "failure_count": self.circuit_breaker.fail_counter,
            "failure_threshold": self.circuit_breaker.fail_max,
        }

    # ===========================
    # Job processing
    # ===========================

    async def invoke(self, job: AgentJob) -> Optional[MessageRecord]:
        """
        Process one request. Returns the terminal row, or None when skipped,
        deferred to the agent, or not writable.
        """
        try:
            return await self._process(job)

        except asyncio.CancelledError:
            logger.warning(f"Request {job.request_id} cancelled before completion")
            await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=messages.text("shutdown", self.locale),
                error_text="Cancelled during shutdown",
                outcome="cancelled"
            )
            raise

        except Exception as e:
            logger.error(f"Unexpected error processing request {job.request_id}: {e}", exc_info=True)
            return await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=messages.text("network_error", self.locale),
                error_text=str(e) or type(e).__name__,
                outcome="error"
            )

    async def _process(self, job: AgentJob) -> Optional[MessageRecord]:
        placeholder = await self.store.get_message(job.assistant_message_id)
        if placeholder is None or placeholder.is_terminal:
            logger.info(f"Request {job.request_id} already settled, skipping agent call")
            track_agent_outcome("skipped")
            return None

        bot = await self.store.get_bot(job.bot_id)
        url = (bot.webhook_url if bot else None) or self.webhook_url
        if not url:
            return await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=messages.text("unavailable", self.locale),
                error_text="No agent webhook configured",
                outcome="failed"
            )

        timeout = self._timeout_for(bot)
        payload = await self.build_payload(job)
        headers = {"Content-Type": "application/json"}
        if bot and bot.webhook_headers:
            headers.update(bot.webhook_headers)

        logger.info(f"Calling agent for request {job.request_id} (timeout={timeout:g}s)")

        try:
            body = await self._guarded_call(url, payload, headers, timeout)

        except CircuitBreakerError as e:
            logger.warning(f"Agent circuit open, request {job.request_id} not sent: {e}")
            return await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=messages.text("unavailable", self.locale),
                error_text=f"Agent circuit OPEN: {e}",
                outcome="circuit_open"
            )

        except AgentTimeout as e:
            logger.warning(f"Agent timed out for request {job.request_id}: {e}")
            return await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=messages.text(
                    "timeout", self.locale, duration=messages.duration(timeout, self.locale)
                ),
                error_text=e.machine_text(),
                outcome="timeout"
            )

        except AgentError as e:
            logger.warning(f"Agent failed for request {job.request_id}: {e}")
            if e.status == TOO_COMPLEX_STATUS:
                content = messages.text("too_complex", self.locale)
            else:
                content = messages.text("agent_error", self.locale, status=e.status)
            return await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=content,
                error_text=e.machine_text(),
                outcome="failed"
            )

        except ClientError as e:
            logger.warning(f"Agent unreachable for request {job.request_id}: {e}")
            return await self._finish(
                job,
                status=MessageStatus.FAILED,
                content=messages.text("network_error", self.locale),
                error_text=str(e) or type(e).__name__,
                outcome="failed"
            )

        reply = parse_agent_reply(body, self.locale)

        if self.writes_directly and not reply.has_reply:
            # The agent fills the placeholder through the callback endpoint
            logger.info(f"Request {job.request_id} left for the agent to complete")
            track_agent_outcome("deferred")
            return None

        metadata = {}
        if reply.degraded_reason:
            metadata["degraded"] = reply.degraded_reason
            logger.warning(f"Degraded reply for request {job.request_id}: {reply.degraded_reason}")

        return await self._finish(
            job,
            status=MessageStatus.COMPLETED,
            content=reply.content,
            outcome="degraded" if reply.degraded_reason else "completed",
            metadata=metadata
        )

    def _timeout_for(self, bot: Optional[BotRecord]) -> float:
        if bot and bot.timeout_seconds:
            return bot.timeout_seconds
        return self.timeout_seconds

    async def build_payload(self, job: AgentJob) -> Dict[str, Any]:
        history = await self._history(job)
        return {
            "message": job.text,
            "conversation_history": history,
            "conversation_id": job.session_id,
            "session_id": job.session_id,
            "bot_id": job.bot_id,
            "bot_name": job.bot_name,
            "user_id": job.user_id,
            "request_id": job.request_id,
            "assistant_message_id": job.assistant_message_id,
        }

    async def _history(self, job: AgentJob) -> List[Dict[str, Any]]:
        if self.history_limit <= 0:
            return []
        try:
            rows = await self.store.recent_messages(
                job.session_id,
                limit=self.history_limit,
                exclude_ids=[job.assistant_message_id]
            )
        except StoreError as e:
            logger.warning(f"History unavailable for request {job.request_id}: {e}")
            return []

        return [
            {"role": row.role, "content": row.content}
            for row in rows
            if row.status != MessageStatus.QUEUED.value
        ]

    async def _guarded_call(self, *args: Any) -> str:
        try:
            return await self.circuit_breaker.call_async(self._call_agent, *args)
        except CircuitBreakerError as e:
            # The call that trips the breaker keeps its own failure
            failure = e.__cause__ or e.__context__
            if isinstance(failure, Exception):
                raise failure
            raise

    async def _call_agent(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        timeout_seconds: float
    ) -> str:
        """
        POST the payload and return the raw body of a 2xx response.

        Raises:
            AgentTimeout, AgentError, aiohttp.ClientError
        """
        if self.http_session is None:
            await self.start()

        try:
            async with self.http_session.post(
                url,
                json=payload,
                headers=headers,
                timeout=ClientTimeout(total=timeout_seconds)
            ) as response:
                body = await response.text()
                if not 200 <= response.status < 300:
                    raise AgentError(response.status)
                return body

        except asyncio.TimeoutError as e:
            raise AgentTimeout(timeout_seconds) from e

    # ===========================
    # Reconciliation
    # ===========================

    async def _finish(
        self,
        job: AgentJob,
        status: MessageStatus,
        content: str,
        outcome: str,
        error_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[MessageRecord]:
        submitted = job.submitted_at_ms or parse_submitted_at(job.request_id)
        latency_ms = float(max(epoch_ms() - submitted, 0)) if submitted else None

        updates = dict(metadata or {})
        if latency_ms is not None:
            updates["latency_ms"] = latency_ms

        try:
            record = await self._complete(
                job.assistant_message_id,
                status=status.value,
                content=content,
                error_text=error_text,
                latency_ms=latency_ms,
                metadata_updates=updates
            )
        except StoreError as e:
            logger.error(
                f"Could not record {status.value} for request {job.request_id} "
                f"(message {job.assistant_message_id}): {e}"
            )
            track_agent_outcome("store_error")
            return None

        if record is None:
            logger.info(f"Message {job.assistant_message_id} was already terminal, result discarded")
            track_agent_outcome("superseded")
            return None

        track_agent_outcome(outcome, latency_ms)
        logger.info(
            f"Request {job.request_id} {status.value} ({outcome}) "
            f"in {latency_ms or 0:.0f}ms"
        )
        return record

    # ===========================
    # Agent callback
    # ===========================

    async def apply_callback(
        self,
        status: str,
        content: Optional[str],
        assistant_message_id: Optional[str] = None,
        request_id: Optional[str] = None,
        error_text: Optional[str] = None
    ) -> MessageRecord:
        """
        Record a result pushed by the agent itself.

        Raises:
            ValidationError: neither id given
            NotFound: no such placeholder
            Conflict: placeholder already terminal
        """
        if assistant_message_id:
            placeholder = await self.store.get_message(assistant_message_id)
        elif request_id:
            placeholder = await self.store.get_message_by_request_id(request_id)
        else:
            raise ValidationError("assistantMessageId or requestId is required")

        if placeholder is None:
            raise NotFound("Message not found")
        if placeholder.is_terminal:
            raise Conflict(f"Message already {placeholder.status}")

        if status == MessageStatus.COMPLETED.value:
            content = content if content and content.strip() else messages.text("empty_reply", self.locale)
        else:
            content = content or messages.text("network_error", self.locale)
            error_text = error_text or "Agent reported failure"

        latency_ms = latency_since(placeholder.request_id)
        record = await self.store.complete_message(
            placeholder.id,
            status=status,
            content=content,
            error_text=error_text,
            latency_ms=latency_ms,
            metadata_updates={"latency_ms": latency_ms, "source": "callback"}
        )
        if record is None:
            raise Conflict("Message already settled")

        track_agent_outcome(f"callback_{status}", latency_ms)
        logger.info(f"Agent callback settled message {record.id} as {status}")
        return record
