"""
Async client for the bot portal.

Sends messages, follows the active session over the websocket and falls back
to polling the status endpoint when push updates do not arrive in time.

Version: 1.0.0
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .conversation import ConversationView, TERMINAL_STATUSES
from ..models.schemas import MessageStatus, SessionPolicy

logger = logging.getLogger(__name__)


@dataclass
class DeliveryConfig:
    """Connection settings and the client-side waiting windows."""
    base_url: str
    api_prefix: str = "/api/v1"
    token: Optional[str] = None
    user_id: Optional[str] = None
    grace_seconds: float = 10.0
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 30
    give_up_seconds: float = 90.0
    recency_window_seconds: float = 30.0
    request_timeout_seconds: float = 15.0


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    LOCAL_TIMEOUT = "local_timeout"


@dataclass
class DeliveryOutcome:
    """How a sent message ended, from the client's point of view."""
    kind: OutcomeKind
    request_id: str
    assistant_message_id: str
    content: Optional[str] = None
    error_text: Optional[str] = None
    latency_ms: Optional[float] = None
    source: str = "push"

    @property
    def is_local_timeout(self) -> bool:
        return self.kind == OutcomeKind.LOCAL_TIMEOUT


class DeliveryClientError(Exception):
    """Raised when the portal rejects a request."""

    def __init__(self, status: int, error: str, details: Any = None):
        super().__init__(f"{status} {error}: {details}" if details else f"{status} {error}")
        self.status = status
        self.error = error
        self.details = details


class DeliveryClient:
    """
    Portal client bound to one active conversation at a time.

    Example:
        async with DeliveryClient(DeliveryConfig(base_url, token=token)) as client:
            session_id = await client.start_chat("bot-1")
            await client.open(session_id)
            outcome = await client.send("hello")
    """

    def __init__(self, config: DeliveryConfig, http_session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._http = http_session
        self._owns_http = http_session is None
        self._inflight: Dict[Tuple[str, Optional[str], Optional[str]], asyncio.Future] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self.view: Optional[ConversationView] = None

    async def __aenter__(self) -> "DeliveryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            )
            self._owns_http = True
        return self._http

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{self.config.api_prefix}{path}"

    def _headers(self) -> Dict[str, str]:
        if self.config.token:
            return {"Authorization": f"Bearer {self.config.token}"}
        return {}

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        async with self.http.request(method, self._url(path), headers=self._headers(), **kwargs) as response:
            try:
                data = await response.json(content_type=None)
            except ValueError:
                data = None

            if response.status >= 400:
                data = data if isinstance(data, dict) else {}
                raise DeliveryClientError(
                    response.status,
                    data.get("error", response.reason or "Request failed"),
                    data.get("details")
                )
            return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_chat(
        self,
        bot_id: str,
        tenant_id: Optional[str] = None,
        external_id: Optional[str] = None,
        policy: Optional[SessionPolicy] = None
    ) -> str:
        """
        Create or resolve a session and return its id.

        Concurrent calls for the same (bot, tenant, external id) share one
        request.
        """
        key = (bot_id, tenant_id, external_id)
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._create_session(bot_id, tenant_id, external_id, policy))
            self._inflight[key] = future
            future.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(future)

    async def _create_session(
        self,
        bot_id: str,
        tenant_id: Optional[str],
        external_id: Optional[str],
        policy: Optional[SessionPolicy]
    ) -> str:
        if policy is None:
            policy = SessionPolicy.EXTERNAL if external_id else SessionPolicy.NEW

        body = {"botId": bot_id, "policy": policy.value}
        if tenant_id:
            body["tenantId"] = tenant_id
        if external_id:
            body["externalId"] = external_id
        if self.config.user_id and not self.config.token:
            body["userId"] = self.config.user_id

        data = await self._request("POST", "/sessions", json=body)
        logger.info(f"Session ready: {data['sessionId']}")
        return data["sessionId"]

    async def open(self, session_id: str) -> ConversationView:
        """
        Follow a session.

        The previous subscription is closed before the new one is opened.
        """
        await self._close_subscription()

        view = ConversationView(session_id, recency_window_seconds=self.config.recency_window_seconds)
        self.view = view

        params = {"session_id": session_id}
        if self.config.token:
            params["token"] = self.config.token
        elif self.config.user_id:
            params["userId"] = self.config.user_id

        try:
            self._ws = await self.http.ws_connect(
                f"{self.config.base_url.rstrip('/')}/ws",
                params=params,
                heartbeat=30.0
            )
        except aiohttp.ClientError as e:
            logger.warning(f"Websocket unavailable for session {session_id}, relying on polling: {e}")
            return view

        self._reader = asyncio.create_task(self._read_events(self._ws, view), name=f"delivery-{session_id}")
        return view

    async def _read_events(self, ws: aiohttp.ClientWebSocketResponse, view: ConversationView) -> None:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Websocket error: {ws.exception()}")
                    break
                continue

            try:
                data = msg.json()
            except ValueError:
                logger.debug("Ignoring non-JSON websocket frame")
                continue

            if data.get("type") != "change":
                continue

            if view.apply_event(data):
                self._wake(view, data.get("new") or {})

        logger.debug(f"Websocket reader for session {view.session_id} finished")

    def _wake(self, view: ConversationView, row: Dict[str, Any]) -> None:
        waiter = self._waiters.get(row.get("id"))
        message = view.get(row.get("id", ""))
        if waiter is not None and not waiter.done() and message is not None and message.is_terminal:
            waiter.set_result(message)

    async def _close_subscription(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

        if self._ws is not None:
            await self._ws.close()
            self._ws = None

        self.view = None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send(self, text: str, bot_id: Optional[str] = None, bot_name: Optional[str] = None) -> DeliveryOutcome:
        """
        Send a message and wait for the assistant reply.

        Returns a ``LOCAL_TIMEOUT`` outcome when the client gives up; the
        server keeps working on the request regardless.

        Raises:
            DeliveryClientError: if the portal rejects the submission
        """
        if self.view is None:
            raise RuntimeError("No open session; call open() first")

        view = self.view
        temp = view.add_local_user_message(text)

        body: Dict[str, Any] = {
            "sessionId": view.session_id,
            "text": text,
            "messageId": str(uuid.uuid4())
        }
        if bot_id:
            body["botId"] = bot_id
        if bot_name:
            body["botName"] = bot_name
        if self.config.user_id and not self.config.token:
            body["userId"] = self.config.user_id

        try:
            ack = await self._request("POST", "/chat/submit", json=body)
        except (DeliveryClientError, aiohttp.ClientError):
            view.discard_local(temp.id)
            raise

        request_id = ack["requestId"]
        assistant_id = ack["assistantMessageId"]
        view.track_request(assistant_id, request_id)

        return await self.wait_for_reply(request_id, assistant_id, view)

    async def get_status(self, request_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/chat/status", params={"requestId": request_id})

    async def wait_for_reply(
        self,
        request_id: str,
        assistant_message_id: str,
        view: Optional[ConversationView] = None
    ) -> DeliveryOutcome:
        """
        Wait for the placeholder to reach a terminal state.

        Push updates are awaited for ``grace_seconds``; after that the status
        endpoint is polled every ``poll_interval_seconds``, up to
        ``max_poll_attempts`` polls or ``give_up_seconds`` in total.
        """
        view = view or self.view
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.give_up_seconds

        waiter = loop.create_future()
        self._waiters[assistant_message_id] = waiter

        try:
            message = view.get(assistant_message_id) if view else None
            if message is not None and message.is_terminal:
                return self._outcome(request_id, assistant_message_id, message.status,
                                     message.content, message.error_text, message.latency_ms, "push")

            if await self._wait_push(waiter, min(self.config.grace_seconds, deadline - loop.time())):
                return self._push_outcome(request_id, assistant_message_id, waiter.result())

            attempts = 0
            while attempts < self.config.max_poll_attempts and loop.time() < deadline:
                attempts += 1
                payload = await self._poll(request_id)

                if payload is not None and payload.get("status") in TERMINAL_STATUSES:
                    if view is not None:
                        view.apply_status(assistant_message_id, request_id, payload)
                    return self._outcome(
                        request_id,
                        assistant_message_id,
                        payload["status"],
                        payload.get("content") or payload.get("output_text"),
                        payload.get("error_text"),
                        payload.get("latency_ms"),
                        "poll"
                    )

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break

                if await self._wait_push(waiter, min(self.config.poll_interval_seconds, remaining)):
                    return self._push_outcome(request_id, assistant_message_id, waiter.result())

            logger.info(f"Gave up waiting for request {request_id} after {attempts} polls")
            if view is not None:
                view.mark_local_timeout(assistant_message_id)
            return DeliveryOutcome(
                kind=OutcomeKind.LOCAL_TIMEOUT,
                request_id=request_id,
                assistant_message_id=assistant_message_id,
                source="local"
            )

        finally:
            self._waiters.pop(assistant_message_id, None)

    async def _wait_push(self, waiter: asyncio.Future, timeout: float) -> bool:
        if waiter.done():
            return True
        if timeout <= 0:
            return False
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll(self, request_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.get_status(request_id)
        except (DeliveryClientError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Status poll for {request_id} failed: {e}")
            return None

    def _push_outcome(self, request_id: str, assistant_message_id: str, message) -> DeliveryOutcome:
        return self._outcome(request_id, assistant_message_id, message.status,
                             message.content, message.error_text, message.latency_ms, "push")

    @staticmethod
    def _outcome(
        request_id: str,
        assistant_message_id: str,
        status: str,
        content: Optional[str],
        error_text: Optional[str],
        latency_ms: Optional[float],
        source: str
    ) -> DeliveryOutcome:
        kind = OutcomeKind.COMPLETED if status == MessageStatus.COMPLETED.value else OutcomeKind.FAILED
        return DeliveryOutcome(
            kind=kind,
            request_id=request_id,
            assistant_message_id=assistant_message_id,
            content=content,
            error_text=error_text,
            latency_ms=latency_ms,
            source=source
        )

    async def close(self) -> None:
        """Close the subscription and the HTTP session."""
        await self._close_subscription()

        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()

        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()
        self._http = None
