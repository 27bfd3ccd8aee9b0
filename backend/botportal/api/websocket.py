"""
WebSocket endpoint streaming message changes of one session.
"""
from fastapi import WebSocket, WebSocketDisconnect, Query
from typing import Dict, Optional
import asyncio
import json
import logging
import uuid

from ..exceptions import Unauthenticated
from ..realtime.change_feed import Subscription
from ..services.auth_service import CallerIdentity, auth_service
from ..utils.clock import utcnow
from ..utils.telemetry import update_websocket_connections

logger = logging.getLogger(__name__)

CLOSE_UNAUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404
CLOSE_INVALID = 4400
CLOSE_UNAVAILABLE = 1013


class ConnectionManager:
    """Tracks open websocket connections per session."""

    def __init__(self):
        """Initialize connection manager."""
        self.active_connections: Dict[str, Dict[str, WebSocket]] = {}

    @property
    def connection_count(self) -> int:
        return sum(len(clients) for clients in self.active_connections.values())

    async def connect(self, websocket: WebSocket, session_id: str, client_id: str) -> None:
        """
        Accept and register a new connection.

        Args:
            websocket: WebSocket connection
            session_id: Chat session ID
            client_id: Client identifier
        """
        await websocket.accept()

        self.active_connections.setdefault(session_id, {})[client_id] = websocket
        update_websocket_connections(self.connection_count)

        logger.info(f"WebSocket connected: session={session_id}, client={client_id}")

    def disconnect(self, session_id: str, client_id: str):
        """
        Remove a connection.

        Args:
            session_id: Session identifier
            client_id: Client identifier
        """
        if session_id in self.active_connections:
            if client_id in self.active_connections[session_id]:
                del self.active_connections[session_id][client_id]
                logger.info(f"WebSocket client {client_id} disconnected from session {session_id}")

            # Clean up empty sessions
            if not self.active_connections[session_id]:
                del self.active_connections[session_id]

        update_websocket_connections(self.connection_count)


# Global connection manager
manager = ConnectionManager()


def _authenticate(token: Optional[str], user_id: Optional[str]) -> Optional[CallerIdentity]:
    if token:
        return auth_service.identity_from_token(token)
    return auth_service.anonymous_identity(user_id)


async def _forward_changes(websocket: WebSocket, subscription: Subscription) -> None:
    """Push each change event of the subscription to the client."""
    async for event in subscription:
        await websocket.send_json(event.to_message())


async def websocket_endpoint(
    websocket: WebSocket,
    session_id: Optional[str] = Query(None),
    token: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId")
):
    """
    WebSocket endpoint for message change notifications.

    Query:
        session_id: Chat session to follow
        token: Bearer token of the session owner
    """
    # Validate session_id
    if not session_id or session_id == "undefined":
        logger.warning(f"Invalid session_id provided: {session_id}")
        await websocket.close(code=CLOSE_INVALID, reason="Invalid session_id")
        return

    services = getattr(websocket.app.state, "services", None)
    if services is None:
        logger.error("Services not initialized")
        await websocket.close(code=CLOSE_UNAVAILABLE, reason="Service unavailable")
        return

    try:
        caller = _authenticate(token, user_id)
    except Unauthenticated as e:
        logger.warning(f"WebSocket authentication failed: {e.details}")
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason=e.details)
        return

    if caller is None:
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason="Authentication required")
        return

    session = await services.store.get_session(session_id)
    if session is None or not session.is_active:
        logger.warning(f"Session not found: {session_id}")
        await websocket.close(code=CLOSE_NOT_FOUND, reason="Session not found")
        return

    if session.user_id != caller.user_id:
        await websocket.close(code=CLOSE_FORBIDDEN, reason="Session belongs to another user")
        return

    client_id = str(uuid.uuid4())
    subscription = await services.change_feed.subscribe(session_id)
    forwarder: Optional[asyncio.Task] = None

    await manager.connect(websocket, session_id, client_id)

    try:
        # Send connection confirmation
        await websocket.send_json({
            "type": "connected",
            "session_id": session_id,
            "client_id": client_id,
            "timestamp": utcnow().isoformat()
        })

        forwarder = asyncio.create_task(
            _forward_changes(websocket, subscription),
            name=f"ws-forward-{client_id}"
        )

        while True:
            data = await websocket.receive_text()

            try:
                message_data = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({
                    "type": "error",
                    "message": "Invalid JSON",
                    "timestamp": utcnow().isoformat()
                })
                continue

            if isinstance(message_data, dict) and message_data.get("type") == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "timestamp": utcnow().isoformat()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client {client_id} disconnected from session {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        await subscription.close()
        if forwarder is not None:
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
        manager.disconnect(session_id, client_id)
