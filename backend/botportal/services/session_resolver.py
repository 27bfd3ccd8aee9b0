"""
Session resolution and session-level operations.

A session id is always obtained through an explicit SessionPolicy; there is
no implicit reuse of recent sessions.
"""
import logging
from typing import List, Optional, Tuple

from .access_policy import AccessPolicy
from .auth_service import CallerIdentity
from ..exceptions import Conflict, Forbidden, NotFound, Unauthenticated, ValidationError
from ..models.schemas import SessionPolicy, SessionStatus
from ..store.base import ChatStore
from ..store.records import MessageRecord, SessionRecord

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100


class SessionResolver:
    """Obtains session ids and enforces session ownership."""

    def __init__(self, store: ChatStore, access_policy: AccessPolicy):
        self.store = store
        self.access_policy = access_policy

    async def resolve_session(
        self,
        caller: Optional[CallerIdentity],
        bot_id: Optional[str],
        tenant_id: Optional[str] = None,
        external_id: Optional[str] = None,
        policy: Optional[SessionPolicy] = None,
        session_id: Optional[str] = None
    ) -> SessionRecord:
        """
        Obtain a session for (tenant, caller, bot) according to policy.

        Args:
            caller: Authenticated identity
            bot_id: Bot to chat with
            tenant_id: Tenant; defaults to the caller's first membership
            external_id: Client key for idempotent creation
            policy: NEW, EXTERNAL or CONTINUE; defaults to EXTERNAL when an
                external_id is given and NEW otherwise
            session_id: Existing session for CONTINUE

        Raises:
            Unauthenticated, ValidationError, NotFound, Forbidden, Conflict
        """
        if caller is None:
            raise Unauthenticated()

        if not bot_id:
            raise ValidationError("botId is required")

        if policy is None:
            policy = SessionPolicy.EXTERNAL if external_id else SessionPolicy.NEW

        if policy == SessionPolicy.EXTERNAL and not external_id:
            raise ValidationError("externalId is required for the external policy")

        if policy == SessionPolicy.CONTINUE:
            if not session_id:
                raise ValidationError("sessionId is required for the continue policy")
            session = await self.get_owned_session(caller, session_id)
            if session.bot_id != bot_id:
                raise ValidationError("Session belongs to a different bot")
            return session

        tenant_id, bot = await self._authorize(caller, tenant_id, bot_id)

        if policy == SessionPolicy.EXTERNAL:
            session = await self.store.upsert_session_by_external_id(
                external_id=external_id,
                tenant_id=tenant_id,
                user_id=caller.user_id,
                bot_id=bot.id
            )
            if session.user_id != caller.user_id:
                raise Forbidden("External id is bound to another user")
            if session.bot_id != bot.id or session.tenant_id != tenant_id:
                raise Conflict("External id is bound to a different bot or tenant")
            if not session.is_active:
                raise NotFound("Session has been deleted")
            logger.info(f"Resolved session {session.id} for external id {external_id}")
            return session

        session = await self.store.create_session(
            tenant_id=tenant_id,
            user_id=caller.user_id,
            bot_id=bot.id
        )
        logger.info(f"Created session {session.id} (tenant={tenant_id}, bot={bot.id})")
        return session

    async def _authorize(self, caller: CallerIdentity, tenant_id: Optional[str], bot_id: str):
        if not tenant_id:
            tenant_id = caller.default_tenant
            if not tenant_id:
                raise Forbidden("User has no tenant membership")
        elif not caller.is_member(tenant_id):
            raise Forbidden("User is not a member of this tenant")

        bot = await self.store.get_bot(bot_id)
        if bot is None:
            raise NotFound("Bot not found")

        if not await self.access_policy.is_allowed(caller.user_id, tenant_id, bot_id):
            raise Forbidden("Access to this bot is not allowed")

        return tenant_id, bot

    async def get_owned_session(self, caller: Optional[CallerIdentity], session_id: str) -> SessionRecord:
        """
        Load an active session and check the caller owns it.

        Raises:
            Unauthenticated, NotFound, Forbidden
        """
        if caller is None:
            raise Unauthenticated()

        session = await self.store.get_session(session_id)
        if session is None or not session.is_active:
            raise NotFound("Session not found")

        if session.user_id != caller.user_id:
            raise Forbidden("Session belongs to another user")

        return session

    async def rename_session(self, caller: Optional[CallerIdentity], session_id: str, title: Optional[str]) -> SessionRecord:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")

        await self.get_owned_session(caller, session_id)
        updated = await self.store.update_session(session_id, title=title)
        if updated is None:
            raise NotFound("Session not found")
        return updated

    async def delete_session(self, caller: Optional[CallerIdentity], session_id: str) -> SessionRecord:
        """Soft delete; rows are never removed."""
        await self.get_owned_session(caller, session_id)
        updated = await self.store.update_session(session_id, status=SessionStatus.DELETED.value)
        if updated is None:
            raise NotFound("Session not found")
        logger.info(f"Session {session_id} marked deleted")
        return updated

    async def list_messages(
        self,
        caller: Optional[CallerIdentity],
        session_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[MessageRecord], int]:
        """History page, oldest first, with the session's total message count."""
        await self.get_owned_session(caller, session_id)
        messages = await self.store.list_messages(session_id, limit=limit, offset=offset)
        total = await self.store.count_messages(session_id)
        return messages, total
