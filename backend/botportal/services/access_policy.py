"""
Authorization collaborator: may a user chat with a bot inside a tenant?
"""
import logging
from abc import ABC, abstractmethod

from ..store.base import ChatStore

logger = logging.getLogger(__name__)


class AccessPolicy(ABC):

    @abstractmethod
    async def is_allowed(self, user_id: str, tenant_id: str, bot_id: str) -> bool:
        pass


class AllowAllPolicy(AccessPolicy):
    """Grants everything. For tests and single-tenant setups."""

    async def is_allowed(self, user_id: str, tenant_id: str, bot_id: str) -> bool:
        return True


class StoreAccessPolicy(AccessPolicy):
    """
    Checks the bot_access rows of the chat store.

    With ``strict=False`` a missing row is logged and allowed.
    """

    def __init__(self, store: ChatStore, strict: bool = True):
        self.store = store
        self.strict = strict

    async def is_allowed(self, user_id: str, tenant_id: str, bot_id: str) -> bool:
        if await self.store.has_bot_access(tenant_id, bot_id):
            return True

        if self.strict:
            logger.info(f"Denied bot {bot_id} for user {user_id} in tenant {tenant_id}: no bot_access row")
            return False

        logger.warning(f"Bot {bot_id} has no bot_access row for tenant {tenant_id}, allowing")
        return True
